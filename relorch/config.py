"""
Configuration management for relorch.

Loads and validates the release.yaml configuration file.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from relorch.errors import ConfigError
from relorch.matrix import BuildJob, FeatureVariant, PlatformConventions, TargetSpec, expand_matrix
from relorch.publisher import PublishPolicy
from relorch.staging import DEFAULT_AUXILIARY_FILES

CONFIG_ENV_VAR = "RELORCH_CONFIG"
DEFAULT_CONFIG_NAME = "release.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "pipeline": {
        "name": "release",
        "source_root": ".",
        "output_dir": "target/deploy",
        "workers": 1,
        "strip": True,
        "clean_before_build": False,
        "isolate_target_dirs": False,
    },
    "features": [
        {"flag": None},
        {"flag": "use-mock-routing", "label": "mock"},
    ],
    "packages": {
        "safe_app": {},
        "safe_authenticator": {},
    },
    "targets": [
        {"triple": "x86_64-unknown-linux-gnu", "alias": "linux-x64"},
    ],
    "publish": {
        "bucket": None,
        "region": "eu-west-2",
        "prefix": "",
        "acl": "public-read",
        "branch": "master",
        "event_type": "push",
        "stable_toolchain": "stable",
    },
    "logging": {
        "level": "INFO",
        "format": "structured",
        "output": "logs/relorch-{date}.log",
        "console": True,
    },
}


def _parse_feature(data: Any, where: str) -> FeatureVariant:
    if data is None or isinstance(data, str):
        data = {"flag": data}
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: feature must be a string or mapping, got {data!r}")

    flag = data.get("flag")
    if flag is not None and not str(flag).strip():
        raise ConfigError(f"{where}: empty feature flag, use null for the default build")
    return FeatureVariant(flag=flag, label=data.get("label"))


class PackageConfig:
    """Configuration for a single released package."""

    def __init__(self, name: str, data: Optional[Dict[str, Any]], source_root: Path):
        data = data or {}
        self.name = name
        self.manifest = source_root / data.get("manifest", f"{name}/Cargo.toml")
        self.features: Optional[List[FeatureVariant]] = None
        if "features" in data:
            self.features = [
                _parse_feature(f, f"Package {name}") for f in data["features"] or []
            ]

    def __repr__(self) -> str:
        return f"PackageConfig(name={self.name}, manifest={self.manifest})"


def _parse_target(data: Any, default_strip: bool) -> TargetSpec:
    if isinstance(data, str):
        data = {"triple": data}
    if not isinstance(data, dict) or not data.get("triple"):
        raise ConfigError(f"Target must have a 'triple': {data!r}")

    triple = data["triple"]
    defaults = PlatformConventions.for_triple(triple, strip=data.get("strip", default_strip))
    conventions = PlatformConventions(
        library_prefix=data.get("library_prefix", defaults.library_prefix),
        library_suffix=data.get("library_suffix", defaults.library_suffix),
        strip=data.get("strip", defaults.strip),
        strip_args=tuple(data.get("strip_args", defaults.strip_args)),
    )
    return TargetSpec(triple=triple, alias=data.get("alias"), conventions=conventions)


class ReleaseConfig:
    """Complete release configuration."""

    def __init__(self, raw_config: Dict[str, Any], config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = raw_config
        base_dir = config_path.parent if config_path else Path.cwd()

        pipeline = raw_config.get("pipeline") or {}
        self.name = pipeline.get("name", "release")
        self.source_root = (base_dir / pipeline.get("source_root", ".")).resolve()
        # Archives land relative to the invocation directory
        self.output_dir = Path(pipeline.get("output_dir", "target/deploy"))
        target_dir = pipeline.get("target_dir")
        self.target_dir = self.source_root / target_dir if target_dir else self.source_root / "target"
        self.workers = int(pipeline.get("workers", 1))
        self.cargo = pipeline.get("cargo", "cargo")
        self.strip_bin = pipeline.get("strip_bin", "strip")
        self.strip = bool(pipeline.get("strip", True))
        self.clean_before_build = bool(pipeline.get("clean_before_build", False))
        self.isolate_target_dirs = bool(pipeline.get("isolate_target_dirs", False))
        self.auxiliary_files = tuple(pipeline.get("auxiliary_files", DEFAULT_AUXILIARY_FILES))

        # Matrix axes
        self.features = [
            _parse_feature(f, "features") for f in raw_config.get("features") or [None]
        ]
        packages = raw_config.get("packages") or {}
        if isinstance(packages, list):
            packages = {name: {} for name in packages}
        self.packages: Dict[str, PackageConfig] = {
            name: PackageConfig(name, data, self.source_root)
            for name, data in packages.items()
        }
        self.targets = [_parse_target(t, self.strip) for t in raw_config.get("targets") or []]

        self.publish = raw_config.get("publish") or {}
        self.logging = raw_config.get("logging") or {}

        self.env_file = raw_config.get("env_file")
        if self.env_file:
            load_dotenv(Path(self.env_file).expanduser(), override=False)

    @property
    def manifests(self) -> Dict[str, Path]:
        return {name: pkg.manifest for name, pkg in self.packages.items()}

    def features_for(self, package: str) -> List[FeatureVariant]:
        """Feature variants built for a package (its own list or the global one)."""
        pkg = self.packages[package]
        return pkg.features if pkg.features is not None else self.features

    def expand_jobs(self) -> List[BuildJob]:
        """Ordered build jobs for this configuration."""
        return expand_matrix(
            self.packages.keys(),
            {name: self.features_for(name) for name in self.packages},
            self.targets,
        )

    def get_publish_policy(self) -> PublishPolicy:
        return PublishPolicy(
            release_branch=self.publish.get("branch", "master"),
            event_type=self.publish.get("event_type", "push"),
            stable_toolchain=str(self.publish.get("stable_toolchain", "stable")),
        )

    def get_bucket(self) -> Optional[str]:
        return self.publish.get("bucket")

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with date interpolation."""
        log_output = self.logging.get("output", "logs/relorch-{date}.log")
        if not log_output:
            return None
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output)

    def get_state_file(self) -> Path:
        """Path of the saved state of the last run."""
        log_file = self.get_log_file_path()
        state_dir = log_file.parent if log_file else self.output_dir.parent
        return state_dir / "state.json"

    def get_log_level(self) -> str:
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        return self.logging.get("console", True)

    def validate(self) -> None:
        """Validate entire configuration."""
        if not self.packages:
            raise ConfigError("No packages configured")
        if not self.targets:
            raise ConfigError("No targets configured")
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")
        if not self.source_root.is_dir():
            raise ConfigError(f"source_root does not exist: {self.source_root}")

        _reject_duplicates("targets", [t.triple for t in self.targets])
        _reject_duplicates("features", [f.flag for f in self.features])
        for name, pkg in self.packages.items():
            if pkg.features is not None:
                _reject_duplicates(f"features of {name}", [f.flag for f in pkg.features])
            if not pkg.manifest.exists():
                raise ConfigError(f"Package {name}: manifest does not exist: {pkg.manifest}")

        if self.get_log_format() not in ("structured", "pretty"):
            raise ConfigError(f"Unknown log format: {self.get_log_format()}")

    def __repr__(self) -> str:
        return (
            f"ReleaseConfig(name={self.name}, packages={len(self.packages)}, "
            f"targets={len(self.targets)})"
        )


def _reject_duplicates(axis: str, values: List[Any]) -> None:
    seen = set()
    for value in values:
        if value in seen:
            raise ConfigError(f"Duplicate entry in {axis}: {value!r}")
        seen.add(value)


def get_config_path() -> Path:
    """Config path from $RELORCH_CONFIG, else release.yaml in the cwd."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return Path.cwd() / DEFAULT_CONFIG_NAME


def load_config(config_path: Optional[Path] = None) -> ReleaseConfig:
    """
    Load release configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to get_config_path()

    Returns:
        ReleaseConfig instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    if config_path is None:
        config_path = get_config_path()
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not raw:
        raise ConfigError("Configuration file is empty")
    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must contain a mapping")

    return ReleaseConfig(raw, config_path=config_path)
