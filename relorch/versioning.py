"""
Version consistency validation.

Release commits announce the versions they ship in the commit message, e.g.

    Version change: safe_app to 0.2.2; safe_authenticator to 0.2.3;

Before any build runs, each claim is checked against the version declared in
the package's Cargo.toml. The resulting effective version of each package
(``v<version>`` when claimed, otherwise the short commit id) is what ends up
in archive names.
"""

import logging
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from relorch.errors import ConfigError, VersionMismatch
from relorch.trigger import TriggerMetadata

logger = logging.getLogger("relorch")

VERSION_PREFIX = "v"


@dataclass(frozen=True)
class VersionClaim:
    """A version announced for a package in the trigger message."""
    package: str
    claimed_version: str


@dataclass(frozen=True)
class ManifestVersion:
    """The version a package's manifest declares."""
    package: str
    actual_version: str
    manifest_path: Optional[Path] = None


def _claim_pattern(package: str) -> re.Pattern:
    return re.compile(
        rf"version\s+change.*\b{re.escape(package)}\s+to\s+([^;\s]+)",
        re.IGNORECASE | re.DOTALL,
    )


def parse_version_claim(message: str, package: str) -> Optional[VersionClaim]:
    """
    Extract the version claimed for a package from a commit message.

    Args:
        message: Free-text commit message
        package: Package name, matched literally

    Returns:
        VersionClaim, or None when the message makes no claim for the package
    """
    if not message:
        return None

    match = _claim_pattern(package).search(message)
    if not match:
        return None

    return VersionClaim(package=package, claimed_version=match.group(1))


def read_manifest_version(manifest_path: Path, package: str) -> ManifestVersion:
    """
    Read the declared version from a Cargo.toml.

    Raises:
        ConfigError: If the manifest is missing, unparsable or has no version
    """
    manifest_path = Path(manifest_path)
    if not manifest_path.exists():
        raise ConfigError(f"Manifest not found for {package}: {manifest_path}")

    try:
        with open(manifest_path, "rb") as f:
            manifest = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid manifest {manifest_path}: {e}")

    version = manifest.get("package", {}).get("version")
    if not isinstance(version, str):
        raise ConfigError(f"No [package] version in {manifest_path}")

    return ManifestVersion(
        package=package,
        actual_version=version,
        manifest_path=manifest_path,
    )


def check_claim(claim: VersionClaim, manifest: ManifestVersion) -> str:
    """
    Compare a claim against the manifest.

    Returns:
        The effective version label ("v" + manifest version)

    Raises:
        VersionMismatch: If the versions differ
    """
    claimed = f"{VERSION_PREFIX}{claim.claimed_version}"
    actual = f"{VERSION_PREFIX}{manifest.actual_version}"
    if claimed != actual:
        raise VersionMismatch(claim.package, claimed, actual)
    return actual


class ReleaseTags(Mapping):
    """Read-only mapping of package -> version label used in archive names."""

    def __init__(self, tags: Mapping[str, str]):
        self._tags = MappingProxyType(dict(tags))

    def __getitem__(self, package: str) -> str:
        return self._tags[package]

    def __iter__(self):
        return iter(self._tags)

    def __len__(self) -> int:
        return len(self._tags)

    def __repr__(self) -> str:
        return f"ReleaseTags({dict(self._tags)})"


def resolve_release_tags(
    trigger: TriggerMetadata,
    manifests: Mapping[str, Path],
    packages: Optional[Iterable[str]] = None,
) -> ReleaseTags:
    """
    Validate version claims and resolve each package's effective version.

    Args:
        trigger: Trigger metadata carrying the commit message and commit id
        manifests: Package name -> Cargo.toml path
        packages: Packages to resolve (defaults to all in manifests)

    Returns:
        ReleaseTags shared read-only by every job of the run

    Raises:
        VersionMismatch: On the first package whose claim disagrees
        ConfigError: If a claimed package's manifest cannot be read, or a
            package has neither a claim nor a commit id
    """
    if packages is None:
        packages = list(manifests)

    tags = {}
    for package in packages:
        claim = parse_version_claim(trigger.commit_message, package)

        if claim is None:
            if not trigger.short_commit:
                raise ConfigError(
                    f"No version claim for {package} and no commit id to fall back on"
                )
            tags[package] = trigger.short_commit
            logger.info(
                f"No version claim for {package}, using commit {trigger.short_commit}",
                extra={"event": "version_fallback", "metadata": {"package": package}},
            )
            continue

        manifest = read_manifest_version(manifests[package], package)
        tags[package] = check_claim(claim, manifest)
        logger.info(
            f"Version claim for {package} matches manifest: {tags[package]}",
            extra={
                "event": "version_validated",
                "metadata": {"package": package, "version": tags[package]},
            },
        )

    return ReleaseTags(tags)
