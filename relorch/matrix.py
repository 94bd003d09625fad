"""
Build matrix expansion.

Turns the configured axes (package, feature variant, target platform) into
the ordered list of BuildJobs for a release run:

    package-major, then feature, then target

The list is computed once and is read-only afterwards.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional


@dataclass(frozen=True)
class PlatformConventions:
    """
    Per-target shared library naming and strip behaviour.

    Attributes:
        library_prefix: File name prefix of the built library ("lib" or "")
        library_suffix: Extension without dot ("so", "dylib", "dll")
        strip: Whether to strip symbols after building
        strip_args: Extra arguments for strip (macOS needs -x)
    """
    library_prefix: str = "lib"
    library_suffix: str = "so"
    strip: bool = False
    strip_args: tuple[str, ...] = ()

    @classmethod
    def for_triple(cls, triple: str, strip: bool = False) -> "PlatformConventions":
        """Default conventions for a target triple."""
        if "windows" in triple:
            return cls(library_prefix="", library_suffix="dll", strip=False)
        if "apple" in triple or "darwin" in triple:
            # strip fails to remove global symbols from release builds on macOS without -x
            return cls(library_suffix="dylib", strip=strip, strip_args=("-x",))
        return cls(library_suffix="so", strip=strip)

    def library_file_name(self, package: str) -> str:
        """File name cargo produces for a package's cdylib."""
        return f"{self.library_prefix}{package.replace('-', '_')}.{self.library_suffix}"


@dataclass(frozen=True)
class FeatureVariant:
    """A feature-flag variant; flag None builds with default features."""
    flag: Optional[str] = None
    label: Optional[str] = None

    @property
    def suffix(self) -> str:
        """Archive name suffix, including the leading dash."""
        if self.flag is None:
            return ""
        return f"-{self.label or self.flag}"


@dataclass(frozen=True)
class TargetSpec:
    """A target triple with optional display alias and its conventions."""
    triple: str
    alias: Optional[str] = None
    conventions: PlatformConventions = field(default_factory=PlatformConventions)


@dataclass(frozen=True)
class BuildJob:
    """
    One build of one package, feature variant and target.

    Identified by (package, feature, target).
    """
    package: str
    feature: Optional[str]
    feature_label: str
    target: str
    target_label: Optional[str] = None
    conventions: PlatformConventions = field(default_factory=PlatformConventions)

    @property
    def key(self) -> tuple[str, Optional[str], str]:
        return (self.package, self.feature, self.target)

    @property
    def target_name(self) -> str:
        """Target alias if configured, else the triple."""
        return self.target_label or self.target

    @property
    def library_file_name(self) -> str:
        return self.conventions.library_file_name(self.package)

    def describe(self) -> str:
        feature = self.feature or "default"
        return f"{self.package} [{feature}] @ {self.target}"

    def to_dict(self) -> dict:
        return {
            "package": self.package,
            "feature": self.feature,
            "feature_label": self.feature_label,
            "target": self.target,
            "target_label": self.target_label,
        }


def _unique_by(items: Iterable, key) -> list:
    """Drop later entries whose key was already seen, keeping order."""
    seen = {}
    for item in items:
        seen.setdefault(key(item), item)
    return list(seen.values())


def expand_matrix(
    packages: Iterable[str],
    features: dict[str, list[FeatureVariant]],
    targets: Iterable[TargetSpec],
) -> list[BuildJob]:
    """
    Expand the configured axes into an ordered list of build jobs.

    Args:
        packages: Package names, in release order
        features: Feature variants per package
        targets: Target platforms

    Returns:
        One BuildJob per (package, feature, target) combination, in
        package-major, then feature, then target order
    """
    target_axis = _unique_by(targets, lambda t: t.triple)
    jobs = []

    for package in _unique_by(packages, lambda p: p):
        variants = _unique_by(
            features.get(package) or [FeatureVariant()], lambda v: v.flag
        )
        for variant in variants:
            for target in target_axis:
                jobs.append(
                    BuildJob(
                        package=package,
                        feature=variant.flag,
                        feature_label=variant.suffix,
                        target=target.triple,
                        target_label=target.alias,
                        conventions=target.conventions,
                    )
                )

    return jobs
