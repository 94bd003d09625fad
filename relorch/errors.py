"""
Error classes for relorch release runs.

Every error raised during a run is fatal. Nothing is retried by the
orchestrator; a retry is an operator re-running the whole pipeline, since
jobs are not idempotent against partial prior state.

- ConfigError: configuration or manifest problems found before any build
- PipelineError: failures while a run is in progress (carry job context)
"""


class RelorchError(Exception):
    """Base exception for relorch."""
    pass


class ConfigError(RelorchError):
    """Configuration validation error."""
    pass


class PipelineError(RelorchError):
    """
    Fatal error raised while a release run is in progress.

    Attributes:
        job: The BuildJob active when the error happened, if any
    """

    def __init__(self, message: str, job=None):
        super().__init__(message)
        self.job = job


class VersionMismatch(PipelineError):
    """Commit message claims a version the package manifest does not declare."""

    def __init__(self, package: str, claimed: str, actual: str):
        super().__init__(
            f"Version mismatch for {package}: commit message claims {claimed}, "
            f"Cargo.toml declares {actual}"
        )
        self.package = package
        self.claimed = claimed
        self.actual = actual


class CompileFailure(PipelineError):
    """Compiler (or strip) invocation exited non-zero."""

    def __init__(self, message: str, job=None, log: str = ""):
        super().__init__(message, job=job)
        self.log = log


class MissingArtifact(PipelineError):
    """
    Compiler succeeded but the expected library file is absent.

    Points at a path/configuration mismatch rather than a compile error.
    """

    def __init__(self, job, expected_path):
        super().__init__(
            f"Build artifact not found for {job.describe()}: {expected_path}",
            job=job,
        )
        self.expected_path = expected_path


class MissingAuxiliaryFile(PipelineError):
    """README, LICENSE or CHANGELOG missing from the package source root."""

    def __init__(self, job, path):
        super().__init__(
            f"Auxiliary file missing for {job.package}: {path}",
            job=job,
        )
        self.path = path


class ArchiveWriteFailure(PipelineError):
    """Archive could not be written to the output directory."""

    def __init__(self, message: str, job=None, path=None):
        super().__init__(message, job=job)
        self.path = path


class PublishFailure(PipelineError):
    """
    Upload to the object store failed.

    Attributes:
        uploaded: Names of archives uploaded before the failure
    """

    def __init__(self, message: str, uploaded=None):
        super().__init__(message)
        self.uploaded = list(uploaded or [])
