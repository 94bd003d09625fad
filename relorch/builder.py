"""
Build driver: compiles one BuildJob with cargo.

Runs ``cargo build --release`` for the job's package and target, locates the
produced shared library and strips it when the target's conventions ask for
it. Compiler failures come back as an unsuccessful BuildOutput; a successful
build whose library cannot be found raises MissingArtifact.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from relorch.errors import CompileFailure, MissingArtifact
from relorch.matrix import BuildJob

LOG_TAIL_CHARS = 2000


@dataclass(frozen=True)
class BuildOutput:
    """Result of compiling one job."""
    job: BuildJob
    binary_path: Path
    succeeded: bool
    log: str = ""

    def log_tail(self, max_chars: int = LOG_TAIL_CHARS) -> str:
        """Last part of the build log, for error messages."""
        return self.log[-max_chars:]


def _combined_output(result: subprocess.CompletedProcess) -> str:
    return (result.stdout or "") + (result.stderr or "")


class BuildDriver:
    """
    Invokes cargo for build jobs.

    Attributes:
        source_root: Workspace root cargo runs in
        manifests: Package name -> Cargo.toml path
        target_dir: Shared build-output root (cargo's target/)
        isolate_target_dirs: Give every job its own build-output root
    """

    def __init__(
        self,
        source_root: Path,
        manifests: Mapping[str, Path],
        target_dir: Optional[Path] = None,
        cargo: str = "cargo",
        strip: str = "strip",
        clean_before_build: bool = False,
        isolate_target_dirs: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.source_root = Path(source_root)
        self.manifests = dict(manifests)
        self.target_dir = Path(target_dir) if target_dir else self.source_root / "target"
        self.cargo = cargo
        self.strip = strip
        self.clean_before_build = clean_before_build
        self.isolate_target_dirs = isolate_target_dirs
        self.logger = logger or logging.getLogger("relorch")

    def job_target_dir(self, job: BuildJob) -> Path:
        """Build-output root used for a job."""
        if not self.isolate_target_dirs:
            return self.target_dir
        feature = job.feature or "default"
        return self.target_dir / "jobs" / f"{job.package}-{feature}-{job.target}"

    def expected_binary(self, job: BuildJob) -> Path:
        """Path where cargo leaves the job's library."""
        return self.job_target_dir(job) / job.target / "release" / job.library_file_name

    def command(self, job: BuildJob) -> list[str]:
        """cargo command line for a job."""
        command = [
            self.cargo,
            "build",
            "--release",
            "--verbose",
            "--target",
            job.target,
            "--manifest-path",
            str(self.manifests[job.package]),
        ]
        if job.feature:
            command.extend(["--features", job.feature])
        return command

    def ensure_lockfile(self) -> None:
        """Generate Cargo.lock when the workspace has none."""
        if (self.source_root / "Cargo.lock").exists():
            return

        self.logger.info(
            "Cargo.lock missing, generating lockfile",
            extra={"event": "lockfile_generate"},
        )
        result = self._run([self.cargo, "generate-lockfile"])
        if result.returncode != 0:
            raise CompileFailure(
                f"cargo generate-lockfile failed with exit code {result.returncode}",
                log=_combined_output(result),
            )

    def build(self, job: BuildJob, release_tag: Optional[str] = None) -> BuildOutput:
        """
        Compile one job.

        Args:
            job: Job to build
            release_tag: Version label of the run, for logging only

        Returns:
            BuildOutput; succeeded is False when cargo exits non-zero

        Raises:
            MissingArtifact: cargo succeeded but the library is absent
            CompileFailure: stripping the library failed
        """
        binary_path = self.expected_binary(job)
        env = self._job_env(job)

        if self.clean_before_build:
            result = self._run([self.cargo, "clean", "--target", job.target], env=env)
            if result.returncode != 0:
                raise CompileFailure(
                    f"cargo clean failed with exit code {result.returncode}",
                    job=job,
                    log=_combined_output(result),
                )

        command = self.command(job)
        self.logger.info(
            f"Building {job.describe()}",
            extra={
                "job": job.describe(),
                "event": "build_started",
                "metadata": {"command": " ".join(command), "release_tag": release_tag},
            },
        )

        result = self._run(command, env=env)
        log = _combined_output(result)

        if result.returncode != 0:
            self.logger.error(
                f"cargo failed with exit code {result.returncode} for {job.describe()}",
                extra={
                    "job": job.describe(),
                    "event": "build_failed",
                    "metadata": {"returncode": result.returncode},
                },
            )
            return BuildOutput(job=job, binary_path=binary_path, succeeded=False, log=log)

        if not binary_path.is_file():
            raise MissingArtifact(job, binary_path)

        if job.conventions.strip:
            self._strip(job, binary_path)

        self.logger.info(
            f"Built {binary_path.name} for {job.describe()}",
            extra={
                "job": job.describe(),
                "event": "build_completed",
                "metadata": {"binary": str(binary_path)},
            },
        )
        return BuildOutput(job=job, binary_path=binary_path, succeeded=True, log=log)

    def _strip(self, job: BuildJob, binary_path: Path) -> None:
        command = [self.strip, *job.conventions.strip_args, str(binary_path)]
        self.logger.debug(f"Executing: {' '.join(command)}")

        result = self._run(command)
        if result.returncode != 0:
            raise CompileFailure(
                f"strip failed with exit code {result.returncode} for {job.describe()}",
                job=job,
                log=_combined_output(result),
            )

    def _job_env(self, job: BuildJob) -> Optional[dict]:
        if not self.isolate_target_dirs:
            return None
        env = dict(os.environ)
        env["CARGO_TARGET_DIR"] = str(self.job_target_dir(job))
        return env

    def _run(self, command: list[str], env: Optional[dict] = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            command,
            cwd=self.source_root,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )
