"""
Release pipeline orchestrator.

Coordinates validate → expand → {build → stage → pack}* → publish.

Any error is fatal: the first failing job stops the run, no further job is
started and nothing is published.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from relorch.builder import BuildDriver
from relorch.config import ReleaseConfig
from relorch.errors import CompileFailure, PipelineError, PublishFailure, RelorchError
from relorch.matrix import BuildJob
from relorch.packager import Archive, archive_name_for, pack
from relorch.publisher import PublishResult, Publisher
from relorch.staging import staging_area
from relorch.storage import ObjectStore
from relorch.trigger import TriggerMetadata
from relorch.utils import (
    format_duration,
    get_file_checksum,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)
from relorch.versioning import ReleaseTags, resolve_release_tags


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobResult:
    """Result of one build job."""

    job: BuildJob
    success: bool
    duration_seconds: float
    archive: Optional[Archive] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "success": self.success,
            "duration_seconds": self.duration_seconds,
            "archive": self.archive.name if self.archive else None,
            "sha256": self.archive.sha256 if self.archive else None,
            "error_message": self.error_message,
        }


@dataclass
class PipelineResult:
    """Result of a complete release run."""

    success: bool
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    jobs: List[JobResult] = field(default_factory=list)
    release_tags: Dict[str, str] = field(default_factory=dict)
    publish: Optional[PublishResult] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    failed_job: Optional[str] = None

    @property
    def archives(self) -> List[Archive]:
        return [r.archive for r in self.jobs if r.archive is not None]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "jobs": [r.to_dict() for r in self.jobs],
            "release_tags": self.release_tags,
            "publish": self.publish.to_dict() if self.publish else None,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "failed_job": self.failed_job,
        }


class Pipeline:
    """
    Main release orchestrator.

    Validates version claims, expands the build matrix, runs every job and
    publishes the archives when the trigger allows it.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        trigger: TriggerMetadata,
        driver: Optional[BuildDriver] = None,
        store: Optional[ObjectStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize pipeline.

        Args:
            config: Release configuration
            trigger: Metadata of the triggering CI event
            driver: Build driver (defaults to cargo in config.source_root)
            store: Object store (defaults to the configured bucket, if any)
            logger: Logger (set up from config on run() when omitted)
        """
        self.config = config
        self.trigger = trigger
        self.output_dir = config.output_dir.resolve()
        self.logger = logger or logging.getLogger("relorch")
        self.driver = driver or BuildDriver(
            source_root=config.source_root,
            manifests=config.manifests,
            target_dir=config.target_dir,
            cargo=config.cargo,
            strip=config.strip_bin,
            clean_before_build=config.clean_before_build,
            isolate_target_dirs=config.isolate_target_dirs,
            logger=self.logger,
        )
        self._store = store

    def validate(self) -> ReleaseTags:
        """
        Validate configuration and version claims.

        Returns:
            Effective version label of every package

        Raises:
            ConfigError: If configuration is invalid
            VersionMismatch: If a version claim disagrees with its manifest
        """
        self.config.validate()
        return resolve_release_tags(self.trigger, self.config.manifests)

    def run(
        self,
        dry_run: bool = False,
        publish: bool = True,
        verbose: bool = False,
        workers: Optional[int] = None,
    ) -> PipelineResult:
        """
        Run the release.

        Args:
            dry_run: Validate and list jobs, don't build
            publish: Run the publish step after all jobs succeed
            verbose: Enable debug logging
            workers: Parallel jobs (defaults to config)

        Returns:
            PipelineResult with execution details
        """
        started_at = _utcnow()
        start_time = time.time()

        results: List[JobResult] = []
        tags: Dict[str, str] = {}
        publish_result = None
        active: Dict[str, BuildJob] = {}

        try:
            self._setup_logging(verbose)

            print_banner(f"{self.config.name} @ {self.trigger.short_commit or 'local'}")
            self.logger.info(
                f"Starting release: {self.config.name}",
                extra={
                    "event": "pipeline_started",
                    "metadata": {"trigger": self.trigger.to_dict(), "dry_run": dry_run},
                },
            )

            release_tags = self.validate()
            tags = dict(release_tags)
            print_success(
                "Versions: " + ", ".join(f"{pkg}={tag}" for pkg, tag in tags.items())
            )

            jobs = self.config.expand_jobs()
            print_info(f"{len(jobs)} build jobs")

            if dry_run:
                for job in jobs:
                    print_info(f"  {archive_name_for(job, release_tags[job.package])}")
                print_info("Dry run mode - validation complete, skipping execution")
                return self._finish(True, started_at, start_time, results, tags)

            self.driver.ensure_lockfile()
            results = self._run_jobs(jobs, release_tags, workers or self.config.workers, active)

            if publish:
                archives = [r.archive for r in results]
                publish_result = self._publisher().publish(archives, self.trigger)
                if publish_result.skipped:
                    print_warning(f"Publishing skipped: {publish_result.reason}")
                else:
                    print_success(f"Published {len(publish_result.uploaded)} archives")

            result = self._finish(True, started_at, start_time, results, tags, publish_result)
            print_success(f"Release completed in {format_duration(result.duration_seconds)}")
            return result

        except RelorchError as e:
            job = getattr(e, "job", None) or active.get("job")
            failed_job = job.describe() if job else None
            where = f" ({failed_job})" if failed_job else ""
            print_error(f"{type(e).__name__}{where}: {e}")

            self.logger.error(
                f"Release failed{where}: {e}",
                extra={
                    "job": failed_job,
                    "event": "pipeline_failed",
                    "metadata": {"error_kind": type(e).__name__},
                },
            )
            if isinstance(e, CompileFailure) and e.log:
                self.logger.error(e.log[-2000:])

            return self._finish(
                False, started_at, start_time, results, tags, publish_result,
                error=e, failed_job=failed_job,
            )

        except Exception as e:
            print_error(f"Release failed: {e}")
            self.logger.error(
                f"Release failed with exception: {e}",
                extra={"event": "pipeline_exception", "metadata": {"exception": str(e)}},
                exc_info=True,
            )
            return self._finish(
                False, started_at, start_time, results, tags, publish_result, error=e,
            )

    def run_job(self, job: BuildJob, release_tag: str, build_lock=None) -> JobResult:
        """
        Build, stage and pack one job.

        Raises:
            PipelineError: On any failure of the job
        """
        start_time = time.time()

        with build_lock or nullcontext():
            output = self.driver.build(job, release_tag)

        if not output.succeeded:
            raise CompileFailure(
                f"Compilation failed for {job.describe()}", job=job, log=output.log
            )

        try:
            with staging_area(
                output,
                self.config.source_root,
                self.config.auxiliary_files,
                logger=self.logger,
            ) as area:
                archive = pack(area, release_tag, self.output_dir, logger=self.logger)
        except OSError as e:
            raise PipelineError(f"I/O error while staging {job.describe()}: {e}", job=job) from e

        duration = time.time() - start_time
        print_success(f"{archive.name} ({format_duration(duration)})")
        return JobResult(job=job, success=True, duration_seconds=duration, archive=archive)

    def publish_existing(self) -> PublishResult:
        """
        Publish archives already in the output directory.

        The archives must be the complete set of the last saved run: that run
        succeeded with the current release tags, every job of the matrix has
        its archive on disk and no archive changed since it was packed.

        Raises:
            PublishFailure: If the archive set is incomplete or stale
        """
        release_tags = self.validate()
        expected = {
            archive_name_for(job, release_tags[job.package]): job
            for job in self.config.expand_jobs()
        }

        state = self.status()
        if not state or not state.get("success"):
            raise PublishFailure("Last release run did not succeed, refusing to publish its archives")
        if state.get("release_tags") != dict(release_tags):
            raise PublishFailure(
                f"Last release run was for {state.get('release_tags')}, not {dict(release_tags)}"
            )

        checksums = {j["archive"]: j.get("sha256") for j in state.get("jobs", []) if j.get("archive")}
        missing = [
            name for name in expected
            if name not in checksums or not (self.output_dir / name).is_file()
        ]
        if missing:
            raise PublishFailure(f"Incomplete archive set, missing: {', '.join(missing)}")

        archives = []
        for name, job in expected.items():
            path = self.output_dir / name
            sha256 = get_file_checksum(path)
            if sha256 != checksums[name]:
                raise PublishFailure(f"{name} changed since it was packed (checksum mismatch)")
            archives.append(Archive(job=job, path=path, name=name, sha256=sha256))

        return self._publisher().publish(archives, self.trigger)

    def status(self) -> Optional[Dict[str, Any]]:
        """
        Get the saved state of the last run.

        Returns:
            State dictionary, or None if no previous run
        """
        state_file = self.config.get_state_file()
        if not state_file.exists():
            return None

        try:
            with open(state_file, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"Could not load pipeline state: {e}")
            return None

    def _run_jobs(
        self,
        jobs: List[BuildJob],
        release_tags: ReleaseTags,
        workers: int,
        active: Dict[str, BuildJob],
    ) -> List[JobResult]:
        if workers <= 1:
            results = []
            for job in jobs:
                active["job"] = job
                results.append(self.run_job(job, release_tags[job.package]))
            active.pop("job", None)
            return results

        abort = threading.Event()
        locks: Dict[str, Any] = {}
        if not self.config.isolate_target_dirs:
            locks = {job.target: threading.Lock() for job in jobs}

        def guarded(job: BuildJob) -> Optional[JobResult]:
            if abort.is_set():
                return None
            try:
                return self.run_job(job, release_tags[job.package], locks.get(job.target))
            except Exception:
                abort.set()
                raise

        first_error: Optional[BaseException] = None
        results = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="relorch") as pool:
            futures = [pool.submit(guarded, job) for job in jobs]
            for job, future in zip(jobs, futures):
                try:
                    result = future.result()
                except Exception as e:
                    if first_error is None:
                        first_error = e
                        active["job"] = job
                    continue
                if result is not None:
                    results.append(result)

        if first_error is not None:
            raise first_error
        return results

    def _publisher(self) -> Publisher:
        if self._store is None and self.config.get_bucket():
            publish = self.config.publish
            self._store = ObjectStore(
                bucket=publish["bucket"],
                region=publish.get("region"),
                endpoint_url=publish.get("endpoint_url"),
                prefix=publish.get("prefix", ""),
                acl=publish.get("acl", "public-read"),
            )
        return Publisher(
            self._store,
            self.config.get_publish_policy(),
            self.output_dir,
            logger=self.logger,
            protected_dirs=(self.config.source_root,),
        )

    def _setup_logging(self, verbose: bool) -> None:
        log_level = "DEBUG" if verbose else self.config.get_log_level()
        self.logger = setup_logging(
            self.config.get_log_file_path(),
            log_level,
            self.config.get_log_format(),
            self.config.should_log_to_console(),
        )
        self.driver.logger = self.logger

    def _finish(
        self,
        success: bool,
        started_at: datetime,
        start_time: float,
        results: List[JobResult],
        tags: Dict[str, str],
        publish_result: Optional[PublishResult] = None,
        error: Optional[BaseException] = None,
        failed_job: Optional[str] = None,
    ) -> PipelineResult:
        result = PipelineResult(
            success=success,
            started_at=started_at,
            ended_at=_utcnow(),
            duration_seconds=time.time() - start_time,
            jobs=results,
            release_tags=tags,
            publish=publish_result,
            error_kind=type(error).__name__ if error else None,
            error_message=str(error) if error else None,
            failed_job=failed_job,
        )
        self._save_state(result)
        return result

    def _save_state(self, result: PipelineResult) -> None:
        state_file = self.config.get_state_file()
        try:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(state_file, "w") as f:
                json.dump(result.to_dict(), f, indent=2)
            self.logger.debug(
                f"Saved pipeline state to {state_file}",
                extra={"event": "state_saved", "metadata": {"file": str(state_file)}},
            )
        except OSError as e:
            self.logger.warning(
                f"Could not save pipeline state: {e}",
                extra={"event": "state_save_failed", "metadata": {"error": str(e)}},
            )
