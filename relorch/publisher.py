"""
Publisher: uploads a run's archives to the object store.

Publishing is gated on the trigger: only pushes to the release branch, that
are not tag pushes, built on the stable toolchain, publish. A closed gate is
not an error. An open gate uploads every archive; the first failed upload
fails the whole step. On full success the local archives are removed.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

from relorch.errors import PublishFailure
from relorch.packager import Archive
from relorch.storage import ObjectStore, UploadError
from relorch.trigger import TriggerMetadata

PUBLISHED = "published"
SKIPPED = "skipped"


def encloses_protected_dir(output_dir: Path, protected: Iterable[Path] = ()) -> bool:
    """Whether removing output_dir would also remove the cwd or a protected directory."""
    output_dir = Path(output_dir).resolve()
    for path in (Path.cwd(), *protected):
        if Path(path).resolve().is_relative_to(output_dir):
            return True
    return False


@dataclass(frozen=True)
class PublishPolicy:
    """When a run may publish."""
    release_branch: str = "master"
    event_type: str = "push"
    stable_toolchain: str = "stable"

    def check(self, trigger: TriggerMetadata) -> Optional[str]:
        """
        Evaluate the gate.

        Returns:
            None when publishing may proceed, else the reason it may not
        """
        if trigger.branch != self.release_branch:
            return f"branch {trigger.branch!r} is not {self.release_branch!r}"
        if trigger.tag_push:
            return f"tag push ({trigger.tag})"
        if trigger.event_type != self.event_type:
            return f"event type {trigger.event_type!r} is not {self.event_type!r}"
        if self.stable_toolchain not in trigger.toolchain:
            return f"toolchain {trigger.toolchain!r} is not {self.stable_toolchain!r}"
        return None


@dataclass
class PublishResult:
    """Outcome of a publish step."""
    status: str
    uploaded: list[str] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.status == SKIPPED

    def to_dict(self) -> dict:
        return {"status": self.status, "uploaded": self.uploaded, "reason": self.reason}


class Publisher:
    """Uploads archives when the publish policy allows it."""

    def __init__(
        self,
        store: Optional[ObjectStore],
        policy: PublishPolicy,
        output_dir: Path,
        logger: Optional[logging.Logger] = None,
        protected_dirs: Iterable[Path] = (),
    ):
        self.store = store
        self.policy = policy
        self.output_dir = Path(output_dir)
        self.logger = logger or logging.getLogger("relorch")
        # Never removed along with the output directory
        self.protected_dirs = tuple(protected_dirs)

    def publish(self, archives: Sequence[Archive], trigger: TriggerMetadata) -> PublishResult:
        """
        Publish archives produced by a run.

        Raises:
            PublishFailure: If any upload fails
        """
        reason = self.policy.check(trigger)
        if reason is not None:
            self.logger.info(
                f"Publishing skipped: {reason}",
                extra={"event": "publish_skipped", "metadata": {"reason": reason}},
            )
            return PublishResult(status=SKIPPED, reason=reason)

        if self.store is None:
            raise PublishFailure("Publishing is enabled but no bucket is configured")

        uploaded = []
        for archive in archives:
            try:
                key = self.store.upload(archive.path, archive.name)
            except UploadError as e:
                self.logger.error(
                    f"Upload of {archive.name} failed after {len(uploaded)} uploads",
                    extra={
                        "job": archive.job.describe(),
                        "event": "publish_failed",
                        "metadata": {"archive": archive.name, "uploaded": uploaded},
                    },
                )
                raise PublishFailure(f"Upload of {archive.name} failed: {e}", uploaded=uploaded) from e

            uploaded.append(key)
            self.logger.info(
                f"Uploaded {archive.name}",
                extra={"event": "archive_uploaded", "metadata": {"key": key}},
            )

        self._remove_local(archives)
        return PublishResult(status=PUBLISHED, uploaded=uploaded)

    def _remove_local(self, archives: Sequence[Archive]) -> None:
        """Delete local archives; the whole output dir unless it holds the cwd or a protected dir."""
        if encloses_protected_dir(self.output_dir, self.protected_dirs):
            for archive in archives:
                archive.path.unlink(missing_ok=True)
        elif self.output_dir.exists():
            shutil.rmtree(self.output_dir)

        self.logger.info(
            f"Removed local archives in {self.output_dir}",
            extra={"event": "local_archives_removed"},
        )
