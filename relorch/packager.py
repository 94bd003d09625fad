"""
Archive packaging.

Zips a staging directory into ``{package}{feature_label}-{tag}-{target}.zip``
in the output directory. The name is a pure function of the job and release
tag; downstream consumers depend on it staying bit-exact.
"""

import logging
import os
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from relorch.errors import ArchiveWriteFailure
from relorch.matrix import BuildJob
from relorch.staging import StagingArea
from relorch.utils import get_file_checksum

ARCHIVE_SUFFIX = ".zip"


@dataclass(frozen=True)
class Archive:
    """A packaged archive for one job."""
    job: BuildJob
    path: Path
    name: str
    sha256: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "sha256": self.sha256,
            "job": self.job.to_dict(),
        }


def archive_name(package: str, feature_label: str, release_tag: str, target_name: str) -> str:
    """
    Archive file name for a job.

    Args:
        package: Package name
        feature_label: Feature suffix including its dash, or ""
        release_tag: Version label (v0.6.0 or short commit)
        target_name: Target alias or triple

    Returns:
        e.g. "safe_app-mock-v0.6.0-linux-x64.zip"
    """
    return f"{package}{feature_label}-{release_tag}-{target_name}{ARCHIVE_SUFFIX}"


def archive_name_for(job: BuildJob, release_tag: str) -> str:
    return archive_name(job.package, job.feature_label, release_tag, job.target_name)


def pack(
    area: StagingArea,
    release_tag: str,
    output_dir: Path,
    logger: Optional[logging.Logger] = None,
) -> Archive:
    """
    Zip the top-level files of a staging area into the output directory.

    An existing archive with the same name is replaced. The archive is
    written to a temporary file first, so a failed write leaves nothing
    behind under the final name.

    Raises:
        ArchiveWriteFailure: If the archive cannot be written
    """
    logger = logger or logging.getLogger("relorch")
    job = area.job
    name = archive_name_for(job, release_tag)
    output_dir = Path(output_dir)
    destination = output_dir / name

    members = sorted(
        (p for p in area.directory.iterdir() if p.is_file()),
        key=lambda p: p.name,
    )
    if not members:
        raise ArchiveWriteFailure(
            f"Staging area for {job.describe()} is empty", job=job, path=destination
        )

    tmp_path = None
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=output_dir)
        os.close(fd)
        tmp_path = Path(tmp_name)

        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for member in members:
                zf.write(member, arcname=member.name)

        os.replace(tmp_path, destination)
        tmp_path = None
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveWriteFailure(
            f"Could not write archive {destination}: {e}", job=job, path=destination
        ) from e
    finally:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()

    archive = Archive(
        job=job,
        path=destination,
        name=name,
        sha256=get_file_checksum(destination),
    )
    logger.info(
        f"Packed {name}",
        extra={
            "job": job.describe(),
            "event": "archive_written",
            "metadata": {"archive": str(destination), "files": [m.name for m in members]},
        },
    )
    return archive
