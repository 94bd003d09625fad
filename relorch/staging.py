"""
Artifact staging.

Each job gets a fresh temporary directory holding exactly the files that go
into its archive: the built library plus README, LICENSE and CHANGELOG from
the package's source directory. The directory only lives inside the
``staging_area`` context and is removed on every exit path.
"""

import logging
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence

from relorch.builder import BuildOutput
from relorch.errors import MissingArtifact, MissingAuxiliaryFile, PipelineError
from relorch.matrix import BuildJob

DEFAULT_AUXILIARY_FILES = ("README.md", "LICENSE", "CHANGELOG.md")
STAGING_PREFIX = "relorch-"


@dataclass(frozen=True)
class StagingArea:
    """An isolated directory holding one job's packageable files."""
    job: BuildJob
    directory: Path
    contained_files: frozenset[Path]


def _copy_into(source: Path, destination: Path) -> Path:
    shutil.copy2(source, destination)
    return destination


@contextmanager
def staging_area(
    output: BuildOutput,
    source_root: Path,
    auxiliary_files: Sequence[str] = DEFAULT_AUXILIARY_FILES,
    logger: Optional[logging.Logger] = None,
) -> Iterator[StagingArea]:
    """
    Stage a successful build's files in a fresh temporary directory.

    Args:
        output: Successful build output
        source_root: Workspace root; auxiliary files come from <source_root>/<package>/
        auxiliary_files: Auxiliary file names to copy
        logger: Logger instance

    Yields:
        StagingArea whose directory is deleted when the context exits

    Raises:
        MissingArtifact: If the built library disappeared
        MissingAuxiliaryFile: If an auxiliary file is missing
    """
    logger = logger or logging.getLogger("relorch")
    job = output.job

    if not output.succeeded:
        raise PipelineError(f"Cannot stage failed build of {job.describe()}", job=job)

    directory = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX))
    logger.debug(
        f"Created staging directory {directory}",
        extra={"job": job.describe(), "event": "staging_created"},
    )

    try:
        if not output.binary_path.is_file():
            raise MissingArtifact(job, output.binary_path)

        files = {_copy_into(output.binary_path, directory / job.library_file_name)}

        package_dir = Path(source_root) / job.package
        for name in auxiliary_files:
            source = package_dir / name
            if not source.is_file():
                raise MissingAuxiliaryFile(job, source)
            files.add(_copy_into(source, directory / name))

        logger.info(
            f"Staged {len(files)} files for {job.describe()}",
            extra={
                "job": job.describe(),
                "event": "staging_ready",
                "metadata": {"files": sorted(f.name for f in files)},
            },
        )

        yield StagingArea(job=job, directory=directory, contained_files=frozenset(files))

    finally:
        shutil.rmtree(directory, ignore_errors=True)
        logger.debug(
            f"Removed staging directory {directory}",
            extra={"job": job.describe(), "event": "staging_removed"},
        )
