"""
CLI interface for relorch release orchestrator.

Provides commands: run, validate, matrix, publish, status, clean, init.
"""

import shutil
from pathlib import Path

import click
import yaml

from relorch import __version__
from relorch.config import DEFAULT_CONFIG, DEFAULT_CONFIG_NAME, load_config
from relorch.errors import RelorchError
from relorch.packager import archive_name_for
from relorch.pipeline import Pipeline
from relorch.publisher import encloses_protected_dir
from relorch.trigger import TriggerMetadata
from relorch.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
)


def trigger_options(func):
    """Options overriding trigger metadata read from the environment."""
    options = [
        click.option("--branch", help="Triggering branch (default: $TRAVIS_BRANCH)"),
        click.option("--event-type", help="Trigger event type (default: $TRAVIS_EVENT_TYPE)"),
        click.option("--tag", help="Pushed tag (default: $TRAVIS_TAG)"),
        click.option("--commit", help="Commit id (default: $TRAVIS_COMMIT)"),
        click.option(
            "--commit-message",
            help="Commit message carrying version claims (default: $TRAVIS_COMMIT_MESSAGE)",
        ),
        click.option("--toolchain", help="Toolchain version (default: $TRAVIS_RUST_VERSION)"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


config_option = click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help=f"Configuration file (default: $RELORCH_CONFIG or ./{DEFAULT_CONFIG_NAME})",
)


def _trigger(branch, event_type, tag, commit, commit_message, toolchain) -> TriggerMetadata:
    return TriggerMetadata.from_env().with_overrides(
        branch=branch,
        event_type=event_type,
        tag=tag,
        commit=commit,
        commit_message=commit_message,
        toolchain=toolchain,
    )


@click.group()
@click.version_option(version=__version__, prog_name="relorch")
def main():
    """
    relorch - Release artifact build-and-publish orchestrator.

    Builds every package × feature × target, zips each build with its
    README, LICENSE and CHANGELOG, and publishes the archives.
    """
    pass


@main.command()
@config_option
@click.option("--dry-run", is_flag=True, help="Validate and list jobs without building")
@click.option("--no-publish", is_flag=True, help="Build and package only")
@click.option("--workers", type=click.IntRange(min=1), help="Parallel build jobs")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@trigger_options
def run(config, dry_run, no_publish, workers, verbose, **trigger):
    """
    Build, package and publish release archives.

    Examples:

      # Full release using CI environment
      relorch run

      # List what would be built
      relorch run --dry-run

      # Local build without publishing
      relorch run --no-publish --commit $(git rev-parse HEAD)
    """
    try:
        release_config = load_config(config)
    except RelorchError as e:
        print_error(f"Configuration invalid: {e}")
        raise SystemExit(1)

    pipeline = Pipeline(release_config, _trigger(**trigger))
    result = pipeline.run(
        dry_run=dry_run,
        publish=not no_publish,
        verbose=verbose,
        workers=workers,
    )
    raise SystemExit(0 if result.success else 1)


@main.command()
@config_option
@trigger_options
def validate(config, **trigger):
    """
    Validate configuration and version claims without building.

    Examples:

      relorch validate --commit-message "Version change: safe_app to 0.6.0"
    """
    try:
        pipeline = Pipeline(load_config(config), _trigger(**trigger))
        tags = pipeline.validate()
    except RelorchError as e:
        print_error(f"Validation failed: {e}")
        raise SystemExit(1)

    for package, tag in tags.items():
        print_info(f"{package}: {tag}")
    print_success("Release configuration is valid")


@main.command()
@config_option
@trigger_options
def matrix(config, **trigger):
    """List build jobs and the archive each one produces."""
    try:
        pipeline = Pipeline(load_config(config), _trigger(**trigger))
        tags = pipeline.validate()
    except RelorchError as e:
        print_error(f"Validation failed: {e}")
        raise SystemExit(1)

    jobs = pipeline.config.expand_jobs()
    print_banner(f"{len(jobs)} build jobs")
    for job in jobs:
        click.echo(f"{job.describe():<60} {archive_name_for(job, tags[job.package])}")


@main.command()
@config_option
@trigger_options
def publish(config, **trigger):
    """
    Publish archives already present in the output directory.

    Honours the same branch/tag/event/toolchain gate as `relorch run`.
    """
    try:
        pipeline = Pipeline(load_config(config), _trigger(**trigger))
        result = pipeline.publish_existing()
    except RelorchError as e:
        print_error(f"Publish failed: {e}")
        raise SystemExit(1)

    if result.skipped:
        print_warning(f"Publishing skipped: {result.reason}")
    else:
        print_success(f"Published {len(result.uploaded)} archives")


@main.command()
@config_option
def status(config):
    """Show the result of the last release run."""
    try:
        release_config = load_config(config)
    except RelorchError as e:
        print_error(f"Could not retrieve status: {e}")
        raise SystemExit(1)

    state = Pipeline(release_config, TriggerMetadata()).status()
    if not state:
        print_info("No previous release runs found")
        return

    status_text = "SUCCESS" if state["success"] else "FAILED"
    click.echo(f"Last Run: {state['started_at']}")
    click.echo(f"Status: {status_text}")
    click.echo(f"Duration: {format_duration(state['duration_seconds'])}")

    if state.get("error_message"):
        click.echo(f"Error: {state.get('error_kind')}: {state['error_message']}")
    if state.get("failed_job"):
        click.echo(f"Failed job: {state['failed_job']}")
    if state.get("publish"):
        click.echo(f"Publish: {state['publish']['status']}")

    if state.get("jobs"):
        click.echo("\nArchives:")
        for job in state["jobs"]:
            click.echo(f"  {job['archive']}  {format_duration(job['duration_seconds'])}")


@main.command()
@config_option
@click.option("--dry-run", is_flag=True, help="Show what would be deleted without deleting")
def clean(config, dry_run):
    """Remove the local archive output directory."""
    try:
        release_config = load_config(config)
    except RelorchError as e:
        print_error(f"Clean failed: {e}")
        raise SystemExit(1)

    output_dir = release_config.output_dir.resolve()
    if encloses_protected_dir(output_dir, (release_config.source_root,)):
        print_error(
            f"Refusing to delete {output_dir}: it contains the working directory "
            "or the source root; set pipeline.output_dir"
        )
        raise SystemExit(1)

    if not output_dir.exists():
        print_info(f"Output directory does not exist ({output_dir})")
        return

    files = sorted(output_dir.glob("*"))
    if dry_run:
        print_info(f"Would delete {len(files)} files from {output_dir}")
        for f in files:
            click.echo(f"  - {f.name}")
        return

    shutil.rmtree(output_dir)
    print_success(f"Deleted {output_dir} ({len(files)} files)")


@main.command()
@click.option(
    "--path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_NAME,
    show_default=True,
    help="Where to write the configuration",
)
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(path, force):
    """Write a default release configuration."""
    if path.exists() and not force:
        print_error(f"Config already exists at {path}. Use --force to overwrite.")
        raise SystemExit(1)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False))
    print_success(f"Initialized relorch config at {path}")


if __name__ == "__main__":
    main()
