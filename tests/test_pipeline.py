"""Tests for the release pipeline orchestrator.

Tests cover:
- Version mismatch aborts before any build
- Commit fallback naming
- Fail-fast on compile failures (sequential and parallel)
- Staging cleanup
- Publish gating, publishing of existing archives and saved state
- Same-target builds never overlap in parallel runs
"""

import json
import tempfile
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from relorch.config import load_config
from relorch.errors import PublishFailure
from relorch.pipeline import Pipeline
from relorch.publisher import PUBLISHED, SKIPPED
from relorch.trigger import TriggerMetadata

from conftest import COMMIT, FakeDriver

LINUX = "x86_64-unknown-linux-gnu"
DARWIN = "x86_64-apple-darwin"


def deploy_names(config):
    if not config.output_dir.exists():
        return []
    return sorted(p.name for p in config.output_dir.iterdir())


class TargetConcurrencyDriver(FakeDriver):
    """Records how many builds of each target are in flight at once."""

    def __init__(self, target_dir, targets):
        super().__init__(target_dir)
        self.lock = threading.Lock()
        self.in_flight = {}
        self.max_in_flight = {}
        self.started = set()
        # First build of every target waits until each target has started one
        self.barrier = threading.Barrier(len(targets), timeout=5)

    def build(self, job, release_tag=None):
        with self.lock:
            self.in_flight[job.target] = self.in_flight.get(job.target, 0) + 1
            self.max_in_flight[job.target] = max(
                self.max_in_flight.get(job.target, 0), self.in_flight[job.target]
            )
            first = job.target not in self.started
            self.started.add(job.target)
        try:
            if first:
                self.barrier.wait()
            time.sleep(0.01)
            return super().build(job, release_tag)
        finally:
            with self.lock:
                self.in_flight[job.target] -= 1


@pytest.fixture
def store():
    store = MagicMock()
    store.upload.side_effect = lambda path, name: name
    return store


class TestVersionValidation:

    def test_mismatch_fails_before_any_build(self, release_config, release_trigger, fake_driver, store):
        trigger = release_trigger.with_overrides(
            commit_message="Version change: safe_app to 0.7.0; safe_authenticator to 0.6.0"
        )

        result = Pipeline(release_config, trigger, driver=fake_driver, store=store).run()

        assert result.success is False
        assert result.error_kind == "VersionMismatch"
        assert "v0.7.0" in result.error_message and "v0.6.0" in result.error_message
        assert fake_driver.built == []
        assert deploy_names(release_config) == []
        store.upload.assert_not_called()

    def test_no_claim_names_archives_after_commit(self, release_config, release_trigger, fake_driver):
        result = Pipeline(release_config, release_trigger, driver=fake_driver).run(publish=False)

        assert result.success is True
        assert result.release_tags == {"safe_app": COMMIT[:7], "safe_authenticator": COMMIT[:7]}
        assert all(f"-{COMMIT[:7]}-" in a.name for a in result.archives)

    def test_matching_claim_names_archives_after_version(self, release_config, release_trigger, fake_driver):
        trigger = release_trigger.with_overrides(commit_message="Version change: safe_app to 0.6.0")

        result = Pipeline(release_config, trigger, driver=fake_driver).run(publish=False)

        assert "safe_app-v0.6.0-linux-x64.zip" in deploy_names(release_config)
        assert f"safe_authenticator-{COMMIT[:7]}-linux-x64.zip" in deploy_names(release_config)
        assert result.success is True


class TestJobs:

    def test_builds_full_matrix(self, release_config, release_trigger, fake_driver):
        result = Pipeline(release_config, release_trigger, driver=fake_driver).run(publish=False)

        short = COMMIT[:7]
        assert result.success is True
        assert len(result.jobs) == 8
        assert fake_driver.lockfile_checked is True
        assert deploy_names(release_config) == sorted([
            f"safe_app-{short}-linux-x64.zip",
            f"safe_app-{short}-osx-x64.zip",
            f"safe_app-mock-{short}-linux-x64.zip",
            f"safe_app-mock-{short}-osx-x64.zip",
            f"safe_authenticator-{short}-linux-x64.zip",
            f"safe_authenticator-{short}-osx-x64.zip",
            f"safe_authenticator-mock-{short}-linux-x64.zip",
            f"safe_authenticator-mock-{short}-osx-x64.zip",
        ])

    def test_compile_failure_stops_later_jobs(self, release_config, release_trigger, tmp_path, store):
        driver = FakeDriver(tmp_path / "target", fail_on=[("safe_app", "use-mock-routing", LINUX)])

        result = Pipeline(release_config, release_trigger, driver=driver, store=store).run()

        short = COMMIT[:7]
        assert result.success is False
        assert result.error_kind == "CompileFailure"
        assert result.failed_job == f"safe_app [use-mock-routing] @ {LINUX}"
        # Only the two jobs scheduled before the failing one produced archives
        assert deploy_names(release_config) == sorted([
            f"safe_app-{short}-linux-x64.zip",
            f"safe_app-{short}-osx-x64.zip",
        ])
        assert len(driver.built) == 3
        store.upload.assert_not_called()

    def test_missing_artifact_reported_distinctly(self, release_config, release_trigger, tmp_path):
        driver = FakeDriver(tmp_path / "target", missing_on=[("safe_app", None, LINUX)])

        result = Pipeline(release_config, release_trigger, driver=driver).run(publish=False)

        assert result.success is False
        assert result.error_kind == "MissingArtifact"
        assert deploy_names(release_config) == []

    def test_missing_auxiliary_file_aborts(self, release_config, release_trigger, fake_driver, workspace):
        (workspace / "safe_authenticator" / "LICENSE").unlink()

        result = Pipeline(release_config, release_trigger, driver=fake_driver).run(publish=False)

        assert result.success is False
        assert result.error_kind == "MissingAuxiliaryFile"
        assert all(name.startswith("safe_app") for name in deploy_names(release_config))

    def test_no_staging_directory_survives(self, release_config, release_trigger, fake_driver):
        tmp_root = Path(tempfile.gettempdir())
        before = set(tmp_root.glob("relorch-*"))

        Pipeline(release_config, release_trigger, driver=fake_driver).run(publish=False)

        assert set(tmp_root.glob("relorch-*")) == before

    def test_dry_run_builds_nothing(self, release_config, release_trigger, fake_driver):
        result = Pipeline(release_config, release_trigger, driver=fake_driver).run(dry_run=True)

        assert result.success is True
        assert fake_driver.built == []
        assert deploy_names(release_config) == []


class TestParallelJobs:

    def test_parallel_run_produces_all_archives(self, release_config, release_trigger, fake_driver):
        result = Pipeline(release_config, release_trigger, driver=fake_driver).run(
            publish=False, workers=4
        )

        assert result.success is True
        assert len(deploy_names(release_config)) == 8
        assert [r.job for r in result.jobs] == release_config.expand_jobs()

    def test_same_target_builds_never_overlap(self, release_config, release_trigger, tmp_path):
        driver = TargetConcurrencyDriver(tmp_path / "target", [LINUX, DARWIN])

        result = Pipeline(release_config, release_trigger, driver=driver).run(
            publish=False, workers=4
        )

        assert result.success is True
        assert len(driver.built) == 8
        assert driver.max_in_flight == {LINUX: 1, DARWIN: 1}

    def test_parallel_failure_skips_publish(self, release_config, release_trigger, tmp_path, store):
        driver = FakeDriver(tmp_path / "target", fail_on=[("safe_app", None, DARWIN)])

        result = Pipeline(release_config, release_trigger, driver=driver, store=store).run(workers=2)

        assert result.success is False
        assert result.error_kind == "CompileFailure"
        assert result.jobs == []
        store.upload.assert_not_called()


class TestPublishing:

    def test_publishes_on_release_trigger(self, release_config, release_trigger, fake_driver, store):
        result = Pipeline(release_config, release_trigger, driver=fake_driver, store=store).run()

        assert result.success is True
        assert result.publish.status == PUBLISHED
        assert store.upload.call_count == 8
        assert not release_config.output_dir.exists()

    def test_skips_on_feature_branch(self, release_config, release_trigger, fake_driver, store):
        trigger = release_trigger.with_overrides(branch="feature-x")

        result = Pipeline(release_config, trigger, driver=fake_driver, store=store).run()

        assert result.success is True
        assert result.publish.status == SKIPPED
        store.upload.assert_not_called()
        assert len(deploy_names(release_config)) == 8

    def test_upload_failure_fails_run(self, release_config, release_trigger, fake_driver):
        from relorch.storage import UploadError

        store = MagicMock()
        store.upload.side_effect = UploadError("access denied")

        result = Pipeline(release_config, release_trigger, driver=fake_driver, store=store).run()

        assert result.success is False
        assert result.error_kind == "PublishFailure"
        assert len(deploy_names(release_config)) == 8

    def test_publish_existing(self, release_config, release_trigger, fake_driver, store):
        Pipeline(release_config, release_trigger, driver=fake_driver).run(publish=False)

        result = Pipeline(release_config, release_trigger, store=store).publish_existing()

        assert result.status == PUBLISHED
        assert len(result.uploaded) == 8

    def test_publish_existing_refuses_after_failed_run(self, release_config, release_trigger, tmp_path, store):
        driver = FakeDriver(tmp_path / "target", fail_on=[("safe_app", "use-mock-routing", LINUX)])
        Pipeline(release_config, release_trigger, driver=driver).run(publish=False)
        assert len(deploy_names(release_config)) == 2

        with pytest.raises(PublishFailure, match="did not succeed"):
            Pipeline(release_config, release_trigger, store=store).publish_existing()

        store.upload.assert_not_called()
        assert len(deploy_names(release_config)) == 2

    def test_publish_existing_refuses_incomplete_set(self, release_config, release_trigger, fake_driver, store):
        Pipeline(release_config, release_trigger, driver=fake_driver).run(publish=False)
        missing = release_config.output_dir / f"safe_authenticator-{COMMIT[:7]}-osx-x64.zip"
        missing.unlink()

        with pytest.raises(PublishFailure, match=missing.name):
            Pipeline(release_config, release_trigger, store=store).publish_existing()

        store.upload.assert_not_called()

    def test_publish_existing_refuses_other_release_tags(self, release_config, release_trigger, fake_driver, store):
        Pipeline(release_config, release_trigger, driver=fake_driver).run(publish=False)
        trigger = release_trigger.with_overrides(commit="0123456789abcdef")

        with pytest.raises(PublishFailure, match="Last release run was for"):
            Pipeline(release_config, trigger, store=store).publish_existing()

        store.upload.assert_not_called()

    def test_publish_existing_refuses_modified_archive(self, release_config, release_trigger, fake_driver, store):
        Pipeline(release_config, release_trigger, driver=fake_driver).run(publish=False)
        (release_config.output_dir / f"safe_app-{COMMIT[:7]}-linux-x64.zip").write_bytes(b"PK")

        with pytest.raises(PublishFailure, match="checksum mismatch"):
            Pipeline(release_config, release_trigger, store=store).publish_existing()

        store.upload.assert_not_called()


class TestState:

    def test_state_saved_and_loaded(self, release_config, release_trigger, fake_driver):
        pipeline = Pipeline(release_config, release_trigger, driver=fake_driver)
        pipeline.run(publish=False)

        state = pipeline.status()

        assert state["success"] is True
        assert len(state["jobs"]) == 8
        assert all(job["sha256"] for job in state["jobs"])
        saved = json.loads(release_config.get_state_file().read_text())
        assert saved == state

    def test_no_state_before_first_run(self, release_config):
        assert Pipeline(release_config, TriggerMetadata()).status() is None

    def test_failed_run_state_names_job(self, release_config, release_trigger, tmp_path):
        driver = FakeDriver(tmp_path / "target", fail_on=[("safe_app", None, LINUX)])
        pipeline = Pipeline(release_config, release_trigger, driver=driver)
        pipeline.run(publish=False)

        state = pipeline.status()

        assert state["success"] is False
        assert state["failed_job"] == f"safe_app [default] @ {LINUX}"

    def test_unwritable_log_path_is_a_failed_run(self, raw_config, write_config, release_trigger, fake_driver, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        raw_config["logging"]["output"] = str(blocker / "relorch.log")
        config = load_config(write_config(raw_config))

        result = Pipeline(config, release_trigger, driver=fake_driver).run(publish=False)

        assert result.success is False
        assert result.error_kind is not None
        assert fake_driver.built == []
