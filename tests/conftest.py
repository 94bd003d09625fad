import pytest
import yaml
from pathlib import Path

from relorch.builder import BuildOutput
from relorch.config import load_config
from relorch.trigger import TriggerMetadata

COMMIT = "4f2c9a1be07d6e3f5a8b9c0d1e2f3a4b5c6d7e8f"

MANIFESTS = {
    "safe_app": "0.6.0",
    "safe_authenticator": "0.6.0",
}


def write_package(root: Path, name: str, version: str, aux=("README.md", "LICENSE", "CHANGELOG.md")):
    pkg = root / name
    pkg.mkdir(parents=True, exist_ok=True)
    (pkg / "Cargo.toml").write_text(
        f'[package]\nname = "{name}"\nversion = "{version}"\n'
    )
    for file_name in aux:
        (pkg / file_name).write_text(f"{name} {file_name}\n")
    return pkg


class FakeDriver:
    """Build driver that writes a fake library instead of running cargo."""

    def __init__(self, target_dir: Path, fail_on=None, missing_on=None):
        self.target_dir = target_dir
        self.fail_on = set(fail_on or [])
        self.missing_on = set(missing_on or [])
        self.built = []
        self.lockfile_checked = False

    def ensure_lockfile(self):
        self.lockfile_checked = True

    def build(self, job, release_tag=None):
        self.built.append(job)
        binary = self.target_dir / job.target / "release" / job.library_file_name
        if job.key in self.fail_on:
            return BuildOutput(job=job, binary_path=binary, succeeded=False, log="error[E0425]")
        if job.key not in self.missing_on:
            binary.parent.mkdir(parents=True, exist_ok=True)
            binary.write_bytes(b"\x7fELF" + job.package.encode())
        return BuildOutput(job=job, binary_path=binary, succeeded=True, log="Finished release")


@pytest.fixture
def workspace(tmp_path):
    """A cargo workspace with two packages and their auxiliary files."""
    root = tmp_path / "workspace"
    for name, version in MANIFESTS.items():
        write_package(root, name, version)
    (root / "Cargo.lock").write_text("")
    return root


@pytest.fixture
def raw_config(workspace, tmp_path):
    return {
        "pipeline": {
            "name": "safe_client_libs",
            "source_root": str(workspace),
            "output_dir": str(tmp_path / "deploy"),
        },
        "features": [
            {"flag": None},
            {"flag": "use-mock-routing", "label": "mock"},
        ],
        "packages": {"safe_app": {}, "safe_authenticator": {}},
        "targets": [
            {"triple": "x86_64-unknown-linux-gnu", "alias": "linux-x64"},
            {"triple": "x86_64-apple-darwin", "alias": "osx-x64"},
        ],
        "publish": {"bucket": "safe-client-libs", "branch": "master", "stable_toolchain": "stable"},
        "logging": {"output": str(tmp_path / "logs" / "relorch.log"), "console": False},
    }


@pytest.fixture
def write_config(tmp_path):
    def _write(raw):
        path = tmp_path / "release.yaml"
        path.write_text(yaml.safe_dump(raw, sort_keys=False))
        return path
    return _write


@pytest.fixture
def release_config(raw_config, write_config):
    return load_config(write_config(raw_config))


@pytest.fixture
def release_trigger():
    return TriggerMetadata(
        branch="master",
        event_type="push",
        tag="",
        commit_message="Merge pull request #42",
        commit=COMMIT,
        toolchain="stable",
    )


@pytest.fixture
def fake_driver(tmp_path):
    return FakeDriver(tmp_path / "target")
