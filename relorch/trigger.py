"""
Trigger metadata for a release run.

Describes the CI event that started the run. Read once from the environment
(Travis-style variables) and passed read-only to the validator and publisher.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

SHORT_COMMIT_LENGTH = 7

# Field name -> environment variable
ENV_VARS = {
    "branch": "TRAVIS_BRANCH",
    "event_type": "TRAVIS_EVENT_TYPE",
    "tag": "TRAVIS_TAG",
    "commit_message": "TRAVIS_COMMIT_MESSAGE",
    "commit": "TRAVIS_COMMIT",
    "toolchain": "TRAVIS_RUST_VERSION",
}


@dataclass(frozen=True)
class TriggerMetadata:
    """
    The CI event that triggered a release run.

    Attributes:
        branch: Triggering branch name
        event_type: "push", "pull_request", "api", "cron", ...
        tag: Tag name when the run was triggered by a tag push
        commit_message: Free-text commit message (may carry version claims)
        commit: Full commit identifier
        toolchain: Selected compiler toolchain channel/version
    """
    branch: str = ""
    event_type: str = ""
    tag: str = ""
    commit_message: str = ""
    commit: str = ""
    toolchain: str = ""

    @property
    def tag_push(self) -> bool:
        return bool(self.tag)

    @property
    def short_commit(self) -> str:
        return self.commit[:SHORT_COMMIT_LENGTH]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TriggerMetadata":
        """Read trigger metadata from CI environment variables."""
        if environ is None:
            environ = os.environ
        return cls(**{name: environ.get(var, "") for name, var in ENV_VARS.items()})

    def with_overrides(self, **overrides: Optional[str]) -> "TriggerMetadata":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "event_type": self.event_type,
            "tag": self.tag,
            "commit": self.commit,
            "toolchain": self.toolchain,
        }
