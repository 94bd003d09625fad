"""
relorch - Release artifact build-and-publish orchestrator

Builds a matrix of cargo packages, feature variants and targets, packages
each build into a deterministically named zip archive and publishes the
archives to S3.
"""

__version__ = "0.1.0"


__all__ = ["ReleaseConfig", "load_config", "Pipeline", "PipelineResult", "TriggerMetadata"]

from .config import ReleaseConfig, load_config
from .pipeline import Pipeline, PipelineResult
from .trigger import TriggerMetadata
