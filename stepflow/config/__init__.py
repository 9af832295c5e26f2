"""Project configuration loading and validation."""

from .loader import ProjectLoader
from .resources import (
    CommandResource,
    EnvironmentConfig,
    ProjectConfig,
    ProjectOutputSpec,
    WorkflowConfig,
    WorkflowFileSpec,
)

__all__ = [
    "ProjectLoader",
    "CommandResource",
    "EnvironmentConfig",
    "ProjectConfig",
    "ProjectOutputSpec",
    "WorkflowConfig",
    "WorkflowFileSpec",
]
