"""Typed project configuration, as produced by the loader."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..commands.base import Parameter
from ..graph.types import ActionConfig, Module, ProviderConfig
from ..workflow.steps import StepSpec


@dataclass
class EnvironmentConfig:
    name: str
    variables: Dict[str, Any] = field(default_factory=dict)
    namespace: Optional[str] = None


@dataclass
class WorkflowFileSpec:
    """A file written before a workflow runs, from inline data or a secret."""
    path: str
    data: Optional[str] = None
    secret_name: Optional[str] = None


@dataclass
class WorkflowConfig:
    name: str
    steps: List[StepSpec]
    description: Optional[str] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    files: List[WorkflowFileSpec] = field(default_factory=list)
    source_path: Optional[Path] = None


@dataclass
class CommandResource:
    """A custom command document."""
    name: str
    description_short: str = ""
    description_long: str = ""
    args: List[Parameter] = field(default_factory=list)
    opts: List[Parameter] = field(default_factory=list)
    variables: Any = field(default_factory=dict)
    steps: Optional[List[StepSpec]] = None
    exec: Optional[Dict[str, Any]] = None  # Legacy: {command: [...], env: {...}}
    command: Optional[List[str]] = None  # Legacy: nested stepflow command
    source_path: Optional[Path] = None


@dataclass
class ProjectOutputSpec:
    name: str
    value: Any


@dataclass
class ProjectConfig:
    """Everything declared in a project's configuration files."""
    name: str
    default_environment: Optional[str] = None
    environments: List[EnvironmentConfig] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    secrets: List[str] = field(default_factory=list)
    providers: List[ProviderConfig] = field(default_factory=list)
    outputs: List[ProjectOutputSpec] = field(default_factory=list)
    scheduler: Dict[str, int] = field(default_factory=dict)
    modules: List[Module] = field(default_factory=list)
    actions: List[ActionConfig] = field(default_factory=list)
    workflows: Dict[str, WorkflowConfig] = field(default_factory=dict)
    commands: List[CommandResource] = field(default_factory=list)
