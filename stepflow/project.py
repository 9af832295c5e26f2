"""
Project: loaded configuration plus the services commands need (template
contexts, provider resolution, the config graph and the task scheduler).
"""

import logging
import os
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config.loader import ProjectLoader
from .config.resources import CommandResource, ProjectConfig, WorkflowConfig
from .events import EventBus
from .exceptions import ConfigurationError
from .graph.actions import ActionTypeRegistry, default_action_types
from .graph.config_graph import ConfigGraph
from .graph.tasks import BaseTask, GraphResults, TaskScheduler
from .graph.types import Provider
from .security.secrets import SecretsManager
from .template.context import ConfigContext
from .template.contexts import build_project_context
from .template.expressions import deep_evaluate
from .tracing import TraceContext

logger = logging.getLogger(__name__)

ENV_VAR_ENVIRONMENT = "STEPFLOW_ENV"
DEFAULT_ENVIRONMENT = "default"


def parse_environment(value: str):
    """Split `<namespace>.<environment>` into (environment, namespace)."""
    if "." in value:
        namespace, environment = value.split(".", 1)
        return environment, namespace
    return value, None


class Project:
    """A loaded project for one environment."""

    def __init__(
        self,
        root: Path,
        config: ProjectConfig,
        environment: Optional[str] = None,
        action_types: Optional[ActionTypeRegistry] = None,
        scheduler: Optional[TaskScheduler] = None,
    ):
        """
        Initialize a project.

        Args:
            root: Project root directory
            config: Loaded project configuration
            environment: Environment name, optionally `<namespace>.<name>`.
                Defaults to $STEPFLOW_ENV, then the project's default environment.
            action_types: Action type registry (default: built-in types)
            scheduler: Task scheduler (default: one configured from the project)
        """
        self.root = Path(root).resolve()
        self.config = config
        self.name = config.name

        requested = (environment or os.environ.get(ENV_VAR_ENVIRONMENT)
                     or config.default_environment
                     or (config.environments[0].name if config.environments else DEFAULT_ENVIRONMENT))
        self.environment_name, namespace = parse_environment(requested)

        env_config = None
        if config.environments:
            env_config = next((e for e in config.environments if e.name == self.environment_name), None)
            if env_config is None:
                available = ", ".join(e.name for e in config.environments)
                raise ConfigurationError(
                    f"Environment '{self.environment_name}' is not declared in project {self.name}. "
                    f"Available environments: {available}",
                    context={"environment": self.environment_name},
                )
        self.namespace = namespace or (env_config.namespace if env_config else None)

        self.variables = dict(config.variables)
        if env_config is not None:
            self.variables.update(env_config.variables)

        self.secrets_manager = SecretsManager(config.secrets)
        self.events = EventBus()
        self.trace = TraceContext()
        self.scheduler = scheduler or TaskScheduler(config.scheduler)
        self._action_types = action_types or default_action_types()
        self._graph: Optional[ConfigGraph] = None
        self._project_context: Optional[ConfigContext] = None
        self._lock = threading.Lock()

    @classmethod
    def load(cls, root: Path, environment: Optional[str] = None) -> "Project":
        """
        Load the project at `root`.

        Raises:
            ProjectValidationError: If the configuration is invalid
            ConfigurationError: If the environment is not declared
        """
        root = Path(root)
        config = ProjectLoader(root).load()
        return cls(root, config, environment=environment)

    def get_secret_values(self) -> Dict[str, str]:
        missing = self.secrets_manager.get_missing_secrets()
        if missing:
            logger.debug(f"Declared secrets not set in the environment: {', '.join(missing)}")
        return self.secrets_manager.get_secret_values()

    def get_project_context(self) -> ConfigContext:
        """Project-level template context (built once per project)."""
        with self._lock:
            if self._project_context is None:
                self._project_context = build_project_context(self)
            return self._project_context

    def resolve_providers(self, names: Optional[Iterable[str]] = None) -> Dict[str, Provider]:
        """
        Resolve provider configs and outputs against the project context.

        Args:
            names: Providers to resolve (default: all)

        Raises:
            ConfigurationError: If a requested provider is not declared
        """
        declared = {p.name: p for p in self.config.providers}
        if names is None:
            names = list(declared)

        context = self.get_project_context()
        providers = {}
        for name in names:
            if name not in declared:
                raise ConfigurationError(
                    f"Could not find provider {name}. Configured providers: "
                    f"{', '.join(sorted(declared)) or 'none'}",
                    context={"provider": name},
                )
            provider = declared[name]
            logger.debug(f"Resolving provider {name}")
            providers[name] = Provider(
                name=name,
                config=deep_evaluate(provider.config, context),
                outputs=deep_evaluate(provider.outputs, context),
            )
        return providers

    def get_config_graph(self) -> ConfigGraph:
        """Build (once) and return the config graph."""
        with self._lock:
            if self._graph is None:
                logger.debug(f"Building config graph for {len(self.config.actions)} action(s)")
                self._graph = ConfigGraph(self.config.actions, self.config.modules)
            return self._graph

    def get_action_types(self) -> ActionTypeRegistry:
        return self._action_types

    def process_tasks(self, tasks: List[BaseTask], throw_on_error: bool = False) -> GraphResults:
        return self.scheduler.process(tasks, throw_on_error=throw_on_error)

    def get_workflow_config(self, name: str) -> WorkflowConfig:
        """
        Look up a workflow by name.

        Raises:
            ConfigurationError: If no workflow has that name
        """
        workflow = self.config.workflows.get(name)
        if workflow is None:
            available = ", ".join(sorted(self.config.workflows)) or "none"
            raise ConfigurationError(
                f"Could not find workflow '{name}'. Available workflows: {available}",
                context={"workflow": name},
            )
        return workflow

    def get_command_resources(self) -> List[CommandResource]:
        return list(self.config.commands)
