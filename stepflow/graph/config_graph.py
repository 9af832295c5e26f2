"""Config graph: actions and modules with their dependency relationships."""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from ..exceptions import ConfigurationError
from .actions import Action, compute_action_version
from .types import ActionConfig, ActionReference, Module

logger = logging.getLogger(__name__)


class ConfigGraph:
    """
    Dependency graph of the project's actions, plus its modules.

    Versions are computed bottom-up so that an action's version changes when
    any of its dependencies change.
    """

    def __init__(self, actions: Sequence[ActionConfig], modules: Sequence[Module] = ()):
        self._configs: Dict[str, ActionConfig] = {}
        for config in actions:
            key = str(config.reference)
            if key in self._configs:
                raise ConfigurationError(
                    f"Action {key} is declared more than once",
                    context={"action": key},
                )
            self._configs[key] = config

        self._modules: Dict[str, Module] = {}
        for module in modules:
            if module.name in self._modules:
                raise ConfigurationError(f"Module {module.name} is declared more than once")
            self._modules[module.name] = module

        self._actions: Dict[str, Action] = {}
        for key in self._configs:
            self._build_action(key, [])

    def _build_action(self, key: str, path: List[str]) -> Action:
        if key in self._actions:
            return self._actions[key]
        if key in path:
            cycle = " -> ".join(path + [key])
            raise ConfigurationError(f"Circular dependency detected: {cycle}", context={"cycle": path + [key]})

        config = self._configs[key]
        dependency_versions = []
        for dep in config.dependencies:
            dep_key = str(dep)
            if dep_key not in self._configs:
                raise ConfigurationError(
                    f"Action {key} depends on {dep_key}, which does not exist",
                    context={"action": key, "dependency": dep_key},
                )
            dependency_versions.append(self._build_action(dep_key, path + [key]).version)

        action = Action(config, compute_action_version(config, dependency_versions))
        self._actions[key] = action
        return action

    def get_action_by_ref(self, ref: ActionReference) -> Action:
        """
        Look up an action by reference.

        Raises:
            ConfigurationError: If the action does not exist
        """
        action = self._actions.get(str(ref))
        if action is None:
            available = [k for k in self._actions if k.startswith(f"{ref.kind.ref_name}.")]
            raise ConfigurationError(
                f"Could not find {ref.kind.value} action {ref.name}. "
                f"Available {ref.kind.value} actions: {', '.join(sorted(available)) or 'none'}",
                context={"reference": str(ref)},
            )
        return action

    def get_actions(self) -> List[Action]:
        return list(self._actions.values())

    def get_dependencies(self, action: Action) -> List[Action]:
        return [self._actions[str(dep)] for dep in action.config.dependencies]

    def get_modules(self, names: Optional[Iterable[str]] = None) -> List[Module]:
        """
        Return modules, optionally filtered by name.

        Raises:
            ConfigurationError: If a requested module does not exist
        """
        if names is None:
            return list(self._modules.values())
        modules = []
        for name in names:
            if name not in self._modules:
                raise ConfigurationError(
                    f"Could not find module {name}. Available modules: "
                    f"{', '.join(sorted(self._modules)) or 'none'}",
                    context={"module": name},
                )
            modules.append(self._modules[name])
        return modules
