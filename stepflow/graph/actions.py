"""
Actions, action types and the static/runtime output classification.

An action type declares which of its output keys are static, i.e. known once
the action is resolved, and how to execute the action to obtain the rest.
"""

import hashlib
import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..exceptions import ConfigurationError, OperationError
from .types import ActionConfig, ActionKind, ActionReference

logger = logging.getLogger(__name__)


@dataclass
class ActionTypeDefinition:
    """
    Definition of an action type for one action kind.

    Attributes:
        kind: Action kind this type applies to
        name: Type name as used in action documents (`type: exec`)
        static_output_keys: Output keys known without executing the action
        get_static_outputs: Computes static outputs from the action config
        execute: Runs the action and returns its runtime outputs
    """
    kind: ActionKind
    name: str
    static_output_keys: Tuple[str, ...] = ()
    get_static_outputs: Optional[Callable[["Action"], Dict[str, Any]]] = None
    execute: Optional[Callable[["Action", Path], Dict[str, Any]]] = None


class ActionTypeRegistry:
    """Registry of action types keyed by (kind, type name)."""

    def __init__(self):
        self._types: Dict[Tuple[ActionKind, str], ActionTypeDefinition] = {}

    def register(self, definition: ActionTypeDefinition):
        """Register an action type. Later registrations replace earlier ones."""
        self._types[(definition.kind, definition.name)] = definition

    def get(self, kind: ActionKind, type_name: str) -> ActionTypeDefinition:
        """
        Look up an action type.

        Raises:
            ConfigurationError: If no such type is registered for the kind
        """
        definition = self._types.get((kind, type_name))
        if definition is None:
            available = sorted(name for (k, name) in self._types if k == kind)
            raise ConfigurationError(
                f"Unknown {kind.value} action type '{type_name}'. "
                f"Available types: {', '.join(available) or 'none'}",
                context={"kind": kind.value, "type": type_name},
            )
        return definition


def get_static_output_keys(action_types: ActionTypeRegistry, kind: ActionKind,
                           type_name: str) -> List[str]:
    """Return the static output keys declared by an action type."""
    return list(action_types.get(kind, type_name).static_output_keys)


def action_ref_needs_execution(key_path: Sequence[Any], kind: ActionKind,
                               static_output_keys: Sequence[str]) -> bool:
    """
    Decide whether a template reference to an action requires executing it.

    Only references into `outputs` can need execution. Referencing the whole
    outputs map, or an output key the action type does not declare static,
    needs the action's runtime outputs. Everything else (name, version, var,
    static outputs) only needs the action resolved.

    Args:
        key_path: Keys after the action name, e.g. ("outputs", "stdout")
        kind: Kind of the referenced action
        static_output_keys: Static output keys of the action's type

    Returns:
        True if the action must be executed
    """
    if not key_path or key_path[0] != "outputs":
        return False
    if len(key_path) < 2:
        return True
    return key_path[1] not in static_output_keys


class Action:
    """An action in the config graph, with its computed version."""

    def __init__(self, config: ActionConfig, version: str):
        self.config = config
        self.version = version

    @property
    def kind(self) -> ActionKind:
        return self.config.kind

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def type(self) -> str:
        return self.config.type

    @property
    def disabled(self) -> bool:
        return self.config.disabled

    @property
    def reference(self) -> ActionReference:
        return self.config.reference

    def key(self) -> str:
        return str(self.reference)

    def __repr__(self):
        return f"Action({self.key()}, type={self.type})"


def compute_action_version(config: ActionConfig, dependency_versions: Sequence[str]) -> str:
    """Hash an action's configuration together with its dependencies' versions."""
    payload = json.dumps({
        "kind": config.kind.value,
        "name": config.name,
        "type": config.type,
        "spec": config.spec,
        "variables": config.variables,
        "dependencies": sorted(dependency_versions),
    }, sort_keys=True, default=str)
    return "v-" + hashlib.sha256(payload.encode("utf-8")).hexdigest()[:10]


@dataclass
class ResolvedAction:
    """An action whose configuration is resolved and whose static outputs are known."""
    action: Action
    static_outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.action.name

    @property
    def kind(self) -> ActionKind:
        return self.action.kind

    @property
    def type(self) -> str:
        return self.action.type

    @property
    def version(self) -> str:
        return self.action.version

    @property
    def disabled(self) -> bool:
        return self.action.disabled

    @property
    def variables(self) -> Dict[str, Any]:
        return self.action.config.variables

    def get_outputs(self) -> Dict[str, Any]:
        return dict(self.static_outputs)

    @property
    def executed(self) -> bool:
        return False


@dataclass
class ExecutedAction(ResolvedAction):
    """An action that has been executed; runtime outputs are available."""
    runtime_outputs: Dict[str, Any] = field(default_factory=dict)

    def get_outputs(self) -> Dict[str, Any]:
        outputs = dict(self.static_outputs)
        outputs.update(self.runtime_outputs)
        return outputs

    @property
    def executed(self) -> bool:
        return True


# Built-in `exec` action type

def _exec_static_outputs(action: Action) -> Dict[str, Any]:
    return {"command": list(action.config.spec.get("command", []))}


def _exec_execute(action: Action, project_root: Path) -> Dict[str, Any]:
    command = action.config.spec.get("command")
    if not command:
        raise ConfigurationError(
            f"Action {action.key()} of type exec has no spec.command",
            context={"action": action.key()},
        )
    cwd = action.config.source_path.parent if action.config.source_path else project_root
    if "cwd" in action.config.spec:
        cwd = cwd / action.config.spec["cwd"]

    logger.info(f"Executing {action.key()}: {' '.join(str(c) for c in command)}")
    try:
        result = subprocess.run(
            [str(c) for c in command],
            cwd=cwd,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as e:
        raise OperationError(
            f"Could not run command for {action.key()}: {e}",
            context={"action": action.key(), "command": command},
        )

    stdout = result.stdout.rstrip("\n")
    if result.returncode != 0:
        raise OperationError(
            f"Command for {action.key()} exited with code {result.returncode}:\n{result.stderr or stdout}",
            context={"action": action.key(), "exit_code": result.returncode},
        )

    return {
        "log": stdout,
        "stdout": stdout,
        "exit_code": result.returncode,
    }


def default_action_types() -> ActionTypeRegistry:
    """Registry with the built-in `exec` type for every action kind."""
    registry = ActionTypeRegistry()
    for kind in ActionKind:
        registry.register(ActionTypeDefinition(
            kind=kind,
            name="exec",
            static_output_keys=("command",),
            get_static_outputs=_exec_static_outputs,
            execute=_exec_execute,
        ))
    return registry
