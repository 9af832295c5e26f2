"""Action graph: actions, modules, resolve/execute tasks and the task scheduler."""

from .types import (
    ActionConfig,
    ActionKind,
    ActionReference,
    ActionTemplateReference,
    Module,
    Provider,
    ProviderConfig,
)
from .actions import (
    Action,
    ActionTypeDefinition,
    ActionTypeRegistry,
    ExecutedAction,
    ResolvedAction,
    action_ref_needs_execution,
    default_action_types,
    get_static_output_keys,
)
from .config_graph import ConfigGraph
from .tasks import ExecuteTask, GraphResults, ResolveTask, TaskResult, TaskScheduler

__all__ = [
    "Action",
    "ActionConfig",
    "ActionKind",
    "ActionReference",
    "ActionTemplateReference",
    "ActionTypeDefinition",
    "ActionTypeRegistry",
    "ConfigGraph",
    "ExecuteTask",
    "ExecutedAction",
    "GraphResults",
    "Module",
    "Provider",
    "ProviderConfig",
    "ResolveTask",
    "ResolvedAction",
    "TaskResult",
    "TaskScheduler",
    "action_ref_needs_execution",
    "default_action_types",
    "get_static_output_keys",
]
