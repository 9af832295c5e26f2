"""
Lazy resolution of template dependencies.

Given the references found by the scanner, resolve only what is needed:
providers if any are referenced, the config graph if modules or actions are
referenced, and for actions either a resolve or an execute task depending on
whether the template needs runtime outputs. All tasks go to the scheduler in
a single fail-fast batch.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Union

from ..exceptions import InternalError
from ..graph.actions import (
    ExecutedAction,
    ResolvedAction,
    action_ref_needs_execution,
    get_static_output_keys,
)
from ..graph.tasks import BaseTask, ExecuteTask, GraphResults, ResolveTask
from ..graph.types import Module, Provider
from .context import ConfigContext
from .contexts import expand_context
from .scanner import ReferenceScanResult, scan_template_references

if TYPE_CHECKING:
    from ..project import Project

logger = logging.getLogger(__name__)


@dataclass
class ResolvedNeeds:
    """What was resolved for one set of template references."""
    providers: Dict[str, Provider] = field(default_factory=dict)
    modules: List[Module] = field(default_factory=list)
    executed_or_resolved_actions: List[Union[ResolvedAction, ExecutedAction]] = field(default_factory=list)
    graph_results: GraphResults = field(default_factory=GraphResults)


def resolve_template_needs(project: "Project", needs: ReferenceScanResult) -> ResolvedNeeds:
    """
    Resolve the providers, modules and actions a template needs.

    Nothing is touched when there are no references. When providers are
    referenced they are resolved; the config graph is only built when modules
    or actions are referenced.

    Args:
        project: Project to resolve against
        needs: Result of scan_template_references

    Returns:
        ResolvedNeeds with the resolved providers, modules and action handles

    Raises:
        ConfigurationError: If a referenced module or action does not exist
        ResolutionError: If any resolve or execute task fails
        InternalError: If the scheduler returns no result for a submitted task
    """
    if not needs.has_references:
        return ResolvedNeeds()

    providers: Dict[str, Provider] = {}
    if needs.provider_names:
        providers = project.resolve_providers(sorted(needs.provider_names))

    if not needs.action_refs and not needs.module_names:
        return ResolvedNeeds(providers=providers)

    graph = project.get_config_graph()
    modules = graph.get_modules(sorted(needs.module_names))
    action_types = project.get_action_types()

    # Actions referenced for their runtime outputs get executed, everything else
    # only needs resolving.
    to_execute: Dict[str, Any] = {}
    to_resolve: Dict[str, Any] = {}

    for ref in needs.action_refs:
        action = graph.get_action_by_ref(ref.reference)
        static_keys = get_static_output_keys(action_types, ref.kind, action.type)

        if action_ref_needs_execution(ref.key_path, ref.kind, static_keys):
            to_execute[action.key()] = action
            to_resolve.pop(action.key(), None)
        elif action.key() not in to_execute:
            to_resolve[action.key()] = action

    tasks: List[BaseTask] = [
        ExecuteTask(graph, action, action_types, project.root) for action in to_execute.values()
    ]
    tasks.extend(ResolveTask(graph, action, action_types, project.root) for action in to_resolve.values())

    if tasks:
        logger.debug(
            f"Resolving template dependencies: {len(to_execute)} action(s) to execute, "
            f"{len(to_resolve)} to resolve"
        )
        results = project.process_tasks(tasks, throw_on_error=True)
    else:
        results = GraphResults()

    actions: List[Union[ResolvedAction, ExecutedAction]] = []
    for task in tasks:
        result = results.get(task.key)
        if result is None:
            # throw_on_error guarantees a result for every submitted task
            raise InternalError(
                f"Task {task.key} was submitted but the scheduler returned no result for it",
                context={"task": task.key},
            )
        if result.executed_action is not None:
            actions.append(result.executed_action)
        elif result.resolved_action is not None:
            actions.append(result.resolved_action)

    return ResolvedNeeds(
        providers=providers,
        modules=modules,
        executed_or_resolved_actions=actions,
        graph_results=results,
    )


def expand_context_for(project: "Project", value: Any, base: ConfigContext) -> ConfigContext:
    """
    Scan a value, resolve what it references and return the expanded context.

    Args:
        project: Project to resolve against
        value: Value whose templates will be evaluated against the result
        base: Context to extend

    Returns:
        `base` extended with providers, modules, actions and runtime
    """
    needs = scan_template_references(value, base)
    resolved = resolve_template_needs(project, needs)
    return expand_context(base, resolved)
