"""Project outputs resolution."""

import logging
from typing import TYPE_CHECKING, Any, List, Dict

from .template.contexts import expand_context
from .template.expressions import deep_evaluate
from .template.lazy import resolve_template_needs
from .template.scanner import scan_template_references

if TYPE_CHECKING:
    from .project import Project

logger = logging.getLogger(__name__)


def resolve_project_outputs(project: "Project") -> List[Dict[str, Any]]:
    """
    Resolve all declared project outputs.

    Providers, modules and actions are only resolved (or executed) if the
    output values reference them.

    Args:
        project: Project whose outputs to resolve

    Returns:
        List of {"name": ..., "value": ...} in declaration order
    """
    raw_outputs = [{"name": o.name, "value": o.value} for o in project.config.outputs]
    if not raw_outputs:
        return []

    base = project.get_project_context()
    needs = scan_template_references(raw_outputs, base)

    if needs.has_references:
        logger.debug("Project outputs reference the action graph, resolving dependencies")
        context = expand_context(base, resolve_template_needs(project, needs))
    else:
        context = expand_context(base, None)

    return deep_evaluate(raw_outputs, context)
