"""Per-step template contexts for workflows and custom commands."""

import logging
from typing import TYPE_CHECKING, Dict, List

from ..template.context import ConfigContext, build_step_references
from ..template.lazy import expand_context_for
from .steps import StepResult, StepSpec

if TYPE_CHECKING:
    from ..project import Project

logger = logging.getLogger(__name__)


def make_step_context_factory(project: "Project", base: ConfigContext):
    """
    Return a context factory for the sequence executor.

    Each step's context is `base`, plus whatever providers, modules and
    actions that step's own fields reference (resolved just before it runs),
    plus the `steps` namespace with the results of earlier steps.
    """

    def create_step_context(step: StepSpec, step_name: str, all_step_names: List[str],
                            resolved_steps: Dict[str, StepResult]) -> ConfigContext:
        expanded = expand_context_for(project, step.template_fields(), base)
        return expanded.layer(steps=build_step_references(step_name, all_step_names, resolved_steps))

    return create_step_context
