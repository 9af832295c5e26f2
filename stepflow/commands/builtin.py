"""Built-in commands: validate and get outputs."""

import logging

from ..outputs import resolve_project_outputs
from .base import Command, CommandParams, CommandResult

logger = logging.getLogger(__name__)


class ValidateCommand(Command):
    name = "validate"
    help = "Check the project configuration for errors."
    description = (
        "Loads the project, resolves all providers and builds the config graph, "
        "reporting any configuration errors."
    )

    def action(self, params: CommandParams) -> CommandResult:
        project = params.project
        providers = project.resolve_providers()
        graph = project.get_config_graph()
        actions = sorted(a.key() for a in graph.get_actions())
        logger.info(f"Project {project.name} is valid: {len(providers)} provider(s), {len(actions)} action(s)")
        return CommandResult(result={
            "project": project.name,
            "providers": sorted(providers),
            "actions": actions,
            "workflows": sorted(project.config.workflows),
        })


class GetOutputsCommand(Command):
    name = "get outputs"
    help = "Resolves and returns the outputs of the project."
    description = (
        "Resolves all the project outputs. Any actions the outputs reference for "
        "their runtime outputs are executed first."
    )

    def action(self, params: CommandParams) -> CommandResult:
        outputs = resolve_project_outputs(params.project)
        result = {o["name"]: o["value"] for o in outputs}
        for name, value in result.items():
            logger.info(f"{name}: {value}")
        return CommandResult(result=result)
