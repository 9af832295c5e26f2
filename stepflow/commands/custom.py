"""
Custom commands: user-defined commands declared with `kind: Command`.

A custom command runs a sequence of steps, or the legacy `exec` and/or
`command` fields. Its template context exposes the project context, `args`
(declared arguments plus `$all`, `$rest` and `--`), `opts`, and the command's
`variables`.
"""

import logging
import subprocess
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..config.resources import CommandResource
from ..exceptions import ConfigurationError, OperationError, to_stepflow_error
from ..exec.step_executor import StepRunner
from ..template.context import ConfigContext
from ..template.contexts import build_command_context
from ..template.expressions import deep_evaluate
from ..template.lazy import expand_context_for
from ..workflow.context import make_step_context_factory
from ..workflow.executor import execute_steps
from .base import GLOBAL_OPTIONS, Command, CommandParams, CommandResult
from .helpers import build_command_args, parse_cli_args, pick_command

if TYPE_CHECKING:
    from ..project import Project

logger = logging.getLogger(__name__)


class CustomCommandWrapper(Command):
    """Wraps a CommandResource so it can be invoked like any other command."""

    is_custom = True
    allow_undefined_arguments = True

    def __init__(self, spec: CommandResource):
        self.spec = spec
        self.name = spec.name
        self.help = spec.description_short
        self.description = spec.description_long
        self.arguments = list(spec.args)
        self.options = list(spec.opts)

    def build_context(self, params: CommandParams) -> ConfigContext:
        """
        Build the command's template context.

        Providers, modules and actions referenced by the variables or the
        legacy fields are resolved first; the variables are then rendered and
        exposed as `var`/`variables`, on top of the project variables.
        """
        project = params.project
        command_context = build_command_context(project.get_project_context(), params.args, params.opts)

        if self.spec.variables is not None and not isinstance(self.spec.variables, dict):
            raise ConfigurationError(
                f"The `variables` field in custom Command '{self.name}' must be a map of key/value pairs, "
                f"got {type(self.spec.variables).__name__}",
                context={"command": self.name},
            )

        templateable = {
            "exec": self.spec.exec,
            "command": self.spec.command,
            "variables": self.spec.variables,
        }
        expanded = expand_context_for(project, templateable, command_context)

        variables = dict(project.variables)
        variables.update(deep_evaluate(self.spec.variables or {}, expanded))
        return expanded.layer(var=variables, variables=variables)

    def action(self, params: CommandParams) -> CommandResult:
        project = params.project
        logger.info(f"Running custom command {self.name}")
        context = self.build_context(params)

        if self.spec.steps:
            steps_result = execute_steps(
                self.spec.steps,
                make_step_context_factory(project, context),
                StepRunner(project, inherited_opts=params.opts),
                secrets_manager=project.secrets_manager,
            )
            return CommandResult(
                result={"steps": {name: r.to_dict() for name, r in steps_result.steps.items()}},
                errors=[to_stepflow_error(e) for e in steps_result.all_errors()],
            )

        result: Dict[str, Any] = {}
        errors: List[Exception] = []

        if self.spec.exec:
            exec_result = self._run_exec(project, context)
            if exec_result.get("exit_code") != 0:
                return CommandResult(
                    exit_code=exec_result["exit_code"],
                    errors=[OperationError(
                        f"Command \"{' '.join(exec_result['command'])}\" exited with code {exec_result['exit_code']}",
                        context={"command": exec_result["command"], "exit_code": exec_result["exit_code"]},
                    )],
                )
            result["exec"] = exec_result

        if self.spec.command:
            command_result = self._run_command(project, context, params.opts)
            errors.extend(to_stepflow_error(e) for e in command_result["errors"])
            command_result["errors"] = [to_stepflow_error(e).to_dict() for e in command_result["errors"]]
            result["command"] = command_result

        return CommandResult(result=result, errors=errors)

    def _run_exec(self, project: "Project", context: ConfigContext) -> Dict[str, Any]:
        exec_spec = deep_evaluate(self.spec.exec, context)
        command = [str(c) for c in exec_spec["command"]]
        env = {k: str(v) for k, v in (exec_spec.get("env") or {}).items()}

        started_at = datetime.now()
        logger.debug(f"Running exec command: {' '.join(command)}")
        child_env = project.secrets_manager.resolve_secrets(
            step_env=env,
            extra_env=project.trace.get_propagation_env(),
        ).child_env
        try:
            res = subprocess.run(command, cwd=project.root, env=child_env)
        except (FileNotFoundError, PermissionError) as e:
            raise OperationError(f"Could not run command \"{' '.join(command)}\": {e}", wrapped=e)

        return {
            "command": command,
            "started_at": started_at.isoformat(),
            "completed_at": datetime.now().isoformat(),
            "exit_code": res.returncode,
        }

    def _run_command(self, project: "Project", context: ConfigContext,
                     opts: Dict[str, Any]) -> Dict[str, Any]:
        from .registry import get_all_commands

        argv = [str(a) for a in deep_evaluate(self.spec.command, context) if a not in (None, "")]
        started_at = datetime.now()
        logger.debug(f"Running command: {' '.join(argv)}")

        command, rest = pick_command(get_all_commands(project), argv)
        parsed = parse_cli_args(command, rest, opts)
        command_result = command.action(CommandParams(
            project=project,
            args=build_command_args(parsed, rest),
            opts=parsed.opts,
        ))

        return {
            "command": argv,
            "started_at": started_at.isoformat(),
            "completed_at": datetime.now().isoformat(),
            "result": command_result.result,
            "errors": list(command_result.errors),
        }


def get_custom_commands(project: "Project", builtin_names: Optional[List[str]] = None) -> List[CustomCommandWrapper]:
    """
    Wrap the project's custom command resources.

    Commands whose name collides with a built-in command are ignored with a
    warning.
    """
    builtin_names = set(builtin_names or [])
    commands = []
    for resource in project.get_command_resources():
        if resource.name in builtin_names or resource.name in GLOBAL_OPTIONS:
            logger.warning(
                f"Ignoring custom command {resource.name} because it conflicts with a built-in command"
            )
            continue
        commands.append(CustomCommandWrapper(resource))
    return commands
