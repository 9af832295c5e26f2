"""
Step runner: runs a single, already templated step.

Three operations, one result shape:
- nested command: run another stepflow command in-process
- exec: run an external process with inherited stdio
- script: run an inline bash script and capture its output
"""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from ..commands.base import Command, CommandParams
from ..commands.helpers import build_command_args, parse_cli_args, pick_command
from ..exceptions import ConfigurationError, OperationError, ScriptError, to_stepflow_error
from ..workflow.steps import StepSpec

if TYPE_CHECKING:
    from ..project import Project

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Result of running one step."""
    outputs: Dict[str, Any] = field(default_factory=dict)
    exit_code: Optional[int] = None
    errors: List[Exception] = field(default_factory=list)
    duration_ms: int = 0


class StepRunner:
    """
    Runs steps for a sequence executor.
    Handles command lookup, environment setup, and output capture.
    """

    def __init__(self, project: "Project", inherited_opts: Optional[Dict[str, Any]] = None,
                 commands: Optional[Sequence[Command]] = None):
        """
        Initialize step runner.

        Args:
            project: Project the steps belong to
            inherited_opts: Options of the invoking command; nested commands
                inherit the global ones they don't set themselves
            commands: Commands available to nested command steps
                (default: built-in and custom commands of the project)
        """
        self.project = project
        self.inherited_opts = dict(inherited_opts or {})
        self._commands = list(commands) if commands is not None else None

    @property
    def commands(self) -> List[Command]:
        if self._commands is None:
            from ..commands.registry import get_all_commands
            self._commands = get_all_commands(self.project)
        return self._commands

    def run(self, step: StepSpec) -> RunOutcome:
        """
        Dispatch a step to the runner for its operation.

        Raises:
            ConfigurationError: If the step has no operation or names an unknown command
            OperationError: If an external program can't be started
        """
        start = time.time()
        if step.nested_command is not None:
            outcome = self.run_nested_command(step)
        elif step.exec is not None:
            outcome = self.run_external_exec(step)
        elif step.script is not None:
            outcome = self.run_script(step)
        else:
            raise ConfigurationError(
                f"Step must specify a command, exec or script. Got: {step!r}",
            )
        outcome.duration_ms = int((time.time() - start) * 1000)
        return outcome

    def run_nested_command(self, step: StepSpec) -> RunOutcome:
        """Run another command in-process and return its result as the step outputs."""
        argv = list(step.nested_command)
        command, rest = pick_command(self.commands, argv)
        parsed = parse_cli_args(command, rest, self.inherited_opts)
        args = build_command_args(parsed, rest)

        logger.debug(f"Running command: {' '.join(argv)}")
        result = command.action(CommandParams(project=self.project, args=args, opts=parsed.opts))

        return RunOutcome(
            outputs=dict(result.result or {}),
            exit_code=result.exit_code,
            errors=[to_stepflow_error(e) for e in result.errors],
        )

    def _child_env(self, env: Optional[Dict[str, Any]]) -> Dict[str, str]:
        secrets_context = self.project.secrets_manager.resolve_secrets(
            step_env={k: str(v) for k, v in (env or {}).items()},
            extra_env=self.project.trace.get_propagation_env(),
        )
        return secrets_context.child_env

    def run_external_exec(self, step: StepSpec) -> RunOutcome:
        """
        Run an external program with inherited stdio.

        A non-zero exit code is reported as an error in the outcome, not raised.
        """
        command = [str(c) for c in step.exec.command]

        logger.debug(f"Running exec command: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                cwd=self.project.root,
                env=self._child_env(step.exec.env),
            )
        except (FileNotFoundError, PermissionError) as e:
            raise OperationError(
                f"Could not run command \"{' '.join(command)}\": {e}",
                context={"command": command},
                wrapped=e,
            )

        outputs = {"command": command, "exit_code": result.returncode}
        errors: List[Exception] = []
        if result.returncode != 0:
            errors.append(OperationError(
                f"Command \"{' '.join(command)}\" exited with code {result.returncode}",
                context={"command": command, "exit_code": result.returncode},
            ))
        return RunOutcome(outputs=outputs, exit_code=result.returncode, errors=errors)

    def run_script(self, step: StepSpec) -> RunOutcome:
        """
        Run an inline script with `bash -s`, capturing stdout and stderr.

        Stdout lines are logged at INFO so they end up in the step log. A
        non-zero exit code is reported as a ScriptError in the outcome.
        """
        secrets = self.project.secrets_manager
        try:
            result = subprocess.run(
                ["bash", "-s"],
                input=step.script,
                cwd=self.project.root,
                env=self._child_env(step.env_vars),
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise OperationError(f"Could not run script, bash is not available: {e}", wrapped=e)

        stdout = secrets.mask_text(result.stdout.rstrip("\n"))
        stderr = secrets.mask_text(result.stderr.rstrip("\n"))

        for line in stdout.splitlines():
            logger.info(line)

        outputs = {
            "exit_code": result.returncode,
            "stdout": stdout,
            "stderr": stderr,
        }
        errors: List[Exception] = []
        if result.returncode != 0:
            errors.append(ScriptError(
                f"Script exited with code {result.returncode}. This is the stderr output:\n{stderr}",
                exit_code=result.returncode,
                stdout=stdout,
                stderr=stderr,
                output="\n".join(s for s in (stdout, stderr) if s),
            ))
        return RunOutcome(outputs=outputs, exit_code=result.returncode, errors=errors)
