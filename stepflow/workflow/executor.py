"""
Step sequence executor.

Runs the steps of a workflow or custom command strictly in order. Per step:
drop check, explicit skip, template resolution against a per-step context,
dispatch to the step runner, then result and error bookkeeping.

Two failure paths:
- an exception while building the context, resolving templates or dispatching
  is recorded for the step and ends the sequence (no further steps run)
- errors returned by the runner are recorded for the step (unless
  continue_on_error) and the sequence continues, leaving later steps to the
  drop rules
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

from ..exceptions import ScriptError, StepflowError, to_stepflow_error
from ..logs import capture_step_log
from ..security.secrets import SecretsManager
from ..template.context import ConfigContext
from ..template.expressions import deep_evaluate, stringify
from .conditions import should_be_dropped
from .steps import ExecSpec, SequenceResult, StepResult, StepSpec, get_step_name

if TYPE_CHECKING:
    from ..exec.step_executor import StepRunner

logger = logging.getLogger(__name__)

# Called as context_factory(step=..., step_name=..., all_step_names=..., resolved_steps=...)
ContextFactory = Callable[..., ConfigContext]


@dataclass
class StepCallbacks:
    """Optional hooks fired as steps progress. Indices are zero-based."""
    on_step_skipped: Optional[Callable[[int], None]] = None
    on_step_processing: Optional[Callable[[int], None]] = None
    on_step_complete: Optional[Callable[[int, datetime], None]] = None
    on_step_error: Optional[Callable[[int, datetime], None]] = None
    get_step_metadata: Optional[Callable[[int], Dict[str, Any]]] = None


def formatted_step_description(index: int, count: int, description: Optional[str] = None) -> str:
    text = f"{index + 1}/{count}"
    if description:
        text += f" ({description})"
    return text


def _as_args(values: Any) -> List[str]:
    """Flatten one level of lists and drop empty arguments."""
    args = []
    for value in values:
        items = value if isinstance(value, list) else [value]
        for item in items:
            if item is None or item is False or item == "":
                continue
            args.append(stringify(item))
    return args


def _as_env(values: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): stringify(v) for k, v in values.items()}


def resolve_step_templates(step: StepSpec, context: ConfigContext) -> StepSpec:
    """
    Evaluate the templates in a step's operation fields and env vars.

    Returns a new StepSpec; the given one is not modified. Empty nested
    command arguments are dropped.
    """
    changes: Dict[str, Any] = {}
    if step.nested_command is not None:
        changes["nested_command"] = _as_args(deep_evaluate(step.nested_command, context))
    if step.exec is not None:
        changes["exec"] = ExecSpec(
            command=_as_args(deep_evaluate(step.exec.command, context)),
            env=_as_env(deep_evaluate(step.exec.env, context)),
        )
    if step.script is not None:
        changes["script"] = stringify(deep_evaluate(step.script, context))
    if step.env_vars:
        changes["env_vars"] = _as_env(deep_evaluate(step.env_vars, context))
    return replace(step, **changes)


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no", "null")
    return bool(value)


def log_step_errors(errors: Sequence[Exception], index: int, count: int,
                    continue_on_error: bool, description: Optional[str] = None):
    """Log a step's errors, as warnings if the step is allowed to fail."""
    log = logger.warning if continue_on_error else logger.error
    message = f"An error occurred while running step {formatted_step_description(index, count, description)}."
    if continue_on_error:
        message += (" Because continue_on_error is true, the sequence will continue"
                    " as if the step succeeded.")
    log(message)

    for error in errors:
        if isinstance(error, ScriptError):
            log(f"Script exited with code {error.exit_code}. This is the stderr output:\n"
                f"{error.stderr or error.output}")
        else:
            if isinstance(error, StepflowError):
                logger.debug(f"Error details: {error.to_dict()}")
            log(str(error))


class StepSequenceExecutor:
    """Runs a sequence of steps one at a time."""

    def __init__(self, runner: "StepRunner", secrets_manager: Optional[SecretsManager] = None):
        """
        Initialize the executor.

        Args:
            runner: Runs individual steps
            secrets_manager: Masks secrets in captured step logs
        """
        self.runner = runner
        self.secrets_manager = secrets_manager

    def execute(self, steps: Sequence[StepSpec], context_factory: ContextFactory,
                callbacks: Optional[StepCallbacks] = None) -> SequenceResult:
        """
        Execute steps in order.

        Args:
            steps: Steps to run
            context_factory: Builds the template context for a step
            callbacks: Optional progress hooks

        Returns:
            SequenceResult with results by step name and errors by step index

        Raises:
            ConfigurationError: If any step is malformed (nothing runs in that case)
        """
        callbacks = callbacks or StepCallbacks()
        steps = list(steps)
        for index, step in enumerate(steps):
            step.validate(index)

        count = len(steps)
        all_step_names = [get_step_name(i, s.name) for i, s in enumerate(steps)]
        result = SequenceResult()

        for index, step in enumerate(steps):
            if should_be_dropped(index, steps, result.errors):
                continue

            step_name = all_step_names[index]
            metadata = callbacks.get_step_metadata(index) if callbacks.get_step_metadata else None
            logger.info(
                f"Running step {formatted_step_description(index, count, step.description)}",
                extra={"step_metadata": metadata} if metadata else None,
            )

            def build_context(step_view=step, step_name=step_name):
                return context_factory(
                    step=step_view,
                    step_name=step_name,
                    all_step_names=all_step_names,
                    resolved_steps=dict(result.steps),
                )

            started_at = datetime.now()

            try:
                skip = step.skip
                if isinstance(skip, str):
                    skip_context = build_context(step.skip_condition())
                    skip = _is_truthy(deep_evaluate(skip, skip_context))
            except Exception as e:
                self._abort(e, index, count, step, started_at, result, callbacks)
                break

            if skip:
                logger.info(f"Skipping step {index + 1}/{count}")
                result.steps[step_name] = StepResult(number=index + 1, outputs={}, log="")
                if callbacks.on_step_skipped:
                    callbacks.on_step_skipped(index)
                continue

            if callbacks.on_step_processing:
                callbacks.on_step_processing(index)

            start = time.time()
            try:
                with capture_step_log(self.secrets_manager) as captured:
                    context = build_context()
                    resolved_step = resolve_step_templates(step, context)
                    outcome = self.runner.run(resolved_step)
            except Exception as e:
                self._abort(e, index, count, step, started_at, result, callbacks)
                break

            outputs = outcome.outputs
            if self.secrets_manager is not None:
                outputs = self.secrets_manager.mask_dict(outputs)
            result.steps[step_name] = StepResult(
                number=index + 1,
                outputs=outputs,
                log=captured.get_text(),
            )

            if outcome.errors:
                log_step_errors(outcome.errors, index, count, step.continue_on_error, step.description)
                if callbacks.on_step_error:
                    callbacks.on_step_error(index, started_at)
                if not step.continue_on_error:
                    result.errors[index] = list(outcome.errors)
                continue

            if callbacks.on_step_complete:
                callbacks.on_step_complete(index, started_at)
            logger.info(f"Step {index + 1}/{count} completed in {time.time() - start:.2f}s")

        return result

    def _abort(self, error: Exception, index: int, count: int, step: StepSpec,
               started_at: datetime, result: SequenceResult, callbacks: StepCallbacks):
        err = to_stepflow_error(error)
        if callbacks.on_step_error:
            callbacks.on_step_error(index, started_at)
        result.errors[index] = [err]
        log_step_errors([err], index, count, False, step.description)


def execute_steps(steps: Sequence[StepSpec], context_factory: ContextFactory, runner: "StepRunner",
                  callbacks: Optional[StepCallbacks] = None,
                  secrets_manager: Optional[SecretsManager] = None) -> SequenceResult:
    """Run a sequence of steps. See StepSequenceExecutor.execute."""
    return StepSequenceExecutor(runner, secrets_manager).execute(steps, context_factory, callbacks)
