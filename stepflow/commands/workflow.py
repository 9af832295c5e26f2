"""The `workflow` command: runs a Workflow's steps in sequence."""

import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from ..config.resources import WorkflowFileSpec
from ..exceptions import ConfigurationError, FilesystemError, OperationError, to_stepflow_error
from ..exec.step_executor import StepRunner
from ..template.expressions import deep_evaluate
from ..workflow.context import make_step_context_factory
from ..workflow.executor import StepCallbacks, execute_steps
from .base import Command, CommandParams, CommandResult, Parameter

logger = logging.getLogger(__name__)


def _step_end_event(index: int, started_at: datetime) -> Dict[str, Any]:
    return {
        "index": index,
        "duration_ms": int((datetime.now() - started_at).total_seconds() * 1000),
    }


def write_workflow_file(project, file: WorkflowFileSpec, secrets: Dict[str, str]):
    """
    Write a workflow file from inline data or a secret, relative to the project root.

    Raises:
        ConfigurationError: If the secret is not available
        FilesystemError: If the file can't be written
    """
    if file.data is not None:
        data = str(file.data)
    elif file.secret_name:
        if file.secret_name not in secrets:
            available = ", ".join(sorted(secrets)) or "none"
            raise ConfigurationError(
                f"File '{file.path}' requires secret '{file.secret_name}' which could not be found. "
                f"Available secrets: {available}",
                context={"path": file.path, "secret_name": file.secret_name},
            )
        data = secrets[file.secret_name]
    else:
        raise ConfigurationError(f"File '{file.path}' specifies neither data nor a secret name.")

    full_path = project.root.joinpath(*Path(file.path).parts)
    try:
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(data)
    except OSError as e:
        raise FilesystemError(f"Unable to write file '{file.path}': {e}", context={"path": file.path})


class WorkflowCommand(Command):
    name = "workflow"
    help = "Run a Workflow."
    description = (
        "Runs the commands and/or scripts defined in the workflow's steps, in sequence.\n\n"
        "Examples:\n\n    stepflow workflow my-workflow"
    )
    arguments = [
        Parameter("workflow", help="The name of the workflow to be run.", required=True),
    ]

    def action(self, params: CommandParams) -> CommandResult:
        project = params.project
        workflow = project.get_workflow_config(params.args["workflow"])
        events = project.events

        logger.info(f"Running workflow {workflow.name}")

        # Workflow-level env vars apply to everything the workflow runs
        for key, value in workflow.env_vars.items():
            os.environ[key] = str(value)

        events.emit("workflowRunning", {"name": workflow.name})

        base_context = project.get_project_context()
        secrets = project.get_secret_values()
        files = [
            WorkflowFileSpec(
                path=deep_evaluate(f.path, base_context),
                data=deep_evaluate(f.data, base_context) if f.data is not None else None,
                secret_name=f.secret_name,
            )
            for f in workflow.files
        ]
        for file in files:
            write_workflow_file(project, file, secrets)

        started_at = time.time()
        runner = StepRunner(project, inherited_opts=params.opts)

        callbacks = StepCallbacks(
            get_step_metadata=lambda index: {"workflow_step": {"index": index}},
            on_step_skipped=lambda index: events.emit("workflowStepSkipped", {"index": index}),
            on_step_processing=lambda index: events.emit("workflowStepProcessing", {"index": index}),
            on_step_complete=lambda index, at: events.emit("workflowStepComplete", _step_end_event(index, at)),
            on_step_error=lambda index, at: events.emit("workflowStepError", _step_end_event(index, at)),
        )

        steps_result = execute_steps(
            workflow.steps,
            make_step_context_factory(project, base_context),
            runner,
            callbacks=callbacks,
            secrets_manager=project.secrets_manager,
        )

        result = {"steps": {name: r.to_dict() for name, r in steps_result.steps.items()}}
        duration = time.time() - started_at

        if steps_result.has_errors:
            logger.error(f"Workflow {workflow.name} failed. Total time elapsed: {duration:.2f} Sec.")
            events.emit("workflowError", {"name": workflow.name})
            errors = [to_stepflow_error(e) for e in steps_result.all_errors()]
            if params.opts.get("output"):
                return CommandResult(result=result, errors=errors)
            noun = "errors" if len(errors) > 1 else "error"
            final_error = OperationError(
                f"workflow failed with {len(errors)} {noun}, see logs above for more info",
                context={"errors": [e.to_dict() for e in errors]},
            )
            return CommandResult(result=result, errors=[final_error])

        logger.info(f"Workflow {workflow.name} completed successfully. Total time elapsed: {duration:.2f} Sec.")
        events.emit("workflowComplete", {"name": workflow.name})
        return CommandResult(result=result)
