"""Tests for the workflow command and the event bus."""

import logging
import os
from unittest.mock import Mock, patch

import pytest

from stepflow.commands.base import CommandParams
from stepflow.commands.workflow import WorkflowCommand
from stepflow.events import EventBus
from stepflow.exceptions import ConfigurationError, OperationError, ScriptError


def workflow_doc(name, steps, **fields):
    doc = {"kind": "Workflow", "name": name, "steps": steps}
    doc.update(fields)
    return doc


def run_workflow(project, name, **opts):
    return WorkflowCommand().action(CommandParams(
        project=project,
        args={"workflow": name},
        opts=opts,
    ))


@pytest.mark.usefixtures("requires_bash")
class TestWorkflowCommand:
    """Running workflows."""

    def test_success(self, make_project):
        project = make_project(workflow_doc("build", [
            {"name": "compile", "script": "echo compiled"},
            {"name": "report", "script": "echo ${steps.compile.outputs.stdout} ok"},
        ]))

        result = run_workflow(project, "build")

        assert result.errors == []
        assert result.result["steps"]["compile"] == {
            "number": 1,
            "outputs": {"exit_code": 0, "stdout": "compiled", "stderr": ""},
            "log": "compiled",
        }
        assert result.result["steps"]["report"]["outputs"]["stdout"] == "compiled ok"

    def test_events(self, make_project):
        project = make_project(workflow_doc("build", [
            {"script": "echo skipped", "skip": True},
            {"script": "echo one"},
        ]))
        events = []
        project.events.on_any(lambda name, payload: events.append((name, payload)))

        run_workflow(project, "build")

        names = [name for name, _ in events]
        assert names == [
            "workflowRunning",
            "workflowStepSkipped",
            "workflowStepProcessing",
            "workflowStepComplete",
            "workflowComplete",
        ]
        assert events[0][1] == {"name": "build"}
        assert events[1][1] == {"index": 0}
        assert events[3][1]["index"] == 1
        assert events[3][1]["duration_ms"] >= 0

    def test_failure_is_aggregated(self, make_project):
        project = make_project(workflow_doc("build", [
            {"name": "fails", "script": "exit 1"},
            {"name": "also-fails", "script": "exit 1", "when": "always"},
        ]))
        events = []
        project.events.on_any(lambda name, payload: events.append(name))

        result = run_workflow(project, "build")

        assert len(result.errors) == 1
        error = result.errors[0]
        assert isinstance(error, OperationError)
        assert str(error) == "workflow failed with 2 errors, see logs above for more info"
        assert len(error.context["errors"]) == 2
        assert "workflowStepError" in events
        assert events[-1] == "workflowError"
        assert list(result.result["steps"]) == ["fails", "also-fails"]

    def test_failure_with_output_format_returns_step_errors(self, make_project):
        project = make_project(workflow_doc("build", [{"script": "exit 1"}]))

        result = run_workflow(project, "build", output="json")

        assert len(result.errors) == 1
        assert isinstance(result.errors[0], ScriptError)

    def test_env_vars(self, make_project):
        project = make_project(workflow_doc(
            "build",
            [{"script": 'echo "$WORKFLOW_VAR"'}],
            env_vars={"WORKFLOW_VAR": "from-workflow"},
        ))

        with patch.dict(os.environ):
            result = run_workflow(project, "build")

        assert result.result["steps"]["step-1"]["outputs"]["stdout"] == "from-workflow"

    def test_files(self, make_project, tmp_path):
        project = make_project(workflow_doc(
            "build",
            [{"script": "cat config/app.txt config/token.txt"}],
            files=[
                {"path": "config/app.txt", "data": "app=${project.name}\n"},
                {"path": "config/token.txt", "secret_name": "APP_TOKEN"},
            ],
        ), {"kind": "Project", "name": "test", "secrets": ["APP_TOKEN"]})

        with patch.dict(os.environ, {"APP_TOKEN": "abc123"}):
            result = run_workflow(project, "build")

        assert (tmp_path / "config" / "app.txt").read_text() == "app=test\n"
        assert (tmp_path / "config" / "token.txt").read_text() == "abc123"
        assert result.result["steps"]["step-1"]["outputs"]["stdout"] == "app=test\n***"

    def test_missing_secret_file(self, make_project):
        project = make_project(
            {"kind": "Project", "name": "test", "secrets": ["NOT_SET_ANYWHERE"]},
            workflow_doc("build", [{"script": "true"}],
                         files=[{"path": "token.txt", "secret_name": "NOT_SET_ANYWHERE"}]),
        )

        with patch.dict(os.environ):
            os.environ.pop("NOT_SET_ANYWHERE", None)
            with pytest.raises(ConfigurationError) as exc_info:
                run_workflow(project, "build")
        assert "requires secret 'NOT_SET_ANYWHERE'" in str(exc_info.value)

    def test_unknown_workflow(self, make_project):
        project = make_project(workflow_doc("build", [{"script": "true"}]))

        with pytest.raises(ConfigurationError) as exc_info:
            run_workflow(project, "deploy")
        assert "Available workflows: build" in str(exc_info.value)

    def test_nested_workflow(self, make_project):
        project = make_project(
            workflow_doc("inner", [{"script": "echo from-inner"}]),
            workflow_doc("outer", [{"name": "run-inner", "command": ["workflow", "inner"]}]),
        )

        result = run_workflow(project, "outer")

        inner_steps = result.result["steps"]["run-inner"]["outputs"]["steps"]
        assert inner_steps["step-1"]["outputs"]["stdout"] == "from-inner"


class TestEventBus:
    """Synchronous publish/subscribe."""

    def test_listeners_by_name(self):
        bus = EventBus()
        listener = Mock()
        bus.on("workflowRunning", listener)

        bus.emit("workflowRunning", {"name": "x"})
        bus.emit("workflowComplete", {"name": "x"})

        listener.assert_called_once_with("workflowRunning", {"name": "x"})

    def test_failing_listener_is_logged(self, caplog):
        bus = EventBus()
        after = Mock()
        bus.on("event", Mock(side_effect=RuntimeError("listener broke")))
        bus.on("event", after)

        with caplog.at_level(logging.WARNING):
            bus.emit("event", {})

        after.assert_called_once()
        assert "listener broke" in caplog.text
