"""Tests for the step sequence executor."""

import os
from unittest.mock import Mock, call, patch

import pytest

from stepflow.config.resources import ProjectConfig
from stepflow.exceptions import ConfigurationError, OperationError, ScriptError, TemplateReferenceError
from stepflow.exec.step_executor import RunOutcome, StepRunner
from stepflow.project import Project
from stepflow.template.context import ConfigContext, build_step_references
from stepflow.workflow.context import make_step_context_factory
from stepflow.workflow.executor import StepCallbacks, execute_steps, resolve_step_templates
from stepflow.workflow.steps import ExecSpec, StepModifier, StepSpec


def run(project, steps, callbacks=None):
    return execute_steps(
        steps,
        make_step_context_factory(project, project.get_project_context()),
        StepRunner(project),
        callbacks=callbacks,
        secrets_manager=project.secrets_manager,
    )


def simple_factory(**namespaces):
    """Context factory exposing fixed namespaces plus the steps namespace."""

    def factory(step, step_name, all_step_names, resolved_steps):
        return ConfigContext(namespaces).layer(
            steps=build_step_references(step_name, all_step_names, resolved_steps),
        )

    return factory


class TestSequenceScenarios:
    """End-to-end sequences with real steps."""

    def test_exec_steps_are_numbered(self, bare_project):
        result = run(bare_project, [
            StepSpec(name="step-one", exec=ExecSpec(["echo", "hello"])),
            StepSpec(name="step-two", exec=ExecSpec(["echo", "world"])),
        ])

        assert not result.has_errors
        assert result.steps["step-one"].number == 1
        assert result.steps["step-two"].number == 2

    def test_skipped_step(self, bare_project):
        result = run(bare_project, [
            StepSpec(name="skipped", skip=True, exec=ExecSpec(["echo", "x"])),
            StepSpec(name="runs", exec=ExecSpec(["echo", "y"])),
        ])

        assert result.steps["skipped"].log == ""
        assert result.steps["skipped"].outputs == {}
        assert result.steps["runs"].outputs
        assert result.steps["runs"].number == 2

    def test_outputs_of_previous_steps(self, bare_project, requires_bash):
        result = run(bare_project, [
            StepSpec(name="producer", script="echo step-one-output"),
            StepSpec(name="consumer", script="echo received: ${steps.producer.outputs.stdout}"),
        ])

        assert "received: step-one-output" in result.steps["consumer"].outputs["stdout"]

    def test_unnamed_steps(self, bare_project, requires_bash):
        result = run(bare_project, [StepSpec(script="echo one"), StepSpec(script="echo two")])

        assert list(result.steps) == ["step-1", "step-2"]
        assert result.steps["step-2"].outputs["stdout"] == "two"

    def test_step_log_is_captured(self, bare_project, requires_bash):
        result = run(bare_project, [StepSpec(name="say", script="echo hello")])
        assert "hello" in result.steps["say"].log

    def test_step_numbers_match_positions(self, bare_project, requires_bash):
        result = run(bare_project, [
            StepSpec(script="echo a"),
            StepSpec(script="echo b", when=StepModifier.NEVER),
            StepSpec(script="echo c"),
        ])

        assert len(result.steps) == 2
        for index, name in ((0, "step-1"), (2, "step-3")):
            assert result.steps[name].number == index + 1

    def test_project_variables_in_templates(self, tmp_path, requires_bash):
        project = Project(tmp_path, ProjectConfig(name="demo", variables={"who": "world"}))
        result = run(project, [StepSpec(script="echo ${project.name} ${var.who}")])
        assert result.steps["step-1"].outputs["stdout"] == "demo world"

    def test_outputs_are_masked(self, tmp_path, requires_bash):
        with patch.dict(os.environ, {"DB_PASSWORD": "hunter2"}):
            project = Project(tmp_path, ProjectConfig(name="test", secrets=["DB_PASSWORD"]))
            result = run(project, [StepSpec(script="echo ${secrets.DB_PASSWORD}")])

        assert result.steps["step-1"].outputs["stdout"] == "***"
        assert "hunter2" not in result.steps["step-1"].log


class TestStepReferences:
    """References to other steps fail fast and end the sequence."""

    def test_forward_reference(self, bare_project, requires_bash):
        result = run(bare_project, [
            StepSpec(name="first", script="echo ${steps.second.outputs.stdout}"),
            StepSpec(name="second", script="echo hi"),
            StepSpec(name="cleanup", script="echo bye", when=StepModifier.ALWAYS),
        ])

        assert result.steps == {}
        assert list(result.errors) == [0]
        error = result.errors[0][0]
        assert isinstance(error, TemplateReferenceError)
        assert "later in the execution order" in str(error)

    def test_self_reference(self, bare_project, requires_bash):
        result = run(bare_project, [
            StepSpec(name="first", script="echo one"),
            StepSpec(name="second", script="echo ${steps.second.log}"),
        ])

        assert list(result.steps) == ["first"]
        assert "references itself" in str(result.errors[1][0])


class TestFailureHandling:
    """Errors returned by steps versus exceptions raised while running them."""

    def test_failure_drops_later_steps_and_runs_handlers(self, bare_project, requires_bash):
        result = run(bare_project, [
            StepSpec(name="fails", script="exit 2"),
            StepSpec(name="dropped", script="echo no"),
            StepSpec(name="handler", script="echo handled", when=StepModifier.ON_ERROR),
            StepSpec(name="finally", script="echo done", when=StepModifier.ALWAYS),
        ])

        assert list(result.steps) == ["fails", "handler", "finally"]
        assert result.steps["fails"].outputs["exit_code"] == 2
        assert list(result.errors) == [0]
        assert isinstance(result.errors[0][0], ScriptError)
        assert result.steps["handler"].outputs["stdout"] == "handled"

    def test_continue_on_error(self, bare_project, requires_bash):
        result = run(bare_project, [
            StepSpec(name="flaky", script="exit 1", continue_on_error=True),
            StepSpec(name="next", script="echo still running"),
            StepSpec(name="handler", script="echo no", when=StepModifier.ON_ERROR),
        ])

        assert not result.has_errors
        assert list(result.steps) == ["flaky", "next"]

    def test_exception_ends_sequence(self):
        runner = Mock()
        runner.run.side_effect = [RunOutcome(outputs={"n": 1}), RuntimeError("crashed")]

        result = execute_steps(
            [
                StepSpec(name="a", script="x"),
                StepSpec(name="b", script="y"),
                StepSpec(name="c", script="z", when=StepModifier.ALWAYS),
            ],
            simple_factory(),
            runner,
        )

        assert runner.run.call_count == 2
        assert list(result.steps) == ["a"]
        error = result.errors[1][0]
        assert isinstance(error, OperationError)
        assert "RuntimeError: crashed" in str(error)

    def test_template_error_ends_sequence(self):
        runner = Mock()
        result = execute_steps([StepSpec(script="echo ${var.missing}")], simple_factory(var={}), runner)

        runner.run.assert_not_called()
        assert "Could not find key missing under var" in str(result.errors[0][0])

    def test_invalid_steps_fail_before_anything_runs(self):
        runner = Mock()
        steps = [
            StepSpec(script="echo ok"),
            StepSpec(script="echo", exec=ExecSpec(["true"])),
        ]

        with pytest.raises(ConfigurationError):
            execute_steps(steps, simple_factory(), runner)
        runner.run.assert_not_called()


class TestSkipAndCallbacks:
    """Explicit skips and progress callbacks."""

    def setup_method(self):
        self.runner = Mock()
        self.runner.run.return_value = RunOutcome(outputs={"ok": True})

    def test_skip_template(self):
        result = execute_steps(
            [StepSpec(name="maybe", script="x", skip="${var.skip_it}"), StepSpec(name="other", script="y")],
            simple_factory(var={"skip_it": True}),
            self.runner,
        )

        assert result.steps["maybe"].outputs == {}
        assert result.steps["other"].outputs == {"ok": True}
        assert self.runner.run.call_count == 1

    def test_skip_template_false_string(self):
        execute_steps(
            [StepSpec(script="x", skip="${var.flag}")],
            simple_factory(var={"flag": "false"}),
            self.runner,
        )
        assert self.runner.run.call_count == 1

    def test_callbacks(self):
        callbacks = StepCallbacks(
            on_step_skipped=Mock(),
            on_step_processing=Mock(),
            on_step_complete=Mock(),
            on_step_error=Mock(),
        )
        self.runner.run.side_effect = [
            RunOutcome(outputs={}),
            RunOutcome(outputs={}, errors=[OperationError("bad")]),
        ]

        execute_steps(
            [
                StepSpec(script="a", skip=True),
                StepSpec(script="b"),
                StepSpec(script="c"),
                StepSpec(script="d", when=StepModifier.ON_SUCCESS),
            ],
            simple_factory(),
            self.runner,
            callbacks=callbacks,
        )

        callbacks.on_step_skipped.assert_called_once_with(0)
        assert callbacks.on_step_processing.call_args_list == [call(1), call(2)]
        assert callbacks.on_step_complete.call_args[0][0] == 1
        assert callbacks.on_step_error.call_args[0][0] == 2

    def test_skip_template_context_only_sees_skip_field(self):
        factory = Mock(return_value=ConfigContext())

        execute_steps([StepSpec(name="maybe", script="echo ${var.x}", skip="${false}")], factory, self.runner)

        skip_step, run_step = [c.kwargs["step"] for c in factory.call_args_list]
        assert skip_step.script is None
        assert skip_step.template_fields() == {"env_vars": {}, "skip": "${false}"}
        assert run_step.script == "echo ${var.x}"

    def test_skipped_step_does_not_execute_referenced_actions(self, make_project, tmp_path):
        """Actions referenced only by a skipped step's operation are never executed."""
        project = make_project({"kind": "Build", "name": "api", "spec": {"command": ["touch", "built.txt"]}})

        result = run(project, [
            StepSpec(name="maybe", skip="${true}", script="echo ${actions.build.api.outputs.stdout}"),
        ])

        assert result.steps["maybe"].log == ""
        assert not result.has_errors
        assert not (tmp_path / "built.txt").exists()

    @pytest.mark.usefixtures("requires_bash")
    def test_step_that_runs_executes_referenced_actions(self, make_project, tmp_path):
        project = make_project({"kind": "Build", "name": "api", "spec": {"command": ["touch", "built.txt"]}})

        result = run(project, [
            StepSpec(name="maybe", skip="${false}", script="echo built ${actions.build.api.outputs.exit_code}"),
        ])

        assert result.steps["maybe"].outputs["stdout"] == "built 0"
        assert (tmp_path / "built.txt").exists()

    def test_context_factory_arguments(self):
        factory = Mock(return_value=ConfigContext())

        execute_steps([StepSpec(script="a"), StepSpec(name="second", script="b")], factory, self.runner)

        last = factory.call_args.kwargs
        assert last["step_name"] == "second"
        assert last["all_step_names"] == ["step-1", "second"]
        assert list(last["resolved_steps"]) == ["step-1"]


class TestResolveStepTemplates:
    """Template resolution produces a new step."""

    def test_nested_command_arguments(self):
        context = ConfigContext({"args": {"$rest": ["--force", "x"], "empty": ""}})
        step = StepSpec(nested_command=["deploy", "${args.$rest}", "${args.empty}"])

        resolved = resolve_step_templates(step, context)

        assert resolved.nested_command == ["deploy", "--force", "x"]
        assert step.nested_command == ["deploy", "${args.$rest}", "${args.empty}"]

    def test_exec_and_env(self):
        context = ConfigContext({"var": {"port": 8080, "name": "api"}})
        step = StepSpec(
            exec=ExecSpec(["serve", "--port", "${var.port}"], env={"NAME": "${var.name}"}),
            env_vars={"PORT": "${var.port}"},
        )

        resolved = resolve_step_templates(step, context)

        assert resolved.exec.command == ["serve", "--port", "8080"]
        assert resolved.exec.env == {"NAME": "api"}
        assert resolved.env_vars == {"PORT": "8080"}
