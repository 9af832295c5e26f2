"""Tests for the task scheduler and the resolve/execute tasks."""

import threading
import time
from unittest.mock import Mock

import pytest

from stepflow.exceptions import ConfigurationError, OperationError, ResolutionError
from stepflow.graph.actions import default_action_types
from stepflow.graph.config_graph import ConfigGraph
from stepflow.graph.tasks import ExecuteTask, ResolveTask, TaskScheduler
from stepflow.graph.types import ActionConfig, ActionKind, ActionReference


class FakeTask:
    """Minimal task: records when it runs and returns its name."""

    def __init__(self, name, type="resolve", deps=(), fn=None):
        self.name = name
        self.type = type
        self.deps = list(deps)
        self.fn = fn
        self.action = Mock()
        self.action.key.return_value = name

    @property
    def key(self):
        return f"{self.type}.{self.name}"

    def get_dependencies(self):
        return self.deps

    def process(self, dependency_results):
        if self.fn:
            return self.fn(dependency_results)
        return {"value": self.name}


class TestTaskScheduler:
    """Dependency ordering, failure handling and concurrency limits."""

    def test_empty_batch(self):
        results = TaskScheduler().process([])
        assert len(results) == 0

    def test_dependencies_run_first(self):
        order = []

        def record(name):
            def fn(dependency_results):
                order.append(name)
                return {"deps": sorted(dependency_results)}
            return fn

        a = FakeTask("a", fn=record("a"))
        b = FakeTask("b", deps=[a], fn=record("b"))
        c = FakeTask("c", deps=[b], fn=record("c"))

        results = TaskScheduler().process([c])

        assert order == ["a", "b", "c"]
        assert results.get("resolve.c").outputs == {"deps": ["resolve.b"]}
        assert len(results) == 3

    def test_shared_dependency_runs_once(self):
        calls = []
        lock = threading.Lock()

        def shared(dependency_results):
            with lock:
                calls.append(1)
            return {}

        first = FakeTask("first", deps=[FakeTask("shared", fn=shared)])
        second = FakeTask("second", deps=[FakeTask("shared", fn=shared)])

        TaskScheduler().process([first, second])

        assert len(calls) == 1

    def test_failure_with_throw_on_error(self):
        def fail(dependency_results):
            raise OperationError("boom")

        ran = []
        broken = FakeTask("broken", fn=fail)
        dependent = FakeTask("dependent", deps=[broken], fn=lambda d: ran.append(1) or {})

        with pytest.raises(ResolutionError) as exc_info:
            TaskScheduler().process([dependent], throw_on_error=True)

        assert ran == []
        assert any(str(e) == "boom" for e in exc_info.value.errors)
        assert "boom" in str(exc_info.value)
        assert isinstance(exc_info.value, OperationError)
        assert exc_info.value.to_dict()["type"] == "resolution"

    def test_failure_without_throw_marks_dependents(self):
        def fail(dependency_results):
            raise OperationError("boom")

        broken = FakeTask("broken", fn=fail)
        dependent = FakeTask("dependent", deps=[broken])
        independent = FakeTask("independent")

        results = TaskScheduler().process([dependent, independent])

        assert str(results.get("resolve.broken").error) == "boom"
        assert "aborted because dependency resolve.broken failed" in str(results.get("resolve.dependent").error)
        assert results.get("resolve.independent").error is None
        assert len(results.failed()) == 2

    def test_concurrency_limit_per_type(self):
        running = []
        peak = []
        lock = threading.Lock()

        def slow(dependency_results):
            with lock:
                running.append(1)
                peak.append(len(running))
            time.sleep(0.05)
            with lock:
                running.pop()
            return {}

        tasks = [FakeTask(f"t{i}", type="execute", fn=slow) for i in range(6)]
        TaskScheduler({"execute": 2}).process(tasks)

        assert len(peak) == 6
        assert max(peak) <= 2


class TestActionTasks:
    """Resolve and execute tasks over a real config graph."""

    def setup_method(self):
        self.action_types = default_action_types()

    def make_graph(self, *configs):
        return ConfigGraph(list(configs))

    def test_execute_runs_dependencies(self, tmp_path):
        graph = self.make_graph(
            ActionConfig(ActionKind.BUILD, "api", spec={"command": ["echo", "built"]}),
            ActionConfig(ActionKind.DEPLOY, "api", spec={"command": ["echo", "deployed"]},
                         dependencies=[ActionReference.parse("build.api")]),
        )
        deploy = graph.get_action_by_ref(ActionReference.parse("deploy.api"))

        results = TaskScheduler().process(
            [ExecuteTask(graph, deploy, self.action_types, tmp_path)], throw_on_error=True,
        )

        assert results.get("execute.build.api").executed_action.get_outputs()["stdout"] == "built"
        executed = results.get("execute.deploy.api").executed_action
        assert executed.runtime_outputs["stdout"] == "deployed"
        assert executed.static_outputs == {"command": ["echo", "deployed"]}

    def test_resolve_does_not_execute(self, tmp_path):
        graph = self.make_graph(ActionConfig(ActionKind.RUN, "job", spec={"command": ["false"]}))
        job = graph.get_action_by_ref(ActionReference.parse("run.job"))

        results = TaskScheduler().process([ResolveTask(graph, job, self.action_types, tmp_path)],
                                          throw_on_error=True)

        assert "execute.run.job" not in results
        assert results.get("resolve.run.job").resolved_action.get_outputs() == {"command": ["false"]}

    def test_disabled_action_is_not_executed(self, tmp_path):
        graph = self.make_graph(ActionConfig(ActionKind.RUN, "job", spec={"command": ["false"]}, disabled=True))
        job = graph.get_action_by_ref(ActionReference.parse("run.job"))

        results = TaskScheduler().process([ExecuteTask(graph, job, self.action_types, tmp_path)],
                                          throw_on_error=True)

        executed = results.get("execute.run.job").executed_action
        assert executed.runtime_outputs == {}
        assert executed.disabled

    def test_version_changes_with_dependencies(self):
        def deploy_version(build_command):
            graph = self.make_graph(
                ActionConfig(ActionKind.BUILD, "api", spec={"command": build_command}),
                ActionConfig(ActionKind.DEPLOY, "api", dependencies=[ActionReference.parse("build.api")]),
            )
            return graph.get_action_by_ref(ActionReference.parse("deploy.api")).version

        assert deploy_version(["make"]) != deploy_version(["make", "all"])
        assert deploy_version(["make"]) == deploy_version(["make"])


class TestConfigGraph:
    """Graph validation."""

    def test_cycle_detected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigGraph([
                ActionConfig(ActionKind.BUILD, "a", dependencies=[ActionReference.parse("build.b")]),
                ActionConfig(ActionKind.BUILD, "b", dependencies=[ActionReference.parse("build.a")]),
            ])
        assert "Circular dependency" in str(exc_info.value)

    def test_missing_dependency(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigGraph([ActionConfig(ActionKind.BUILD, "a", dependencies=[ActionReference.parse("build.x")])])
        assert "depends on build.x, which does not exist" in str(exc_info.value)
