"""
Resolve and execute tasks, and the task scheduler that runs them.

The scheduler expands the dependency closure of the submitted tasks and runs
them on a thread pool, respecting per-task-type concurrency limits. With
`throw_on_error` it stops scheduling new tasks after the first failure, waits
for tasks already running, and raises a ResolutionError.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..exceptions import OperationError, ResolutionError
from .actions import Action, ActionTypeRegistry, ExecutedAction, ResolvedAction
from .config_graph import ConfigGraph

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = {
    "resolve": 8,
    "execute": 4,
}


@dataclass
class TaskResult:
    """Result of a processed task."""
    key: str
    type: str
    name: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    duration_ms: int = 0

    @property
    def executed_action(self) -> Optional[ExecutedAction]:
        return self.outputs.get("executed_action")

    @property
    def resolved_action(self) -> Optional[ResolvedAction]:
        return self.outputs.get("resolved_action")


class GraphResults:
    """Results of a batch of tasks, keyed by task key."""

    def __init__(self):
        self._results: Dict[str, TaskResult] = {}

    def add(self, result: TaskResult):
        self._results[result.key] = result

    def get(self, key: str) -> Optional[TaskResult]:
        return self._results.get(key)

    def failed(self) -> List[TaskResult]:
        return [r for r in self._results.values() if r.error is not None]

    def __len__(self) -> int:
        return len(self._results)

    def __contains__(self, key: str) -> bool:
        return key in self._results


class BaseTask:
    """A unit of work on a single action."""

    type = ""

    def __init__(self, graph: ConfigGraph, action: Action, action_types: ActionTypeRegistry,
                 project_root: Path):
        self.graph = graph
        self.action = action
        self.action_types = action_types
        self.project_root = project_root

    @property
    def key(self) -> str:
        return f"{self.type}.{self.action.key()}"

    def get_dependencies(self) -> List["BaseTask"]:
        return []

    def process(self, dependency_results: Dict[str, TaskResult]) -> Dict[str, Any]:
        raise NotImplementedError

    def _sibling(self, task_class, action: Action) -> "BaseTask":
        return task_class(self.graph, action, self.action_types, self.project_root)

    def __repr__(self):
        return f"{type(self).__name__}({self.action.key()})"


class ResolveTask(BaseTask):
    """Resolves an action's configuration and static outputs."""

    type = "resolve"

    def get_dependencies(self) -> List[BaseTask]:
        return [self._sibling(ResolveTask, dep) for dep in self.graph.get_dependencies(self.action)]

    def process(self, dependency_results: Dict[str, TaskResult]) -> Dict[str, Any]:
        definition = self.action_types.get(self.action.kind, self.action.type)
        static_outputs = definition.get_static_outputs(self.action) if definition.get_static_outputs else {}
        return {"resolved_action": ResolvedAction(self.action, static_outputs)}


class ExecuteTask(BaseTask):
    """Executes an action after resolving it and executing its dependencies."""

    type = "execute"

    def get_dependencies(self) -> List[BaseTask]:
        deps: List[BaseTask] = [self._sibling(ResolveTask, self.action)]
        deps.extend(self._sibling(ExecuteTask, dep) for dep in self.graph.get_dependencies(self.action))
        return deps

    def process(self, dependency_results: Dict[str, TaskResult]) -> Dict[str, Any]:
        resolved = dependency_results[f"resolve.{self.action.key()}"].resolved_action
        definition = self.action_types.get(self.action.kind, self.action.type)

        if self.action.disabled:
            logger.warning(f"Action {self.action.key()} is disabled, not executing it")
            runtime_outputs: Dict[str, Any] = {}
        elif definition.execute is None:
            runtime_outputs = {}
        else:
            runtime_outputs = definition.execute(self.action, self.project_root)

        executed = ExecutedAction(
            action=self.action,
            static_outputs=resolved.static_outputs,
            runtime_outputs=runtime_outputs,
        )
        return {"executed_action": executed}


def _run_task(task: BaseTask, dependency_results: Dict[str, TaskResult]) -> TaskResult:
    start = time.time()
    outputs = task.process(dependency_results)
    return TaskResult(
        key=task.key,
        type=task.type,
        name=task.action.key(),
        outputs=outputs,
        duration_ms=int((time.time() - start) * 1000),
    )


class TaskScheduler:
    """Runs batches of tasks and their dependencies on a thread pool."""

    def __init__(self, concurrency: Optional[Dict[str, int]] = None):
        self.concurrency = dict(DEFAULT_CONCURRENCY)
        if concurrency:
            self.concurrency.update(concurrency)

    def _expand(self, tasks: Iterable[BaseTask]) -> Dict[str, BaseTask]:
        all_tasks: Dict[str, BaseTask] = {}
        stack = list(tasks)
        while stack:
            task = stack.pop()
            if task.key in all_tasks:
                continue
            all_tasks[task.key] = task
            stack.extend(task.get_dependencies())
        return all_tasks

    def process(self, tasks: Iterable[BaseTask], throw_on_error: bool = False) -> GraphResults:
        """
        Process tasks and everything they depend on.

        Args:
            tasks: Tasks to process
            throw_on_error: Stop at the first failure and raise

        Returns:
            GraphResults for every task that ran (or failed)

        Raises:
            ResolutionError: If throw_on_error is set and any task failed
        """
        all_tasks = self._expand(tasks)
        results = GraphResults()
        if not all_tasks:
            return results

        remaining: Dict[str, int] = {}
        dependents: Dict[str, List[str]] = {key: [] for key in all_tasks}
        for key, task in all_tasks.items():
            dep_keys = {dep.key for dep in task.get_dependencies()}
            remaining[key] = len(dep_keys)
            for dep_key in dep_keys:
                dependents[dep_key].append(key)

        ready: List[str] = [key for key, count in remaining.items() if count == 0]
        running: Dict[str, int] = {}
        in_flight: Dict[Any, str] = {}
        failed = False

        logger.debug(f"Processing {len(all_tasks)} task(s)")

        with ThreadPoolExecutor(max_workers=max(1, sum(self.concurrency.values()))) as pool:
            while ready or in_flight:
                # schedule everything ready, within the per-type limits
                waiting = []
                for key in ready:
                    task = all_tasks[key]
                    limit = self.concurrency.get(task.type, 1)
                    if (throw_on_error and failed) or running.get(task.type, 0) >= limit:
                        waiting.append(key)
                        continue
                    snapshot = {dep.key: results.get(dep.key) for dep in task.get_dependencies()}
                    fut = pool.submit(_run_task, task, snapshot)
                    in_flight[fut] = key
                    running[task.type] = running.get(task.type, 0) + 1
                ready = waiting

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready tasks
                fut = next(as_completed(list(in_flight.keys())))
                key = in_flight.pop(fut)
                task = all_tasks[key]
                running[task.type] -= 1

                try:
                    results.add(fut.result())
                except Exception as e:
                    logger.debug(f"Task {key} failed: {e}")
                    results.add(TaskResult(key=key, type=task.type, name=task.action.key(), error=e))
                    failed = True
                    self._fail_dependents(key, all_tasks, dependents, results)
                    continue

                for dependent in dependents[key]:
                    if dependent in results:
                        continue
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        ready.append(dependent)

        errors = [r.error for r in results.failed()]
        if throw_on_error and errors:
            raise ResolutionError(
                f"Failed to process {len(errors)} task(s):\n" + "\n".join(f"- {e}" for e in errors),
                errors=errors,
            )
        return results

    def _fail_dependents(self, key: str, all_tasks: Dict[str, BaseTask],
                         dependents: Dict[str, List[str]], results: GraphResults):
        stack = list(dependents[key])
        while stack:
            dependent = stack.pop()
            if dependent in results:
                continue
            task = all_tasks[dependent]
            results.add(TaskResult(
                key=dependent,
                type=task.type,
                name=task.action.key(),
                error=OperationError(f"{dependent} was aborted because dependency {key} failed"),
            ))
            stack.extend(dependents[dependent])
