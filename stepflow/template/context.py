"""
Template contexts.

A ConfigContext is an immutable, layered namespace that template expressions
resolve keys against. Entries can be plain values, nested contexts, lazily
computed values, or ErrorContext entries that raise when they are read.
"""

from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import threading

from ..exceptions import ContextKeyError, TemplateReferenceError, UnknownStepError


class ErrorContext:
    """
    Context entry that raises a TemplateReferenceError when read.

    Constructing it never raises, so contexts can be built up front for every
    name and only fail for templates that actually use the entry.
    """

    def __init__(self, message: str):
        self.message = message

    def raise_error(self):
        raise TemplateReferenceError(self.message)

    def __repr__(self):
        return f"ErrorContext({self.message!r})"


class LazyValue:
    """Value computed on first read and then cached."""

    def __init__(self, factory):
        self._factory = factory
        self._lock = threading.Lock()
        self._computed = False
        self._value = None

    def get(self) -> Any:
        with self._lock:
            if not self._computed:
                self._value = self._factory()
                self._computed = True
            return self._value


def _unwrap(value: Any) -> Any:
    if isinstance(value, LazyValue):
        return value.get()
    return value


def _available_keys(value: Any) -> List[str]:
    if isinstance(value, ConfigContext):
        return sorted(value.keys())
    if isinstance(value, Mapping):
        return sorted(str(k) for k in value.keys())
    return []


class ConfigContext:
    """
    Immutable template namespace.

    Each context holds its own namespaces plus an optional parent layer.
    Lookups check the own namespaces first and fall back to the parent.
    """

    def __init__(self, namespaces: Optional[Mapping[str, Any]] = None,
                 parent: Optional["ConfigContext"] = None):
        self._namespaces = MappingProxyType(dict(namespaces or {}))
        self._parent = parent

    def keys(self) -> List[str]:
        keys = list(self._parent.keys()) if self._parent else []
        for key in self._namespaces:
            if key not in keys:
                keys.append(key)
        return keys

    def __contains__(self, key: Any) -> bool:
        if key in self._namespaces:
            return True
        return self._parent is not None and key in self._parent

    def get_entry(self, key: Any) -> Any:
        """Return the raw entry for a key without raising for ErrorContext entries."""
        if key in self._namespaces:
            return self._namespaces[key]
        if self._parent is not None:
            return self._parent.get_entry(key)
        raise KeyError(key)

    def layer(self, **namespaces: Any) -> "ConfigContext":
        """Return a new context with the given namespaces on top of this one."""
        return ConfigContext(namespaces, parent=self)

    def resolve(self, key_path: Sequence[Any]) -> Any:
        """
        Resolve a key path.

        Args:
            key_path: Keys from the root, e.g. ["steps", "build", "outputs", "stdout"]

        Returns:
            The value found. Nested contexts are returned as plain dicts.

        Raises:
            ContextKeyError: If a key is missing
            TemplateReferenceError: If an ErrorContext entry is read
        """
        value: Any = self
        walked: List[str] = []

        for key in key_path:
            value = _unwrap(value)
            if isinstance(value, ErrorContext):
                value.raise_error()

            if isinstance(value, ConfigContext):
                if key not in value:
                    self._missing(key, walked, value, key_path)
                value = value.get_entry(key)
            elif isinstance(value, Mapping):
                if key not in value:
                    self._missing(key, walked, value, key_path)
                value = value[key]
            elif isinstance(value, (list, tuple)):
                index = key
                if isinstance(index, str) and index.isdigit():
                    index = int(index)
                if not isinstance(index, int) or isinstance(index, bool) or not -len(value) <= index < len(value):
                    self._missing(key, walked, value, key_path)
                value = value[index]
            else:
                self._missing(key, walked, value, key_path)
            walked.append(str(key))

        value = _unwrap(value)
        if isinstance(value, ErrorContext):
            value.raise_error()
        if isinstance(value, (ConfigContext, Mapping, list, tuple)):
            return _to_plain(value)
        return value

    @staticmethod
    def _missing(key: Any, walked: List[str], container: Any, key_path: Sequence[Any]):
        where = ".".join(walked) if walked else "the root context"
        if walked == ["steps"]:
            raise UnknownStepError(
                f"Could not find step {key}. Available steps: {', '.join(_available_keys(container)) or 'none'}.",
                key_path=list(key_path),
            )
        if isinstance(container, (ConfigContext, Mapping)):
            hint = f"Available keys: {', '.join(_available_keys(container)) or 'none'}."
        else:
            hint = f"The value at {where} is a {type(container).__name__}, not a map."
        raise ContextKeyError(
            f"Could not find key {key} under {where}. {hint}",
            key_path=list(key_path),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Render the context as a plain dict, omitting ErrorContext entries."""
        result = self._parent.to_dict() if self._parent else {}
        for key, value in self._namespaces.items():
            rendered = _to_plain(value)
            if rendered is not _OMIT:
                result[key] = rendered
        return result


_OMIT = object()


def _to_plain(value: Any) -> Any:
    value = _unwrap(value)
    if isinstance(value, ErrorContext):
        return _OMIT
    if isinstance(value, ConfigContext):
        return value.to_dict()
    if isinstance(value, Mapping):
        result = {}
        for k, v in value.items():
            rendered = _to_plain(v)
            if rendered is not _OMIT:
                result[k] = rendered
        return result
    if isinstance(value, (list, tuple)):
        return [v for v in (_to_plain(i) for i in value) if v is not _OMIT]
    return value


class StepContext(ConfigContext):
    """Template view of a completed (or skipped) step: number, outputs and log."""

    def __init__(self, number: int, outputs: Mapping[str, Any], log: str):
        super().__init__({
            "number": number,
            "outputs": MappingProxyType(dict(outputs)),
            "log": log,
        })


def build_step_references(step_name: str, all_step_names: Iterable[str],
                          resolved_steps: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Build the `steps` namespace for the step about to run.

    Every known step name starts out as an ErrorContext for forward references,
    the current step's own name is then replaced with a self-reference error, and
    finally every already resolved step is exposed as a StepContext.

    Args:
        step_name: Name of the step about to run
        all_step_names: Names of every step in the sequence
        resolved_steps: StepResult (number, outputs, log) for steps that ran or were skipped

    Returns:
        Dict suitable as the `steps` namespace
    """
    steps: Dict[str, Any] = {}

    for name in all_step_names:
        steps[name] = ErrorContext(
            f"Step {name} is referenced in a template for step {step_name}, but step {name} "
            f"is later in the execution order. Only previous steps can be referenced."
        )

    steps[step_name] = ErrorContext(
        f"Step {step_name} references itself in a template. Only previous steps can be referenced."
    )

    for name, result in resolved_steps.items():
        steps[name] = StepContext(result.number, result.outputs, result.log)

    return steps
