"""
Static scan of template strings for references to the action graph.

Scanning tells the lazy resolver which providers, modules and actions a value
needs before any of it is evaluated, so that only those are resolved.
"""

from dataclasses import dataclass
from typing import Any, FrozenSet, Iterator, List, Optional, Tuple

from ..exceptions import StepflowError, TemplateStringError
from ..graph.types import ActionKind, ActionTemplateReference
from .expressions import Evaluator, Lookup, iter_lookups, parse_template

# Legacy runtime namespaces and the action kinds they map to
RUNTIME_KINDS = {
    "services": ActionKind.DEPLOY,
    "tasks": ActionKind.RUN,
}


@dataclass(frozen=True)
class ReferenceScanResult:
    """Providers, modules and actions referenced by a value."""
    provider_names: FrozenSet[str] = frozenset()
    module_names: FrozenSet[str] = frozenset()
    action_refs: Tuple[ActionTemplateReference, ...] = ()

    @property
    def has_references(self) -> bool:
        return bool(self.provider_names or self.module_names or self.action_refs)


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


def _static_path(lookup: Lookup, context: Any) -> List[Any]:
    """
    Compute as much of a lookup's key path as can be known without the graph.

    Dynamic keys are evaluated against the context; the path is cut at the
    first key that can't be evaluated.
    """
    path: List[Any] = [lookup.parts[0]]
    evaluator = Evaluator(context) if context is not None else None
    for part in lookup.parts[1:]:
        if isinstance(part, (str, int)):
            path.append(part)
            continue
        if evaluator is None:
            break
        try:
            path.append(evaluator.evaluate(part))
        except StepflowError:
            break
    return path


def scan_template_references(value: Any, context: Any = None) -> ReferenceScanResult:
    """
    Find provider, module and action references in a (possibly nested) value.

    Classification of lookups by their first key:
    - providers.<name>            -> provider
    - modules.<name>              -> module
    - actions.<kind>.<name>...    -> action reference (kind in build/deploy/run/test)
    - runtime.services.<name>...  -> Deploy action reference
    - runtime.tasks.<name>...     -> Run action reference
    Lookups whose name segment is missing or not a string are ignored, as are
    all other namespaces.

    Args:
        value: String, list or dict to scan (dict keys are not scanned)
        context: Optional context used to evaluate dynamic keys

    Returns:
        ReferenceScanResult

    Raises:
        ConfigurationError: If an actions.<kind> reference uses an unknown kind
    """
    providers: List[str] = []
    modules: List[str] = []
    actions: List[ActionTemplateReference] = []
    seen_actions = set()

    def add_action(kind: ActionKind, name: Any, key_path: List[Any]):
        if not isinstance(name, str):
            return
        ref = ActionTemplateReference(kind=kind, name=name, key_path=tuple(key_path))
        if ref not in seen_actions:
            seen_actions.add(ref)
            actions.append(ref)

    for text in _iter_strings(value):
        if "${" not in text:
            continue
        try:
            parsed = parse_template(text)
        except TemplateStringError:
            # Reported when the string is actually evaluated
            continue

        for part in parsed.parts:
            if isinstance(part, str):
                continue
            for lookup in iter_lookups(part):
                path = _static_path(lookup, context)
                root = path[0]
                if len(path) < 2 or not isinstance(path[1], str):
                    continue

                if root == "providers":
                    if path[1] not in providers:
                        providers.append(path[1])
                elif root == "modules":
                    if path[1] not in modules:
                        modules.append(path[1])
                elif root == "actions":
                    kind = ActionKind.from_ref_name(path[1])
                    if len(path) < 3:
                        continue
                    add_action(kind, path[2], path[3:])
                elif root == "runtime":
                    kind = RUNTIME_KINDS.get(path[1])
                    if kind is None or len(path) < 3:
                        continue
                    add_action(kind, path[2], path[3:])

    return ReferenceScanResult(
        provider_names=frozenset(providers),
        module_names=frozenset(modules),
        action_refs=tuple(actions),
    )
