"""Core types for the action graph."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import ConfigurationError


class ActionKind(str, Enum):
    """Kinds of actions in the graph."""
    BUILD = "Build"
    DEPLOY = "Deploy"
    RUN = "Run"
    TEST = "Test"

    @property
    def ref_name(self) -> str:
        """Lowercase form used in references and templates (build, deploy, ...)."""
        return self.value.lower()

    @classmethod
    def from_ref_name(cls, name: str) -> "ActionKind":
        """
        Parse a lowercase kind name as used in `actions.<kind>.<name>` templates.

        Raises:
            ConfigurationError: If the name is not a known kind
        """
        for kind in cls:
            if kind.ref_name == name:
                return kind
        valid = ", ".join(k.ref_name for k in cls)
        raise ConfigurationError(
            f"Invalid action kind '{name}'. Must be one of: {valid}",
            context={"kind": name},
        )


@dataclass(frozen=True)
class ActionReference:
    """Reference to an action by kind and name."""
    kind: ActionKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.ref_name}.{self.name}"

    @classmethod
    def parse(cls, ref: str) -> "ActionReference":
        """Parse a `<kind>.<name>` string such as `build.api`."""
        if not isinstance(ref, str) or "." not in ref:
            raise ConfigurationError(
                f"Invalid action reference '{ref}'. Expected '<kind>.<name>', e.g. 'build.api'",
                context={"reference": ref},
            )
        kind, name = ref.split(".", 1)
        return cls(ActionKind.from_ref_name(kind), name)


@dataclass(frozen=True)
class ActionTemplateReference:
    """An action referenced from a template, with the key path used after the action name."""
    kind: ActionKind
    name: str
    key_path: Tuple[Any, ...] = ()

    @property
    def reference(self) -> ActionReference:
        return ActionReference(self.kind, self.name)


@dataclass
class ProviderConfig:
    """Provider as declared in the project document."""
    name: str
    config: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Provider:
    """Provider after its configuration and outputs have been resolved."""
    name: str
    config: Dict[str, Any]
    outputs: Dict[str, Any]


@dataclass
class Module:
    """A module document."""
    name: str
    path: Path
    version: str = ""
    outputs: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionConfig:
    """An action document (Build, Deploy, Run or Test)."""
    kind: ActionKind
    name: str
    type: str = "exec"
    spec: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[ActionReference] = field(default_factory=list)
    disabled: bool = False
    source_path: Optional[Path] = None

    @property
    def reference(self) -> ActionReference:
        return ActionReference(self.kind, self.name)
