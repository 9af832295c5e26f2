"""Command base class, parameters and results."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from ..project import Project

PARAMETER_TYPES = ("string", "integer", "boolean", "array")


@dataclass
class Parameter:
    """
    A command argument or option.

    Attributes:
        name: Argument or option name (options are passed as --<name>)
        help: One-line help text
        type: One of string, integer, boolean, array
        required: Whether the parameter must be given
        default: Value when not given
        choices: Allowed values, if restricted
        spread: For arguments: collect all remaining positional values
    """
    name: str
    help: str = ""
    type: str = "string"
    required: bool = False
    default: Any = None
    choices: Optional[List[str]] = None
    spread: bool = False


# Options every command accepts. Nested commands inherit the invoking
# command's values for any of these they don't set themselves.
GLOBAL_OPTIONS: Dict[str, Parameter] = {
    "env": Parameter("env", help="The environment (and optionally namespace) to work against."),
    "log-level": Parameter(
        "log-level",
        help="Set logger level.",
        default="info",
        choices=["error", "warn", "info", "verbose", "debug", "silly"],
    ),
    "output": Parameter(
        "output",
        help="Output command result in the specified format.",
        choices=["json", "yaml"],
    ),
    "silent": Parameter("silent", help="Suppress log output.", type="boolean", default=False),
}


@dataclass
class CommandResult:
    """Result of a command: a result dict plus any errors it produced."""
    result: Optional[Dict[str, Any]] = None
    errors: List[Exception] = field(default_factory=list)
    exit_code: Optional[int] = None


@dataclass
class CommandParams:
    """Arguments passed to Command.action()."""
    project: "Project"
    args: Dict[str, Any] = field(default_factory=dict)
    opts: Dict[str, Any] = field(default_factory=dict)


class Command:
    """
    Base class for commands.

    Subclasses set `name` (space-separated for sub-commands, e.g. "get outputs"),
    `help`, `arguments` and `options`, and implement `action()`.
    """

    name = ""
    help = ""
    description = ""
    arguments: List[Parameter] = []
    options: List[Parameter] = []
    is_custom = False
    # Keep unknown arguments and flags instead of failing (custom commands use them for $rest)
    allow_undefined_arguments = False

    def get_path(self) -> List[str]:
        return self.name.split()

    def get_full_name(self) -> str:
        return " ".join(self.get_path())

    def action(self, params: CommandParams) -> CommandResult:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.get_full_name()})"
