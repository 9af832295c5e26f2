"""Lists of available commands."""

from typing import TYPE_CHECKING, List

from .base import Command
from .builtin import GetOutputsCommand, ValidateCommand
from .custom import get_custom_commands
from .workflow import WorkflowCommand

if TYPE_CHECKING:
    from ..project import Project


def get_builtin_commands() -> List[Command]:
    return [
        WorkflowCommand(),
        ValidateCommand(),
        GetOutputsCommand(),
    ]


def get_all_commands(project: "Project") -> List[Command]:
    """Built-in commands followed by the project's custom commands."""
    builtins = get_builtin_commands()
    builtin_names = [c.get_path()[0] for c in builtins]
    return builtins + get_custom_commands(project, builtin_names)
