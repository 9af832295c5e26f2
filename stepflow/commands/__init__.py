"""Commands: base types, argument parsing, built-in and custom commands."""

from .base import GLOBAL_OPTIONS, Command, CommandParams, CommandResult, Parameter
from .helpers import ParsedArgs, build_command_args, parse_cli_args, pick_command

__all__ = [
    'GLOBAL_OPTIONS',
    'Command',
    'CommandParams',
    'CommandResult',
    'Parameter',
    'ParsedArgs',
    'build_command_args',
    'parse_cli_args',
    'pick_command',
]
