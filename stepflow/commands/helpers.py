"""
Command lookup and argument parsing.

Arguments are parsed with argparse against the command's own parameters plus
the global options. Parse errors raise ConfigurationError instead of exiting.
"""

import argparse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ..exceptions import ConfigurationError
from .base import GLOBAL_OPTIONS, Command, Parameter


class CommandArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ConfigurationError on bad input."""

    def error(self, message):
        raise ConfigurationError(
            f"Invalid arguments for command '{self.prog}': {message}",
            context={"command": self.prog},
        )


@dataclass
class ParsedArgs:
    """Parsed command line for one command."""
    args: Dict[str, Any] = field(default_factory=dict)
    opts: Dict[str, Any] = field(default_factory=dict)
    unknown: List[str] = field(default_factory=list)  # Unrecognized args and flags, in order
    after_double_dash: List[str] = field(default_factory=list)  # Everything after `--`
    explicit_opts: Set[str] = field(default_factory=set)  # Options given on this command line


def build_command_args(parsed: ParsedArgs, argv: Sequence[str]) -> Dict[str, Any]:
    """
    Command args as exposed to templates: the declared arguments plus
    `$all` (every arg after the command name), `$rest` (args and flags no
    parameter consumed) and `--` (everything after a `--` separator).
    """
    args = dict(parsed.args)
    args["$all"] = list(argv)
    args["$rest"] = list(parsed.unknown)
    args["--"] = list(parsed.after_double_dash)
    return args


def pick_command(commands: Sequence[Command], argv: Sequence[str]) -> Tuple[Command, List[str]]:
    """
    Find the command an argv invokes.

    The command with the longest matching path wins; on a tie the first one
    listed wins, so built-in commands should come before custom commands.

    Args:
        commands: Available commands
        argv: Command line, starting with the command name

    Returns:
        (command, remaining argv)

    Raises:
        ConfigurationError: If no command matches
    """
    best: Optional[Command] = None
    for command in commands:
        path = command.get_path()
        if list(argv[:len(path)]) == path:
            if best is None or len(path) > len(best.get_path()):
                best = command

    if best is None:
        available = ", ".join(sorted(c.get_full_name() for c in commands))
        raise ConfigurationError(
            f"Could not find command '{' '.join(argv)}'. Available commands: {available}",
            context={"argv": list(argv)},
        )
    return best, list(argv[len(best.get_path()):])


def _add_parameter(parser: argparse.ArgumentParser, param: Parameter, positional: bool):
    kwargs: Dict[str, Any] = {"help": param.help}
    if param.choices:
        kwargs["choices"] = param.choices

    if positional:
        if param.spread:
            kwargs["nargs"] = "*"
        elif not param.required:
            kwargs["nargs"] = "?"
        if param.type == "integer":
            kwargs["type"] = int
        kwargs["default"] = param.default
        parser.add_argument(param.name, **kwargs)
        return

    flag = f"--{param.name}"
    if param.type == "boolean":
        kwargs["action"] = "store_const"
        kwargs["const"] = True
        kwargs.pop("choices", None)
    elif param.type == "array":
        kwargs["action"] = "append"
    elif param.type == "integer":
        kwargs["type"] = int
    parser.add_argument(flag, dest=param.name, default=None, **kwargs)


def build_parser(command: Command) -> CommandArgumentParser:
    """Build the argparse parser for a command's arguments, options and the global options."""
    parser = CommandArgumentParser(
        prog=command.get_full_name() or "stepflow",
        description=command.help,
        add_help=False,
        allow_abbrev=False,
    )
    for param in command.arguments:
        _add_parameter(parser, param, positional=True)

    names = set()
    for param in command.options:
        _add_parameter(parser, param, positional=False)
        names.add(param.name)
    for name, param in GLOBAL_OPTIONS.items():
        if name not in names:
            _add_parameter(parser, param, positional=False)
    return parser


def _split_double_dash(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    argv = list(argv)
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1:]
    return argv, []


def parse_cli_args(command: Command, argv: Sequence[str],
                   inherited_opts: Optional[Dict[str, Any]] = None) -> ParsedArgs:
    """
    Parse a command's arguments.

    Global options not set on this command line are taken from
    `inherited_opts` (the invoking command's options), then from their defaults.

    Args:
        command: Command to parse for
        argv: Arguments after the command name
        inherited_opts: Options of the invoking command, if any

    Returns:
        ParsedArgs

    Raises:
        ConfigurationError: On unknown or invalid arguments, or missing required ones
    """
    main, after = _split_double_dash(argv)
    parser = build_parser(command)

    if command.allow_undefined_arguments:
        namespace, unknown = parser.parse_known_args(main)
    else:
        namespace, unknown = parser.parse_args(main), []
    values = vars(namespace)

    parsed = ParsedArgs(unknown=list(unknown), after_double_dash=after)

    for param in command.arguments:
        value = values.get(param.name)
        parsed.args[param.name] = value if value is not None else param.default

    inherited = inherited_opts or {}
    command_option_names = set()
    for param in command.options:
        command_option_names.add(param.name)
        value = values.get(param.name)
        if value is not None:
            parsed.explicit_opts.add(param.name)
            parsed.opts[param.name] = value
        elif param.name in GLOBAL_OPTIONS and param.name in inherited:
            parsed.opts[param.name] = inherited[param.name]
        else:
            if param.required:
                raise ConfigurationError(
                    f"Missing required option --{param.name} for command '{command.get_full_name()}'",
                    context={"command": command.get_full_name(), "option": param.name},
                )
            parsed.opts[param.name] = param.default

    for name, param in GLOBAL_OPTIONS.items():
        if name in command_option_names:
            continue
        value = values.get(name)
        if value is not None:
            parsed.explicit_opts.add(name)
            parsed.opts[name] = value
        elif name in inherited:
            parsed.opts[name] = inherited[name]
        else:
            parsed.opts[name] = param.default

    return parsed
