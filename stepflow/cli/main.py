"""Main CLI entry point for stepflow."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..commands.base import GLOBAL_OPTIONS, CommandParams, CommandResult
from ..commands.helpers import build_command_args, parse_cli_args, pick_command
from ..commands.registry import get_all_commands
from ..exceptions import ConfigurationError, StepflowError, to_stepflow_error
from ..logs import configure_logging, mask_secrets_in_logs, parse_log_level
from ..project import Project

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the global options; the command line follows them."""
    parser = argparse.ArgumentParser(
        prog='stepflow',
        description='Run workflows and custom commands defined in a stepflow project',
    )
    parser.add_argument(
        '--root',
        type=str,
        default='.',
        help='Project root directory (default: current directory)'
    )
    parser.add_argument(
        '--env',
        type=str,
        help=GLOBAL_OPTIONS['env'].help
    )
    parser.add_argument(
        '--log-level',
        choices=GLOBAL_OPTIONS['log-level'].choices,
        help=GLOBAL_OPTIONS['log-level'].help
    )
    parser.add_argument(
        '--output',
        choices=GLOBAL_OPTIONS['output'].choices,
        help=GLOBAL_OPTIONS['output'].help
    )
    parser.add_argument(
        '--silent',
        action='store_true',
        help=GLOBAL_OPTIONS['silent'].help
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging (same as --log-level debug)'
    )
    parser.add_argument(
        'command',
        nargs=argparse.REMAINDER,
        help='Command to run, followed by its arguments'
    )
    return parser


def _global_opts(parsed_args: argparse.Namespace) -> Dict[str, Any]:
    """Global options given on the command line, to be inherited by the command."""
    opts: Dict[str, Any] = {}
    if parsed_args.env:
        opts['env'] = parsed_args.env
    if parsed_args.debug:
        opts['log-level'] = 'debug'
    elif parsed_args.log_level:
        opts['log-level'] = parsed_args.log_level
    if parsed_args.output:
        opts['output'] = parsed_args.output
    if parsed_args.silent:
        opts['silent'] = True
    return opts


def render_output(result: CommandResult, output_format: str) -> str:
    """Render a command result as JSON or YAML."""
    payload = {
        "result": result.result,
        "errors": [to_stepflow_error(e).to_dict() for e in result.errors],
    }
    # Round-trip through JSON so only plain types reach the YAML dumper
    plain = json.loads(json.dumps(payload, default=str))
    if output_format == 'yaml':
        return yaml.safe_dump(plain, sort_keys=False)
    return json.dumps(plain, indent=2)


def _log_errors(errors: List[Exception]):
    for error in errors:
        logger.error(str(error))
        wrapped = error.context.get("errors") if isinstance(error, StepflowError) else None
        if isinstance(wrapped, list):
            for item in wrapped:
                if isinstance(item, dict) and item.get("message"):
                    logger.debug(f"  {item['message']}")


def main(args: Optional[list] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        0 on success, 1 if the command reported errors, 2 on configuration errors
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    opts = _global_opts(parsed_args)
    if opts.get('silent'):
        level = logging.CRITICAL
    else:
        level = parse_log_level(opts.get('log-level', 'info'))
    configure_logging(level)

    if not parsed_args.command:
        parser.print_help()
        return 1

    try:
        project = Project.load(Path(parsed_args.root), environment=opts.get('env'))
        mask_secrets_in_logs(project.secrets_manager)

        command, rest = pick_command(get_all_commands(project), parsed_args.command)
        parsed = parse_cli_args(command, rest, inherited_opts=opts)
        result = command.action(CommandParams(
            project=project,
            args=build_command_args(parsed, rest),
            opts=parsed.opts,
        ))
    except ConfigurationError as e:
        _log_errors([e])
        return 2
    except StepflowError as e:
        _log_errors([e])
        return 1

    output_format = parsed.opts.get('output')
    if output_format:
        print(render_output(result, output_format))

    if result.errors:
        _log_errors(result.errors)
        return 1
    if result.exit_code:
        return result.exit_code
    return 0


if __name__ == '__main__':
    sys.exit(main())
