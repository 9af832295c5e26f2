"""
Builders for the standard template contexts.

- project context: project, local, datetime, git, environment, var/variables, secrets
- command context: project context plus args and opts
- expanded context: any context plus providers, modules, actions and runtime,
  filled from lazily resolved template needs
"""

import getpass
import logging
import os
import platform
import subprocess
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from .context import ConfigContext, LazyValue
from .expressions import deep_evaluate

if TYPE_CHECKING:
    from ..project import Project
    from .lazy import ResolvedNeeds

logger = logging.getLogger(__name__)


def _git_output(root, *args: str) -> str:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            capture_output=True,
            text=True,
        )
    except (FileNotFoundError, OSError) as e:
        logger.debug(f"Could not run git: {e}")
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def _git_info(root) -> Dict[str, str]:
    return {
        "branch": _git_output(root, "rev-parse", "--abbrev-ref", "HEAD"),
        "commit_hash": _git_output(root, "rev-parse", "HEAD"),
    }


def _username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


def build_project_context(project: "Project") -> ConfigContext:
    """
    Build the project-level template context.

    Project variables may themselves use templates against everything except
    `var`, `variables` and `secrets`.
    """
    now = datetime.now(timezone.utc)
    environment = project.environment_name
    namespace = project.namespace

    base = ConfigContext({
        "project": {"name": project.name},
        "local": {
            "env": dict(os.environ),
            "platform": sys.platform,
            "arch": platform.machine(),
            "username": _username(),
            "project_path": str(project.root),
        },
        "datetime": {
            "now": now.isoformat(),
            "today": now.date().isoformat(),
            "timestamp": int(now.timestamp()),
        },
        "git": LazyValue(lambda: _git_info(project.root)),
        "environment": {
            "name": environment,
            "namespace": namespace,
            "full_name": f"{namespace}.{environment}" if namespace else environment,
        },
    })

    variables = deep_evaluate(project.variables, base)
    return base.layer(
        var=variables,
        variables=variables,
        secrets=project.get_secret_values(),
    )


def build_command_context(base: ConfigContext, args: Dict[str, Any], opts: Dict[str, Any]) -> ConfigContext:
    """Layer command arguments and options on top of a project context."""
    return base.layer(args=dict(args), opts=dict(opts))


def expand_context(base: ConfigContext, needs: Optional["ResolvedNeeds"]) -> ConfigContext:
    """
    Layer resolved providers, modules and actions on top of a context.

    Deploy and Run actions are also exposed under the legacy
    `runtime.services` and `runtime.tasks` namespaces, executed or not, so
    static keys such as `version` read the same as under `actions`.

    Args:
        base: Context to extend
        needs: Result of resolve_template_needs (None means nothing was resolved)

    Returns:
        The expanded context
    """
    providers: Dict[str, Any] = {}
    modules: Dict[str, Any] = {}
    actions: Dict[str, Dict[str, Any]] = {"build": {}, "deploy": {}, "run": {}, "test": {}}
    runtime: Dict[str, Dict[str, Any]] = {"services": {}, "tasks": {}}

    if needs is not None:
        for name, provider in needs.providers.items():
            providers[name] = {
                "config": provider.config,
                "outputs": provider.outputs,
            }

        for module in needs.modules:
            modules[module.name] = {
                "name": module.name,
                "path": str(module.path),
                "version": module.version,
                "outputs": module.outputs,
                "var": module.variables,
            }

        for action in needs.executed_or_resolved_actions:
            outputs = action.get_outputs()
            actions[action.kind.ref_name][action.name] = {
                "name": action.name,
                "kind": action.kind.value,
                "type": action.type,
                "version": action.version,
                "disabled": action.disabled,
                "var": action.variables,
                "outputs": outputs,
            }
            if action.kind.ref_name == "deploy":
                runtime["services"][action.name] = {"outputs": outputs, "version": action.version}
            elif action.kind.ref_name == "run":
                runtime["tasks"][action.name] = {"outputs": outputs, "version": action.version}

    return base.layer(
        providers=providers,
        modules=modules,
        actions=actions,
        runtime=runtime,
    )
