"""Project loader and strict configuration validation."""

import hashlib
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..commands.base import PARAMETER_TYPES, Parameter
from ..exceptions import ConfigurationError, ProjectValidationError, ValidationError
from ..graph.types import ActionConfig, ActionKind, ActionReference, Module, ProviderConfig
from ..workflow.steps import StepSpec, get_step_name
from .resources import (
    CommandResource,
    EnvironmentConfig,
    ProjectConfig,
    ProjectOutputSpec,
    WorkflowConfig,
    WorkflowFileSpec,
)

CONFIG_FILENAME = "stepflow.yml"
CONFIG_GLOB = "*.stepflow.yml"
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv"}

DOCUMENT_KINDS = {"Project", "Workflow", "Command", "Module", "Build", "Deploy", "Run", "Test"}
COMMAND_NAME_PATTERN = re.compile(r'^[a-z][a-z0-9\-]*$')
NAME_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_\-.]*$')

ALLOWED_FIELDS = {
    "Project": {"kind", "name", "default_environment", "environments", "variables", "secrets",
                "providers", "outputs", "scheduler"},
    "Workflow": {"kind", "name", "description", "env_vars", "files", "steps"},
    "Command": {"kind", "name", "description", "args", "opts", "variables", "steps", "exec", "command"},
    "Module": {"kind", "name", "path", "outputs", "variables"},
    "Action": {"kind", "name", "type", "spec", "variables", "dependencies", "disabled", "description"},
}


class ProjectLoader:
    """
    Loads and validates all configuration documents under a project root.

    Every problem found is collected, and they are raised together as a
    ProjectValidationError once loading finishes.
    """

    def __init__(self, root: Path):
        """Initialize loader with the project root."""
        self.root = Path(root).resolve()
        self.errors: List[ValidationError] = []

    def find_config_files(self) -> List[Path]:
        """Return the project's config files, the root stepflow.yml first."""
        files = []
        main = self.root / CONFIG_FILENAME
        if main.is_file():
            files.append(main)
        for path in sorted(self.root.rglob("*.yml")):
            if any(part in SKIP_DIRS for part in path.relative_to(self.root).parts):
                continue
            if path == main:
                continue
            if path.name == CONFIG_FILENAME or path.match(CONFIG_GLOB):
                files.append(path)
        return files

    def load(self) -> ProjectConfig:
        """
        Load and validate the project.

        Returns:
            ProjectConfig

        Raises:
            ProjectValidationError: If any document is invalid
        """
        files = self.find_config_files()
        if not files:
            self._add_error(f"No {CONFIG_FILENAME} found in {self.root}")
            self._raise_validation_errors()

        documents = []
        for path in files:
            documents.extend(self._read_documents(path))

        projects = [(p, d) for (p, d) in documents if d.get("kind") == "Project"]
        if not projects:
            self._add_error("Exactly one document with 'kind: Project' is required, found none")
            self._raise_validation_errors()
        if len(projects) > 1:
            where = ", ".join(p for p, _ in projects)
            self._add_error(f"Exactly one document with 'kind: Project' is required, found {len(projects)} ({where})")

        config = self._parse_project(*projects[0])
        action_keys = set()

        for path, doc in documents:
            kind = doc.get("kind")
            if kind == "Project":
                continue
            elif kind == "Workflow":
                workflow = self._parse_workflow(path, doc)
                if workflow is None:
                    continue
                if workflow.name in config.workflows:
                    self._add_error(f"Workflow '{workflow.name}' is declared more than once", path)
                config.workflows[workflow.name] = workflow
            elif kind == "Command":
                command = self._parse_command(path, doc)
                if command is None:
                    continue
                if any(c.name == command.name for c in config.commands):
                    self._add_error(f"Command '{command.name}' is declared more than once", path)
                config.commands.append(command)
            elif kind == "Module":
                module = self._parse_module(path, doc)
                if module is not None:
                    config.modules.append(module)
            else:
                action = self._parse_action(path, doc)
                if action is None:
                    continue
                key = str(action.reference)
                if key in action_keys:
                    self._add_error(f"Action '{key}' is declared more than once", path)
                action_keys.add(key)
                config.actions.append(action)

        if self.errors:
            self._raise_validation_errors()

        return config

    def _read_documents(self, path: Path) -> List[tuple]:
        rel = self._relative(path)
        try:
            with open(path, 'r') as f:
                raw_docs = list(yaml.safe_load_all(f))
        except (OSError, yaml.YAMLError) as e:
            self._add_error(f"Failed to load {rel}: {e}")
            return []

        documents = []
        for i, doc in enumerate(raw_docs):
            where = f"{rel}[{i}]"
            if doc is None:
                continue
            if not isinstance(doc, dict):
                self._add_error("Document must be a YAML object/dictionary", where)
                continue
            kind = doc.get("kind")
            if kind not in DOCUMENT_KINDS:
                self._add_error(
                    f"Unknown or missing 'kind' {kind!r}. Must be one of: {', '.join(sorted(DOCUMENT_KINDS))}",
                    where,
                )
                continue
            allowed = ALLOWED_FIELDS.get(kind, ALLOWED_FIELDS["Action"])
            unknown = set(doc) - allowed
            if unknown:
                self._add_error(f"Unknown field(s) in {kind}: {', '.join(sorted(unknown))}", where)
                continue
            doc = dict(doc)
            doc["__path__"] = path
            documents.append((where, doc))
        return documents

    def _relative(self, path: Path) -> str:
        try:
            return str(Path(path).relative_to(self.root))
        except ValueError:
            return str(path)

    def _require_name(self, doc: Dict[str, Any], where: str, pattern=NAME_PATTERN) -> Optional[str]:
        name = doc.get("name")
        if not name or not isinstance(name, str):
            self._add_error("'name' is required and must be a string", where)
            return None
        if not pattern.match(name):
            self._add_error(f"Invalid name '{name}'", where)
            return None
        return name

    def _mapping(self, doc: Dict[str, Any], key: str, where: str) -> Dict[str, Any]:
        value = doc.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            self._add_error(f"'{key}' must be a mapping", where)
            return {}
        return value

    def _parse_project(self, where: str, doc: Dict[str, Any]) -> ProjectConfig:
        name = self._require_name(doc, where) or ""

        environments = []
        for i, env in enumerate(doc.get("environments") or []):
            env_where = f"{where}.environments[{i}]"
            if not isinstance(env, dict) or not env.get("name"):
                self._add_error("Each environment must be a mapping with a 'name'", env_where)
                continue
            environments.append(EnvironmentConfig(
                name=env["name"],
                variables=self._mapping(env, "variables", env_where),
                namespace=env.get("namespace"),
            ))

        default_environment = doc.get("default_environment")
        if default_environment and environments and default_environment not in [e.name for e in environments]:
            self._add_error(f"default_environment '{default_environment}' is not a declared environment", where)

        secrets = doc.get("secrets") or []
        if not isinstance(secrets, list) or not all(isinstance(s, str) for s in secrets):
            self._add_error("'secrets' must be a list of environment variable names", where)
            secrets = []

        providers = []
        for i, provider in enumerate(doc.get("providers") or []):
            p_where = f"{where}.providers[{i}]"
            if not isinstance(provider, dict) or not provider.get("name"):
                self._add_error("Each provider must be a mapping with a 'name'", p_where)
                continue
            if provider["name"] in [p.name for p in providers]:
                self._add_error(f"Provider '{provider['name']}' is declared more than once", p_where)
                continue
            providers.append(ProviderConfig(
                name=provider["name"],
                config=self._mapping(provider, "config", p_where),
                outputs=self._mapping(provider, "outputs", p_where),
            ))

        outputs = []
        for i, output in enumerate(doc.get("outputs") or []):
            if not isinstance(output, dict) or "name" not in output or "value" not in output:
                self._add_error("Each output must have a 'name' and a 'value'", f"{where}.outputs[{i}]")
                continue
            outputs.append(ProjectOutputSpec(name=output["name"], value=output["value"]))

        scheduler = {}
        for key, value in self._mapping(doc, "scheduler", where).items():
            if key not in ("resolve_concurrency", "execute_concurrency") or not isinstance(value, int) or value < 1:
                self._add_error(f"Invalid scheduler setting '{key}': {value!r}", f"{where}.scheduler")
                continue
            scheduler[key.replace("_concurrency", "")] = value

        return ProjectConfig(
            name=name,
            default_environment=default_environment,
            environments=environments,
            variables=self._mapping(doc, "variables", where),
            secrets=secrets,
            providers=providers,
            outputs=outputs,
            scheduler=scheduler,
        )

    def _parse_steps(self, steps: Any, where: str) -> Optional[List[StepSpec]]:
        if not isinstance(steps, list) or not steps:
            self._add_error("'steps' must be a non-empty list", where)
            return None

        parsed = []
        names = set()
        for i, raw in enumerate(steps):
            step_where = f"{where}.steps[{i}]"
            try:
                step = StepSpec.from_dict(raw, i)
            except ConfigurationError as e:
                self._add_error(e.message, step_where)
                continue
            name = get_step_name(i, step.name)
            if name in names:
                self._add_error(f"Step name '{name}' is used more than once", step_where)
            names.add(name)
            parsed.append(step)

        return parsed if len(parsed) == len(steps) else None

    def _parse_workflow(self, where: str, doc: Dict[str, Any]) -> Optional[WorkflowConfig]:
        name = self._require_name(doc, where)
        steps = self._parse_steps(doc.get("steps"), where)

        files = []
        for i, spec in enumerate(doc.get("files") or []):
            f_where = f"{where}.files[{i}]"
            if not isinstance(spec, dict) or not spec.get("path"):
                self._add_error("Each file must be a mapping with a 'path'", f_where)
                continue
            has_data = "data" in spec
            has_secret = "secret_name" in spec
            if has_data == has_secret:
                self._add_error("Each file must specify exactly one of 'data' or 'secret_name'", f_where)
                continue
            files.append(WorkflowFileSpec(path=spec["path"], data=spec.get("data"),
                                          secret_name=spec.get("secret_name")))

        if name is None or steps is None:
            return None
        return WorkflowConfig(
            name=name,
            description=doc.get("description"),
            env_vars={k: str(v) for k, v in self._mapping(doc, "env_vars", where).items()},
            files=files,
            steps=steps,
            source_path=doc["__path__"],
        )

    def _parse_parameters(self, params: Any, where: str) -> List[Parameter]:
        result = []
        for i, raw in enumerate(params or []):
            p_where = f"{where}[{i}]"
            if not isinstance(raw, dict) or not raw.get("name"):
                self._add_error("Each parameter must be a mapping with a 'name'", p_where)
                continue
            param_type = raw.get("type", "string")
            if param_type not in PARAMETER_TYPES[:3]:
                self._add_error(f"Invalid parameter type '{param_type}'. Must be one of: string, integer, boolean",
                                p_where)
                continue
            result.append(Parameter(
                name=raw["name"],
                help=raw.get("description", ""),
                type=param_type,
                required=bool(raw.get("required", False)),
                default=raw.get("default"),
            ))
        return result

    def _parse_command(self, where: str, doc: Dict[str, Any]) -> Optional[CommandResource]:
        name = self._require_name(doc, where, COMMAND_NAME_PATTERN)

        description = doc.get("description") or {}
        if isinstance(description, str):
            description = {"short": description}
        if not isinstance(description, dict):
            self._add_error("'description' must be a string or a mapping with 'short' and 'long'", where)
            description = {}

        has_steps = doc.get("steps") is not None
        has_legacy = doc.get("exec") is not None or doc.get("command") is not None
        if has_steps and has_legacy:
            self._add_error("'steps' cannot be combined with 'exec' or 'command'", where)
        if not has_steps and not has_legacy:
            self._add_error("A command must specify 'steps', 'exec' or 'command'", where)

        steps = self._parse_steps(doc["steps"], where) if has_steps else None

        exec_spec = doc.get("exec")
        if exec_spec is not None and (not isinstance(exec_spec, dict)
                                      or not isinstance(exec_spec.get("command"), list)
                                      or not exec_spec["command"]):
            self._add_error("'exec' must be a mapping with a non-empty 'command' list", where)
            exec_spec = None

        nested = doc.get("command")
        if nested is not None and (not isinstance(nested, list) or not nested):
            self._add_error("'command' must be a non-empty list", where)
            nested = None

        if name is None or (has_steps and steps is None):
            return None
        return CommandResource(
            name=name,
            description_short=description.get("short", ""),
            description_long=description.get("long", ""),
            args=self._parse_parameters(doc.get("args"), f"{where}.args"),
            opts=self._parse_parameters(doc.get("opts"), f"{where}.opts"),
            variables=doc.get("variables") if doc.get("variables") is not None else {},
            steps=steps,
            exec=exec_spec,
            command=nested,
            source_path=doc["__path__"],
        )

    def _parse_module(self, where: str, doc: Dict[str, Any]) -> Optional[Module]:
        name = self._require_name(doc, where)
        if name is None:
            return None
        source_dir = doc["__path__"].parent
        path = (source_dir / doc.get("path", ".")).resolve()
        payload = json.dumps({k: v for k, v in doc.items() if k != "__path__"}, sort_keys=True, default=str)
        return Module(
            name=name,
            path=path,
            version="v-" + hashlib.sha256(payload.encode("utf-8")).hexdigest()[:10],
            outputs=self._mapping(doc, "outputs", where),
            variables=self._mapping(doc, "variables", where),
        )

    def _parse_action(self, where: str, doc: Dict[str, Any]) -> Optional[ActionConfig]:
        name = self._require_name(doc, where)
        kind = ActionKind(doc["kind"])

        dependencies = []
        for dep in doc.get("dependencies") or []:
            try:
                dependencies.append(ActionReference.parse(dep))
            except ConfigurationError as e:
                self._add_error(e.message, f"{where}.dependencies")

        if name is None:
            return None
        return ActionConfig(
            kind=kind,
            name=name,
            type=doc.get("type", "exec"),
            spec=self._mapping(doc, "spec", where),
            variables=self._mapping(doc, "variables", where),
            dependencies=dependencies,
            disabled=bool(doc.get("disabled", False)),
            source_path=doc["__path__"],
        )

    def _add_error(self, message: str, path: str = ""):
        """Add validation error."""
        self.errors.append(ValidationError(message=message, path=path))

    def _raise_validation_errors(self):
        """Raise validation errors as exception."""
        raise ProjectValidationError(self.errors)
