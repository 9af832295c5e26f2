"""Step definitions and results for workflows and custom commands."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from ..exceptions import ConfigurationError

STEP_FIELDS = {
    'name', 'description', 'command', 'exec', 'script',
    'env_vars', 'when', 'skip', 'continue_on_error',
}
OPERATION_FIELDS = ('command', 'exec', 'script')


class StepModifier(str, Enum):
    """When a step runs relative to earlier failures."""
    ON_SUCCESS = "onSuccess"
    ON_ERROR = "onError"
    ALWAYS = "always"
    NEVER = "never"

    @classmethod
    def parse(cls, value: Any) -> "StepModifier":
        for modifier in cls:
            if modifier.value == value:
                return modifier
        valid = ", ".join(m.value for m in cls)
        raise ConfigurationError(f"Invalid 'when' value '{value}'. Must be one of: {valid}")


@dataclass(frozen=True)
class ExecSpec:
    """An external command: argv plus extra environment variables."""
    command: List[str]
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StepSpec:
    """
    A single step in a sequence.

    Exactly one of nested_command, exec or script is set. Template resolution
    produces a new StepSpec rather than modifying this one.
    """
    nested_command: Optional[List[str]] = None
    exec: Optional[ExecSpec] = None
    script: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    when: StepModifier = StepModifier.ON_SUCCESS
    skip: Union[bool, str] = False
    continue_on_error: bool = False

    def template_fields(self) -> Dict[str, Any]:
        """The fields whose template strings are evaluated when the step runs."""
        fields: Dict[str, Any] = {"env_vars": dict(self.env_vars)}
        if self.nested_command is not None:
            fields["command"] = list(self.nested_command)
        if self.exec is not None:
            fields["exec"] = {"command": list(self.exec.command), "env": dict(self.exec.env)}
        if self.script is not None:
            fields["script"] = self.script
        if isinstance(self.skip, str):
            fields["skip"] = self.skip
        return fields

    def skip_condition(self) -> "StepSpec":
        """
        The step reduced to its `skip` field.

        Context factories given this step only resolve what the skip template
        references, so a step that ends up skipped never resolves or executes
        actions its operation refers to.
        """
        return replace(self, nested_command=None, exec=None, script=None, env_vars={})

    def validate(self, index: int = 0):
        """
        Check the step is well-formed.

        Raises:
            ConfigurationError: If not exactly one operation is set, or a field has the wrong type
        """
        label = get_step_name(index, self.name)
        variants = [v for v in (self.nested_command, self.exec, self.script) if v is not None]
        if len(variants) != 1:
            raise ConfigurationError(
                f"Step {label} must specify exactly one of 'command', 'exec' or 'script' "
                f"(found {len(variants)})",
                context={"step": label},
            )
        if self.exec is not None and not self.exec.command:
            raise ConfigurationError(f"Step {label}: 'exec.command' must not be empty", context={"step": label})
        if self.nested_command is not None and not self.nested_command:
            raise ConfigurationError(f"Step {label}: 'command' must not be empty", context={"step": label})
        if not isinstance(self.when, StepModifier):
            raise ConfigurationError(f"Step {label}: invalid 'when' value {self.when!r}", context={"step": label})
        if not isinstance(self.skip, (bool, str)):
            raise ConfigurationError(
                f"Step {label}: 'skip' must be a boolean or a template string",
                context={"step": label},
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> "StepSpec":
        """
        Build a StepSpec from a step document.

        Args:
            data: Step mapping from YAML
            index: Zero-based position in the sequence (for error messages)

        Raises:
            ConfigurationError: On unknown fields, a wrong number of operations, or bad values
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Step {index + 1} must be a mapping, got {type(data).__name__}")

        label = get_step_name(index, data.get('name'))
        unknown = set(data) - STEP_FIELDS
        if unknown:
            raise ConfigurationError(
                f"Step {label} has unknown field(s): {', '.join(sorted(unknown))}",
                context={"step": label},
            )

        present = [f for f in OPERATION_FIELDS if data.get(f) is not None]
        if len(present) != 1:
            raise ConfigurationError(
                f"Step {label} must specify exactly one of 'command', 'exec' or 'script' "
                f"(found {', '.join(present) or 'none'})",
                context={"step": label},
            )

        exec_spec = None
        if data.get('exec') is not None:
            raw = data['exec']
            if not isinstance(raw, Mapping) or not isinstance(raw.get('command'), list):
                raise ConfigurationError(
                    f"Step {label}: 'exec' must be a mapping with a 'command' list",
                    context={"step": label},
                )
            exec_spec = ExecSpec(
                command=[str(c) for c in raw['command']],
                env=dict(raw.get('env') or {}),
            )

        nested_command = None
        if data.get('command') is not None:
            if not isinstance(data['command'], list):
                raise ConfigurationError(f"Step {label}: 'command' must be a list", context={"step": label})
            nested_command = [str(c) for c in data['command']]

        script = data.get('script')
        if script is not None and not isinstance(script, str):
            raise ConfigurationError(f"Step {label}: 'script' must be a string", context={"step": label})

        step = cls(
            nested_command=nested_command,
            exec=exec_spec,
            script=script,
            name=data.get('name'),
            description=data.get('description'),
            env_vars=dict(data.get('env_vars') or {}),
            when=StepModifier.parse(data.get('when', StepModifier.ON_SUCCESS.value)),
            skip=data.get('skip', False),
            continue_on_error=bool(data.get('continue_on_error', False)),
        )
        step.validate(index)
        return step


@dataclass(frozen=True)
class StepResult:
    """Outcome of a step that ran or was skipped."""
    number: int
    outputs: Dict[str, Any]
    log: str

    def to_dict(self) -> Dict[str, Any]:
        return {"number": self.number, "outputs": dict(self.outputs), "log": self.log}


@dataclass
class SequenceResult:
    """Step results by name and errors by zero-based step index."""
    steps: Dict[str, StepResult] = field(default_factory=dict)
    errors: Dict[int, List[Exception]] = field(default_factory=dict)

    @property
    def has_errors(self) -> bool:
        return any(self.errors.values())

    def all_errors(self) -> List[Exception]:
        return [e for index in sorted(self.errors) for e in self.errors[index]]


def get_step_name(index: int, name: Optional[str] = None) -> str:
    """Name of a step: its configured name, or `step-<n>` with n 1-based."""
    return name or f"step-{index + 1}"
