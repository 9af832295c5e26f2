"""Step sequences: step definitions, drop rules and the sequence executor."""

from .steps import ExecSpec, SequenceResult, StepModifier, StepResult, StepSpec, get_step_name
from .conditions import should_be_dropped
from .executor import StepCallbacks, StepSequenceExecutor, execute_steps

__all__ = [
    'ExecSpec',
    'SequenceResult',
    'StepModifier',
    'StepResult',
    'StepSpec',
    'get_step_name',
    'should_be_dropped',
    'StepCallbacks',
    'StepSequenceExecutor',
    'execute_steps',
]
