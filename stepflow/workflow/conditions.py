"""
Step drop rules.

A dropped step produces no result, no log output and no events. Whether a
step is dropped depends on its `when` modifier and on which earlier steps
recorded errors.
"""

from typing import Dict, List, Sequence

from .steps import StepModifier, StepSpec


def should_be_dropped(step_index: int, steps: Sequence[StepSpec],
                      step_errors: Dict[int, List[Exception]]) -> bool:
    """
    Decide whether the step at `step_index` is dropped.

    - never: always dropped
    - always: never dropped
    - onSuccess: dropped if an earlier non-onError step recorded an error
    - onError: runs only after such a failure, as part of the run of error
      handlers that follows it; once an error handler has been followed by a
      regular (not onError, not never) step, the failure counts as handled

    Indices are positions in `steps`, not in any filtered list. Errors of
    `continue_on_error` steps are never recorded in `step_errors`, so they
    don't count.

    Args:
        step_index: Zero-based index of the step being considered
        steps: All steps in the sequence
        step_errors: Errors recorded so far, by step index

    Returns:
        True if the step should be dropped
    """
    step = steps[step_index]

    if step.when == StepModifier.ALWAYS:
        return False
    if step.when == StepModifier.NEVER:
        return True

    # Last earlier failure of a step that isn't itself an error handler
    failed_indices = [
        i for i, errors in step_errors.items()
        if errors and i < step_index and steps[i].when != StepModifier.ON_ERROR
    ]
    last_error_index = max(failed_indices) if failed_indices else None

    if step.when != StepModifier.ON_ERROR:
        return last_error_index is not None

    if last_error_index is None:
        return True

    # The failure was already handled if an earlier onError step after it was
    # followed by a regular step.
    previous_handlers = [
        i for i in range(last_error_index + 1, step_index)
        if steps[i].when == StepModifier.ON_ERROR
    ]
    for handler_index in previous_handlers:
        for i in range(handler_index + 1, step_index):
            if steps[i].when not in (StepModifier.NEVER, StepModifier.ON_ERROR):
                return True
    return False
