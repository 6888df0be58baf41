"""
Weighted progress through the pillar pipeline.

Every step carries a fixed share of the total; finishing a step hands over
exactly to the start of the next one, so the total never jumps at a boundary.
"""
import math
from typing import Dict, Mapping, Optional, Union

from ..core.enums import PipelineStep

StepLike = Union[PipelineStep, str]

# Ordered: pipeline order is the declaration order of PipelineStep
STEP_WEIGHTS: Dict[PipelineStep, int] = {
    PipelineStep.ASSESSMENT: 20,
    PipelineStep.AI_PROCESSING: 30,
    PipelineStep.RESULTS_PREVIEW: 10,
    PipelineStep.ACTIONABLES_GENERATION: 25,
    PipelineStep.CALENDAR_INTEGRATION: 10,
    PipelineStep.COMPLETED: 5,
}

_STEP_ORDER = list(STEP_WEIGHTS)


def _as_step(step: StepLike) -> PipelineStep:
    try:
        return PipelineStep(step)
    except ValueError as exc:
        raise ValueError(f"Unknown pipeline step: {step!r}") from exc


def clamp_percentage(value: float) -> int:
    """Clamp to [0, 100] and round half up to an integer percentage."""
    value = float(value)
    if not math.isfinite(value):
        raise ValueError(f"Percentage must be a finite number, got {value!r}")
    bounded = min(max(value, 0.0), 100.0)
    return int(math.floor(bounded + 0.5))


def step_index(step: StepLike) -> int:
    return _STEP_ORDER.index(_as_step(step))


def next_step(step: StepLike) -> Optional[PipelineStep]:
    """The step after ``step``, or None for the final step."""
    index = step_index(step)
    if index + 1 >= len(_STEP_ORDER):
        return None
    return _STEP_ORDER[index + 1]


def calculate_total_progress(
    step: StepLike,
    step_progress: float,
    weights: Mapping[PipelineStep, int] = STEP_WEIGHTS,
) -> int:
    """
    Total pipeline progress for being ``step_progress`` percent through ``step``.

    ``step_progress`` must already be within 0-100. The sum of the weights of
    all earlier steps is added to the current step's weighted share; the
    result is capped at 100 and rounded half up.
    """
    current = _as_step(step)
    order = list(weights)
    if current not in weights:
        raise ValueError(f"No weight configured for step: {current.value}")

    completed_weight = sum(weights[s] for s in order[:order.index(current)])
    total = completed_weight + (weights[current] * step_progress) / 100
    return int(math.floor(min(total, 100) + 0.5))
