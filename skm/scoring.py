"""
Priority scoring for SKM.

Two steps:
1. Signal derivation: stage, task counts, artifact presence, git state and operator
   overrides become five signals in [0, 1] (PriorityInputs)
2. Weighting: score = w1*needs_human + w2*risk + w3*staleness + w4*impact
   - w5*confidence

The score depends on PriorityInputs and the weights only, so it can always
be re-derived from a stored PriorityInputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone

from .config import PriorityWeights, ProjectOverride, SkmConfig
from .git import GitStatus
from .parser import TaskSummary
from .stage import Stage, needs_human_attention

# Staleness when there is no commit to measure from
UNKNOWN_STALENESS = 0.5
DEFAULT_IMPACT = 2
MEANINGFUL_TASK_COUNT = 10
MANY_PARALLEL_TASKS = 3
APPROVAL_CONFIDENCE_BONUS = 0.25

INPUT_STAGES = (Stage.BOOTSTRAP, Stage.SPECIFY, Stage.PLAN)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value != value:  # NaN
        return low
    return max(low, min(high, value))


@dataclass(frozen=True)
class PriorityInputs:
    """Normalized priority signals, each clamped to [0, 1]."""
    needs_human: float = 0.0
    risk: float = 0.0
    staleness: float = 0.0
    impact: float = 0.0
    confidence: float = 0.0

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(self, f.name, clamp(float(getattr(self, f.name))))

    def to_dict(self) -> dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, float]) -> "PriorityInputs":
        return cls(**{f.name: float(data.get(f.name, 0.0)) for f in fields(cls)})


@dataclass(frozen=True)
class ScoringContext:
    """Per-project facts that come from outside the artifact set."""
    git: GitStatus | None = None
    override: ProjectOverride = field(default_factory=ProjectOverride)
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def compute_score(inputs: PriorityInputs, weights: PriorityWeights) -> float:
    """Weighted combination of the signals. Pure and total."""
    return (
        weights.needs_human * inputs.needs_human
        + weights.risk * inputs.risk
        + weights.staleness * inputs.staleness
        + weights.impact * inputs.impact
        - weights.confidence * inputs.confidence
    )


def explain_score(inputs: PriorityInputs, weights: PriorityWeights) -> dict[str, float]:
    """Per-signal contribution to the score (confidence is negative)."""
    return {
        "needs_human": weights.needs_human * inputs.needs_human,
        "risk": weights.risk * inputs.risk,
        "staleness": weights.staleness * inputs.staleness,
        "impact": weights.impact * inputs.impact,
        "confidence": -weights.confidence * inputs.confidence,
    }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_between(earlier: datetime, later: datetime) -> float:
    delta = _as_utc(later) - _as_utc(earlier)
    return max(delta.total_seconds(), 0.0) / 86400.0


def staleness_signal(last_commit: datetime | None, now: datetime, horizon_days: float) -> float:
    """Elapsed time since the last commit, saturating at the horizon."""
    if last_commit is None:
        return UNKNOWN_STALENESS
    if horizon_days <= 0:
        return 1.0
    return clamp(days_between(last_commit, now) / horizon_days)


def impact_signal(impact: int | None) -> float:
    """Map the 1-3 impact scale onto [0, 1]; unset is the mid-value."""
    if impact is None:
        impact = DEFAULT_IMPACT
    impact = min(max(int(impact), 1), 3)
    return (impact - 1) / 2


def risk_signal(tasks: TaskSummary, is_dirty: bool) -> float:
    """Blocked-task ratio, uncommitted changes and heavy parallelism."""
    risk = 0.6 * tasks.blocked_ratio
    if is_dirty:
        risk += 0.3
    if tasks.parallel > MANY_PARALLEL_TASKS:
        risk += 0.1
    return clamp(risk)


def confidence_signal(stage: Stage, tasks: TaskSummary, approved_by_human: bool = False) -> float:
    """Further along the lifecycle, with enough tasks to mean something."""
    progress = stage.index / (len(Stage) - 1)
    sample = min(tasks.total / MEANINGFUL_TASK_COUNT, 1.0)
    confidence = progress * (0.5 + 0.5 * sample)
    if approved_by_human:
        confidence += APPROVAL_CONFIDENCE_BONUS
    return clamp(confidence)


def last_change(last_modified: datetime | None, git: GitStatus | None) -> datetime | None:
    """Last commit if known, otherwise the newest artifact modification."""
    if git is not None and git.last_commit is not None:
        return git.last_commit
    return last_modified


def needs_human_triggers(
    stage: Stage,
    tasks: TaskSummary,
    present: frozenset[str],
    last_modified: datetime | None,
    context: ScoringContext,
    stall_days: int,
) -> dict[str, bool]:
    """Heuristic conditions that ask for a person to step in.

    `present` holds the readable artifact kinds, `last_modified` the newest
    artifact modification time.
    """
    conflicting = (
        ("tasks" in present and "plan" not in present)
        or ("plan" in present and "spec" not in present)
    )
    stalled = False
    if tasks.total > 0 and tasks.completed == 0:
        changed = last_change(last_modified, context.git)
        stalled = changed is not None and days_between(changed, context.now) >= stall_days
    return {
        "needs_input": stage in INPUT_STAGES,
        "conflicting_artifacts": bool(conflicting),
        "stalled": stalled,
        "dirty": bool(context.git and context.git.is_dirty),
    }


def needs_human_signal(stage: Stage, tasks: TaskSummary, triggers: dict[str, bool]) -> float:
    if stage == Stage.REVIEW or tasks.blocked > 0:
        return 1.0
    if not triggers:
        return 0.0
    return sum(1 for hit in triggers.values() if hit) / len(triggers)


def derive_inputs(
    stage: Stage,
    tasks: TaskSummary,
    present: frozenset[str],
    context: ScoringContext,
    config: SkmConfig,
    last_modified: datetime | None = None,
) -> PriorityInputs:
    """Derive the five priority signals for one project."""
    triggers = needs_human_triggers(stage, tasks, present, last_modified, context, config.stall_days)
    is_dirty = bool(context.git and context.git.is_dirty)
    last_commit = context.git.last_commit if context.git else None
    return PriorityInputs(
        needs_human=needs_human_signal(stage, tasks, triggers),
        risk=risk_signal(tasks, is_dirty),
        staleness=staleness_signal(last_commit, context.now, config.staleness_horizon_days),
        impact=impact_signal(context.override.impact),
        confidence=confidence_signal(stage, tasks, context.override.approved_by_human),
    )


def human_requirements(stage: Stage, tasks: TaskSummary, git: GitStatus | None) -> list[str]:
    """Why a person is needed, if at all."""
    requirements: list[str] = []
    if needs_human_attention(stage):
        requirements.append("review" if stage == Stage.REVIEW else "input")
    if git is not None and git.is_dirty:
        requirements.append("fix")
    if tasks.blocked > 0:
        requirements.append("decision")
    return requirements
