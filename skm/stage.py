"""
Lifecycle stage classification for SKM.

A project's stage is recomputed from its current artifacts on every scan;
there is no stored state machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .locator import ArtifactSet
from .parser import TaskSummary, find_phase_markers


class Stage(str, Enum):
    BOOTSTRAP = "Bootstrap"
    SPECIFY = "Specify"
    PLAN = "Plan"
    TASKS = "Tasks"
    IMPLEMENT = "Implement"
    TEST = "Test"
    REVIEW = "Review"
    DONE = "Done"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)

    # Order by lifecycle position, not by the string value
    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.index < other.index

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.index <= other.index

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.index > other.index

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.index >= other.index

    @classmethod
    def parse(cls, value: str) -> "Stage":
        for stage in cls:
            if stage.value.lower() == value.strip().lower():
                return stage
        raise ValueError(f"Unknown stage: {value}")


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)

_MARKER_STAGES = {
    "test": Stage.TEST,
    "review": Stage.REVIEW,
    "done": Stage.DONE,
}


class AutomationLevel(str, Enum):
    L0 = "L0"  # read-only
    L1 = "L1"  # low risk
    L2 = "L2"  # medium risk
    L3 = "L3"  # high risk


@dataclass(frozen=True)
class NextAction:
    """Suggested next step for a project in a given stage."""
    command: str
    description: str
    automated: bool
    risk_level: AutomationLevel

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "description": self.description,
            "automated": self.automated,
            "risk_level": self.risk_level.value,
        }


_NEXT_ACTIONS = {
    Stage.BOOTSTRAP: NextAction(
        "/speckit.constitution",
        "Create project constitution to establish core values and principles",
        False,
        AutomationLevel.L2,
    ),
    Stage.SPECIFY: NextAction(
        "/speckit.specify",
        "Create specification with user stories and requirements",
        False,
        AutomationLevel.L2,
    ),
    Stage.PLAN: NextAction(
        "/speckit.plan",
        "Create implementation plan with technical design",
        False,
        AutomationLevel.L2,
    ),
    Stage.TASKS: NextAction(
        "/speckit.tasks",
        "Generate task breakdown for implementation",
        True,
        AutomationLevel.L1,
    ),
    Stage.IMPLEMENT: NextAction(
        "/speckit.implement",
        "Continue implementation of open tasks",
        False,
        AutomationLevel.L3,
    ),
    Stage.TEST: NextAction(
        "Run tests and verify implementation",
        "Execute test suite and validate functionality",
        True,
        AutomationLevel.L1,
    ),
    Stage.REVIEW: NextAction(
        "Review code and documentation",
        "Perform code review and quality checks",
        False,
        AutomationLevel.L1,
    ),
    Stage.DONE: NextAction(
        "Project complete",
        "All stages completed successfully",
        False,
        AutomationLevel.L0,
    ),
}

_DESCRIPTIONS = {
    Stage.BOOTSTRAP: "Needs constitution - establish project identity",
    Stage.SPECIFY: "Specifying - requirements being defined",
    Stage.PLAN: "Planning - technical approach being designed",
    Stage.TASKS: "Needs tasks - break down work items",
    Stage.IMPLEMENT: "In implementation - coding in progress",
    Stage.TEST: "In testing - validating functionality",
    Stage.REVIEW: "In review - awaiting approval",
    Stage.DONE: "Complete - all stages finished",
}


def classify_stage(artifacts: ArtifactSet, summary: TaskSummary) -> Stage:
    """
    Map artifact presence and task state to exactly one stage.

    Pure and total: the same inputs always give the same stage.
    """
    if artifacts.present("tasks"):
        if summary.total == 0:
            return Stage.TASKS
        if summary.completed < summary.total:
            return Stage.IMPLEMENT
        return _refine_completed(artifacts)
    if artifacts.present("plan"):
        return Stage.PLAN
    if artifacts.present("spec") or artifacts.present("constitution"):
        return Stage.SPECIFY
    return Stage.BOOTSTRAP


def _refine_completed(artifacts: ArtifactSet) -> Stage:
    """Pick Test, Review or Done for a fully-completed task list.

    Explicit `Status:` lines beat phase headings; within a source the
    furthest stage wins. No marker at all means Done.
    """
    status_markers: set[str] = set()
    heading_markers: set[str] = set()
    for kind in ("tasks", "plan"):
        status, headings = find_phase_markers(artifacts.text(kind))
        status_markers |= status
        heading_markers |= headings

    markers = status_markers or heading_markers
    if not markers:
        return Stage.DONE
    return max((_MARKER_STAGES[m] for m in markers), key=lambda stage: stage.index)


def next_action(stage: Stage) -> NextAction:
    """Determine the next action for a stage."""
    return _NEXT_ACTIONS[stage]


def stage_description(stage: Stage) -> str:
    return _DESCRIPTIONS[stage]


def needs_human_attention(stage: Stage) -> bool:
    """Stages that cannot progress without a person deciding something."""
    return stage in (Stage.BOOTSTRAP, Stage.SPECIFY, Stage.PLAN, Stage.REVIEW)
