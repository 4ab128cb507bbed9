"""
Task document parsing for SKM.

Extracts a TaskSummary from a tasks.md document. Several task notations are
recognised, each by an independent line matcher:
- Checkbox: `- [ ]`, `- [x]`, `- [X]` (also `*`, `+` and `1.` bullets)
- Task IDs: `T001: ...`, done only when the line carries a `[x]` checkbox
- Emojis: ✅ done, ❌ / ⬜ open, 🔄 in progress
- Keywords: `TODO:` open, `DONE:` done

Matchers run in that order and the first match classifies the line, so a
line matching two notations is counted once. Independently, task lines may
carry a parallel marker (`[P]`, `(P)`, `||`) or a blocked marker
(`[BLOCKED]`, 🚫, ⛔).

All patterns are compiled once at import; a parse is one linear pass.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional


DONE = "done"
OPEN = "open"
IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class TaskSummary:
    """Task counts of one tasks document."""
    total: int = 0
    completed: int = 0
    blocked: int = 0
    parallel: int = 0
    in_progress: int = 0  # subset of incomplete

    @property
    def incomplete(self) -> int:
        return self.total - self.completed

    @property
    def completion_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.completed / self.total

    @property
    def blocked_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.blocked / self.total

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "incomplete": self.incomplete,
            "blocked": self.blocked,
            "parallel": self.parallel,
            "in_progress": self.in_progress,
        }

    @classmethod
    def from_dict(cls, data: dict[str, int]) -> "TaskSummary":
        return cls(
            total=int(data.get("total", 0)),
            completed=int(data.get("completed", 0)),
            blocked=int(data.get("blocked", 0)),
            parallel=int(data.get("parallel", 0)),
            in_progress=int(data.get("in_progress", 0)),
        )


_BULLET = r"(?:[-*+]|\d+[.)])"

_CHECKBOX = re.compile(rf"^\s*{_BULLET}\s+\[([ xX])\]")
_TASK_ID = re.compile(rf"^\s*(?:{_BULLET}\s+)?\**T\d+\**:")
_INLINE_CHECKBOX = re.compile(r"\[([ xX])\]")
_EMOJI = re.compile(rf"^\s*(?:{_BULLET}\s+)?(✅|☑️?|❌|⬜|☐|🔄)")
_PARALLEL = re.compile(r"\[P\]|\(P\)|\|\|")
_BLOCKED = re.compile(r"\[BLOCKED\]|🚫|⛔")

_EMOJI_STATES = {
    "✅": DONE,
    "☑": DONE,
    "☑️": DONE,
    "❌": OPEN,
    "⬜": OPEN,
    "☐": OPEN,
    "🔄": IN_PROGRESS,
}

LineMatcher = Callable[[str], Optional[str]]


def _match_checkbox(line: str) -> str | None:
    match = _CHECKBOX.match(line)
    if not match:
        return None
    return OPEN if match.group(1) == " " else DONE


def _match_task_id(line: str) -> str | None:
    if not _TASK_ID.match(line):
        return None
    checkbox = _INLINE_CHECKBOX.search(line)
    if checkbox and checkbox.group(1) in "xX":
        return DONE
    return OPEN


def _match_emoji(line: str) -> str | None:
    match = _EMOJI.match(line)
    if not match:
        return None
    return _EMOJI_STATES[match.group(1)]


def _match_keyword(line: str) -> str | None:
    if "TODO:" in line:
        return OPEN
    if "DONE:" in line:
        return DONE
    return None


# Evaluation order matters: first match wins
MATCHERS: tuple[LineMatcher, ...] = (
    _match_checkbox,
    _match_task_id,
    _match_emoji,
    _match_keyword,
)


def classify_line(line: str) -> str | None:
    """Return DONE, OPEN, IN_PROGRESS, or None when the line is not a task."""
    for matcher in MATCHERS:
        state = matcher(line)
        if state is not None:
            return state
    return None


def parse_tasks(text: str | None) -> TaskSummary:
    """
    Parse a tasks document into a TaskSummary.

    Lines matching no task notation are ignored. Missing or empty text
    yields an all-zero summary.
    """
    if not text:
        return TaskSummary()

    total = completed = blocked = parallel = in_progress = 0
    for line in text.splitlines():
        state = classify_line(line)
        if state is None:
            continue

        total += 1
        if state == DONE:
            completed += 1
        elif state == IN_PROGRESS:
            in_progress += 1

        if _PARALLEL.search(line):
            parallel += 1
        if _BLOCKED.search(line):
            blocked += 1

    return TaskSummary(
        total=total,
        completed=completed,
        blocked=blocked,
        parallel=parallel,
        in_progress=in_progress,
    )


# Lifecycle markers used to refine a fully-completed task list

_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$")
_STATUS_LINE = re.compile(r"^\s*(?:[-*]\s+)?\**status\**\s*:\s*\**\s*(.+)$", re.IGNORECASE)
_PHASE_PREFIX = re.compile(r"^(?:phase|stage|step)\s*[\w.]*\s*[:\-–—]\s*", re.IGNORECASE)
_MARKER_WORDS = (
    ("done", re.compile(r"^(?:done|complete|completed|finished|shipped)\b", re.IGNORECASE)),
    ("review", re.compile(r"^(?:in\s+|ready\s+for\s+|under\s+|code\s+)?review\b", re.IGNORECASE)),
    ("test", re.compile(r"^(?:in\s+|ready\s+for\s+)?(?:testing|test|qa|verification)\b", re.IGNORECASE)),
)
_EMPHASIS = re.compile(r"[*_`✅🔄]")


def _marker_from_status(value: str) -> str | None:
    value = _EMPHASIS.sub("", value).strip()
    for marker, pattern in _MARKER_WORDS:
        if pattern.match(value):
            return marker
    return None


def _marker_from_heading(title: str) -> str | None:
    title = _PHASE_PREFIX.sub("", _EMPHASIS.sub("", title).strip())
    # Only phase-only headings count ("## Review", "## Phase 4: Testing"),
    # not descriptive ones ("## Tests First (TDD)")
    if len(title.split()) > 3:
        return None
    for marker, pattern in _MARKER_WORDS:
        match = pattern.match(title)
        if match and not title[match.end():].strip():
            return marker
    return None


def find_phase_markers(text: str | None) -> tuple[set[str], set[str]]:
    """
    Find explicit lifecycle markers in a document.

    Returns (status_markers, heading_markers); each is a subset of
    {"test", "review", "done"}. Status markers come from `Status:` lines,
    heading markers from phase-only headings.
    """
    status_markers: set[str] = set()
    heading_markers: set[str] = set()
    if not text:
        return status_markers, heading_markers

    for line in text.splitlines():
        status = _STATUS_LINE.match(line)
        if status:
            marker = _marker_from_status(status.group(1))
            if marker:
                status_markers.add(marker)
            continue
        heading = _HEADING.match(line)
        if heading:
            marker = _marker_from_heading(heading.group(1))
            if marker:
                heading_markers.add(marker)

    return status_markers, heading_markers


def extract_title(content: str | None) -> str | None:
    """Extract the title from a markdown document (first `# ` heading)."""
    if not content:
        return None
    for line in content.splitlines():
        if line.startswith("# "):
            title = line[2:].strip()
            return title or None
    return None


def count_sections(content: str | None) -> int:
    """Count `## ` sections in a markdown document."""
    if not content:
        return 0
    return sum(1 for line in content.splitlines() if line.startswith("## "))
