"""
Portfolio aggregation for SKM.

Fans a scan out over one or more roots:
1. Discovery of project roots per scan root
2. The per-project pipeline (locate -> parse -> classify -> score), through
   the status cache
3. A single sorted snapshot (score desc, path asc) once every worker is done

A failure in one project is recorded on that project's status and never
stops the rest of the scan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from .cache import CacheResult, StatusCache
from .config import SkmConfig
from .errors import IssueKind, ScanIssue
from .git import GitProvider, GitStatus, get_git_status
from .locator import IGNORE_DIRS, ArtifactInfo, LayoutKind, ProjectRoot, ProjectType, find_projects
from .parser import TaskSummary
from .scoring import PriorityInputs, ScoringContext, explain_score
from .stage import NextAction, Stage, next_action, stage_description

logger = logging.getLogger(__name__)


@dataclass
class ProjectStatus:
    """Everything known about one project after a scan."""
    path: str
    slug: str
    layout: LayoutKind
    stage: Stage
    tasks: TaskSummary
    inputs: PriorityInputs
    score: float
    next_action: NextAction
    project_type: ProjectType = ProjectType.UNKNOWN
    title: str | None = None
    requirements: list[str] = field(default_factory=list)
    explain: dict[str, float] = field(default_factory=dict)
    artifacts: list[ArtifactInfo] = field(default_factory=list)
    updated: datetime | None = None
    automation_level: str | None = None
    git: GitStatus | None = None
    issues: list[ScanIssue] = field(default_factory=list)
    cached: bool = False

    @property
    def last_activity(self) -> datetime | None:
        """Modification time of the tasks document, if there is one."""
        for info in self.artifacts:
            if info.kind == "tasks":
                return info.modified
        return None

    def to_dict(self) -> dict[str, Any]:
        last_activity = self.last_activity
        return {
            "path": self.path,
            "slug": self.slug,
            "title": self.title,
            "project_type": self.project_type.value,
            "layout": self.layout.value,
            "stage": self.stage.value,
            "stage_description": stage_description(self.stage),
            "tasks": {
                **self.tasks.to_dict(),
                "last_activity": last_activity.isoformat() if last_activity else None,
            },
            "inputs": self.inputs.to_dict(),
            "score": round(self.score, 2),
            "explain": {name: round(value, 2) for name, value in self.explain.items()},
            "requirements": list(self.requirements),
            "next_action": self.next_action.to_dict(),
            "automation_level": self.automation_level,
            "git": self.git.to_dict() if self.git else None,
            "artifacts": [info.to_dict() for info in self.artifacts],
            "updated": self.updated.isoformat() if self.updated else None,
            "issues": [issue.to_dict() for issue in self.issues],
            "cached": self.cached,
        }


@dataclass
class ScanStats:
    roots: list[str] = field(default_factory=list)
    projects_found: int = 0
    scan_time_ms: int = 0
    workers: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    parses: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "roots": list(self.roots),
            "projects_found": self.projects_found,
            "scan_time_ms": self.scan_time_ms,
            "workers": self.workers,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "parses": self.parses,
        }


@dataclass
class StatusSummary:
    needs_attention: int = 0
    total_projects: int = 0
    by_stage: dict[str, int] = field(default_factory=dict)
    total_tasks: int = 0
    completed_tasks: int = 0
    avg_priority: float = 0.0

    @classmethod
    def build(cls, projects: Sequence[ProjectStatus], threshold: float) -> "StatusSummary":
        by_stage: dict[str, int] = {}
        for project in projects:
            by_stage[project.stage.value] = by_stage.get(project.stage.value, 0) + 1
        return cls(
            needs_attention=sum(1 for p in projects if p.score > threshold),
            total_projects=len(projects),
            by_stage={stage.value: by_stage[stage.value] for stage in Stage if stage.value in by_stage},
            total_tasks=sum(p.tasks.total for p in projects),
            completed_tasks=sum(p.tasks.completed for p in projects),
            avg_priority=sum(p.score for p in projects) / len(projects) if projects else 0.0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "needs_attention": self.needs_attention,
            "total_projects": self.total_projects,
            "by_stage": dict(self.by_stage),
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "avg_priority": round(self.avg_priority, 2),
        }


@dataclass
class PortfolioStatus:
    """A consistent snapshot of every project found in one scan."""
    generated_at: datetime
    projects: list[ProjectStatus] = field(default_factory=list)
    issues: list[ScanIssue] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    summary: StatusSummary = field(default_factory=StatusSummary)

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat().replace("+00:00", "Z"),
            "summary": self.summary.to_dict(),
            "stats": self.stats.to_dict(),
            "issues": [issue.to_dict() for issue in self.issues],
            "projects": [project.to_dict() for project in self.projects],
        }


def sort_key(project: ProjectStatus) -> tuple[float, str]:
    return (-project.score, project.path)


def _status_from_result(
    project: ProjectRoot,
    result: CacheResult,
    git: GitStatus | None,
    config: SkmConfig,
    automation_level: str | None,
) -> ProjectStatus:
    entry = result.entry
    return ProjectStatus(
        path=entry.path,
        slug=project.slug,
        layout=project.layout,
        stage=entry.stage,
        tasks=entry.tasks,
        inputs=entry.inputs,
        score=entry.score,
        next_action=next_action(entry.stage),
        project_type=project.project_type,
        title=entry.title,
        requirements=list(entry.requirements),
        explain=explain_score(entry.inputs, config.weights),
        artifacts=list(entry.artifacts),
        updated=entry.updated,
        automation_level=automation_level,
        git=git,
        issues=list(result.issues),
        cached=result.cached,
    )


def _failed_status(project: ProjectRoot, error: Exception) -> ProjectStatus:
    """Placeholder record for a project whose pipeline raised."""
    return ProjectStatus(
        path=str(project.path),
        slug=project.slug,
        layout=project.layout,
        stage=Stage.BOOTSTRAP,
        tasks=TaskSummary(),
        inputs=PriorityInputs(),
        score=0.0,
        next_action=next_action(Stage.BOOTSTRAP),
        project_type=project.project_type,
        issues=[
            ScanIssue(
                IssueKind.INTERNAL,
                f"{type(error).__name__}: {error}",
                str(project.path),
            )
        ],
    )


async def scan_portfolio(
    roots: Iterable[Path],
    config: SkmConfig,
    cache: StatusCache | None = None,
    git_provider: GitProvider | None = None,
    now: datetime | None = None,
    max_workers: int | None = None,
) -> PortfolioStatus:
    """
    Scan every root and return a sorted PortfolioStatus.

    Discovery and per-project work run in worker threads, bounded by a
    semaphore of `max_workers`. Results are only sorted and published after
    all of them have returned.
    """
    started = time.perf_counter()
    if git_provider is None:
        git_provider = get_git_status
    roots = [Path(root).expanduser().resolve() for root in roots]
    if cache is None:
        cache = StatusCache()
    if now is None:
        now = datetime.now(timezone.utc)
    workers = max(max_workers or config.resolved_max_workers(), 1)
    semaphore = asyncio.Semaphore(workers)
    ignore_dirs = IGNORE_DIRS | set(config.ignore_dirs)

    issues = [
        ScanIssue(IssueKind.CONFIG_INVALID, message, str(config.source) if config.source else None)
        for message in config.warnings
    ]

    async def discover(root: Path) -> tuple[list[ProjectRoot], list[ScanIssue]]:
        root_issues: list[ScanIssue] = []
        async with semaphore:
            found = await asyncio.to_thread(
                find_projects, root, config.scan_depth, ignore_dirs, root_issues
            )
        return found, root_issues

    discovered: dict[str, ProjectRoot] = {}
    for found, root_issues in await asyncio.gather(*(discover(root) for root in roots)):
        issues.extend(root_issues)
        for project in found:
            discovered.setdefault(str(project.path), project)

    def analyze(project: ProjectRoot) -> ProjectStatus:
        git = git_provider(project.path)
        override = config.override_for(project.path)
        context = ScoringContext(git=git, override=override, now=now)
        result = cache.get_or_compute(project, context, config)
        return _status_from_result(project, result, git, config, override.automation_level)

    async def run_one(project: ProjectRoot) -> ProjectStatus:
        async with semaphore:
            try:
                return await asyncio.to_thread(analyze, project)
            except Exception as e:
                logger.warning("Failed to analyze %s: %s", project.path, e, exc_info=True)
                return _failed_status(project, e)

    projects = list(await asyncio.gather(*(run_one(p) for p in discovered.values())))

    cache.retain(discovered.keys())

    # Cache-level issues belong to a project when they name one
    by_path = {project.path: project for project in projects}
    for issue in cache.issues:
        owner = by_path.get(issue.path) if issue.path else None
        if owner is not None:
            owner.issues.append(issue)
        else:
            issues.append(issue)

    projects.sort(key=sort_key)
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.debug("Scanned %d projects in %dms", len(projects), elapsed_ms)

    return PortfolioStatus(
        generated_at=now,
        projects=projects,
        issues=issues,
        stats=ScanStats(
            roots=[str(root) for root in roots],
            projects_found=len(projects),
            scan_time_ms=elapsed_ms,
            workers=workers,
            cache_hits=sum(1 for p in projects if p.cached),
            cache_misses=sum(1 for p in projects if not p.cached),
            parses=cache.stats.parses,
        ),
        summary=StatusSummary.build(projects, config.attention_threshold),
    )


def run_scan(
    roots: Iterable[Path],
    config: SkmConfig | None = None,
    cache: StatusCache | None = None,
    **kwargs: Any,
) -> PortfolioStatus:
    """Synchronous wrapper around scan_portfolio."""
    roots = [Path(root) for root in roots]
    if config is None:
        config = SkmConfig.load(roots[0] if roots else None)
    return asyncio.run(scan_portfolio(roots, config, cache=cache, **kwargs))


def filter_projects(
    projects: Sequence[ProjectStatus],
    only: str | None,
    threshold: float,
) -> list[ProjectStatus]:
    """
    Apply a status filter:
    - needs-attention: score above the attention threshold
    - incomplete: some tasks still open
    - stage:<name>: projects in that stage
    """
    if not only:
        return list(projects)
    if only == "needs-attention":
        return [p for p in projects if p.score > threshold]
    if only == "incomplete":
        return [p for p in projects if p.tasks.completed < p.tasks.total]
    if only.startswith("stage:"):
        stage = Stage.parse(only[len("stage:"):])
        return [p for p in projects if p.stage == stage]
    raise ValueError(f"Unknown filter: {only}")
