from __future__ import annotations

import asyncio
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from skm.cache import StatusCache
from skm.config import ProjectOverride, SkmConfig
from skm.errors import IssueKind
from skm.git import GitStatus, no_git
from skm.locator import ProjectType
from skm.portfolio import filter_projects, run_scan, scan_portfolio
from skm.stage import Stage
from skm.store import Store

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _make_project(root: Path, name: str, **artifacts: str) -> Path:
    artifact_dir = root / name / "specs"
    artifact_dir.mkdir(parents=True)
    for kind, text in artifacts.items():
        (artifact_dir / f"{kind}.md").write_text(text, encoding="utf-8")
    return root / name


@pytest.fixture
def portfolio_root(tmp_path):
    _make_project(tmp_path, "alpha", spec="# Alpha\n")
    _make_project(tmp_path, "beta", spec="# Beta\n", plan="# Plan\n", tasks="- [x] a\n- [x] b\n")
    _make_project(
        tmp_path,
        "gamma",
        spec="# Gamma\n",
        plan="# Plan\n",
        tasks="- [x] a\n- [ ] b [BLOCKED]\n- [ ] c\n",
    )
    (tmp_path / "not-a-project" / "src").mkdir(parents=True)
    return tmp_path


def _scan(roots, config=None, cache=None, **kwargs):
    kwargs.setdefault("git_provider", no_git)
    kwargs.setdefault("now", NOW)
    return run_scan(roots, config or SkmConfig(), cache=cache if cache is not None else StatusCache(), **kwargs)


def test_scan_finds_and_ranks_projects(portfolio_root):
    portfolio = _scan([portfolio_root])

    slugs = [p.slug for p in portfolio.projects]
    assert sorted(slugs) == ["alpha", "beta", "gamma"]
    assert slugs[0] == "gamma"  # blocked task
    stages = {p.slug: p.stage for p in portfolio.projects}
    assert stages == {"alpha": Stage.SPECIFY, "beta": Stage.DONE, "gamma": Stage.IMPLEMENT}
    assert portfolio.summary.total_projects == 3
    assert portfolio.summary.total_tasks == 5
    assert portfolio.summary.completed_tasks == 3
    assert portfolio.summary.by_stage == {"Specify": 1, "Implement": 1, "Done": 1}
    assert portfolio.stats.projects_found == 3


def test_sorted_by_score_then_path(portfolio_root):
    portfolio = _scan([portfolio_root])

    keys = [(-p.score, p.path) for p in portfolio.projects]
    assert keys == sorted(keys)


def test_scans_are_deterministic(portfolio_root):
    first = _scan([portfolio_root]).to_dict()
    second = _scan([portfolio_root]).to_dict()

    assert first["projects"] == second["projects"]
    assert first["summary"] == second["summary"]


def test_second_scan_uses_cache(portfolio_root):
    cache = StatusCache()

    _scan([portfolio_root], cache=cache)
    again = _scan([portfolio_root], cache=cache)

    assert cache.stats.parses == 3
    assert all(p.cached for p in again.projects)
    assert again.stats.cache_hits == 3


def test_removed_projects_leave_the_cache(portfolio_root):
    cache = StatusCache()
    _scan([portfolio_root], cache=cache)

    shutil.rmtree(portfolio_root / "alpha")
    portfolio = _scan([portfolio_root], cache=cache)

    assert len(portfolio.projects) == 2
    assert len(cache) == 2


def test_multiple_roots_are_merged_and_deduplicated(tmp_path):
    first = tmp_path / "one"
    second = tmp_path / "two"
    _make_project(first, "alpha", spec="# a\n")
    _make_project(second, "beta", spec="# b\n")

    portfolio = _scan([first, second, first])

    assert [p.slug for p in portfolio.projects] == ["alpha", "beta"]
    assert len(portfolio.stats.roots) == 3


def test_failing_project_is_annotated_not_fatal(portfolio_root):
    def git_provider(path):
        if path.name == "beta":
            raise RuntimeError("git exploded")
        return None

    portfolio = _scan([portfolio_root], git_provider=git_provider)

    beta = next(p for p in portfolio.projects if p.slug == "beta")
    assert len(portfolio.projects) == 3
    assert beta.score == 0.0
    assert beta.issues[0].kind == IssueKind.INTERNAL
    assert "git exploded" in beta.issues[0].message


def test_git_and_overrides_feed_the_score(portfolio_root):
    config = SkmConfig(projects={"alpha": ProjectOverride(impact=3, automation_level="L2")})

    def git_provider(path):
        return GitStatus(branch="main", is_dirty=path.name == "alpha", last_commit=NOW - timedelta(days=60))

    plain = _scan([portfolio_root], git_provider=git_provider)
    boosted = _scan([portfolio_root], config=config, git_provider=git_provider)

    alpha_plain = next(p for p in plain.projects if p.slug == "alpha")
    alpha_boosted = next(p for p in boosted.projects if p.slug == "alpha")
    assert alpha_boosted.score > alpha_plain.score
    assert alpha_boosted.automation_level == "L2"
    assert alpha_boosted.git.is_dirty is True
    assert "fix" in alpha_boosted.requirements


def test_config_warnings_become_issues(portfolio_root):
    config = SkmConfig(warnings=["scan_depth='x' is not a non-negative integer; using 5"])

    portfolio = _scan([portfolio_root], config=config)

    assert portfolio.issues[0].kind == IssueKind.CONFIG_INVALID


def test_missing_root_is_reported(tmp_path):
    portfolio = _scan([tmp_path / "missing"])

    assert portfolio.projects == []
    assert portfolio.issues[0].kind == IssueKind.IO_UNAVAILABLE


def test_corrupt_cache_row_is_attached_to_its_project(portfolio_root, tmp_path):
    store = Store(tmp_path / "db" / "cache.db")
    alpha_path = str((portfolio_root / "alpha").resolve())
    store.upsert_rows([(alpha_path, "bad", "not json")])
    cache = StatusCache.load(store)

    portfolio = _scan([portfolio_root], cache=cache)

    alpha = next(p for p in portfolio.projects if p.slug == "alpha")
    assert alpha.stage == Stage.SPECIFY
    assert [issue.kind for issue in alpha.issues] == [IssueKind.CACHE_CORRUPT]


def test_worker_limit_is_respected(portfolio_root):
    portfolio = asyncio.run(
        scan_portfolio([portfolio_root], SkmConfig(), StatusCache(), git_provider=no_git, now=NOW, max_workers=1)
    )

    assert portfolio.stats.workers == 1
    assert len(portfolio.projects) == 3


def test_run_scan_loads_config_from_root(portfolio_root):
    (portfolio_root / "skm.yml").write_text("attention_threshold: 0\n")

    portfolio = run_scan([portfolio_root], cache=StatusCache(), git_provider=no_git, now=NOW)

    assert portfolio.summary.needs_attention == 3


def test_to_dict_shape(portfolio_root):
    data = _scan([portfolio_root]).to_dict()

    assert set(data) == {"generated_at", "summary", "stats", "issues", "projects"}
    project = data["projects"][0]
    assert project["stage"] in {stage.value for stage in Stage}
    assert project["tasks"]["completed"] + project["tasks"]["incomplete"] == project["tasks"]["total"]
    assert project["next_action"]["command"]


def test_filter_projects(portfolio_root):
    projects = _scan([portfolio_root]).projects

    incomplete = filter_projects(projects, "incomplete", 50)
    in_specify = filter_projects(projects, "stage:specify", 50)
    attention = filter_projects(projects, "needs-attention", 0)

    assert [p.slug for p in incomplete] == ["gamma"]
    assert [p.slug for p in in_specify] == ["alpha"]
    assert all(p.score > 0 for p in attention)
    assert filter_projects(projects, None, 50) == projects
    with pytest.raises(ValueError):
        filter_projects(projects, "bogus", 50)


def test_project_report_fields(portfolio_root):
    (portfolio_root / "gamma" / "pyproject.toml").write_text("[project]\n")

    portfolio = _scan([portfolio_root])

    alpha = next(p for p in portfolio.projects if p.slug == "alpha")
    gamma = next(p for p in portfolio.projects if p.slug == "gamma")
    assert gamma.project_type == ProjectType.PYTHON
    assert alpha.project_type == ProjectType.UNKNOWN
    assert [info.kind for info in gamma.artifacts] == ["spec", "plan", "tasks"]
    assert gamma.updated == max(info.modified for info in gamma.artifacts)
    assert gamma.last_activity == gamma.artifacts[2].modified
    assert alpha.last_activity is None
    assert sum(gamma.explain.values()) == pytest.approx(gamma.score)

    data = gamma.to_dict()
    assert data["project_type"] == "python"
    assert data["stage_description"] == "In implementation - coding in progress"
    assert data["artifacts"][2]["kind"] == "tasks"
    assert data["tasks"]["last_activity"] == data["artifacts"][2]["modified"]
    assert data["updated"] is not None
    assert set(data["explain"]) == {"needs_human", "risk", "staleness", "impact", "confidence"}


def test_cached_projects_keep_their_artifacts(portfolio_root):
    cache = StatusCache()

    fresh = _scan([portfolio_root], cache=cache)
    cached = _scan([portfolio_root], cache=cache)

    assert all(p.cached for p in cached.projects)
    assert [p.to_dict()["artifacts"] for p in cached.projects] == [p.to_dict()["artifacts"] for p in fresh.projects]
