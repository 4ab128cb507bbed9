from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from skm.cache import CacheEntry, StatusCache
from skm.config import SkmConfig
from skm.errors import IssueKind
from skm.git import GitStatus
from skm.locator import find_projects
from skm.scoring import ScoringContext
from skm.stage import Stage
from skm.store import Store

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _project(tmp_path: Path, tasks: str = "- [x] a\n- [ ] b\n"):
    root = tmp_path / "proj" / "specs"
    root.mkdir(parents=True)
    (root / "spec.md").write_text("# Payments\n", encoding="utf-8")
    (root / "plan.md").write_text("# Plan\n", encoding="utf-8")
    (root / "tasks.md").write_text(tasks, encoding="utf-8")
    (project,) = find_projects(tmp_path)
    return project


def test_first_call_computes_second_call_hits(tmp_path):
    project = _project(tmp_path)
    cache = StatusCache()
    context = ScoringContext(now=NOW)
    config = SkmConfig()

    first = cache.get_or_compute(project, context, config)
    second = cache.get_or_compute(project, context, config)

    assert first.cached is False
    assert second.cached is True
    assert second.entry is first.entry
    assert first.entry.stage == Stage.IMPLEMENT
    assert first.entry.title == "Payments"
    assert cache.stats.parses == 1
    assert cache.stats.hits == 1


def test_hit_performs_no_parsing(tmp_path):
    project = _project(tmp_path)
    cache = StatusCache()
    context = ScoringContext(now=NOW)
    config = SkmConfig()
    cache.get_or_compute(project, context, config)

    with patch("skm.cache.parse_tasks") as parse, patch("skm.cache.load_artifacts") as load:
        result = cache.get_or_compute(project, context, config)

    assert result.cached is True
    parse.assert_not_called()
    load.assert_not_called()


def test_identical_results_are_byte_identical(tmp_path):
    project = _project(tmp_path)
    cache = StatusCache()
    context = ScoringContext(now=NOW)
    config = SkmConfig()

    first = cache.get_or_compute(project, context, config).entry.to_payload()
    second = cache.get_or_compute(project, context, config).entry.to_payload()

    assert json.dumps(first, sort_keys=True) == json.dumps(second, sort_keys=True)


def test_file_change_recomputes(tmp_path):
    project = _project(tmp_path)
    cache = StatusCache()
    context = ScoringContext(now=NOW)
    config = SkmConfig()
    cache.get_or_compute(project, context, config)

    (project.artifact_dir / "tasks.md").write_text("- [x] a\n- [x] b\n- [x] c\n", encoding="utf-8")
    result = cache.get_or_compute(project, context, config)

    assert result.cached is False
    assert result.entry.stage == Stage.DONE
    assert result.entry.tasks.total == 3
    assert cache.stats.parses == 2


def test_changed_git_state_rescores_without_parsing(tmp_path):
    project = _project(tmp_path)
    cache = StatusCache()
    config = SkmConfig()
    clean = ScoringContext(git=GitStatus("main", False, NOW), now=NOW)
    dirty = ScoringContext(git=GitStatus("main", True, NOW), now=NOW)

    before = cache.get_or_compute(project, clean, config)
    after = cache.get_or_compute(project, dirty, config)

    assert after.cached is True
    assert after.entry.score > before.entry.score
    assert "fix" in after.entry.requirements
    assert cache.stats.parses == 1
    assert cache.stats.rescored == 1
    assert cache.get(str(project.path)) is after.entry


def test_invalidate_all_forces_recompute(tmp_path):
    project = _project(tmp_path)
    cache = StatusCache()
    context = ScoringContext(now=NOW)
    config = SkmConfig()
    cache.get_or_compute(project, context, config)

    cache.invalidate_all()
    result = cache.get_or_compute(project, context, config)

    assert result.cached is False
    assert cache.stats.parses == 2


def test_retain_drops_orphans(tmp_path):
    project = _project(tmp_path)
    cache = StatusCache()
    cache.get_or_compute(project, ScoringContext(now=NOW), SkmConfig())

    assert cache.retain([str(project.path)]) == 0
    assert cache.retain([]) == 1
    assert len(cache) == 0


def test_flush_and_reload_survive_restart(tmp_path):
    project = _project(tmp_path)
    db_path = tmp_path / ".skm" / "cache.db"
    context = ScoringContext(now=NOW)
    config = SkmConfig()

    cache = StatusCache.open(db_path)
    first = cache.get_or_compute(project, context, config)
    assert cache.flush() == 1
    assert cache.flush() == 0  # nothing changed since

    reloaded = StatusCache.open(db_path)
    result = reloaded.get_or_compute(project, context, config)

    assert result.cached is True
    assert result.entry == first.entry
    assert reloaded.stats.parses == 0


def test_corrupt_row_is_a_miss(tmp_path):
    project = _project(tmp_path)
    db_path = tmp_path / "cache.db"
    store = Store(db_path)
    store.upsert_rows(
        [
            (str(project.path), "deadbeef", "{not json"),
            ("/elsewhere", "cafe", json.dumps({"stage": "Nope"})),
        ]
    )

    cache = StatusCache.load(store)
    result = cache.get_or_compute(project, ScoringContext(now=NOW), SkmConfig())

    assert cache.stats.corrupt == 2
    assert [issue.kind for issue in cache.issues] == [IssueKind.CACHE_CORRUPT] * 2
    assert result.cached is False
    assert result.entry.stage == Stage.IMPLEMENT


def test_unreadable_database_starts_empty(tmp_path):
    db_path = tmp_path / "cache.db"
    db_path.write_bytes(b"this is not a sqlite database at all" * 10)

    cache = StatusCache.open(db_path)

    assert len(cache) == 0
    assert cache.issues[0].kind == IssueKind.CACHE_CORRUPT
    assert Store(db_path).count() == 0


def test_payload_round_trip(tmp_path):
    project = _project(tmp_path)
    entry = StatusCache().get_or_compute(project, ScoringContext(now=NOW), SkmConfig()).entry

    rebuilt = CacheEntry.from_payload(entry.path, entry.fingerprint, json.loads(json.dumps(entry.to_payload())))

    assert rebuilt == entry


def test_concurrent_requests_compute_once(tmp_path):
    project = _project(tmp_path)
    cache = StatusCache()
    context = ScoringContext(now=NOW)
    config = SkmConfig()
    results = []

    def worker():
        results.append(cache.get_or_compute(project, context, config))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert cache.stats.parses == 1
    assert sum(1 for r in results if not r.cached) == 1
    assert len({r.entry for r in results}) == 1


def test_entry_describes_contributing_artifacts(tmp_path):
    project = _project(tmp_path)
    (project.path / "specs" / "plan.md").write_text("# Plan\n\n## Phase 1\n\n## Phase 2\n", encoding="utf-8")

    entry = StatusCache().get_or_compute(project, ScoringContext(now=NOW), SkmConfig()).entry

    assert [info.kind for info in entry.artifacts] == ["spec", "plan", "tasks"]
    plan = entry.artifacts[1]
    assert plan.path == str(project.path / "specs" / "plan.md")
    assert plan.sections == 2
    assert plan.valid is True
    assert entry.updated == max(info.modified for info in entry.artifacts)


def test_flush_writes_only_changed_entries(tmp_path):
    first = _project(tmp_path / "a")
    second = _project(tmp_path / "b")
    db_path = tmp_path / "cache.db"
    context = ScoringContext(now=NOW)
    config = SkmConfig()
    cache = StatusCache.open(db_path)
    cache.get_or_compute(first, context, config)
    cache.get_or_compute(second, context, config)
    assert cache.flush() == 2

    (first.path / "specs" / "tasks.md").write_text("- [x] a\n- [x] b\n- [ ] c\n", encoding="utf-8")
    cache.get_or_compute(first, context, config)
    cache.get_or_compute(second, context, config)

    assert cache.flush() == 1
    assert Store(db_path).count() == 2


def test_flush_deletes_dropped_and_corrupt_rows(tmp_path):
    project = _project(tmp_path)
    db_path = tmp_path / "cache.db"
    Store(db_path).upsert_rows([("/gone", "cafe", "{not json")])
    cache = StatusCache.open(db_path)
    cache.get_or_compute(project, ScoringContext(now=NOW), SkmConfig())

    cache.flush()

    assert [row.path for row in Store(db_path).load_rows()] == [str(project.path)]


def test_invalidate_all_empties_the_store(tmp_path):
    project = _project(tmp_path)
    db_path = tmp_path / "cache.db"
    cache = StatusCache.open(db_path)
    cache.get_or_compute(project, ScoringContext(now=NOW), SkmConfig())
    cache.flush()

    cache.invalidate_all()
    cache.flush()

    assert Store(db_path).count() == 0


def test_unusable_cache_location_falls_back_to_memory(tmp_path):
    project = _project(tmp_path)
    (tmp_path / ".skm").write_text("not a directory", encoding="utf-8")

    cache = StatusCache.open(tmp_path / ".skm" / "cache.db")
    result = cache.get_or_compute(project, ScoringContext(now=NOW), SkmConfig())

    assert cache.store is None
    assert [issue.kind for issue in cache.issues] == [IssueKind.IO_UNAVAILABLE]
    assert result.entry.stage == Stage.IMPLEMENT
    assert cache.flush() == 0


def test_locked_database_is_not_replaced(tmp_path):
    db_path = tmp_path / "cache.db"
    Store(db_path).upsert_rows([("/work/alpha", "abc", "{}")])

    with patch.object(Store, "load_rows", side_effect=sqlite3.OperationalError("database is locked")):
        cache = StatusCache.open(db_path)

    assert cache.store is None
    assert cache.issues[0].kind == IssueKind.IO_UNAVAILABLE
    assert Store(db_path).count() == 1
