"""
Status cache for SKM.

Memoizes the analysis of each project (stage, task summary, priority) keyed
by a fingerprint of its artifact files, so unchanged projects are not
re-parsed. The cache is an explicit handle: `StatusCache.open()` loads it at
the start of a scan and `flush()` persists it at the end.

Concurrency: at most one computation per project path is in flight. Paths
are mapped onto a fixed set of lock shards; the entry table itself is only
touched under a short table lock, and entries are immutable, so readers
never observe a half-updated entry.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .config import SkmConfig, get_skm_dir
from .errors import IssueKind, ScanIssue
from .locator import (
    ARTIFACT_KINDS,
    ArtifactInfo,
    ArtifactSet,
    ProjectRoot,
    fingerprint_artifacts,
    load_artifacts,
    locate_artifacts,
)
from .parser import TaskSummary, count_sections, extract_title, parse_tasks
from .scoring import (
    PriorityInputs,
    ScoringContext,
    compute_score,
    derive_inputs,
    human_requirements,
)
from .stage import Stage, classify_stage
from .store import DB_FILENAME, Store

logger = logging.getLogger(__name__)

DEFAULT_SHARDS = 64


@dataclass(frozen=True)
class CacheEntry:
    """Memoized analysis of one project. Replaced whole, never mutated."""
    path: str
    fingerprint: str
    stage: Stage
    tasks: TaskSummary
    inputs: PriorityInputs
    score: float
    title: str | None = None
    present: tuple[str, ...] = ()
    requirements: tuple[str, ...] = ()
    issues: tuple[ScanIssue, ...] = ()
    artifacts: tuple[ArtifactInfo, ...] = ()
    computed_at: str = ""

    @property
    def updated(self) -> datetime | None:
        """Newest modification among the contributing artifacts."""
        if not self.artifacts:
            return None
        return max(info.modified for info in self.artifacts)

    def to_payload(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "tasks": self.tasks.to_dict(),
            "inputs": self.inputs.to_dict(),
            "score": self.score,
            "title": self.title,
            "present": list(self.present),
            "requirements": list(self.requirements),
            "issues": [issue.to_dict() for issue in self.issues],
            "artifacts": [info.to_dict() for info in self.artifacts],
            "computed_at": self.computed_at,
        }

    @classmethod
    def from_payload(cls, path: str, fingerprint: str, payload: dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry; raises KeyError/TypeError/ValueError on bad payloads."""
        if not isinstance(payload, dict):
            raise TypeError("payload is not an object")
        return cls(
            path=path,
            fingerprint=fingerprint,
            stage=Stage.parse(payload["stage"]),
            tasks=TaskSummary.from_dict(payload["tasks"]),
            inputs=PriorityInputs.from_dict(payload["inputs"]),
            score=float(payload["score"]),
            title=payload.get("title"),
            present=tuple(str(kind) for kind in payload.get("present", [])),
            requirements=tuple(str(r) for r in payload.get("requirements", [])),
            issues=tuple(
                ScanIssue(IssueKind(item["kind"]), item["message"], item.get("path"))
                for item in payload.get("issues", [])
            ),
            artifacts=tuple(ArtifactInfo.from_dict(item) for item in payload.get("artifacts", [])),
            computed_at=str(payload.get("computed_at", "")),
        )


@dataclass(frozen=True)
class CacheResult:
    """What get_or_compute hands back for one project."""
    entry: CacheEntry
    cached: bool  # True when no parsing was needed
    issues: tuple[ScanIssue, ...] = ()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    rescored: int = 0
    parses: int = 0
    corrupt: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "rescored": self.rescored,
            "parses": self.parses,
            "corrupt": self.corrupt,
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def describe_artifacts(artifacts: ArtifactSet) -> tuple[ArtifactInfo, ...]:
    """Summaries of the files that made up the analysis, in artifact-kind order."""
    described: list[ArtifactInfo] = []
    for kind in ARTIFACT_KINDS:
        info = artifacts.files.get(kind)
        if info is None:
            continue
        described.append(
            ArtifactInfo(
                kind=kind,
                path=str(info.path),
                size=info.size,
                modified=info.modified,
                valid=artifacts.present(kind),
                sections=count_sections(artifacts.text(kind)),
            )
        )
    return tuple(described)


def analyze_project(
    project: ProjectRoot,
    artifacts: ArtifactSet,
    fingerprint: str,
    context: ScoringContext,
    config: SkmConfig,
) -> CacheEntry:
    """Run parse -> classify -> score for one project."""
    load_artifacts(artifacts)
    tasks = parse_tasks(artifacts.tasks)
    stage = classify_stage(artifacts, tasks)
    present = artifacts.present_kinds()
    inputs = derive_inputs(stage, tasks, present, context, config, artifacts.last_modified())
    return CacheEntry(
        path=str(project.path),
        fingerprint=fingerprint,
        stage=stage,
        tasks=tasks,
        inputs=inputs,
        score=compute_score(inputs, config.weights),
        title=extract_title(artifacts.spec),
        present=tuple(sorted(present)),
        requirements=tuple(human_requirements(stage, tasks, context.git)),
        issues=tuple(artifacts.issues),
        artifacts=describe_artifacts(artifacts),
        computed_at=_now(),
    )


class StatusCache:
    """Process-scoped cache handle, optionally backed by a SQLite Store."""

    def __init__(self, store: Store | None = None, shards: int = DEFAULT_SHARDS):
        self.store = store
        self.stats = CacheStats()
        self.issues: list[ScanIssue] = []
        self._entries: dict[str, CacheEntry] = {}
        self._table_lock = threading.Lock()
        self._shards = [threading.Lock() for _ in range(max(shards, 1))]
        # Pending writes since the last flush
        self._changed: set[str] = set()
        self._removed: set[str] = set()
        self._cleared = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @classmethod
    def open(cls, db_path: Path | None = None, shards: int = DEFAULT_SHARDS) -> "StatusCache":
        """
        Open the persisted cache.

        A database file that is not SQLite is replaced and the cache starts
        empty. A location that cannot be used at all (not a directory,
        read-only, locked) yields a memory-only cache; either way the scan
        goes on and the problem is reported through `issues`.
        """
        if db_path is None:
            db_path = get_skm_dir() / DB_FILENAME
        issues: list[ScanIssue] = []
        try:
            try:
                store = Store(db_path)
            except sqlite3.OperationalError:
                raise
            except sqlite3.DatabaseError as e:
                logger.warning("Status cache %s is unreadable (%s); starting empty", db_path, e)
                issues.append(ScanIssue(IssueKind.CACHE_CORRUPT, f"unreadable cache database: {e}", str(db_path)))
                db_path.unlink(missing_ok=True)
                store = Store(db_path)
            cache = cls.load(store, shards=shards)
        except (OSError, sqlite3.Error) as e:
            logger.warning("Status cache %s is unavailable (%s); using a memory-only cache", db_path, e)
            issues.append(ScanIssue(IssueKind.IO_UNAVAILABLE, f"cache unavailable: {e}", str(db_path)))
            cache = cls(shards=shards)
        cache.issues[:0] = issues
        return cache

    @classmethod
    def load(cls, store: Store, shards: int = DEFAULT_SHARDS) -> "StatusCache":
        """Load every readable entry from `store`. Corrupt rows are skipped."""
        cache = cls(store=store, shards=shards)
        try:
            rows = store.load_rows()
        except sqlite3.OperationalError:
            raise
        except sqlite3.DatabaseError as e:
            logger.warning("Status cache %s is unreadable (%s); starting empty", store.db_path, e)
            cache.issues.append(ScanIssue(IssueKind.CACHE_CORRUPT, f"unreadable cache database: {e}", str(store.db_path)))
            store.reset()
            return cache

        for row in rows:
            try:
                payload = json.loads(row.payload_json)
                entry = CacheEntry.from_payload(row.path, row.fingerprint, payload)
            except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Dropping corrupt cache entry for %s: %s", row.path, e)
                cache.stats.corrupt += 1
                cache.issues.append(ScanIssue(IssueKind.CACHE_CORRUPT, f"corrupt cache entry: {e}", row.path))
                cache._removed.add(row.path)
                continue
            cache._entries[row.path] = entry

        logger.debug("Loaded %d cache entries from %s", len(cache._entries), store.db_path)
        return cache

    def flush(self) -> int:
        """
        Persist pending changes in one transaction. Returns rows written.

        Only entries changed since the last flush are written; dropped
        entries are deleted. After `invalidate_all` the table is rewritten.
        """
        if self.store is None:
            return 0
        with self._table_lock:
            if not (self._cleared or self._changed or self._removed):
                return 0
            cleared = self._cleared
            changed = [self._entries[path] for path in sorted(self._changed) if path in self._entries]
            removed = sorted(self._removed)
            self._cleared = False
            self._changed.clear()
            self._removed.clear()
        rows = [
            (entry.path, entry.fingerprint, json.dumps(entry.to_payload(), sort_keys=True))
            for entry in changed
        ]
        if cleared:
            written = self.store.replace_all(rows)
        else:
            written = self.store.upsert_rows(rows, delete_paths=removed)
        logger.debug("Flushed %d cache entries to %s", written, self.store.db_path)
        return written

    def invalidate_all(self) -> None:
        """Forget every entry; the next flush empties the store too."""
        with self._table_lock:
            self._entries.clear()
            self._changed.clear()
            self._removed.clear()
            self._cleared = True

    def retain(self, paths: Iterable[str]) -> int:
        """Drop entries for projects that were not found. Returns the number dropped."""
        keep = set(paths)
        with self._table_lock:
            orphans = [path for path in self._entries if path not in keep]
            for path in orphans:
                del self._entries[path]
                self._changed.discard(path)
                self._removed.add(path)
        return len(orphans)

    # =========================================================================
    # Entries
    # =========================================================================

    def get(self, path: str) -> CacheEntry | None:
        with self._table_lock:
            return self._entries.get(path)

    def _replace(self, entry: CacheEntry) -> None:
        with self._table_lock:
            self._entries[entry.path] = entry
            self._changed.add(entry.path)
            self._removed.discard(entry.path)

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._entries)

    def _lock_for(self, key: str) -> threading.Lock:
        digest = hashlib.sha1(key.encode()).digest()
        return self._shards[int.from_bytes(digest[:4], "big") % len(self._shards)]

    def get_or_compute(
        self,
        project: ProjectRoot,
        context: ScoringContext,
        config: SkmConfig,
    ) -> CacheResult:
        """
        Return the analysis of `project`, reusing the cached entry when the
        artifact fingerprint is unchanged.

        On a fingerprint match nothing is parsed. The priority inputs are
        re-derived (they depend on git state and time), and only if they or
        the resulting score differ is the entry replaced with a re-scored copy.
        """
        key = str(project.path)
        with self._lock_for(key):
            artifacts = locate_artifacts(project)
            fingerprint = fingerprint_artifacts(artifacts)
            entry = self.get(key)

            if entry is not None and entry.fingerprint == fingerprint:
                inputs = derive_inputs(
                    entry.stage,
                    entry.tasks,
                    frozenset(entry.present),
                    context,
                    config,
                    artifacts.last_modified(),
                )
                score = compute_score(inputs, config.weights)
                with self._table_lock:
                    self.stats.hits += 1
                if inputs != entry.inputs or score != entry.score:
                    entry = replace(
                        entry,
                        inputs=inputs,
                        score=score,
                        requirements=tuple(human_requirements(entry.stage, entry.tasks, context.git)),
                        computed_at=_now(),
                    )
                    self._replace(entry)
                    with self._table_lock:
                        self.stats.rescored += 1
                issues = list(artifacts.issues)
                issues.extend(issue for issue in entry.issues if issue not in issues)
                return CacheResult(entry=entry, cached=True, issues=tuple(issues))

            with self._table_lock:
                self.stats.misses += 1
                self.stats.parses += 1
            entry = analyze_project(project, artifacts, fingerprint, context, config)
            self._replace(entry)
            return CacheResult(entry=entry, cached=False, issues=entry.issues)
