"""
Project discovery and artifact resolution for SKM.

Walks the filesystem looking for Spec-Kit projects and resolves, per project,
which files make up its artifact set:
- Direct layout: constitution/spec/plan/tasks directly in .specify/ or specs/
- Feature-based layout: numbered feature directories (001-auth, 002-billing)
  where each artifact kind comes from the newest feature that has it
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from .errors import IssueKind, MalformedArtifactError, ScanIssue

logger = logging.getLogger(__name__)


ARTIFACT_DIRS = ("specs", ".specify")
ARTIFACT_KINDS = ("constitution", "spec", "plan", "tasks")

# Directories never worth descending into
IGNORE_DIRS = {
    ".git",
    ".hg",
    ".svn",
    "node_modules",
    "bower_components",
    "vendor",
    "target",
    "dist",
    "build",
    "__pycache__",
    "venv",
    ".venv",
    "env",
    ".tox",
    ".nox",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".next",
    ".nuxt",
    ".skm",
}

# Spec-Kit feature directories: three-digit number, dash, slug (001-auth)
_FEATURE_DIR = re.compile(r"^(\d{3})-\S")


class LayoutKind(str, Enum):
    DIRECT = "direct"
    FEATURE_BASED = "feature_based"


class ProjectType(str, Enum):
    RUST = "rust"
    NODE = "node"
    PYTHON = "python"
    GO = "go"
    GENERIC = "generic"
    UNKNOWN = "unknown"


# First match wins
PROJECT_TYPE_MARKERS: tuple[tuple[ProjectType, tuple[str, ...]], ...] = (
    (ProjectType.RUST, ("Cargo.toml",)),
    (ProjectType.NODE, ("package.json",)),
    (ProjectType.PYTHON, ("pyproject.toml", "setup.py")),
    (ProjectType.GO, ("go.mod",)),
    (ProjectType.GENERIC, ("src", "lib")),
)


@dataclass(frozen=True)
class ProjectRoot:
    """A discovered project and the layout of its artifact directory."""
    path: Path
    layout: LayoutKind = LayoutKind.DIRECT
    artifact_dir: Path | None = None
    feature_dirs: tuple[Path, ...] = ()
    project_type: ProjectType = ProjectType.UNKNOWN

    @property
    def slug(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class ArtifactFile:
    """Metadata of one artifact file, enough to fingerprint it."""
    kind: str
    path: Path
    size: int
    mtime_ns: int

    @property
    def modified(self) -> datetime:
        return datetime.fromtimestamp(self.mtime_ns / 1e9, tz=timezone.utc)


@dataclass(frozen=True)
class ArtifactInfo:
    """Reportable summary of one artifact used in a project's analysis."""
    kind: str
    path: str
    size: int
    modified: datetime
    valid: bool = True  # False when the file could not be read as text
    sections: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "path": self.path,
            "size": self.size,
            "modified": self.modified.isoformat(),
            "valid": self.valid,
            "sections": self.sections,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "ArtifactInfo":
        return cls(
            kind=str(data["kind"]),
            path=str(data["path"]),
            size=int(data["size"]),
            modified=datetime.fromisoformat(str(data["modified"])),
            valid=bool(data.get("valid", True)),
            sections=int(data.get("sections", 0)),
        )


@dataclass
class ArtifactSet:
    """The artifact files of one project and, once loaded, their text."""
    files: dict[str, ArtifactFile] = field(default_factory=dict)
    constitution: str | None = None
    spec: str | None = None
    plan: str | None = None
    tasks: str | None = None
    issues: list[ScanIssue] = field(default_factory=list)

    def text(self, kind: str) -> str | None:
        return getattr(self, kind)

    def present(self, kind: str) -> bool:
        """True when the artifact exists and its text was readable."""
        return self.text(kind) is not None

    def has_any(self) -> bool:
        return any(self.present(kind) for kind in ARTIFACT_KINDS)

    def present_kinds(self) -> frozenset[str]:
        return frozenset(kind for kind in ARTIFACT_KINDS if self.present(kind))

    def last_modified(self) -> datetime | None:
        """Newest modification time among the artifact files."""
        if not self.files:
            return None
        return max(info.modified for info in self.files.values())


def find_projects(
    root: Path,
    max_depth: int = 5,
    ignore_dirs: set[str] | None = None,
    issues: list[ScanIssue] | None = None,
) -> list[ProjectRoot]:
    """
    Discover project roots under `root`.

    `root` itself is depth 0. Recursion stops at project roots, at ignored
    directories and at `max_depth`. Unreadable directories are logged and
    recorded in `issues` but never abort the walk. The result is sorted by
    path so it does not depend on filesystem iteration order.
    """
    if ignore_dirs is None:
        ignore_dirs = IGNORE_DIRS
    if issues is None:
        issues = []

    root = Path(root).expanduser().resolve()
    if not root.is_dir():
        logger.warning("Scan root is not a directory: %s", root)
        issues.append(ScanIssue(IssueKind.IO_UNAVAILABLE, "scan root is not a directory", str(root)))
        return []

    found: list[Path] = []
    stack: list[tuple[Path, int]] = [(root, 0)]
    while stack:
        current, depth = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as e:
            logger.warning("Skipping unreadable directory %s: %s", current, e)
            issues.append(ScanIssue(IssueKind.IO_UNAVAILABLE, f"unreadable directory: {e.strerror or e}", str(current)))
            continue

        subdirs: list[Path] = []
        is_project = False
        for entry in entries:
            # Artifact directories may be symlinks; traversal never follows them
            is_artifact_dir = entry.name in ARTIFACT_DIRS
            try:
                if not entry.is_dir(follow_symlinks=is_artifact_dir):
                    continue
            except OSError:
                continue
            if is_artifact_dir:
                is_project = True
            elif entry.name not in ignore_dirs:
                subdirs.append(Path(entry.path))

        if is_project:
            found.append(current)
            continue
        if depth >= max_depth:
            continue
        for subdir in subdirs:
            stack.append((subdir, depth + 1))

    projects = [_describe_project(path, issues) for path in sorted(found)]
    logger.debug("Found %d projects under %s", len(projects), root)
    return projects


def _describe_project(path: Path, issues: list[ScanIssue]) -> ProjectRoot:
    """Choose the artifact directory of a project and classify its layout."""
    project_type = detect_project_type(path)
    fallback: ProjectRoot | None = None
    for name in ARTIFACT_DIRS:
        artifact_dir = path / name
        if not artifact_dir.is_dir():
            continue
        if _direct_files(artifact_dir):
            return ProjectRoot(
                path=path,
                layout=LayoutKind.DIRECT,
                artifact_dir=artifact_dir,
                project_type=project_type,
            )
        feature_dirs = _feature_dirs(artifact_dir, issues)
        if feature_dirs:
            return ProjectRoot(
                path=path,
                layout=LayoutKind.FEATURE_BASED,
                artifact_dir=artifact_dir,
                feature_dirs=tuple(feature_dirs),
                project_type=project_type,
            )
        if fallback is None:
            fallback = ProjectRoot(
                path=path,
                layout=LayoutKind.DIRECT,
                artifact_dir=artifact_dir,
                project_type=project_type,
            )
    return fallback or ProjectRoot(path=path, project_type=project_type)


def detect_project_type(path: Path) -> ProjectType:
    """Guess the implementation language from marker files in the project root."""
    for project_type, markers in PROJECT_TYPE_MARKERS:
        if any((path / marker).exists() for marker in markers):
            return project_type
    return ProjectType.UNKNOWN


def _feature_dirs(artifact_dir: Path, issues: list[ScanIssue]) -> list[Path]:
    """Numbered feature directories ordered by (number, path)."""
    try:
        with os.scandir(artifact_dir) as it:
            entries = list(it)
    except OSError as e:
        logger.warning("Skipping unreadable artifact directory %s: %s", artifact_dir, e)
        issues.append(ScanIssue(IssueKind.IO_UNAVAILABLE, f"unreadable directory: {e.strerror or e}", str(artifact_dir)))
        return []

    numbered: list[tuple[int, Path]] = []
    for entry in entries:
        match = _FEATURE_DIR.match(entry.name)
        if not match:
            continue
        try:
            if not entry.is_dir():
                continue
        except OSError:
            continue
        numbered.append((int(match.group(1)), Path(entry.path)))
    numbered.sort(key=lambda item: (item[0], str(item[1])))
    return [p for _, p in numbered]


def _candidate_paths(directory: Path, kind: str) -> list[Path]:
    if kind == "constitution":
        return [directory / "constitution.md", directory / "memory" / "constitution.md"]
    return [directory / f"{kind}.md"]


def _stat_artifact(kind: str, path: Path, issues: list[ScanIssue]) -> ArtifactFile | None:
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Cannot stat artifact %s: %s", path, e)
        issues.append(ScanIssue(IssueKind.IO_UNAVAILABLE, f"cannot stat artifact: {e.strerror or e}", str(path)))
        return None
    if not path.is_file():
        return None
    return ArtifactFile(kind=kind, path=path, size=st.st_size, mtime_ns=st.st_mtime_ns)


def _direct_files(directory: Path, issues: list[ScanIssue] | None = None) -> dict[str, ArtifactFile]:
    if issues is None:
        issues = []
    files: dict[str, ArtifactFile] = {}
    for kind in ARTIFACT_KINDS:
        for candidate in _candidate_paths(directory, kind):
            info = _stat_artifact(kind, candidate, issues)
            if info is not None:
                files[kind] = info
                break
    return files


def locate_artifacts(project: ProjectRoot) -> ArtifactSet:
    """
    Resolve which files constitute a project's artifact set.

    Only metadata is gathered here; call `load_artifacts` for the text.
    """
    artifacts = ArtifactSet()
    if project.artifact_dir is None:
        return artifacts

    if project.layout == LayoutKind.DIRECT:
        artifacts.files = _direct_files(project.artifact_dir, artifacts.issues)
    else:
        # Newest feature first; each kind independently from the newest that has it
        for feature_dir in reversed(project.feature_dirs):
            for kind, info in _direct_files(feature_dir, artifacts.issues).items():
                artifacts.files.setdefault(kind, info)
        if "constitution" not in artifacts.files:
            for candidate in _candidate_paths(project.artifact_dir, "constitution"):
                info = _stat_artifact("constitution", candidate, artifacts.issues)
                if info is not None:
                    artifacts.files["constitution"] = info
                    break

    if "constitution" not in artifacts.files:
        shared = project.path / ".specify" / "memory" / "constitution.md"
        info = _stat_artifact("constitution", shared, artifacts.issues)
        if info is not None:
            artifacts.files["constitution"] = info

    return artifacts


def read_artifact(info: ArtifactFile) -> str:
    """Read an artifact as UTF-8 text, raising MalformedArtifactError on failure."""
    try:
        return info.path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise MalformedArtifactError(str(info.path), f"not valid UTF-8 ({e.reason})") from e
    except OSError as e:
        raise MalformedArtifactError(str(info.path), e.strerror or str(e)) from e


def load_artifacts(artifacts: ArtifactSet) -> ArtifactSet:
    """Fill in artifact text. Unreadable files are treated as absent."""
    for kind, info in artifacts.files.items():
        try:
            setattr(artifacts, kind, read_artifact(info))
        except MalformedArtifactError as e:
            logger.warning("Treating %s as absent: %s", info.path, e.reason)
            artifacts.issues.append(ScanIssue(IssueKind.MALFORMED_ARTIFACT, e.reason, str(info.path)))
            setattr(artifacts, kind, None)
    return artifacts


def fingerprint_artifacts(artifacts: ArtifactSet) -> str:
    """Hash the metadata of every contributing file (kind, path, size, mtime)."""
    records = sorted(
        f"{info.kind}\0{info.path}\0{info.size}\0{info.mtime_ns}"
        for info in artifacts.files.values()
    )
    content = "\n".join(records)
    return hashlib.sha256(content.encode()).hexdigest()[:16]
