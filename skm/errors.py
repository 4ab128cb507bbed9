"""
Error taxonomy for the scan pipeline.

Nothing in the pipeline is fatal to a portfolio scan. Problems are recorded
as ScanIssue annotations on the affected project (or on the portfolio when
they are not tied to one project) and the scan carries on.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class IssueKind(str, Enum):
    IO_UNAVAILABLE = "io_unavailable"
    MALFORMED_ARTIFACT = "malformed_artifact"
    CONFIG_INVALID = "config_invalid"
    CACHE_CORRUPT = "cache_corrupt"
    INTERNAL = "internal"


@dataclass(frozen=True)
class ScanIssue:
    """A non-fatal problem met while scanning."""
    kind: IssueKind
    message: str
    path: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"kind": self.kind.value, "message": self.message, "path": self.path}


class SkmError(Exception):
    """Base error for SKM."""


class MalformedArtifactError(SkmError):
    """An artifact file exists but cannot be read as text."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed artifact {path}: {reason}")
