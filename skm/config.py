"""
Configuration management for SKM.

Loads and validates:
- skm.yml: Main configuration (priority weights, thresholds, scan settings)
- projects section: Per-project overrides (impact, automation level)

Lookup order: <root>/skm.yml, then ~/.config/skm/config.yml. Invalid values
fall back to their defaults and are reported through `SkmConfig.warnings`.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "skm.yml"
GLOBAL_CONFIG_PATH = Path.home() / ".config" / "skm" / "config.yml"
SKM_DIRNAME = ".skm"

AUTOMATION_LEVELS = ("L0", "L1", "L2", "L3")


@dataclass
class PriorityWeights:
    """Weights of the priority formula.

    score = needs_human*w1 + risk*w2 + staleness*w3 + impact*w4 - confidence*w5
    """
    needs_human: float = 40.0
    risk: float = 25.0
    staleness: float = 15.0
    impact: float = 15.0
    confidence: float = 10.0


@dataclass
class ProjectOverride:
    """Operator-supplied metadata for one project."""
    impact: int | None = None  # 1 (low) .. 3 (high)
    automation_level: str | None = None  # L0 .. L3
    approved_by_human: bool = False


@dataclass
class SkmConfig:
    """Complete SKM configuration."""
    weights: PriorityWeights = field(default_factory=PriorityWeights)
    attention_threshold: float = 50.0
    scan_depth: int = 5
    staleness_horizon_days: float = 30.0
    stall_days: int = 14
    max_workers: int | None = None  # None = min(32, cpu_count + 4)
    ignore_dirs: list[str] = field(default_factory=list)  # added to the built-in set
    projects: dict[str, ProjectOverride] = field(default_factory=dict)
    source: Path | None = None
    warnings: list[str] = field(default_factory=list)

    def override_for(self, project_path: Path) -> ProjectOverride:
        """Find the override for a project, by resolved path first, then by slug."""
        key = str(project_path)
        if key in self.projects:
            return self.projects[key]
        return self.projects.get(project_path.name, ProjectOverride())

    def resolved_max_workers(self) -> int:
        if self.max_workers:
            return self.max_workers
        return min(32, (os.cpu_count() or 1) + 4)

    @classmethod
    def load(cls, root: Path | None = None, path: Path | None = None) -> "SkmConfig":
        """Load configuration for a scan root.

        An explicit `path` wins; otherwise `<root>/skm.yml` and then the
        global config are tried. A missing file yields the defaults.
        """
        candidates: list[Path] = []
        if path is not None:
            candidates.append(path)
        else:
            if root is not None:
                candidates.append(root / CONFIG_FILENAME)
            candidates.append(GLOBAL_CONFIG_PATH)

        for candidate in candidates:
            if not candidate.exists():
                if candidate == path:
                    config = cls()
                    config._warn(f"Config file {candidate} not found; using defaults")
                    return config
                continue
            try:
                with open(candidate, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                config = cls(source=candidate)
                config._warn(f"Could not read {candidate}: {e}; using defaults")
                return config
            if not isinstance(data, dict):
                config = cls(source=candidate)
                config._warn(f"{candidate} is not a mapping; using defaults")
                return config
            base_dir = candidate.parent if root is None else root
            config = cls._parse_main_config(data, base_dir=base_dir.resolve())
            config.source = candidate
            return config

        return cls()

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    @classmethod
    def _parse_main_config(cls, data: dict[str, Any], base_dir: Path) -> "SkmConfig":
        config = cls()
        defaults = cls()

        weights_data = data.get("weights", {})
        if not isinstance(weights_data, dict):
            config._warn("weights must be a mapping; using default weights")
            weights_data = {}
        weights = PriorityWeights()
        for f in fields(PriorityWeights):
            if f.name not in weights_data:
                continue
            value = _as_float(weights_data[f.name])
            if value is None or value < 0:
                config._warn(
                    f"weights.{f.name}={weights_data[f.name]!r} is not a non-negative number; "
                    f"using {getattr(weights, f.name)}"
                )
                continue
            setattr(weights, f.name, value)
        config.weights = weights

        if "attention_threshold" in data:
            value = _as_float(data["attention_threshold"])
            if value is None:
                config._warn(
                    f"attention_threshold={data['attention_threshold']!r} is not a number; "
                    f"using {defaults.attention_threshold}"
                )
            else:
                config.attention_threshold = value

        if "scan_depth" in data:
            value = _as_int(data["scan_depth"])
            if value is None or value < 0:
                config._warn(
                    f"scan_depth={data['scan_depth']!r} is not a non-negative integer; "
                    f"using {defaults.scan_depth}"
                )
            else:
                config.scan_depth = value

        if "staleness_horizon_days" in data:
            value = _as_float(data["staleness_horizon_days"])
            if value is None or value <= 0:
                config._warn(
                    f"staleness_horizon_days={data['staleness_horizon_days']!r} must be positive; "
                    f"using {defaults.staleness_horizon_days}"
                )
            else:
                config.staleness_horizon_days = value

        if "stall_days" in data:
            value = _as_int(data["stall_days"])
            if value is None or value < 0:
                config._warn(
                    f"stall_days={data['stall_days']!r} is not a non-negative integer; "
                    f"using {defaults.stall_days}"
                )
            else:
                config.stall_days = value

        if data.get("max_workers") is not None:
            value = _as_int(data["max_workers"])
            if value is None or value < 1:
                config._warn(f"max_workers={data['max_workers']!r} must be >= 1; using automatic")
            else:
                config.max_workers = value

        ignore_dirs = data.get("ignore_dirs", [])
        if isinstance(ignore_dirs, list):
            config.ignore_dirs = [str(d) for d in ignore_dirs]
        else:
            config._warn("ignore_dirs must be a list; ignoring it")

        projects_data = data.get("projects", {})
        if isinstance(projects_data, dict):
            for key, project_data in projects_data.items():
                override = config._parse_override(str(key), project_data)
                if override is None:
                    continue
                # Path-like keys are resolved relative to the config location
                if "/" in str(key) or str(key).startswith("~"):
                    key_path = Path(str(key)).expanduser()
                    if not key_path.is_absolute():
                        key_path = base_dir / key_path
                    key = str(key_path.resolve())
                config.projects[str(key)] = override
        else:
            config._warn("projects must be a mapping; ignoring it")

        return config

    def _parse_override(self, key: str, data: Any) -> ProjectOverride | None:
        if not isinstance(data, dict):
            self._warn(f"projects.{key} must be a mapping; ignoring it")
            return None

        override = ProjectOverride()
        if data.get("impact") is not None:
            impact = _as_int(data["impact"])
            if impact is None or not 1 <= impact <= 3:
                self._warn(f"projects.{key}.impact={data['impact']!r} must be 1-3; ignoring it")
            else:
                override.impact = impact

        if data.get("automation_level") is not None:
            level = str(data["automation_level"]).upper()
            if level not in AUTOMATION_LEVELS:
                self._warn(
                    f"projects.{key}.automation_level={data['automation_level']!r} "
                    f"must be one of {', '.join(AUTOMATION_LEVELS)}; ignoring it"
                )
            else:
                override.automation_level = level

        override.approved_by_human = bool(data.get("approved_by_human", False))
        return override


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def get_skm_dir(root: Path | None = None) -> Path:
    """Get the .skm directory path."""
    if root is None:
        root = Path.cwd()
    return root / SKM_DIRNAME


def ensure_skm_dir(root: Path | None = None) -> Path:
    """Ensure .skm directory exists and return its path."""
    skm_dir = get_skm_dir(root)
    skm_dir.mkdir(parents=True, exist_ok=True)
    return skm_dir
