"""
SKM CLI - Spec-Kit portfolio manager.

Commands:
    init      - Initialize SKM in the current directory
    scan      - Scan roots and print the ranked portfolio
    status    - Show the portfolio, optionally filtered
    cache     - Inspect or clear the status cache
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from pathlib import Path

import click
from dotenv import load_dotenv

# Load .env file from current directory
load_dotenv()

from . import __version__
from .cache import StatusCache
from .config import CONFIG_FILENAME, SkmConfig, ensure_skm_dir, get_skm_dir
from .errors import IssueKind, ScanIssue
from .portfolio import PortfolioStatus, ProjectStatus, filter_projects, run_scan
from .stage import stage_description
from .store import DB_FILENAME, Store


SAMPLE_CONFIG = """\
# SKM Configuration
# Looked up in the scan root, then in ~/.config/skm/config.yml

# Priority weights:
# score = needs_human*w + risk*w + staleness*w + impact*w - confidence*w
weights:
  needs_human: 40
  risk: 25
  staleness: 15
  impact: 15
  confidence: 10

attention_threshold: 50     # Projects scoring above this need attention
scan_depth: 5               # How deep to look for .specify/ or specs/
staleness_horizon_days: 30  # Days since last commit at which staleness saturates
stall_days: 14              # Days without progress before a project counts as stalled
# max_workers: 8            # Defaults to min(32, cpu_count + 4)

# Extra directory names to skip while scanning
ignore_dirs: []

# Per-project overrides, keyed by directory name or path
projects: {}
#  my-service:
#    impact: 3                # 1 (low) .. 3 (high)
#    automation_level: L1     # L0 .. L3
#    approved_by_human: false
#  ~/workspace/other-service:
#    impact: 1
"""

PRIORITY_ICONS = {
    "done": "✅",
    "high": "🔴",
    "medium": "🟡",
    "low": "🟢",
}

FILTER_HELP = "Filter: needs-attention, incomplete or stage:<name>"

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    debug = verbose or os.environ.get("SKM_DEBUG", "").lower() in ("1", "true", "yes")
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _scan_roots(roots: tuple[str, ...]) -> list[Path]:
    if not roots:
        return [Path.cwd().resolve()]
    return [Path(root).expanduser().resolve() for root in roots]


def _open_cache(root: Path, no_cache: bool) -> StatusCache:
    if no_cache:
        return StatusCache()
    return StatusCache.open(get_skm_dir(root) / DB_FILENAME)


def _run(
    roots: tuple[str, ...],
    depth: int | None,
    workers: int | None,
    no_cache: bool,
    config_path: str | None,
) -> tuple[SkmConfig, PortfolioStatus]:
    scan_roots = _scan_roots(roots)
    config = SkmConfig.load(scan_roots[0], Path(config_path) if config_path else None)
    if depth is not None:
        config.scan_depth = depth
    cache = _open_cache(scan_roots[0], no_cache)
    portfolio = run_scan(scan_roots, config, cache=cache, max_workers=workers)
    try:
        cache.flush()
    except (OSError, sqlite3.Error) as e:
        db_path = str(cache.store.db_path) if cache.store else None
        logger.warning("Could not save status cache %s: %s", db_path, e)
        portfolio.issues.append(ScanIssue(IssueKind.IO_UNAVAILABLE, f"could not save cache: {e}", db_path))
    return config, portfolio


def _priority_icon(project: ProjectStatus) -> str:
    if project.tasks.total > 0 and project.tasks.completed == project.tasks.total:
        return PRIORITY_ICONS["done"]
    if project.score > 50:
        return PRIORITY_ICONS["high"]
    if project.score > 30:
        return PRIORITY_ICONS["medium"]
    return PRIORITY_ICONS["low"]


def _print_portfolio(portfolio: PortfolioStatus, projects: list[ProjectStatus], limit: int | None) -> None:
    summary = portfolio.summary
    click.echo("=== Portfolio Status ===")
    click.echo(f"Generated: {portfolio.generated_at.strftime('%Y-%m-%d %H:%M UTC')}")
    click.echo()
    click.echo(f"Total Projects: {summary.total_projects}")
    click.echo(f"Need Attention: {summary.needs_attention}")
    percent = (summary.completed_tasks / summary.total_tasks * 100) if summary.total_tasks else 0.0
    click.echo(f"Tasks: {summary.completed_tasks}/{summary.total_tasks} completed ({percent:.0f}%)")
    click.echo(f"Average Priority: {summary.avg_priority:.1f}")
    click.echo()

    if not projects:
        click.echo("No projects found.")
    else:
        click.echo("Projects (by priority):")
        shown = projects if limit is None else projects[:limit]
        for project in shown:
            click.echo(
                f"  {_priority_icon(project)} [{project.score:>5.1f}] {project.slug} - "
                f"{project.stage.value} - {project.tasks.completed}/{project.tasks.total} tasks"
            )
            click.echo(f"      {stage_description(project.stage)}")
            if project.requirements:
                click.echo(f"      Needs: {', '.join(project.requirements)}")
            click.echo(f"      Next: {project.next_action.command}")
            for issue in project.issues:
                click.echo(f"      ! {issue.kind.value}: {issue.message}")
        if limit is not None and len(projects) > limit:
            click.echo(f"  ... and {len(projects) - limit} more projects")

    if portfolio.issues:
        click.echo("\nIssues encountered:")
        for issue in portfolio.issues:
            where = f" ({issue.path})" if issue.path else ""
            click.echo(f"  - {issue.kind.value}: {issue.message}{where}")


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """SKM - Spec-Kit portfolio manager."""
    _configure_logging(verbose)


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize SKM in the current directory."""
    root = Path.cwd()
    click.echo(f"Initializing SKM in: {root}")

    skm_dir = ensure_skm_dir(root)
    click.echo(f"  Created: {skm_dir}")

    store = Store(skm_dir / DB_FILENAME)
    click.echo(f"  Database: {store.db_path}")

    config_path = root / CONFIG_FILENAME
    if not config_path.exists() or force:
        config_path.write_text(SAMPLE_CONFIG)
        click.echo(f"  Created: {config_path}")
    else:
        click.echo(f"  Skipped: {config_path} (already exists)")

    gitignore_path = root / ".gitignore"
    gitignore_entry = "\n# SKM\n.skm/\n"
    if gitignore_path.exists():
        content = gitignore_path.read_text()
        if ".skm" not in content:
            with open(gitignore_path, "a") as f:
                f.write(gitignore_entry)
            click.echo(f"  Updated: {gitignore_path}")
    else:
        gitignore_path.write_text(gitignore_entry)
        click.echo(f"  Created: {gitignore_path}")

    click.echo("\nSKM initialized! Next steps:")
    click.echo(f"  1. Edit {CONFIG_FILENAME} to tune weights and project overrides")
    click.echo("  2. Run: skm scan")


@main.command()
@click.option("--root", "roots", multiple=True, type=click.Path(file_okay=False), help="Directory to scan (repeatable)")
@click.option("--depth", default=None, type=click.IntRange(min=0), help="Maximum directory depth")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Maximum concurrent workers")
@click.option("--no-cache", is_flag=True, help="Ignore and do not update the status cache")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="Configuration file")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def scan(
    roots: tuple[str, ...],
    depth: int | None,
    workers: int | None,
    no_cache: bool,
    config_path: str | None,
    as_json: bool,
):
    """Scan roots for Spec-Kit projects and rank them."""
    _, portfolio = _run(roots, depth, workers, no_cache, config_path)

    if as_json:
        click.echo(json.dumps(portfolio.to_dict(), indent=2))
        return

    _print_portfolio(portfolio, portfolio.projects, limit=None)
    click.echo(
        f"\nScan time: {portfolio.stats.scan_time_ms}ms "
        f"({portfolio.stats.cache_hits} cached, {portfolio.stats.parses} parsed)"
    )


@main.command()
@click.option("--root", "roots", multiple=True, type=click.Path(file_okay=False), help="Directory to scan (repeatable)")
@click.option("--only", default=None, help=FILTER_HELP)
@click.option("--limit", default=10, type=click.IntRange(min=1), help="Number of projects to show")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="Configuration file")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(
    roots: tuple[str, ...],
    only: str | None,
    limit: int,
    config_path: str | None,
    as_json: bool,
):
    """Show portfolio status, reusing cached analysis where possible."""
    config, portfolio = _run(roots, None, None, False, config_path)
    try:
        projects = filter_projects(portfolio.projects, only, config.attention_threshold)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--only")

    if as_json:
        data = portfolio.to_dict()
        data["projects"] = [project.to_dict() for project in projects]
        click.echo(json.dumps(data, indent=2))
        return

    _print_portfolio(portfolio, projects, limit=limit)


@main.group(name="cache")
def cache_group() -> None:
    """Status cache utilities."""


@cache_group.command("info")
@click.option("--root", default=None, type=click.Path(file_okay=False), help="Scan root owning the cache")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def cache_info(root: str | None, as_json: bool) -> None:
    """Show where the cache lives and what it holds."""
    db_path = get_skm_dir(_scan_roots((root,) if root else ())[0]) / DB_FILENAME
    if not db_path.exists():
        info = {"path": str(db_path), "exists": False, "entries": 0, "last_updated": None}
    else:
        store = Store(db_path)
        info = {
            "path": str(db_path),
            "exists": True,
            "entries": store.count(),
            "last_updated": store.last_updated(),
        }

    if as_json:
        click.echo(json.dumps(info, indent=2))
        return
    click.echo(f"Cache: {info['path']}")
    if not info["exists"]:
        click.echo("  Not created yet. Run: skm scan")
        return
    click.echo(f"  Entries: {info['entries']}")
    click.echo(f"  Last updated: {info['last_updated'] or 'never'}")


@cache_group.command("clear")
@click.option("--root", default=None, type=click.Path(file_okay=False), help="Scan root owning the cache")
def cache_clear(root: str | None) -> None:
    """Drop every cached entry."""
    db_path = get_skm_dir(_scan_roots((root,) if root else ())[0]) / DB_FILENAME
    if not db_path.exists():
        click.echo("Cache is empty.")
        return
    cache = StatusCache.open(db_path)
    removed = len(cache)
    cache.invalidate_all()
    cache.flush()
    click.echo(f"Cleared {removed} cache entries.")


if __name__ == "__main__":
    main()
