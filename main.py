"""MCP server exposing Progressor time-tracking tools."""

from __future__ import annotations

import atexit
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from progressor.config import TrackerConfig
from progressor.service import TrackerService
from progressor.tracker_logging import setup_logging

mcp = FastMCP("progressor")

logger = logging.getLogger("progressor.server")

_SERVICES: Dict[Path, TrackerService] = {}
_LOGGING_READY = False


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(TrackerConfig.ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {TrackerConfig.ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    return Path.cwd().resolve()


def _service(root: Optional[str]) -> TrackerService:
    global _LOGGING_READY

    resolved = _resolve_root(root)
    service = _SERVICES.get(resolved)
    if service is None:
        config = TrackerConfig.from_env()
        config.root = resolved
        if not _LOGGING_READY:
            setup_logging(config.log_level, config.log_file)
            _LOGGING_READY = True
        service = TrackerService.from_root(resolved, config)
        _SERVICES[resolved] = service
    return service


@atexit.register
def _shutdown() -> None:
    for root, service in _SERVICES.items():
        result = service.cleanup()
        if not result.get("success"):
            logger.warning(f"Cleanup failed for {root}: {result.get('message')}")


@mcp.resource("progressor://stats")
def resource_stats() -> str:
    """Tracked hours and skill levels for the default project root."""

    try:
        service = _service(None)
    except ValueError as e:
        return f"No project root available: {e}"

    stats = service.get_stats()
    if not stats["success"]:
        return stats["message"]

    lines = [
        "Progressor Stats",
        "",
        f"- Last 7 days: {stats['week_hours']:.2f} h",
        f"- Last 30 days: {stats['month_hours']:.2f} h",
        f"- Last 365 days: {stats['year_hours']:.2f} h",
    ]

    active = service.get_active_card()
    if active["success"] and active["card"]:
        lines.append("")
        lines.append(f"Tracking: #{active['card']['id']} {active['card']['title']}")

    progress = service.get_user_skill_progress()
    if progress["success"] and progress["skills"]:
        lines.append("")
        lines.append("Skills")
        for skill in progress["skills"]:
            lines.append(
                f"- {skill['name']}: level {skill['level']} "
                f"({skill['experience']} XP, {skill['experience_to_next_level']} to next)"
            )

    return "\n".join(lines)


@mcp.tool()
def create_card(
    title: str,
    estimated_minutes: int = 0,
    description: Optional[str] = None,
    project_id: Optional[int] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a card to track work against. Estimate is in minutes; 0 means no estimate."""

    return _service(root).create_card(
        title,
        estimated_minutes=estimated_minutes,
        description=description,
        project_id=project_id,
    )


@mcp.tool()
def update_card(
    card_id: int,
    title: Optional[str] = None,
    description: Optional[str] = None,
    estimated_minutes: Optional[int] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Edit a card's title, description or estimate. Done cards cannot be edited."""

    fields: Dict[str, Any] = {}
    if title is not None:
        fields["title"] = title
    if description is not None:
        fields["description"] = description
    if estimated_minutes is not None:
        fields["estimated_minutes"] = estimated_minutes
    return _service(root).update_card(card_id, fields)


@mcp.tool()
def delete_card(card_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Delete a card that is not being tracked."""

    return _service(root).delete_card(card_id)


@mcp.tool()
def get_card(card_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Return one card with its open time entry, if any."""

    return _service(root).get_card(card_id)


@mcp.tool()
def list_cards(
    status: Optional[str] = None,
    project_id: Optional[int] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """List cards, optionally filtered by status (open, in_progress, done) or project."""

    return _service(root).list_cards(status=status, project_id=project_id)


@mcp.tool()
def start_card(card_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Start the timer on a card. Any other running card is stopped first."""

    return _service(root).start_card(card_id)


@mcp.tool()
def stop_card(card_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Stop the timer on the active card and add the whole minutes to its total."""

    return _service(root).stop_card(card_id)


@mcp.tool()
def complete_card(card_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Mark a card done, stopping it if needed, and award experience to its project's skills."""

    return _service(root).complete_card(card_id)


@mcp.tool()
def reopen_card(card_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Move a done card back to open or in progress. Experience is not awarded twice."""

    return _service(root).reopen_card(card_id)


@mcp.tool()
def get_active_card(root: Optional[str] = None) -> Dict[str, Any]:
    """Return the card whose timer is running, if any."""

    return _service(root).get_active_card()


@mcp.tool()
def reconcile_card(card_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Recompute a card's tracked minutes from its recorded time entries."""

    return _service(root).reconcile_card(card_id)


@mcp.tool()
def get_stats(root: Optional[str] = None) -> Dict[str, Any]:
    """Hours tracked over the last 7, 30 and 365 days, including the running session."""

    return _service(root).get_stats()


@mcp.tool()
def get_daily_totals(month: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Minutes tracked per day of a month given as 'YYYY-MM' (defaults to the current month)."""

    return _service(root).get_daily_totals(month=month)


@mcp.tool()
def get_project_totals(root: Optional[str] = None) -> Dict[str, Any]:
    """Minutes tracked per project across all closed sessions."""

    return _service(root).get_project_totals()


@mcp.tool()
def get_skill_progress(root: Optional[str] = None) -> Dict[str, Any]:
    """Level, experience and experience to next level for every skill."""

    return _service(root).get_user_skill_progress()


@mcp.tool()
def create_skill(name: str, description: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Create a skill that can be linked to projects."""

    return _service(root).create_skill(name, description=description)


@mcp.tool()
def update_skill(
    skill_id: int,
    name: Optional[str] = None,
    description: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Rename a skill or change its description."""

    return _service(root).update_skill(skill_id, name=name, description=description)


@mcp.tool()
def delete_skill(skill_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Delete a skill and unlink it from every project."""

    return _service(root).delete_skill(skill_id)


@mcp.tool()
def list_skills(root: Optional[str] = None) -> Dict[str, Any]:
    """List all skills."""

    return _service(root).list_skills()


@mcp.tool()
def create_project(name: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Create a project to group cards under."""

    return _service(root).create_project(name)


@mcp.tool()
def list_projects(root: Optional[str] = None) -> Dict[str, Any]:
    """List projects with the skills linked to each."""

    return _service(root).list_projects()


@mcp.tool()
def link_project_skill(project_id: int, skill_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Make a skill earn experience from cards completed in a project."""

    return _service(root).link_project_skill(project_id, skill_id)


@mcp.tool()
def unlink_project_skill(project_id: int, skill_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """Stop a skill from earning experience from a project."""

    return _service(root).unlink_project_skill(project_id, skill_id)


if __name__ == "__main__":
    mcp.run(transport="stdio")
