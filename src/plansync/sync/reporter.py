"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync operations:

- ``format_pass_report`` -- post-pass summary.
- ``format_status`` -- one configuration's cursor, last pass and backlog.
- ``format_conflict`` -- unified diff of the two sides of a conflict.
- ``format_history`` -- recent pass records, one line each.
- ``report_to_json``, ``status_to_json``, ``conflict_to_json``,
  ``history_to_json`` -- structured dicts for MCP tool output.
"""

from __future__ import annotations

import difflib
from datetime import datetime
from typing import TYPE_CHECKING

import yaml

from .models import ApplyStatus, Change, ChangeAction, Origin

if TYPE_CHECKING:
    from .models import Conflict, PassReport, SyncHistoryRecord
    from .service import SyncStatus


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ------------------------------------------------------------------
# Human-readable output
# ------------------------------------------------------------------


def format_pass_report(report: PassReport) -> str:
    """Format a pass report as human-readable text.

    Sections are only included when they contain at least one entry.

    Args:
        report: The completed (or failed) pass report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Sync pass for '{report.config_name}' ({report.pair_key})"
    if report.bootstrap:
        header += " [bootstrap]"
    lines.append(header)
    lines.append(f"State: {report.state.value}")
    lines.append(f"Started: {report.started_at.isoformat()}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at.isoformat()}")
    if report.cursor_after is not None:
        lines.append(f"Cursor: {report.cursor_after.isoformat()}")
    lines.append("")

    if report.error:
        lines.append(f"Error: {report.error_type or 'error'}: {report.error}")
        lines.append("")

    for origin in (Origin.DOCUMENT, Origin.WORK_TRACKING):
        counts = [
            f"{report.count(origin, action)} {action.value}"
            for action in ChangeAction
        ]
        lines.append(
            f"{origin.value} -> {origin.opposite.value}: {', '.join(counts)}"
        )
    lines.append("")

    linked = [o for o in report.outcomes if o.status is ApplyStatus.LINKED]
    if linked:
        lines.append("Linked to existing entities:")
        for o in linked:
            lines.append(f"  {o.entity_id} ({o.origin.value})")
        lines.append("")

    if report.conflicts:
        lines.append("Conflicts:")
        for c in report.conflicts:
            if c.is_resolved and c.resolved_change is not None:
                desc = (
                    f"resolved with {c.strategy.value}, "
                    f"{c.resolved_change.origin.value} wins"
                )
            else:
                desc = "unresolved"
            lines.append(f"  {c.entity_id}: {desc}")
        lines.append("")

    if report.failures:
        lines.append("Errors:")
        for o in report.failures:
            lines.append(f"  {o.entity_id}: {o.error}")
        lines.append("")

    skipped = [
        o
        for o in report.outcomes
        if o.status in (ApplyStatus.SKIPPED, ApplyStatus.HELD)
    ]
    if skipped:
        lines.append(f"Skipped: {len(skipped)} changes")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_status(status: SyncStatus) -> str:
    """Format the status of one configuration."""
    config = status.config
    lines = [
        f"Sync configuration '{config.name}'",
        f"  Document:     {config.document_ref}",
        f"  Team:         {config.team_id}",
        f"  Direction:    {config.direction.value}",
        f"  Cadence:      {config.cadence.value}",
        f"  Enabled:      {'yes' if config.enabled else 'no'}",
        f"  Auto-resolve: "
        + (config.strategy.value if config.auto_resolve else "off"),
        f"  Running:      {'yes' if status.running else 'no'}",
        "  Cursor:       "
        + (status.cursor.isoformat() if status.cursor else "never synchronized"),
        f"  Unresolved:   {status.unresolved_conflicts} conflict(s)",
    ]
    if status.last_pass is not None:
        last = status.last_pass
        outcome = "ok" if last.success else f"failed ({last.error})"
        lines.append(
            f"  Last pass:    {last.completed_at.isoformat()} {outcome}"
        )
    return "\n".join(lines)


def _payload_lines(change: Change | None) -> list[str]:
    if change is None:
        return ["(missing)\n"]
    if change.payload is None:
        return ["(deleted)\n"]
    text = yaml.safe_dump(
        change.payload.model_dump(mode="json"),
        sort_keys=True,
        allow_unicode=True,
    )
    return text.splitlines(keepends=True)


def format_conflict(conflict: Conflict) -> str:
    """Format a single conflict for review.

    Shows a unified diff between the document and work-tracking payloads.

    Args:
        conflict: The conflict details.

    Returns:
        Multi-line formatted string with the diff.
    """
    lines: list[str] = []
    lines.append(f"Conflict: {conflict.conflict_id}")
    lines.append(f"Entity: {conflict.entity_id} ({conflict.kind.value})")
    doc = conflict.document_change
    wt = conflict.work_tracking_change
    if doc is not None:
        lines.append(
            f"Document: {doc.action.value} at {doc.timestamp.isoformat()}"
        )
    if wt is not None:
        lines.append(
            f"Work tracking: {wt.action.value} at {wt.timestamp.isoformat()}"
        )
    if conflict.is_resolved and conflict.resolved_change is not None:
        lines.append(
            f"Resolved with {conflict.strategy.value}: "
            f"{conflict.resolved_change.origin.value} wins"
        )
    elif conflict.strategy is not None:
        lines.append(f"Pending strategy: {conflict.strategy.value}")
    lines.append("")

    diff = difflib.unified_diff(
        _payload_lines(doc),
        _payload_lines(wt),
        fromfile=f"document: {conflict.entity_id}",
        tofile=f"work_tracking: {conflict.entity_id}",
    )
    diff_text = "".join(diff)
    if diff_text:
        lines.append(diff_text.rstrip())
    else:
        lines.append("(no differences)")

    return "\n".join(lines).rstrip()


def format_history(records: list[SyncHistoryRecord]) -> str:
    """Format pass records, one line each."""
    if not records:
        return "No sync passes recorded."
    lines = []
    for r in records:
        outcome = "ok" if r.success else f"FAILED: {r.error}"
        lines.append(
            f"{r.completed_at.isoformat()}  "
            f"created={r.created} updated={r.updated} deleted={r.deleted} "
            f"failed={r.failed_changes} "
            f"conflicts={r.conflicts_detected}/{r.conflicts_resolved}  "
            f"{outcome}"
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: PassReport) -> dict:
    """Convert a pass report to a structured dict for JSON serialisation.

    Suitable for MCP ``structuredContent`` output.

    Args:
        report: The pass report.

    Returns:
        Dict with pass info, counts, and per-change details.
    """
    outcomes = []
    for o in report.outcomes:
        entry: dict = {
            "entity_id": o.entity_id,
            "origin": o.origin.value,
            "action": o.action.value,
            "status": o.status.value,
        }
        if o.resolved:
            entry["resolved"] = True
        if o.error:
            entry["error"] = o.error
        outcomes.append(entry)

    history = report.to_history()
    return {
        "config_name": report.config_name,
        "pair_key": report.pair_key,
        "state": report.state.value,
        "states": [s.value for s in report.states],
        "success": report.success,
        "bootstrap": report.bootstrap,
        "error": report.error,
        "error_type": report.error_type,
        "started_at": _iso(report.started_at),
        "completed_at": _iso(report.completed_at),
        "cursor_before": _iso(report.cursor_before),
        "cursor_after": _iso(report.cursor_after),
        "counts": {
            "document_created": history.document_created,
            "document_updated": history.document_updated,
            "document_deleted": history.document_deleted,
            "work_tracking_created": history.work_tracking_created,
            "work_tracking_updated": history.work_tracking_updated,
            "work_tracking_deleted": history.work_tracking_deleted,
            "failed": history.failed_changes,
            "conflicts_detected": history.conflicts_detected,
            "conflicts_resolved": history.conflicts_resolved,
        },
        "outcomes": outcomes,
        "conflicts": [conflict_to_json(c) for c in report.conflicts],
    }


def conflict_to_json(conflict: Conflict) -> dict:
    """Convert a conflict to a JSON-compatible dict."""
    return conflict.model_dump(mode="json")


def status_to_json(status: SyncStatus) -> dict:
    """Convert a configuration status to a JSON-compatible dict."""
    return {
        "config": status.config.model_dump(mode="json"),
        "running": status.running,
        "cursor": _iso(status.cursor),
        "unresolved_conflicts": status.unresolved_conflicts,
        "last_pass": (
            status.last_pass.model_dump(mode="json")
            if status.last_pass is not None
            else None
        ),
    }


def history_to_json(records: list[SyncHistoryRecord]) -> list[dict]:
    """Convert pass records to JSON-compatible dicts."""
    return [r.model_dump(mode="json") for r in records]
