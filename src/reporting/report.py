"""Plan and apply reporting."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from engine.executor import ApplyReport, NodeStatus
from engine.plan import Action, Plan, PlanNode, ReplaceOrder, render_value

_SYMBOLS = {
    Action.CREATE: '+',
    Action.UPDATE: '~',
    Action.DESTROY: '-',
    Action.REPLACE: '-/+',
    Action.NOOP: ' ',
}

_STATUS_EMOJI = {
    NodeStatus.APPLIED: '✅',
    NodeStatus.UNCHANGED: '➖',
    NodeStatus.FAILED: '❌',
    NodeStatus.SKIPPED: '⏭️',
    NodeStatus.CANCELLED: '⛔',
}


def _format(value: Any) -> str:
    return json.dumps(render_value(value), sort_keys=True)


def _render_node(node: PlanNode) -> list[str]:
    if node.kind == 'deposed':
        return [f"  - {node.key} will be destroyed"]

    symbol = _SYMBOLS[node.action]
    if node.action == Action.REPLACE:
        order = 'create before destroy' if node.replace_order == ReplaceOrder.CREATE_THEN_DESTROY else 'destroy then create'
        header = f"{symbol} {node.address} must be replaced ({order})"
    else:
        verb = {Action.CREATE: 'created', Action.UPDATE: 'updated in-place', Action.DESTROY: 'destroyed'}
        header = f"{symbol} {node.address} will be {verb[node.action]}"
    if node.moved_from:
        header += f" (moved from {node.moved_from})"

    lines = [f"  {header}"]
    for change in node.changes:
        mark = '  # forces replacement' if change.forces_replacement else ''
        if change.kind == 'added' or (change.kind == 'unknown' and node.action == Action.CREATE):
            lines.append(f"      + {change.name} = {_format(change.after)}{mark}")
        elif change.kind == 'removed':
            lines.append(f"      - {change.name} = {_format(change.before)}{mark}")
        else:
            before = _format(change.before) if change.before is not None else 'null'
            lines.append(f"      ~ {change.name}: {before} -> {_format(change.after)}{mark}")
    return lines


def render_plan(plan: Plan) -> str:
    """Human-readable plan."""
    lines: list[str] = []
    for source, target in sorted(plan.moved.items()):
        if not any(n.address == target for n in plan.changes()):
            lines.append(f"  {target} has moved from {source}")

    for node in plan.changes():
        lines.extend(_render_node(node))

    if not lines:
        return "No changes. Infrastructure matches the configuration."

    summary = plan.summary()
    lines.append('')
    lines.append(
        f"Plan: {summary['create']} to add, {summary['update']} to change, "
        f"{summary['replace']} to replace, {summary['destroy']} to destroy.")
    return '\n'.join(lines)


def render_apply(report: ApplyReport) -> str:
    """Summary of an apply report."""
    lines: list[str] = []
    for outcome in report.outcomes:
        if outcome.kind == 'provider' and outcome.status != NodeStatus.FAILED:
            continue
        if outcome.status == NodeStatus.UNCHANGED:
            continue
        detail = f": {outcome.message}" if outcome.message else ''
        lines.append(f"  {outcome.status.value:<9} {outcome.key}{detail}")

    summary = report.summary()
    status = 'interrupted' if report.interrupted else ('complete' if report.success else 'failed')
    lines.append('')
    lines.append(
        f"Apply {status}: {summary['applied']} applied, {summary['failed']} failed, "
        f"{summary['skipped']} skipped, {summary['cancelled']} cancelled.")
    return '\n'.join(lines)


class ReportWriter:
    """Writes JSON and markdown apply reports to a directory.

    Filenames carry the start timestamp, operation and status so runs
    never overwrite each other: 20240101-120000.apply.passed.json
    """

    def __init__(self, report_dir: Path):
        self.report_dir = Path(report_dir)

    def write(self, operation: str, report: ApplyReport, plan: Optional[Plan] = None) -> list[Path]:
        """Write both report formats. Returns the written paths."""
        self.report_dir.mkdir(parents=True, exist_ok=True)
        return [
            self._write_json(operation, report, plan),
            self._write_markdown(operation, report, plan),
        ]

    def _write_json(self, operation: str, report: ApplyReport, plan: Optional[Plan]) -> Path:
        data = {'operation': operation, **report.to_dict()}
        if plan is not None:
            data['plan'] = plan.to_dict()
        filename = self._report_filename(operation, report, 'json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return filename

    def _write_markdown(self, operation: str, report: ApplyReport, plan: Optional[Plan]) -> Path:
        status = 'PASSED' if report.success else 'FAILED'
        started = datetime.fromtimestamp(report.started_at) if report.started_at else None

        lines = [
            f"# {operation}",
            "",
            f"**Status**: {status}{' (interrupted)' if report.interrupted else ''}",
            f"**Date**: {started.strftime('%Y-%m-%d %H:%M:%S') if started else 'N/A'}",
            f"**Duration**: {report.duration:.1f}s",
            "",
        ]
        if plan is not None:
            lines.extend(["## Plan", "", "```", render_plan(plan), "```", ""])

        lines.extend([
            "## Nodes",
            "",
            "| Node | Action | Status | Duration | Message |",
            "|------|--------|--------|----------|---------|",
        ])
        for o in report.outcomes:
            emoji = _STATUS_EMOJI.get(o.status, '❓')
            message = o.message.replace('|', '\\|')
            lines.append(f"| {o.key} | {o.action.value} | {emoji} {o.status.value} | {o.duration:.1f}s | {message} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename(operation, report, 'md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, operation: str, report: ApplyReport, ext: str) -> Path:
        started = datetime.fromtimestamp(report.started_at) if report.started_at else datetime.now()
        timestamp = started.strftime('%Y%m%d-%H%M%S')
        status = 'passed' if report.success else 'failed'
        return self.report_dir / f"{timestamp}.{operation}.{status}.{ext}"
