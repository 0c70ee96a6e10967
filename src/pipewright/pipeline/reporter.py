"""Execution reporting: terminal instance states → ExecutionReport.

Pipeline status:
    failed     any instance without ``allow_failure`` ended Failed
    canceled   the run was canceled or interrupted and nothing required failed
    succeeded  otherwise

Exit code is 1 when any required instance failed, 0 otherwise. A canceled run
with no required failure exits 0.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path

from pipewright.pipeline.graph import PipelineGraph
from pipewright.pipeline.models import (
    ExecutionReport,
    InstanceReport,
    JobStatus,
    PipelineRunContext,
    PipelineStatus,
    TestSummary,
)

logger = logging.getLogger("pipewright.pipeline.reporter")

EXIT_CODES = {
    PipelineStatus.SUCCEEDED: 0,
    PipelineStatus.FAILED: 1,
    PipelineStatus.CANCELED: 0,
}


def pipeline_status(graph: PipelineGraph, *, canceled: bool = False) -> PipelineStatus:
    for instance in graph.instances.values():
        if instance.status == JobStatus.FAILED and instance.is_required:
            return PipelineStatus.FAILED
    if canceled:
        return PipelineStatus.CANCELED
    return PipelineStatus.SUCCEEDED


def build_report(
    graph: PipelineGraph,
    run_context: PipelineRunContext,
    *,
    canceled: bool = False,
    notices: list[str] | None = None,
    started_at: datetime | None = None,
    completed_at: datetime | None = None,
) -> ExecutionReport:
    """Aggregate the instances of ``graph`` into an ExecutionReport."""
    status = pipeline_status(graph, canceled=canceled)
    instances = [
        InstanceReport(
            key=instance.key,
            template=instance.template,
            stage=instance.stage,
            status=instance.status,
            allow_failure=instance.allow_failure,
            attempts=instance.attempt,
            exit_code=instance.exit_code,
            error_kind=instance.error_kind,
            error_message=instance.error_message,
            duration_seconds=instance.duration_seconds,
            artifacts=list(instance.artifacts),
            tests=instance.tests,
        )
        for instance in graph.instances.values()
    ]
    return ExecutionReport(
        run_id=run_context.run_id,
        pipeline_name=run_context.pipeline_name,
        status=status,
        exit_code=EXIT_CODES[status],
        started_at=started_at,
        completed_at=completed_at or datetime.now(timezone.utc),
        instances=instances,
        notices=list(notices or []),
    )


def summarize_junit(paths: list[Path]) -> TestSummary | None:
    """Sum test counts over JUnit XML files.

    Accepts both a ``<testsuites>`` root and a bare ``<testsuite>`` root.
    Unparseable files are logged and skipped. Returns None when no file
    could be read.
    """
    summary = TestSummary()
    parsed = False
    for path in paths:
        try:
            root = ET.parse(path).getroot()
        except (ET.ParseError, OSError) as exc:
            logger.warning("Could not read JUnit report %s: %s", path, exc)
            continue
        parsed = True
        summary.files.append(str(path))
        suites = [root] if root.tag == "testsuite" else root.iter("testsuite")
        for suite in suites:
            summary.tests += _int_attr(suite, "tests")
            summary.failures += _int_attr(suite, "failures")
            summary.errors += _int_attr(suite, "errors")
            summary.skipped += _int_attr(suite, "skipped") or _int_attr(suite, "disabled")
    return summary if parsed else None


def _int_attr(element: ET.Element, name: str) -> int:
    try:
        return int(element.get(name, "0"))
    except ValueError:
        return 0


def format_summary(report: ExecutionReport) -> str:
    """Human-readable multi-line summary for the CLI."""
    lines = [f"Pipeline {report.run_id} ({report.pipeline_name}): {report.status.value}"]
    width = max((len(i.key) for i in report.instances), default=0)
    for item in report.instances:
        detail = ""
        if item.error_kind is not None:
            detail = f" [{item.error_kind.value}]"
        elif item.exit_code not in (None, 0):
            detail = f" [exit {item.exit_code}]"
        if item.allow_failure and item.status == JobStatus.FAILED:
            detail += " (allowed to fail)"
        duration = f"{item.duration_seconds:.1f}s" if item.duration_seconds is not None else "-"
        lines.append(f"  {item.key:<{width}}  {item.status.value:<14} {duration:>8}{detail}")
    lines.extend(f"  note: {notice}" for notice in report.notices)
    return "\n".join(lines)
