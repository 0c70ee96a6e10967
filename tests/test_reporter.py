"""Tests for execution reporting — pipeline status, exit codes and JUnit summaries."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pipewright.pipeline.graph import PipelineGraph
from pipewright.pipeline.models import (
    ErrorKind,
    EventSource,
    JobInstance,
    JobStatus,
    PipelineRunContext,
    PipelineStatus,
    TriggerContext,
)
from pipewright.pipeline.reporter import build_report, format_summary, summarize_junit


def make_graph(*instances: JobInstance) -> PipelineGraph:
    return PipelineGraph({i.key: i for i in instances}, {i.key: {} for i in instances})


def make_instance(key: str, status: JobStatus, **overrides) -> JobInstance:
    defaults: dict = dict(key=key, template=key, status=status)
    defaults.update(overrides)
    return JobInstance(**defaults)


def make_run_context() -> PipelineRunContext:
    return PipelineRunContext.create(TriggerContext(source=EventSource.PUSH, ref="main"), pipeline_name="app")


class TestBuildReport:
    def test_succeeded(self):
        graph = make_graph(make_instance("a", JobStatus.SUCCEEDED), make_instance("b", JobStatus.SKIPPED))
        report = build_report(graph, make_run_context())
        assert report.status == PipelineStatus.SUCCEEDED
        assert report.exit_code == 0
        assert [i.key for i in report.instances] == ["a", "b"]

    def test_required_failure_fails(self):
        graph = make_graph(make_instance("a", JobStatus.FAILED), make_instance("b", JobStatus.CANCELED))
        report = build_report(graph, make_run_context())
        assert report.status == PipelineStatus.FAILED
        assert report.exit_code == 1

    def test_allowed_failure_succeeds(self):
        graph = make_graph(make_instance("lint", JobStatus.FAILED, allow_failure=True))
        assert build_report(graph, make_run_context()).status == PipelineStatus.SUCCEEDED

    def test_canceled(self):
        graph = make_graph(make_instance("a", JobStatus.CANCELED))
        report = build_report(graph, make_run_context(), canceled=True)
        assert report.status == PipelineStatus.CANCELED
        assert report.exit_code == 0

    def test_failure_beats_cancellation(self):
        graph = make_graph(make_instance("a", JobStatus.FAILED))
        assert build_report(graph, make_run_context(), canceled=True).status == PipelineStatus.FAILED

    def test_instance_details(self):
        start = datetime(2026, 3, 1, tzinfo=timezone.utc)
        graph = make_graph(
            make_instance(
                "a",
                JobStatus.FAILED,
                attempt=2,
                exit_code=1,
                error_kind=ErrorKind.SCRIPT_FAILURE,
                error_message="exit code 1",
                started_at=start,
                completed_at=start + timedelta(seconds=3),
                artifacts=["out.txt"],
            )
        )
        run_context = make_run_context()
        report = build_report(graph, run_context, notices=["note"], started_at=start)
        item = report.get("a")
        assert item.attempts == 2
        assert item.exit_code == 1
        assert item.error_kind == ErrorKind.SCRIPT_FAILURE
        assert item.duration_seconds == 3.0
        assert item.artifacts == ["out.txt"]
        assert report.notices == ["note"]
        assert report.run_id == run_context.run_id
        assert report.pipeline_name == "app"
        assert report.started_at == start
        assert report.completed_at is not None


class TestSummarizeJunit:
    def test_testsuites_root(self, tmp_path):
        path = tmp_path / "report.xml"
        path.write_text(
            "<testsuites>"
            '<testsuite tests="3" failures="1" errors="0" skipped="0"/>'
            '<testsuite tests="2" failures="0" errors="1" skipped="1"/>'
            "</testsuites>"
        )
        summary = summarize_junit([path])
        assert (summary.tests, summary.failures, summary.errors, summary.skipped) == (5, 1, 1, 1)
        assert summary.files == [str(path)]

    def test_multiple_files(self, tmp_path):
        a = tmp_path / "a.xml"
        b = tmp_path / "b.xml"
        a.write_text('<testsuite tests="1"/>')
        b.write_text('<testsuite tests="2" disabled="1"/>')
        summary = summarize_junit([a, b])
        assert summary.tests == 3
        assert summary.skipped == 1

    def test_unreadable_files_skipped(self, tmp_path, caplog):
        bad = tmp_path / "bad.xml"
        bad.write_text("<not-closed")
        good = tmp_path / "good.xml"
        good.write_text('<testsuite tests="1" failures="abc"/>')
        summary = summarize_junit([bad, good, tmp_path / "missing.xml"])
        assert summary.tests == 1
        assert summary.failures == 0
        assert "Could not read JUnit report" in caplog.text

    def test_nothing_parsed(self, tmp_path):
        assert summarize_junit([tmp_path / "missing.xml"]) is None


class TestFormatSummary:
    def test_lines(self):
        graph = make_graph(
            make_instance("build", JobStatus.SUCCEEDED, exit_code=0),
            make_instance("lint", JobStatus.FAILED, allow_failure=True, exit_code=1),
            make_instance(
                "test", JobStatus.FAILED, error_kind=ErrorKind.TIMEOUT, error_message="timed out"
            ),
        )
        report = build_report(graph, make_run_context(), notices=["pipeline is not interruptible"])
        text = format_summary(report)
        lines = text.splitlines()
        assert lines[0].endswith(": failed")
        assert "[exit 1] (allowed to fail)" in lines[2]
        assert "[timeout]" in lines[3]
        assert "note: pipeline is not interruptible" in text
