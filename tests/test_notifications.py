"""Tests for pipeline-finished notifications.

Uses `respx` to intercept httpx requests made by the webhook notifier.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import httpx
import respx

from pipewright.config import NotificationTarget
from pipewright.notifications import (
    LoggingNotifier,
    PipelineEvent,
    WebhookNotifier,
    build_notifiers,
    close_notifiers,
    dispatch_notifications,
)
from pipewright.pipeline.models import (
    EventSource,
    ExecutionReport,
    InstanceReport,
    JobStatus,
    PipelineRunContext,
    PipelineStatus,
    TriggerContext,
)

HOOK_URL = "https://hooks.example.com/ci"


def make_event(**overrides) -> PipelineEvent:
    defaults: dict = dict(
        run_id="pl-001",
        pipeline_name="app",
        status=PipelineStatus.FAILED,
        exit_code=1,
        source=EventSource.PUSH,
        ref="main",
        failed_jobs=["test"],
    )
    defaults.update(overrides)
    return PipelineEvent(**defaults)


class TestPipelineEvent:
    def test_from_report(self):
        run_context = PipelineRunContext.create(
            TriggerContext(source=EventSource.SCHEDULE, ref="main"), pipeline_name="app"
        )
        report = ExecutionReport(
            run_id=run_context.run_id,
            pipeline_name="app",
            status=PipelineStatus.FAILED,
            exit_code=1,
            completed_at=datetime(2026, 5, 1, tzinfo=timezone.utc),
            instances=[
                InstanceReport(key="build", template="build", stage="build", status=JobStatus.SUCCEEDED),
                InstanceReport(key="test", template="test", stage="test", status=JobStatus.FAILED),
                InstanceReport(
                    key="deploy", template="deploy", stage="deploy", status=JobStatus.MANUAL_PENDING
                ),
            ],
            notices=["kept running"],
        )
        event = PipelineEvent.from_report(run_context, report)
        assert event.run_id == run_context.run_id
        assert event.source == EventSource.SCHEDULE
        assert event.ref == "main"
        assert event.failed_jobs == ["test"]
        assert event.manual_pending == ["deploy"]
        assert event.notices == ["kept running"]


class TestLoggingNotifier:
    async def test_logs_summary(self, caplog):
        with caplog.at_level(logging.INFO, logger="pipewright.notifications"):
            await LoggingNotifier().notify(make_event())
        assert "Pipeline pl-001 (app @ main) failed failed: test" in caplog.text

    async def test_status_filter(self, caplog):
        with caplog.at_level(logging.INFO, logger="pipewright.notifications"):
            await LoggingNotifier([PipelineStatus.SUCCEEDED]).notify(make_event())
        assert caplog.text == ""


class TestWebhookNotifier:
    @respx.mock
    async def test_posts_payload(self):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))
        notifier = WebhookNotifier(HOOK_URL, headers={"X-Token": "secret"})

        await notifier.notify(make_event())
        await notifier.close()

        assert route.called
        request = route.calls.last.request
        assert request.headers["X-Token"] == "secret"
        assert request.headers["User-Agent"] == "pipewright"
        body = json.loads(request.content)
        assert body["run_id"] == "pl-001"
        assert body["status"] == "failed"
        assert body["failed_jobs"] == ["test"]

    @respx.mock
    async def test_status_filter(self):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))
        notifier = WebhookNotifier(HOOK_URL, statuses=[PipelineStatus.SUCCEEDED])

        await notifier.notify(make_event())
        await notifier.close()

        assert not route.called

    @respx.mock
    async def test_server_error_is_logged_not_raised(self, caplog):
        respx.post(HOOK_URL).mock(return_value=httpx.Response(500))
        notifier = WebhookNotifier(HOOK_URL)

        await dispatch_notifications([notifier], make_event())
        await notifier.close()

        assert "Notification for pipeline pl-001 failed" in caplog.text

    @respx.mock
    async def test_one_failure_does_not_stop_others(self):
        respx.post("https://broken.example.com/").mock(side_effect=httpx.ConnectError("refused"))
        good = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        notifiers = [WebhookNotifier("https://broken.example.com/"), WebhookNotifier(HOOK_URL)]

        await dispatch_notifications(notifiers, make_event())
        await close_notifiers(notifiers)

        assert good.called


class TestBuildNotifiers:
    def test_targets(self):
        notifiers = build_notifiers(
            [
                NotificationTarget(type="log"),
                NotificationTarget(type="webhook", url=HOOK_URL, on=[PipelineStatus.FAILED]),
            ]
        )
        assert isinstance(notifiers[0], LoggingNotifier)
        assert isinstance(notifiers[1], WebhookNotifier)

    def test_webhook_without_url_skipped(self, caplog):
        notifiers = build_notifiers([NotificationTarget(type="webhook")])
        assert notifiers == []
        assert "without a url" in caplog.text
