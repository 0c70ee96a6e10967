"""Pipeline-finished notifications.

A notifier receives one PipelineEvent per finished run. Delivery is best
effort: failures are logged and never reach the scheduler or the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

import httpx
from pydantic import BaseModel

from pipewright.config import NotificationTarget
from pipewright.pipeline.models import (
    EventSource,
    ExecutionReport,
    PipelineRunContext,
    PipelineStatus,
)

logger = logging.getLogger("pipewright.notifications")


class PipelineEvent(BaseModel):
    """Payload describing a finished pipeline run."""

    run_id: str
    pipeline_name: str
    status: PipelineStatus
    exit_code: int
    source: EventSource
    ref: str
    failed_jobs: list[str] = []
    manual_pending: list[str] = []
    notices: list[str] = []
    completed_at: datetime | None = None

    @classmethod
    def from_report(cls, run_context: PipelineRunContext, report: ExecutionReport) -> PipelineEvent:
        return cls(
            run_id=report.run_id,
            pipeline_name=report.pipeline_name,
            status=report.status,
            exit_code=report.exit_code,
            source=run_context.trigger.source,
            ref=run_context.trigger.ref,
            failed_jobs=report.failed,
            manual_pending=report.manual_pending,
            notices=list(report.notices),
            completed_at=report.completed_at,
        )


class Notifier(Protocol):
    """Receives pipeline-finished events."""

    async def notify(self, event: PipelineEvent) -> None: ...


class LoggingNotifier:
    """Writes a one-line summary to the log."""

    def __init__(self, statuses: list[PipelineStatus] | None = None):
        self._statuses = set(statuses) if statuses is not None else set(PipelineStatus)

    async def notify(self, event: PipelineEvent) -> None:
        if event.status not in self._statuses:
            return
        level = logging.INFO if event.status == PipelineStatus.SUCCEEDED else logging.WARNING
        failed = f" failed: {', '.join(event.failed_jobs)}" if event.failed_jobs else ""
        logger.log(
            level,
            "Pipeline %s (%s @ %s) %s%s",
            event.run_id,
            event.pipeline_name,
            event.ref,
            event.status.value,
            failed,
        )


class WebhookNotifier:
    """POSTs the event as JSON to a URL.

    Usage::

        notifier = WebhookNotifier("https://hooks.example.com/ci")
        await notifier.notify(event)
        await notifier.close()
    """

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        statuses: list[PipelineStatus] | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._url = url
        self._statuses = set(statuses) if statuses is not None else set(PipelineStatus)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": "pipewright", **(headers or {})},
            timeout=timeout,
        )

    async def notify(self, event: PipelineEvent) -> None:
        if event.status not in self._statuses:
            return
        response = await self._client.post(self._url, json=event.model_dump(mode="json"))
        response.raise_for_status()
        logger.debug("Delivered %s notification to %s", event.run_id, self._url)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_notifiers(targets: list[NotificationTarget]) -> list[Notifier]:
    """Instantiate notifiers for the configured targets."""
    notifiers: list[Notifier] = []
    for target in targets:
        if target.type == "webhook":
            if not target.url:
                logger.warning("Webhook notification target without a url; skipped")
                continue
            notifiers.append(
                WebhookNotifier(
                    target.url, headers=target.headers, statuses=target.on, timeout=target.timeout
                )
            )
        else:
            notifiers.append(LoggingNotifier(target.on))
    return notifiers


async def dispatch_notifications(notifiers: list[Notifier], event: PipelineEvent) -> None:
    """Offer ``event`` to every notifier; failures are logged, never raised."""
    for notifier in notifiers:
        try:
            await notifier.notify(event)
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification for pipeline %s failed (%s): %s",
                event.run_id,
                type(notifier).__name__,
                exc,
            )
        except Exception:
            logger.exception(
                "Notifier %s raised for pipeline %s", type(notifier).__name__, event.run_id
            )


async def close_notifiers(notifiers: list[Notifier]) -> None:
    for notifier in notifiers:
        close = getattr(notifier, "close", None)
        if close is not None:
            await close()
