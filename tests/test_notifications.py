"""Operator notifications."""

from __future__ import annotations

import json

import httpx
import pytest

from fakes import RecordingNotifier
from featureforge.pipeline.notifications import LogNotifier, WebhookNotifier, create_notifier


CTA_EVENT = {
    "cta_id": "cta-1",
    "run_id": "run-1",
    "phase_result_id": "phase-1",
    "request": {"kind": "approval", "message": "Proceed?"},
}


def test_create_notifier():
    assert type(create_notifier("")) is LogNotifier
    assert isinstance(create_notifier("https://hooks.test/ff"), WebhookNotifier)


@pytest.mark.asyncio
async def test_on_event_forwards_cta_requests_only():
    notifier = RecordingNotifier()

    await notifier.on_event("cta.requested", CTA_EVENT)
    await notifier.on_event("something.else", {"x": 1})

    [event] = notifier.ctas
    assert event.cta_id == "cta-1"
    assert event.request.kind == "approval"


@pytest.mark.asyncio
async def test_webhook_posts_each_notification():
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = WebhookNotifier("https://hooks.test/ff", transport=httpx.MockTransport(handler))
    await notifier.on_event("cta.requested", CTA_EVENT)
    await notifier.phase_failed("run-1", "implementation", "Gates failing", "test gate output:\nFAIL")
    await notifier.run_completed("run-1", "https://github.com/org/app/pull/7")
    await notifier.close()

    assert [p["type"] for p in posted] == ["cta.requested", "phase.failed", "run.completed"]
    assert posted[0]["cta_id"] == "cta-1"
    assert posted[1]["detail"] == "test gate output:\nFAIL"
    assert posted[2]["pr_url"] == "https://github.com/org/app/pull/7"


@pytest.mark.asyncio
async def test_webhook_failure_does_not_raise():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    notifier = WebhookNotifier("https://hooks.test/ff", transport=transport)

    await notifier.run_completed("run-1", "https://github.com/org/app/pull/7")
    await notifier.close()
