import json
import time
import asyncio

import httpx
import pytest

from recorder_dispatch.errors import NotificationError, RequestCanceled
from recorder_dispatch.queue.models import RequestMeta
from recorder_dispatch.scheduler.notifier import SignalNotifier


@pytest.fixture
def meta():
    return RequestMeta(
        request_id="r1",
        conference="room1@conference.meet.test",
        room_param="room1",
        external_api_url="http://signal.test/api/recorder",
        participant="alice",
        created=1_700_000_000.0,
    )


def notifier_returning(status_code, captured=None, token=None):
    def handler(request: httpx.Request):
        if captured is not None:
            captured.append(request)
        return httpx.Response(status_code, text="nope" if status_code != 200 else "ok")

    return SignalNotifier(transport=httpx.MockTransport(handler), auth_token=token)


def test_grant_posts_to_requester_signal_api(meta):
    captured = []
    notifier = notifier_returning(200, captured, token="secret")

    assert notifier.grant(meta, "w1") is True

    request = captured[0]
    assert request.method == "POST"
    assert request.url.path == "/api/recorder"
    assert request.url.params["room"] == "room1"
    assert request.headers["authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["eventType"] == SignalNotifier.GRANT_EVENT
    assert body["requestId"] == "r1"
    assert body["recorderId"] == "w1"


def test_queue_update_carries_position_and_time(meta):
    captured = []
    notifier = notifier_returning(200, captured)

    assert notifier.queue_update(meta, 2, 14) is True

    body = json.loads(captured[0].content)
    assert body["eventType"] == SignalNotifier.UPDATE_EVENT
    assert (body["position"], body["time"]) == (2, 14)
    assert "authorization" not in captured[0].headers


def test_missing_conference_is_terminal(meta):
    with pytest.raises(RequestCanceled):
        notifier_returning(404).grant(meta, "w1")


@pytest.mark.parametrize("status_code", [400, 500, 503])
def test_other_errors_are_retryable(meta, status_code):
    with pytest.raises(NotificationError):
        notifier_returning(status_code).queue_update(meta, 0, 3)


def test_unreachable_signal_api(meta):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    notifier = SignalNotifier(transport=httpx.MockTransport(handler))
    with pytest.raises(NotificationError):
        notifier.grant(meta, "w1")


def test_slow_signal_api_is_cut_off_at_timeout(meta):
    async def stalled(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    notifier = SignalNotifier(transport=httpx.MockTransport(stalled), timeout_sec=0.2)

    start = time.monotonic()
    with pytest.raises(NotificationError):
        notifier.grant(meta, "w1")
    assert time.monotonic() - start < 1.0
