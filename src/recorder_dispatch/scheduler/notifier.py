import json
import asyncio
import logging
from typing import Optional

import httpx

from recorder_dispatch.errors import NotificationError, RequestCanceled
from recorder_dispatch.queue.models import RequestMeta

logger = logging.getLogger(__name__)


class SignalNotifier:
    """
    Delivers grants and queue updates to the requester's signaling API.

    Every message is a POST of a JSON body to the request's external_api_url
    with ?room=<room_param>. A 404 means the conference no longer exists.

    timeout_sec bounds the whole exchange, not each connect or read on its
    own, so a server trickling its response cannot hold a caller past it.
    Grants run under the processing lock, which must outlive this deadline.
    """
    GRANT_EVENT = "RecorderGranted"
    UPDATE_EVENT = "QueueUpdate"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, auth_token: Optional[str] = None,
                 timeout_sec: float = 5.0):
        self.transport = transport
        self.auth_token = auth_token
        self.timeout_sec = timeout_sec

    def _body(self, meta: RequestMeta, event_type: str) -> dict:
        return {
            "conference": meta.conference,
            "roomParam": meta.room_param,
            "externalApiUrl": meta.external_api_url,
            "eventType": event_type,
            "participant": meta.participant,
            "requestId": meta.request_id,
        }

    async def _send(self, meta: RequestMeta, body: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.auth_token}"} if self.auth_token else {}
        client = httpx.AsyncClient(transport=self.transport, timeout=self.timeout_sec)
        try:
            return await asyncio.wait_for(
                client.post(meta.external_api_url, params={"room": meta.room_param}, headers=headers, json=body),
                self.timeout_sec,
            )
        finally:
            # An injected transport belongs to the caller.
            if self.transport is None:
                await client.aclose()

    def _post(self, meta: RequestMeta, body: dict) -> bool:
        try:
            resp = asyncio.run(self._send(meta, body))
        except asyncio.TimeoutError as e:
            raise NotificationError(
                f"signal api gave no answer for {meta.request_id} within {self.timeout_sec}s"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationError(f"signal api unreachable for {meta.request_id}: {e}") from e

        if resp.status_code == 200:
            return True
        if resp.status_code == 404:
            logger.debug(f"conference for {meta.request_id} no longer exists")
            raise RequestCanceled(meta.request_id)
        logger.error(json.dumps({
            "event": "signal_api_error",
            "request_id": meta.request_id,
            "status": resp.status_code,
            "body": resp.text[:200],
        }))
        raise NotificationError(f"unexpected response {resp.status_code} from signal api")

    def grant(self, meta: RequestMeta, recorder_id: str) -> bool:
        body = self._body(meta, self.GRANT_EVENT)
        body["recorderId"] = recorder_id
        return self._post(meta, body)

    def queue_update(self, meta: RequestMeta, position: int, wait_seconds: int) -> bool:
        body = self._body(meta, self.UPDATE_EVENT)
        body["position"] = position
        body["time"] = wait_seconds
        return self._post(meta, body)
