import time
import logging
from typing import Optional

import httpx

from recorder_dispatch.queue.models import RecorderRequest

logger = logging.getLogger(__name__)


class DispatchClient:
    """
    Client for the dispatch HTTP API, used by requesters and by recorders
    reporting their state. Any instance behind base_url will do since they
    all share one store; connection failures are retried a few times.
    """
    def __init__(self, base_url: str, http_client: Optional[httpx.Client] = None, max_retries: int = 2,
                 retry_delay_sec: float = 0.5):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.Client(timeout=5.0)
        self.max_retries = max_retries
        self.retry_delay_sec = retry_delay_sec

    def _make_request(self, method: str, endpoint: str, json_data: dict = None, params: dict = None,
                      retry_count: int = 0):
        url = f"{self.base_url}{endpoint}"
        try:
            if method.upper() == "GET":
                resp = self.http_client.get(url, params=params)
            else:
                resp = self.http_client.post(url, json=json_data, params=params)
            resp.raise_for_status()
            return resp.json()
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            if retry_count < self.max_retries:
                logger.warning(f"Dispatch service at {url} unreachable ({e}). Retrying...")
                time.sleep(self.retry_delay_sec)
                return self._make_request(method, endpoint, json_data, params, retry_count + 1)
            raise

    def request(self, req: RecorderRequest) -> dict:
        return self._make_request("POST", "/request", req.model_dump())

    def cancel(self, request_id: str) -> bool:
        return self._make_request("POST", "/cancel", {"request_id": request_id})["removed"]

    def report(self, recorder_id: str, busy: bool, healthy: bool) -> bool:
        resp = self._make_request("POST", "/report", {"recorder_id": recorder_id, "busy": busy, "healthy": healthy})
        return resp["available"]

    def queue(self) -> list:
        return self._make_request("GET", "/queue")["entries"]

    def metrics(self) -> dict:
        return self._make_request("GET", "/metrics")["metrics"]
