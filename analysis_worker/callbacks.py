import logging
import time
from typing import Callable, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from .schemas import FinalizationPayload

logger = logging.getLogger(__name__)

FinalizationCallback = Callable[[FinalizationPayload], None]


def _ms_since(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


class WebhookCallback:
    """Posts the finalization payload to an HTTP endpoint."""

    def __init__(self, callback_url: str, token: Optional[str] = None, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.callback_url = callback_url
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    @retry(wait=wait_fixed(2), stop=stop_after_attempt(3),
           retry=retry_if_exception_type(requests.RequestException), reraise=True)
    def _post(self, body: dict) -> None:
        headers = {}
        if self.token:
            headers["X-ANALYSIS-TOKEN"] = self.token
        response = self.session.post(self.callback_url, json=body, timeout=self.timeout, headers=headers)
        response.raise_for_status()

    def __call__(self, payload: FinalizationPayload) -> None:
        start = time.perf_counter()
        body = payload.model_dump()
        body["success"] = payload.final_state != "failed"
        body["timestamp"] = int(time.time())
        self._post(body)
        logger.info(
            "Sent callback for job %s (%s) to %s in %.2fms",
            payload.job_id, payload.final_state, self.callback_url, _ms_since(start),
        )


def webhook_from_settings(config) -> Optional[WebhookCallback]:
    if not config.job_callback_url:
        return None
    return WebhookCallback(config.job_callback_url, token=config.job_callback_token)
