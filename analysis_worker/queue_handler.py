import json
import logging
from typing import Optional

import redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from .schemas import AnalysisRequest
from .settings import WorkerSettings, settings as default_settings

logger = logging.getLogger(__name__)


class RequestQueueHandler:
    """Redis list carrying analysis requests from the upload layer."""

    def __init__(self, redis_client=None, config: Optional[WorkerSettings] = None):
        config = config or default_settings
        self.redis_client = redis_client or redis.from_url(config.redis_url)
        self.queue_name = config.queue_analysis_requests

    def push_request(self, request: AnalysisRequest) -> bool:
        try:
            self.redis_client.lpush(self.queue_name, request.model_dump_json())
            logger.info(f"Enqueued analysis request for media {request.media_ref} to queue {self.queue_name}")
            return True
        except RedisError as e:
            logger.error(f"Failed to enqueue analysis request: {e}")
            return False

    def pop_request(self, timeout: int = 2) -> Optional[AnalysisRequest]:
        """Blocking pop; None on timeout, Redis failure or a malformed message."""
        try:
            item = self.redis_client.brpop(self.queue_name, timeout=timeout)
        except RedisError as e:
            logger.error(f"Failed to dequeue analysis request: {e}")
            return None
        if item is None:
            return None
        _, raw = item
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return AnalysisRequest(**json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error(f"Dropping malformed analysis request: {e}")
            return None

    def queue_length(self) -> int:
        try:
            return self.redis_client.llen(self.queue_name)
        except RedisError as e:
            logger.error(f"Failed to get queue length for {self.queue_name}: {e}")
            return 0

    def is_healthy(self) -> bool:
        try:
            self.redis_client.ping()
            return True
        except RedisError:
            return False
