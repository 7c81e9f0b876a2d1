import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from .schemas import FinalizationPayload
from .settings import WorkerSettings, settings as default_settings

logger = logging.getLogger(__name__)


class ReportStore(ABC):
    """Persistence collaborator for finalized jobs (a simple keyed record)."""

    @abstractmethod
    def save(self, payload: FinalizationPayload) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, job_id: str) -> Optional[FinalizationPayload]:
        raise NotImplementedError

    @abstractmethod
    def latest_for_media(self, media_ref: str) -> Optional[FinalizationPayload]:
        raise NotImplementedError


class InMemoryReportStore(ReportStore):
    def __init__(self):
        self._records: Dict[str, FinalizationPayload] = {}
        self._by_media: Dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, payload: FinalizationPayload) -> None:
        with self._lock:
            self._records[payload.job_id] = payload
            self._by_media[payload.media_ref] = payload.job_id

    def get(self, job_id: str) -> Optional[FinalizationPayload]:
        with self._lock:
            return self._records.get(job_id)

    def latest_for_media(self, media_ref: str) -> Optional[FinalizationPayload]:
        with self._lock:
            job_id = self._by_media.get(media_ref)
            return self._records.get(job_id) if job_id else None

    def __len__(self) -> int:
        return len(self._records)


class RedisReportStore(ReportStore):
    """
    Keyed records in Redis:
        {prefix}:job:{job_id}       -> finalization payload JSON
        {prefix}:media:{media_ref}  -> job_id of the latest finalized job
    """

    def __init__(self, redis_client=None, config: Optional[WorkerSettings] = None):
        config = config or default_settings
        self.redis_client = redis_client or redis.from_url(config.redis_url)
        self.prefix = config.report_key_prefix
        self.ttl = config.report_ttl_seconds

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _media_key(self, media_ref: str) -> str:
        return f"{self.prefix}:media:{media_ref}"

    @retry(wait=wait_fixed(2), stop=stop_after_attempt(3),
           retry=retry_if_exception_type(RedisError), reraise=True)
    def save(self, payload: FinalizationPayload) -> None:
        pipe = self.redis_client.pipeline()
        pipe.set(self._job_key(payload.job_id), payload.model_dump_json(), ex=self.ttl)
        pipe.set(self._media_key(payload.media_ref), payload.job_id, ex=self.ttl)
        pipe.execute()
        logger.info("report_saved job=%s media=%s state=%s",
                    payload.job_id, payload.media_ref, payload.final_state)

    def get(self, job_id: str) -> Optional[FinalizationPayload]:
        try:
            raw = self.redis_client.get(self._job_key(job_id))
        except RedisError as e:
            logger.error(f"Failed to read report {job_id}: {e}")
            return None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return FinalizationPayload(**json.loads(raw))

    def latest_for_media(self, media_ref: str) -> Optional[FinalizationPayload]:
        try:
            job_id = self.redis_client.get(self._media_key(media_ref))
        except RedisError as e:
            logger.error(f"Failed to read media index {media_ref}: {e}")
            return None
        if job_id is None:
            return None
        if isinstance(job_id, bytes):
            job_id = job_id.decode("utf-8")
        return self.get(job_id)
