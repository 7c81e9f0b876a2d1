import logging
import signal
import time
from typing import Any, Dict, Optional, Sequence

from .api import analyze
from .callbacks import webhook_from_settings
from .errors import FatalConfigurationError
from .orchestrator import AnalysisOrchestrator
from .providers import ProviderClient, build_providers
from .queue_handler import RequestQueueHandler
from .queue_manager import JobQueueManager
from .report_store import RedisReportStore, ReportStore
from .section_schema import DEFAULT_SCHEMA, SectionSchema
from .settings import WorkerSettings, settings as default_settings
from .transcripts import DirectoryTranscriptSource, TranscriptSource

logger = logging.getLogger(__name__)


def build_manager(
    config: Optional[WorkerSettings] = None,
    providers: Optional[Sequence[ProviderClient]] = None,
    transcript_source: Optional[TranscriptSource] = None,
    report_store: Optional[ReportStore] = None,
    schema: SectionSchema = DEFAULT_SCHEMA,
) -> JobQueueManager:
    """Wire a queue manager from settings; any collaborator can be injected."""
    config = config or default_settings
    providers = providers if providers is not None else build_providers(config)
    orchestrator = AnalysisOrchestrator(providers, schema=schema, config=config)
    manager = JobQueueManager(
        orchestrator,
        transcript_source or DirectoryTranscriptSource(config.transcript_dir),
        report_store=report_store,
        config=config,
    )
    webhook = webhook_from_settings(config)
    if webhook is not None:
        manager.add_callback(webhook)
    return manager


class AnalysisWorker:
    """Drains the Redis request feed into a running queue manager."""

    def __init__(self, config: Optional[WorkerSettings] = None,
                 manager: Optional[JobQueueManager] = None,
                 queue_handler: Optional[RequestQueueHandler] = None):
        self.config = config or default_settings
        self.queue_handler = queue_handler or RequestQueueHandler(config=self.config)
        self._manager = manager
        self.running = False

    @property
    def manager(self) -> JobQueueManager:
        if self._manager is None:
            self._manager = build_manager(
                self.config, report_store=RedisReportStore(self.queue_handler.redis_client, self.config)
            )
        return self._manager

    def start(self) -> None:
        logger.info("Starting session analysis worker")
        self.running = True
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
        self.manager.start()
        try:
            self._feed_loop()
        finally:
            self.manager.stop(wait=True, cancel_active=True)
            logger.info("Worker stopped")

    def stop(self) -> None:
        logger.info("Stopping worker...")
        self.running = False

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()

    def _feed_loop(self) -> None:
        logger.info("Request feed loop started (queue=%s)", self.queue_handler.queue_name)
        while self.running:
            try:
                request = self.queue_handler.pop_request(timeout=self.config.worker_poll_timeout)
                if request is None:
                    continue
                response = analyze(self.manager, request)
                logger.info("request_accepted media=%s job=%s conflict=%s",
                            request.media_ref, response.job_id, response.conflict)
            except Exception as e:
                logger.error(f"Error in request feed loop: {e}")
                time.sleep(5)

    def check_health(self) -> Dict[str, Any]:
        health_status: Dict[str, Any] = {"healthy": True, "checks": {}}

        try:
            redis_healthy = self.queue_handler.is_healthy()
            health_status["checks"]["redis"] = {"healthy": redis_healthy}
            if not redis_healthy:
                health_status["healthy"] = False
        except Exception as e:
            health_status["checks"]["redis"] = {"healthy": False, "error": str(e)}
            health_status["healthy"] = False

        try:
            providers = build_providers(self.config)
            health_status["checks"]["providers"] = {
                "healthy": True,
                "ids": [p.provider_id for p in providers],
            }
        except FatalConfigurationError as e:
            health_status["checks"]["providers"] = {"healthy": False, "error": str(e)}
            health_status["healthy"] = False

        health_status["checks"]["queue"] = {
            "healthy": True,
            "pending_requests": self.queue_handler.queue_length(),
        }
        if self._manager is not None:
            health_status["checks"]["queue"].update(self._manager.queue_status())
        return health_status
