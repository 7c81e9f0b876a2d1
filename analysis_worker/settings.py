import json
from typing import Optional
from pydantic import validator, Field
from pydantic_settings import BaseSettings


class WorkerSettings(BaseSettings):
    """Settings for the session analysis worker with validation."""

    # Provider settings
    openai_api_key: Optional[str] = Field(None, env="OPENAI_API_KEY")
    openai_model: str = Field("gpt-4o", env="OPENAI_MODEL")
    # JSON list of provider configs; empty means "single OpenAI provider"
    analysis_providers: Optional[str] = Field(None, env="ANALYSIS_PROVIDERS")

    # Redis settings
    redis_url: str = Field("redis://localhost:6379/0", env="REDIS_URL")
    queue_analysis_requests: str = Field("analysis:requests", env="QUEUE_ANALYSIS_REQUESTS")
    report_key_prefix: str = Field("analysis", env="REPORT_KEY_PREFIX")
    report_ttl_seconds: int = Field(7 * 24 * 3600, env="REPORT_TTL_SECONDS")

    # Transcripts produced by the transcription collaborator
    transcript_dir: str = Field("transcripts", env="TRANSCRIPT_DIR")

    # Optional settings
    log_level: str = Field("INFO", env="LOG_LEVEL")
    job_callback_url: Optional[str] = Field(None, env="JOB_CALLBACK_URL")
    job_callback_token: Optional[str] = Field(None, env="JOB_CALLBACK_TOKEN")

    # Job processing settings
    worker_concurrency: int = Field(3, env="WORKER_CONCURRENCY")
    worker_poll_timeout: int = Field(2, env="WORKER_POLL_TIMEOUT")
    max_parallel_calls: int = Field(8, env="MAX_PARALLEL_CALLS")
    # Finished jobs kept in memory for status lookups; older ones come from the report store
    finished_job_retention: int = Field(1000, env="FINISHED_JOB_RETENTION")

    # Timeout hierarchy: provider call < pass < job
    provider_call_timeout_s: float = Field(60.0, env="PROVIDER_CALL_TIMEOUT_S")
    pass_timeout_s: float = Field(150.0, env="PASS_TIMEOUT_S")
    job_deadline_s: float = Field(900.0, env="JOB_DEADLINE_S")

    # Gap filling
    retry_budget_passes: int = Field(5, env="RETRY_BUDGET_PASSES")
    max_attempts_per_gap: int = Field(3, env="MAX_ATTEMPTS_PER_GAP")
    timeout_retry_multiplier: float = Field(2.0, env="TIMEOUT_RETRY_MULTIPLIER")
    quota_backoff_base_s: float = Field(2.0, env="QUOTA_BACKOFF_BASE_S")
    quota_backoff_cap_s: float = Field(60.0, env="QUOTA_BACKOFF_CAP_S")
    quota_backoff_jitter_s: float = Field(1.0, env="QUOTA_BACKOFF_JITTER_S")
    circuit_breaker_threshold: int = Field(3, env="CIRCUIT_BREAKER_THRESHOLD")
    targeted_context_chars: int = Field(6000, env="TARGETED_CONTEXT_CHARS")
    min_context_chars: int = Field(800, env="MIN_CONTEXT_CHARS")

    # Confidence / cause heuristics (tuned empirically)
    min_text_chars: int = Field(20, env="MIN_TEXT_CHARS")
    rich_text_chars: int = Field(400, env="RICH_TEXT_CHARS")
    token_limit_ratio: float = Field(0.95, env="TOKEN_LIMIT_RATIO")
    chars_per_token: float = Field(4.0, env="CHARS_PER_TOKEN")

    @validator('log_level')
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @validator('worker_concurrency', 'retry_budget_passes', 'max_attempts_per_gap',
               'circuit_breaker_threshold', 'max_parallel_calls', 'finished_job_retention')
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @validator('analysis_providers')
    def validate_providers_json(cls, v):
        if not v:
            return None
        try:
            parsed = json.loads(v)
        except json.JSONDecodeError as e:
            raise ValueError(f"ANALYSIS_PROVIDERS must be a JSON list: {e}")
        if not isinstance(parsed, list):
            raise ValueError("ANALYSIS_PROVIDERS must be a JSON list")
        return v

    def provider_configs(self) -> list:
        """Return the raw provider config dicts (without secrets resolved)."""
        if self.analysis_providers:
            return json.loads(self.analysis_providers)
        return [{"provider_id": "openai", "model": self.openai_model}]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = WorkerSettings()
