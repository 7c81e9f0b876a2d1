import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
import openai
from openai import OpenAI

from .errors import (
    FatalConfigurationError,
    ProviderTimeoutError,
    QuotaExceededError,
    TokenLimitExceededError,
    TransientProviderError,
)
from .rate_limit import TokenBucket
from .settings import WorkerSettings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class Prompt:
    system: str
    user: str
    json_mode: bool = True


@dataclass
class ProviderResponse:
    raw_output: str
    finish_reason: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


class ProviderClient(ABC):
    """
    Uniform interface to one AI backend.

    ``call`` returns the raw answer or raises one of the provider errors from
    :mod:`analysis_worker.errors`. Every provider is treated identically by the
    pipeline regardless of vendor.
    """

    def __init__(self, provider_id: str, max_output_tokens: int = 4096,
                 bucket: Optional[TokenBucket] = None, chars_per_token: float = 4.0):
        self.provider_id = provider_id
        self.max_output_tokens = max_output_tokens
        self.bucket = bucket
        self.chars_per_token = chars_per_token

    @property
    def output_ceiling_chars(self) -> int:
        """Approximate length in characters of a maximal answer."""
        return int(self.max_output_tokens * self.chars_per_token)

    @abstractmethod
    def call(self, prompt: Prompt, timeout: float) -> ProviderResponse:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider_id!r})"


class OpenAIProvider(ProviderClient):
    """Chat-completions client; also serves OpenAI-compatible endpoints via ``base_url``."""

    def __init__(self, provider_id: str, model: str, api_key: Optional[str] = None,
                 base_url: Optional[str] = None, temperature: float = 0.2,
                 max_output_tokens: int = 4096, bucket: Optional[TokenBucket] = None,
                 chars_per_token: float = 4.0, supports_json_mode: bool = True):
        super().__init__(provider_id, max_output_tokens=max_output_tokens,
                         bucket=bucket, chars_per_token=chars_per_token)
        self.model = model
        self.temperature = temperature
        self.supports_json_mode = supports_json_mode
        self.llm = self._set_up_llm(api_key, base_url)

    def _set_up_llm(self, api_key: Optional[str], base_url: Optional[str]) -> OpenAI:
        load_dotenv()
        # Retries are owned by the gap-filling engine, not the SDK.
        llm = OpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            base_url=base_url,
            timeout=None,
            max_retries=0,
        )
        return llm

    def call(self, prompt: Prompt, timeout: float) -> ProviderResponse:
        params: Dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            "timeout": timeout,
        }
        if prompt.json_mode and self.supports_json_mode:
            params["response_format"] = {"type": "json_object"}

        try:
            completion = self.llm.chat.completions.create(**params)
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(f"{self.provider_id} timed out after {timeout:.1f}s: {e}", self.provider_id)
        except openai.RateLimitError as e:
            raise QuotaExceededError(f"{self.provider_id} rate limited: {e}", self.provider_id,
                                     retry_after=_retry_after(e))
        except openai.BadRequestError as e:
            if "context_length" in str(e) or "maximum context" in str(e).lower():
                raise TokenLimitExceededError(f"{self.provider_id} context too long: {e}", self.provider_id)
            raise TransientProviderError(f"{self.provider_id} rejected request: {e}", self.provider_id)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise FatalConfigurationError(f"{self.provider_id} rejected credentials: {e}")
        except openai.APIConnectionError as e:
            raise TransientProviderError(f"{self.provider_id} connection failed: {e}", self.provider_id)
        except openai.APIStatusError as e:
            raise TransientProviderError(f"{self.provider_id} returned {e.status_code}: {e}", self.provider_id)

        if not completion.choices:
            return ProviderResponse(raw_output="", finish_reason=None)
        choice = completion.choices[0]
        return ProviderResponse(
            raw_output=choice.message.content or "",
            finish_reason=choice.finish_reason,
        )


def _retry_after(error: Exception) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def build_providers(config: Optional[WorkerSettings] = None) -> List[ProviderClient]:
    """
    Build provider clients from settings.

    Each entry of ANALYSIS_PROVIDERS looks like::

        {"provider_id": "perplexity", "model": "sonar", "base_url": "https://api.perplexity.ai",
         "api_key_env": "PERPLEXITY_API_KEY", "requests_per_second": 1, "burst": 2,
         "max_output_tokens": 4096, "json_mode": false}

    Raises:
        FatalConfigurationError: no providers, or one without an API key.
    """
    config = config or default_settings
    load_dotenv()
    providers: List[ProviderClient] = []
    for raw in config.provider_configs():
        provider_id = raw.get("provider_id")
        model = raw.get("model")
        if not provider_id or not model:
            raise FatalConfigurationError(f"provider config needs provider_id and model: {raw}")
        key_env = raw.get("api_key_env", "OPENAI_API_KEY")
        api_key = os.getenv(key_env) or (config.openai_api_key if key_env == "OPENAI_API_KEY" else None)
        if not api_key:
            raise FatalConfigurationError(f"provider {provider_id}: {key_env} is not set")
        bucket = TokenBucket(
            rate=float(raw.get("requests_per_second", 2.0)),
            burst=int(raw.get("burst", 4)),
            max_in_flight=raw.get("max_in_flight"),
        )
        providers.append(OpenAIProvider(
            provider_id=provider_id,
            model=model,
            api_key=api_key,
            base_url=raw.get("base_url"),
            temperature=float(raw.get("temperature", 0.2)),
            max_output_tokens=int(raw.get("max_output_tokens", 4096)),
            bucket=bucket,
            chars_per_token=config.chars_per_token,
            supports_json_mode=bool(raw.get("json_mode", True)),
        ))
    if not providers:
        raise FatalConfigurationError("no analysis providers configured")
    logger.info("providers_configured ids=%s", ",".join(p.provider_id for p in providers))
    return providers
