"""Settings via pydantic-settings with CONDUIT_ env prefix.

Vendor credentials use validation_alias to read the same unprefixed env vars
(ANTHROPIC_API_KEY, DEEPSEEK_API_KEY, ...) the vendor SDKs use, so one .env
file works for both.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from conduit.providers.base import ProviderConfig
from conduit.retry import RetryPolicy

ProviderType = Literal["anthropic", "deepseek", "lmstudio"]
CompressionMethod = Literal["semantic", "simple", "smart"]


def detect_provider_type(model: str) -> ProviderType:
    """Guess the provider from a model name. Defaults to anthropic."""
    if model.startswith("deepseek-"):
        return "deepseek"
    if model.startswith("claude-"):
        return "anthropic"
    if model.startswith("lmstudio-") or model == "local":
        return "lmstudio"
    return "anthropic"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONDUIT_", env_file=".env")

    log_level: str = "info"

    # LLM
    provider: ProviderType | None = None  # auto-detected from model when unset
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8192
    temperature: float = 1.0
    system_prompt: str = ""

    # Credentials and endpoints
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    anthropic_base_url: str = "https://api.anthropic.com"
    deepseek_api_key: str = Field("", validation_alias="DEEPSEEK_API_KEY")
    deepseek_base_url: str = "https://api.deepseek.com"
    lmstudio_api_key: str = ""
    lmstudio_base_url: str = Field(
        default="http://127.0.0.1:1234/v1",
        validation_alias="LMSTUDIO_BASE_URL",
    )

    # Timeouts (seconds)
    api_timeout: float | None = None  # inactivity window; None -> per-provider default
    api_timeout_connect: float = 10.0
    request_timeout: float | None = None  # hard per-call timeout; streams rely on api_timeout

    # Retry
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_backoff_multiplier: float = 2.0

    # LM Studio connection retries (before the stream starts)
    lmstudio_retries: int = 3
    lmstudio_retry_delay: float = 2.0

    # Context window
    context_limit: int = 180_000
    system_prompt_tokens: int = 2_000
    keep_first_message: bool = True
    auto_compact: bool = False
    compact_method: CompressionMethod = "smart"

    @model_validator(mode="after")
    def _resolve_defaults(self) -> "Settings":
        if self.provider is None:
            self.provider = detect_provider_type(self.model)
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.system_prompt_tokens >= self.context_limit:
            raise ValueError(
                f"system_prompt_tokens ({self.system_prompt_tokens}) must be < "
                f"context_limit ({self.context_limit})"
            )
        return self

    @property
    def api_key(self) -> str:
        """Credential for the active provider."""
        if self.provider == "deepseek":
            return self.deepseek_api_key
        if self.provider == "lmstudio":
            return self.lmstudio_api_key
        return self.anthropic_auth_token or self.anthropic_api_key

    @property
    def inactivity_timeout(self) -> float:
        """api_timeout, or the default for the active provider when unset."""
        if self.api_timeout is not None:
            return self.api_timeout
        # Local models can take minutes before the first token
        return 600.0 if self.provider == "lmstudio" else 180.0

    @property
    def base_url(self) -> str:
        if self.provider == "deepseek":
            return self.deepseek_base_url
        if self.provider == "lmstudio":
            return self.lmstudio_base_url
        return self.anthropic_base_url

    def provider_config(self) -> ProviderConfig:
        return ProviderConfig(
            model=self.model,
            api_key=self.api_key,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system_prompt=self.system_prompt,
            base_url=self.base_url,
            inactivity_timeout=self.inactivity_timeout,
            connect_timeout=self.api_timeout_connect,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
            timeout=self.request_timeout,
        )
