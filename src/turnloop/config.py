"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    app_db: str = Field(alias="APP_DB", default="/tmp/turnloop.db")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    # Upstream endpoints
    openai_base_url: str = Field(alias="OPENAI_BASE_URL", default="https://api.openai.com/v1")
    anthropic_base_url: str = Field(
        alias="ANTHROPIC_BASE_URL", default="https://api.anthropic.com/v1"
    )
    anthropic_api_version: str = Field(alias="ANTHROPIC_API_VERSION", default="2023-06-01")
    upstream_timeout_seconds: int = Field(alias="UPSTREAM_TIMEOUT_SECONDS", default=60)

    # System-level credentials (highest precedence)
    openai_api_key: str = Field(alias="OPENAI_API_KEY", default="")
    anthropic_api_key: str = Field(alias="ANTHROPIC_API_KEY", default="")

    # Model defaults
    default_model: str = Field(alias="DEFAULT_MODEL", default="gpt-4.1")
    default_max_output_tokens: int = Field(alias="DEFAULT_MAX_OUTPUT_TOKENS", default=0)
    anthropic_default_max_tokens: int = Field(alias="ANTHROPIC_DEFAULT_MAX_TOKENS", default=4096)

    # Orchestration policy
    stream_idle_timeout_seconds: float = Field(alias="STREAM_IDLE_TIMEOUT_SECONDS", default=300.0)
    poll_interval_seconds: float = Field(alias="POLL_INTERVAL_SECONDS", default=3.0)
    poll_budget_seconds: float = Field(alias="POLL_BUDGET_SECONDS", default=600.0)
    max_tool_iterations: int = Field(alias="MAX_TOOL_ITERATIONS", default=10)
    history_window: int = Field(alias="HISTORY_WINDOW", default=50)
    heartbeat_interval_seconds: float = Field(alias="HEARTBEAT_INTERVAL_SECONDS", default=10.0)
    max_user_message_chars: int = Field(alias="MAX_USER_MESSAGE_CHARS", default=100_000)
    tool_dispatch_mode: str = Field(alias="TOOL_DISPATCH_MODE", default="registry")

    web_auth_token_ttl_hours: int = Field(alias="WEB_AUTH_TOKEN_TTL_HOURS", default=720)
    web_cors_origins: str = Field(alias="WEB_CORS_ORIGINS", default="http://localhost:5173")
    chat_rate_limit: str = Field(alias="CHAT_RATE_LIMIT", default="60/minute")

    # Security: bind host defaults to loopback
    bind_host: str = Field(alias="BIND_HOST", default="127.0.0.1")
    bind_port: int = Field(alias="BIND_PORT", default=8000)


_POSITIVE_POLICY_KEYS = {
    "STREAM_IDLE_TIMEOUT_SECONDS": "stream_idle_timeout_seconds",
    "POLL_INTERVAL_SECONDS": "poll_interval_seconds",
    "POLL_BUDGET_SECONDS": "poll_budget_seconds",
    "MAX_TOOL_ITERATIONS": "max_tool_iterations",
    "HISTORY_WINDOW": "history_window",
    "HEARTBEAT_INTERVAL_SECONDS": "heartbeat_interval_seconds",
    "UPSTREAM_TIMEOUT_SECONDS": "upstream_timeout_seconds",
}


def validate_settings_for_env(settings: Settings) -> None:
    import logging as _logging
    import warnings

    _logger = _logging.getLogger(__name__)

    invalid: list[str] = []
    for key, attr in _POSITIVE_POLICY_KEYS.items():
        if getattr(settings, attr) <= 0:
            invalid.append(f"{key}(must be positive)")
    if settings.poll_interval_seconds > settings.poll_budget_seconds:
        invalid.append("POLL_INTERVAL_SECONDS(exceeds POLL_BUDGET_SECONDS)")
    if settings.tool_dispatch_mode not in {"registry", "legacy"}:
        invalid.append("TOOL_DISPATCH_MODE(registry|legacy)")
    if invalid:
        keys = ", ".join(sorted(set(invalid)))
        raise ValueError(f"invalid configuration: {keys}")

    # Warn if binding to 0.0.0.0 in production
    if settings.app_env == "prod" and settings.bind_host == "0.0.0.0":
        msg = (
            "SECURITY WARNING: BIND_HOST=0.0.0.0 in production. "
            "This exposes the API to all network interfaces. "
            "Set BIND_HOST=127.0.0.1 and use a reverse proxy."
        )
        _logger.warning(msg)
        warnings.warn(msg, stacklevel=2)

    if settings.app_env != "prod":
        return

    missing: list[str] = []
    required_non_empty = {
        "APP_DB": settings.app_db,
        "OPENAI_BASE_URL": settings.openai_base_url,
        "DEFAULT_MODEL": settings.default_model,
    }
    for key, value in required_non_empty.items():
        if not value.strip():
            missing.append(key)
    if not settings.app_db.startswith("/"):
        missing.append("APP_DB(absolute path required)")
    if not settings.openai_base_url.startswith("https://"):
        missing.append("OPENAI_BASE_URL(https required)")

    if missing:
        keys = ", ".join(sorted(set(missing)))
        raise ValueError(f"invalid production configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
