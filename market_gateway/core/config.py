"""Gateway settings, read from the environment or `.env`.

A process embedding the gateway calls validate_settings() and then
core.logging.setup_logging() once at startup, before building a
MarketDataGateway. Library use and tests pass a Settings instance instead.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Tool RPC service (Alpha Vantage MCP)
    mcp_server_url: str = "https://mcp.alphavantage.co/mcp"
    alpha_vantage_api_key: str = ""  # single-key fallback when no indexed keys are set
    alpha_vantage_api_key_1: str = ""
    alpha_vantage_api_key_2: str = ""
    alpha_vantage_api_key_3: str = ""
    alpha_vantage_api_key_4: str = ""
    alpha_vantage_api_key_5: str = ""
    alpha_vantage_api_key_6: str = ""

    # Tool call policy
    tool_daily_request_limit: int = 25  # per key, per UTC day
    tool_request_timeout_seconds: float = 30.0
    tool_max_retries: int = 2
    tool_base_backoff_seconds: float = 1.0
    tool_max_backoff_seconds: float = 5.0
    stale_cache_max_age_ms: int = 600_000

    @property
    def tool_api_keys(self) -> list[str]:
        """Indexed keys in order, or the single fallback key."""
        indexed = [
            self.alpha_vantage_api_key_1,
            self.alpha_vantage_api_key_2,
            self.alpha_vantage_api_key_3,
            self.alpha_vantage_api_key_4,
            self.alpha_vantage_api_key_5,
            self.alpha_vantage_api_key_6,
        ]
        keys = [k for k in indexed if k]
        if not keys and self.alpha_vantage_api_key:
            keys = [self.alpha_vantage_api_key]
        return keys

    # LLM vendors
    anthropic_api_key: str = ""
    deepseek_api_key: str = ""
    llm_request_timeout_seconds: float = 120.0
    default_model: str = "claude-3-5-haiku-20241022"  # used when CompletionOptions.model is empty

    # Telemetry: memory | clickhouse | none
    telemetry_backend: str = "memory"

    # ClickHouse
    clickhouse_host: str = "localhost"
    clickhouse_port: int = 8123
    clickhouse_user: str = "default"
    clickhouse_password: str = ""
    clickhouse_db: str = "market_gateway"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs


settings = Settings()


def validate_settings() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if not settings.tool_api_keys:
        errors.append("ALPHA_VANTAGE_API_KEY or ALPHA_VANTAGE_API_KEY_1..6 must be set")

    if not settings.anthropic_api_key and not settings.deepseek_api_key:
        errors.append("At least one of ANTHROPIC_API_KEY / DEEPSEEK_API_KEY must be set")

    if settings.tool_daily_request_limit <= 0:
        errors.append("TOOL_DAILY_REQUEST_LIMIT must be positive")

    if settings.telemetry_backend not in ("memory", "clickhouse", "none"):
        errors.append("TELEMETRY_BACKEND must be one of: memory, clickhouse, none")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
