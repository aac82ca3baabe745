from __future__ import annotations

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shoespecs.core.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENVIRONMENT: str = "local"
    LOG_LEVEL: str = "INFO"

    # === Article store ===
    DATABASE_URL: str | None = None
    ARTICLES_TABLE: str = Field(
        default="articles",
        pattern=r"^[A-Za-z_][A-Za-z0-9_]*$",
        description="Table holding article rows and their specs results.",
    )
    STORE_CALL_TIMEOUT: float = Field(default=15.0, description="Per store call timeout (seconds)")
    STORE_RETRY_ATTEMPTS: int = 5
    STORE_RETRY_BASE_DELAY: float = 0.5
    STORE_RETRY_JITTER: float = 0.25

    # === Runner ===
    CHILD_TIMEOUT: float = Field(
        default=30.0,
        description="Hard wall-clock budget for one per-article child process (seconds).",
    )
    BATCH_SIZE: int = 10
    BATCH_PAUSE: float = 0.1
    FORCE_ID: int | None = None
    FORCE_IDS: str = ""
    FORCE_OVERWRITE: bool = False
    FORCE_IDS_CONCURRENCY: int = 1
    DEBUG_RUNNER: bool = False

    # === Per-article extraction ===
    DOM_PARSE_TIMEOUT: float = Field(
        default=5.0,
        description="Timeout for the isolated markup parse worker (seconds).",
    )
    HTML_FETCH_TIMEOUT: float = 10.0
    MAX_HTML_BYTES: int = 600_000
    MAX_PREFILTER_CHARS: int = 160_000
    MIN_CONTENT_LEN: int = 2_000
    WINDOW_RADIUS: int = 4_000
    MAX_WINDOW_TOTAL_CHARS: int = 120_000
    SNIPPET_TOP_N: int = 8
    DEBUG_SPEC_CLUSTER: bool = False

    # === Ambiguity resolver ===
    OPENAI_API_KEY: str | None = None
    RESOLVER_MODEL: str = "gpt-4o-mini"
    RESOLVER_MAX_TOKENS: int = 1_000
    RESOLVER_CALL_TIMEOUT: float = 60.0
    RESOLVER_BATCH_SIZE: int = 5
    RESOLVER_LIMIT: int = 0  # 0 = no limit
    RESOLVER_PROMPT_VERSION: str = "v1"
    LLM_MAX_CALLS: int = 200
    LLM_GATE: bool = True
    FORCE_LLM: bool = False
    FORCE_RESOLVE: bool = False

    @field_validator(
        "STORE_CALL_TIMEOUT",
        "CHILD_TIMEOUT",
        "DOM_PARSE_TIMEOUT",
        "HTML_FETCH_TIMEOUT",
        "RESOLVER_CALL_TIMEOUT",
    )
    @classmethod
    def validate_timeouts(cls, v: float) -> float:
        """Timeouts must be positive and below one hour."""
        if v <= 0:
            raise ValueError("Timeouts must be > 0 seconds")
        if v > 3600:
            raise ValueError("Timeouts must be <= 3600 seconds")
        return v

    @field_validator(
        "BATCH_SIZE",
        "RESOLVER_BATCH_SIZE",
        "WINDOW_RADIUS",
        "MAX_WINDOW_TOTAL_CHARS",
        "MAX_PREFILTER_CHARS",
        "MAX_HTML_BYTES",
        "SNIPPET_TOP_N",
        "STORE_RETRY_ATTEMPTS",
        "FORCE_IDS_CONCURRENCY",
    )
    @classmethod
    def validate_positive_ints(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be >= 1")
        return v

    @field_validator("LLM_MAX_CALLS", "RESOLVER_LIMIT", "MIN_CONTENT_LEN")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Value must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_window_budget(self) -> Settings:
        """A single window must fit inside the total window budget."""
        if self.MAX_WINDOW_TOTAL_CHARS < self.WINDOW_RADIUS:
            raise ValueError("MAX_WINDOW_TOTAL_CHARS must be >= WINDOW_RADIUS")
        return self

    @property
    def force_id_list(self) -> list[int]:
        """FORCE_IDS parsed into ints; non-numeric entries are dropped."""
        ids: list[int] = []
        for part in str(self.FORCE_IDS or "").split(","):
            part = part.strip()
            if part.lstrip("-").isdigit():
                ids.append(int(part))
        return ids


def require_store_settings(current: Settings | None = None) -> Settings:
    """Fail fast when the store connection parameters are missing."""
    current = current or settings
    if not (current.DATABASE_URL or "").strip():
        raise ConfigurationError("DATABASE_URL must be set to reach the article store")
    return current


def require_llm_settings(current: Settings | None = None) -> Settings:
    current = current or settings
    if not (current.OPENAI_API_KEY or "").strip():
        raise ConfigurationError("OPENAI_API_KEY must be set to run the resolver")
    return current


settings = Settings()
