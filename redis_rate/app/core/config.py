from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Limiter settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Redis settings
    redis_url: str = "redis://localhost:6379/0"

    # Connection pool settings
    redis_max_connections: int = 50
    redis_socket_timeout: float = 5.0  # Per-command read/write timeout
    redis_socket_connect_timeout: float = 5.0  # Time to establish connection
    redis_pool_timeout: float = 5.0  # Time to wait for a free pooled connection

    # Limiter settings
    limiter_key_prefix: str = "redis_rate:"
    limiter_event_channel: str = "redis_rate_channel"
    limiter_local_accelerate: bool = False

    # HTTP middleware settings (applied to /api routes of the demo app)
    rate_limit_requests_per_minute: int = 60
    rate_limit_burst_size: int = 60
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when Redis is unavailable
    )

    # Demo app knock limit (1 request per 10 seconds)
    knock_rate: int = 1
    knock_burst: int = 1
    knock_period_seconds: int = 10

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("rate_limit_requests_per_minute", "rate_limit_burst_size")
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("redis_max_connections")
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        """Validate pool size is positive."""
        if v < 1:
            raise ValueError("redis_max_connections must be at least 1")
        return v

    @field_validator(
        "redis_socket_timeout",
        "redis_socket_connect_timeout",
        "redis_pool_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("limiter_event_channel")
    @classmethod
    def validate_event_channel(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("limiter_event_channel must not be empty")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Validate configured limits with the same rules as Limit."""
        if self.rate_limit_requests_per_minute > self.rate_limit_burst_size:
            raise ValueError(
                "rate_limit_requests_per_minute must be less than or equal to rate_limit_burst_size"
            )
        if self.knock_period_seconds < 1:
            raise ValueError("knock_period_seconds must be greater than 0")
        if self.knock_rate < 1:
            raise ValueError("knock_rate must be greater than 0")
        if self.knock_rate > self.knock_burst:
            raise ValueError("knock_rate must be less than or equal to knock_burst")
        return self

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
