"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pydantic import BaseModel, Field, field_validator, model_validator

MB = 1024 * 1024
GB = 1024 * MB


class CacheConfig(BaseModel):
    """A validated configuration model for the media cache."""

    # Storage
    cache_dir: str
    max_cache_bytes: int = 8 * GB
    warning_cache_bytes: int = 6 * GB
    min_free_bytes: int = 500 * MB
    eviction_fraction: float = 0.3

    # Transfers
    max_concurrent: int = 2
    transfer_timeout_seconds: float = 300.0
    chunk_size: int = 262144
    progress_interval_seconds: float = 0.5

    # Retry policy
    retry_interval_seconds: float = 10.0
    hard_cap: int = 10
    fast_retry_attempts: int = 5
    cooldown_seconds: float = 30.0

    # Event log (JSONL); disabled when empty
    event_log_dir: str = ""

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("cache_dir")
    @classmethod
    def validate_cache_dir(cls, v: str) -> str:
        if not v:
            raise ValueError("Cache directory cannot be empty.")
        return v

    @field_validator("max_concurrent")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Ensures a reasonable number of simultaneous transfers."""
        if v < 1 or v > 16:
            raise ValueError("Max concurrent transfers must be between 1 and 16.")
        return v

    @field_validator(
        "transfer_timeout_seconds", "retry_interval_seconds", "progress_interval_seconds"
    )
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Intervals and timeouts must be positive.")
        return v

    @field_validator("cooldown_seconds")
    @classmethod
    def validate_cooldown(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Cooldown cannot be negative.")
        return v

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        if v < 1024:
            raise ValueError("Chunk size must be at least 1024 bytes.")
        return v

    @field_validator("eviction_fraction")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("Eviction fraction must be in the range (0, 1].")
        return v

    @field_validator("max_cache_bytes", "warning_cache_bytes", "min_free_bytes")
    @classmethod
    def validate_sizes(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Byte limits cannot be negative.")
        return v

    @model_validator(mode="after")
    def validate_limits(self) -> "CacheConfig":
        """Checks that the size thresholds and retry tiers are consistent."""
        if self.warning_cache_bytes > self.max_cache_bytes:
            raise ValueError(
                "warning_cache_bytes must not exceed max_cache_bytes "
                f"({self.warning_cache_bytes} > {self.max_cache_bytes})."
            )
        if self.hard_cap < 1:
            raise ValueError("hard_cap must be at least 1.")
        if not 0 <= self.fast_retry_attempts <= self.hard_cap:
            raise ValueError("fast_retry_attempts must be between 0 and hard_cap.")
        return self

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
