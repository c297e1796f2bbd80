"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pydantic import BaseModel, Field, field_validator

# Maps user-friendly codes to API codes and provides metadata
QUALITY_MAP = {
    # User code -> API code
    1: 5,
    2: 6,
    3: 7,
    4: 27,
    # API code -> Metadata (for internal use)
    5: {
        "name": "MP3 320kbps",
        "short": "MP3 320",
        "ext": "mp3",
        "color": "yellow",
        "user_code": 1,
    },
    6: {
        "name": "CD Lossless (16/44.1)",
        "short": "16/44.1",
        "ext": "flac",
        "color": "green",
        "user_code": 2,
    },
    7: {
        "name": "Hi-Res (up to 24/96)",
        "short": "24/96",
        "ext": "flac",
        "color": "cyan",
        "user_code": 3,
    },
    27: {
        "name": "Hi-Res+ (up to 24/192)",
        "short": "24/192",
        "ext": "flac",
        "color": "magenta",
        "user_code": 4,
    },
}

API_QUALITY_CODES = (5, 6, 7, 27)


def get_quality_info(quality_id: int) -> dict[str, str]:
    """Gets all information for a given quality ID from the central map."""
    return QUALITY_MAP.get(
        quality_id,
        {
            "name": "Unknown",
            "short": "Unknown",
            "ext": "flac",
            "color": "white",
            "user_code": 0,
        },
    )


def normalize_quality(value: int) -> int:
    """
    Translates a user code (1-4) to its API code and validates API codes.

    Raises:
        ValueError: If the value is neither a user code nor an API code.
    """
    if value in (1, 2, 3, 4):
        return QUALITY_MAP[value]
    if value not in API_QUALITY_CODES:
        raise ValueError(
            "Quality must be one of 1 (MP3), 2 (CD), 3 (Hi-Res), 4 (Hi-Res+)."
        )
    return value


class QueueConfig(BaseModel):
    """A validated configuration model for the application."""

    # Job defaults
    quality: int = 6
    max_retries: int = 3

    # Scheduling
    max_concurrent: int = 2
    retry_delay: float = 1.0
    poll_interval: float = 1.0
    flush_interval: float = 2.0

    # Admission control
    rate_limit_requests: int = 30
    rate_limit_window: float = 60.0
    rate_limit_block: float = 300.0

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout: int = 60

    # Output
    output_dir: str = "downloads"

    # Internal fields not loaded from INI file
    config_path: str = Field(..., repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, v: int) -> int:
        """Ensures quality is a valid user or API code and stores the API code."""
        return normalize_quality(v)

    @field_validator("max_concurrent")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Ensures a reasonable number of concurrent jobs."""
        if v < 1 or v > 32:
            raise ValueError("Max concurrent jobs must be between 1 and 32.")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0 or v > 10:
            raise ValueError("Max retries must be between 0 and 10.")
        return v

    @field_validator(
        "retry_delay",
        "poll_interval",
        "flush_interval",
        "rate_limit_window",
        "rate_limit_block",
    )
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Intervals and durations must be positive.")
        return v

    @field_validator("rate_limit_requests", "breaker_failure_threshold")
    @classmethod
    def validate_positive_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Counts must be at least 1.")
        return v

    @field_validator("output_dir")
    @classmethod
    def validate_output_dir(cls, v: str) -> str:
        if not v:
            raise ValueError("Output directory cannot be empty.")
        return v

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
