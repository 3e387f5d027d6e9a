from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clouds.core.types import DurationSeconds

DEFAULT_HEARTBEAT_INTERVAL: DurationSeconds = 2.0
DEFAULT_KEY_PREFIX = "clouds"
DEFAULT_REDIS_URL = "redis://127.0.0.1:6379/0"


def heartbeat_ttl(interval: DurationSeconds) -> DurationSeconds:
    """Lifetime of a service heartbeat key for a given refresh interval."""
    return interval * 2


class CloudsSettings(BaseSettings):
    """Clouds node configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLOUDS_", env_file=".env", extra="ignore"
    )

    redis_url: str = Field(
        DEFAULT_REDIS_URL, description="URL of the broker shared by all nodes."
    )
    prefix: str = Field(
        DEFAULT_KEY_PREFIX,
        description="Namespace prepended to every broker key and channel.",
    )
    heartbeat: float = Field(
        DEFAULT_HEARTBEAT_INTERVAL,
        description="Interval in seconds between service heartbeat refreshes.",
    )
    role: str = Field("server", description="Role tag embedded in the node id.")
    log_level: str = Field("INFO", description="Minimum level for log output.")
    debug_scopes: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Module prefixes that always emit DEBUG output.",
    )

    @field_validator("heartbeat", mode="before")
    @classmethod
    def _positive_heartbeat(cls, value: object) -> object:
        try:
            if float(value) > 0:  # type: ignore[arg-type]
                return value
        except (TypeError, ValueError):
            pass
        return DEFAULT_HEARTBEAT_INTERVAL
