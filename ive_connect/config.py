from decouple import config
from pydantic import BaseModel, Field

# Log configuration
LOG_LEVEL: str = config("IVE_LOG_LEVEL", default="INFO").upper()
LOG_FORMAT: str = config(
    "IVE_LOG_FORMAT", default="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
LOG_DATETIME_FORMAT: str = config("IVE_LOG_DATETIME_FORMAT", default="%Y-%m-%d %H:%M:%S")
LOGGER_NAME: str = config("IVE_LOGGER_NAME", default="ive_connect")

# Playback timing (all values in milliseconds)
TICK_INTERVAL_MS: int = config("IVE_TICK_INTERVAL_MS", default=20, cast=int)
END_TOLERANCE_MS: int = config("IVE_END_TOLERANCE_MS", default=1000, cast=int)
MIN_TRAVEL_MS: int = config("IVE_MIN_TRAVEL_MS", default=100, cast=int)
DEFAULT_TRAVEL_MS: int = config("IVE_DEFAULT_TRAVEL_MS", default=500, cast=int)

# Clock synchronisation
CLOCK_SAMPLE_COUNT: int = config("IVE_CLOCK_SAMPLE_COUNT", default=10, cast=int)
CLOCK_RESYNC_INTERVAL_S: float = config("IVE_CLOCK_RESYNC_INTERVAL_S", default=0.0, cast=float)
CLOCK_PROBE_TIMEOUT_S: float = config("IVE_CLOCK_PROBE_TIMEOUT_S", default=2.0, cast=float)

# Local streaming server (WebSocket)
STREAMING_URL: str = config("IVE_STREAMING_URL", default="ws://127.0.0.1:12345")
CLIENT_NAME: str = config("IVE_CLIENT_NAME", default="IVE-Connect")

# Cloud REST API
CLOUD_API_URL: str = config(
    "IVE_CLOUD_API_URL", default="https://www.handyfeeling.com/api/handy-rest/v3"
)
CLOUD_APPLICATION_ID: str = config("IVE_CLOUD_APPLICATION_ID", default="12345")

REQUEST_TIMEOUT_S: float = config("IVE_REQUEST_TIMEOUT_S", default=10.0, cast=float)


class PlaybackConfig(BaseModel):
    """
    Timing knobs of the playback scheduler and timeline lookup.

    Args:
        tick_interval_ms (int): Interval of the scheduler tick loop.
        end_tolerance_ms (float): Time past the last action before playback ends or loops.
        min_travel_ms (int): Lower bound for the travel duration between two actions.
        default_travel_ms (int): Travel duration used for the first action.
    """

    tick_interval_ms: int = Field(default=TICK_INTERVAL_MS, gt=0)
    end_tolerance_ms: float = Field(default=END_TOLERANCE_MS, ge=0)
    min_travel_ms: int = Field(default=MIN_TRAVEL_MS, ge=0)
    default_travel_ms: int = Field(default=DEFAULT_TRAVEL_MS, ge=0)


class ClockSyncConfig(BaseModel):
    """Configuration of the round-trip clock offset estimation."""

    sample_count: int = Field(default=CLOCK_SAMPLE_COUNT, ge=1)
    retain_ratio: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Share of lowest-delay samples kept when averaging the offset.",
    )
    min_samples_for_trim: int = Field(
        default=4, ge=1, description="Below this many samples every sample is kept."
    )
    probe_timeout_s: float = Field(default=CLOCK_PROBE_TIMEOUT_S, gt=0)
    resync_interval_s: float = Field(
        default=CLOCK_RESYNC_INTERVAL_S, ge=0, description="0 disables periodic re-sync."
    )


class StreamingConfig(BaseModel):
    """Connection settings for a local streaming server."""

    url: str = Field(default=STREAMING_URL, description="WebSocket URL of the server.")
    client_name: str = Field(default=CLIENT_NAME)
    request_timeout_s: float = Field(default=REQUEST_TIMEOUT_S, gt=0)
    scan_on_connect: bool = Field(
        default=False, description="Start scanning for devices right after the handshake."
    )


class CloudConfig(BaseModel):
    """
    Connection settings for a cloud-connected device.

    Args:
        connection_key (str): Device connection key, at least 5 characters.
        api_url (str): Base URL of the REST API.
        application_id (str): Application id sent as bearer token.
        request_timeout_s (float): Timeout for every REST call.
        chunk_size (int): Maximum number of points per buffer upload.
        starving_threshold (int): Refill when fewer points than this remain ahead.
        sync_filter (float): Default filter for gradual time correction.
    """

    connection_key: str = Field(default="")
    api_url: str = Field(default=CLOUD_API_URL)
    application_id: str = Field(default=CLOUD_APPLICATION_ID)
    request_timeout_s: float = Field(default=REQUEST_TIMEOUT_S, gt=0)
    chunk_size: int = Field(default=100, ge=1, le=100)
    starving_threshold: int = Field(default=30, ge=1)
    sync_filter: float = Field(default=0.5, ge=0, le=1)


default_playback_config = PlaybackConfig()
default_clock_config = ClockSyncConfig()
