"""
Agent configuration.

Values are read from the environment (a local .env file is loaded first),
falling back to the defaults the agent was tuned with: a 20 second capture
cycle, a 40 second watchdog and a 10 km geofence.
"""
import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Queue capacities (oldest entries are evicted beyond these)
LOCATION_QUEUE_CAPACITY = 500
ALERT_QUEUE_CAPACITY = 50

# Upload batch sizes
MAIN_BATCH_SIZE = 50
WATCHDOG_BATCH_SIZE = 20

# Per-operation deadlines in seconds
HIGH_ACCURACY_TIMEOUT_SECONDS = 8.0
LOW_ACCURACY_TIMEOUT_SECONDS = 4.0
CYCLE_PROBE_TIMEOUT_SECONDS = 5.0
WATCHDOG_PROBE_TIMEOUT_SECONDS = 3.0
MAIN_UPLOAD_TIMEOUT_SECONDS = 10.0
WATCHDOG_UPLOAD_TIMEOUT_SECONDS = 6.0
LOG_SHIP_TIMEOUT_SECONDS = 10.0

# Alerting and staleness windows in milliseconds
ALERT_COOLDOWN_MS = 5 * 60 * 1000
WATCHDOG_STALE_THRESHOLD_MS = 120 * 1000
LAST_KNOWN_MAX_AGE_MS = 5 * 60 * 1000

# Geofence (Cosmos Greens, Bhiwadi)
GEOFENCE_LAT = 28.1944713
GEOFENCE_LNG = 76.817266
GEOFENCE_RADIUS_KM = 10.0


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class AgentConfig:
    """Runtime configuration for one agent instance."""
    collector_url: str = "http://127.0.0.1:3000"
    probe_url: str = ""

    redis_host: str = "127.0.0.1"
    redis_port: int = 6379
    redis_db: int = 0
    key_prefix: str = "agent:"
    store_backend: str = "redis"  # "redis" or "memory"

    # Cycle cadence
    cycle_interval_seconds: float = 20.0
    watchdog_interval_seconds: float = 40.0
    notification_interval_seconds: float = 300.0
    first_cycle_delay_seconds: float = 1.5

    # Geofence
    geofence_lat: float = GEOFENCE_LAT
    geofence_lng: float = GEOFENCE_LNG
    geofence_radius_km: float = GEOFENCE_RADIUS_KM

    # Pipeline tuning
    location_capacity: int = LOCATION_QUEUE_CAPACITY
    alert_capacity: int = ALERT_QUEUE_CAPACITY
    main_batch_size: int = MAIN_BATCH_SIZE
    watchdog_batch_size: int = WATCHDOG_BATCH_SIZE
    alert_cooldown_ms: int = ALERT_COOLDOWN_MS
    watchdog_stale_threshold_ms: int = WATCHDOG_STALE_THRESHOLD_MS

    gps_command: str = "termux-location"
    log_level: str = "INFO"
    autostart: bool = True

    def __post_init__(self):
        if not self.probe_url:
            self.probe_url = f"{self.collector_url.rstrip('/')}/api/health"

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load configuration from environment variables."""
        return cls(
            collector_url=os.getenv("AGENT_COLLECTOR_URL", "http://127.0.0.1:3000"),
            probe_url=os.getenv("AGENT_PROBE_URL", ""),
            redis_host=os.getenv("REDIS_HOST", "127.0.0.1"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_db=int(os.getenv("REDIS_DB", "0")),
            key_prefix=os.getenv("AGENT_KEY_PREFIX", "agent:"),
            store_backend=os.getenv("AGENT_STORE_BACKEND", "redis"),
            cycle_interval_seconds=_env_float("AGENT_CYCLE_INTERVAL_SECONDS", 20.0),
            watchdog_interval_seconds=_env_float("AGENT_WATCHDOG_INTERVAL_SECONDS", 40.0),
            notification_interval_seconds=_env_float("AGENT_NOTIFICATION_INTERVAL_SECONDS", 300.0),
            first_cycle_delay_seconds=_env_float("AGENT_FIRST_CYCLE_DELAY_SECONDS", 1.5),
            geofence_lat=_env_float("AGENT_GEOFENCE_LAT", GEOFENCE_LAT),
            geofence_lng=_env_float("AGENT_GEOFENCE_LNG", GEOFENCE_LNG),
            geofence_radius_km=_env_float("AGENT_GEOFENCE_RADIUS_KM", GEOFENCE_RADIUS_KM),
            gps_command=os.getenv("AGENT_GPS_COMMAND", "termux-location"),
            log_level=os.getenv("AGENT_LOG_LEVEL", "INFO"),
            autostart=os.getenv("AGENT_AUTOSTART", "true").lower() in ("1", "true", "yes"),
        )
