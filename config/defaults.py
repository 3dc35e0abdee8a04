"""
App Explorer - Default Configuration Constants

Process-wide defaults for the exploration engine and its adapters.
Values can be overridden via environment variables.

Usage:
    from config.defaults import Defaults
    threshold = Defaults.STUCK_THRESHOLD
"""

import os
from dataclasses import dataclass


def _get_env_bool(name: str, default: bool) -> bool:
    """Get boolean value from environment variable"""
    value = os.environ.get(name, str(default)).lower()
    return value in ("true", "1", "yes", "on")


@dataclass
class ExplorerDefaults:
    """Engine-wide default configuration."""

    # ==========================================================================
    # MQTT Settings (status + training log publishing)
    # ==========================================================================
    MQTT_BROKER: str = "localhost"
    MQTT_PORT: int = 1883
    MQTT_KEEPALIVE: int = 60
    MQTT_QOS: int = 0
    MQTT_TOPIC_STATUS: str = "visualmapper/exploration/status"
    MQTT_TOPIC_LOGS: str = "visualmapper/exploration/logs"
    MQTT_TOPIC_QTABLE: str = "visualmapper/exploration/qtable"

    # ==========================================================================
    # Storage
    # ==========================================================================
    DATA_DIR: str = "data"
    POLICY_DB_PATH: str = "data/exploration_policy.db"
    POLICY_WRITE_BEHIND: bool = True
    POLICY_WRITER_THREADS: int = 1

    # ==========================================================================
    # Staleness / Recovery
    # ==========================================================================
    STUCK_THRESHOLD: int = 5  # Consecutive no-progress actions on one screen
    RESTART_THRESHOLD: int = 15  # Actions since last discovery before forced restart
    PLATEAU_SECONDS: float = 120.0  # Wall time without discovery
    HUMAN_HELP_TIMEOUT_SECONDS: float = 30.0

    # ==========================================================================
    # Collaborator retries
    # ==========================================================================
    CAPTURE_RETRIES: int = 3
    CAPTURE_BACKOFF_SECONDS: float = 0.5
    MAX_CONSECUTIVE_CAPTURE_FAILURES: int = 3
    ACTUATOR_RETRIES: int = 2
    MAX_CONSECUTIVE_ACTUATOR_FAILURES: int = 3

    # ==========================================================================
    # Stabilization
    # ==========================================================================
    STABILIZATION_POLL_INTERVAL_MS: int = 250
    STABILIZATION_REQUIRED_MATCHES: int = 2

    # ==========================================================================
    # Frontier
    # ==========================================================================
    MAX_ELEMENT_RETRIES: int = 3
    MAX_SCREEN_REACH_FAILURES: int = 3
    MAX_VERIFICATION_PASSES: int = 3

    # ==========================================================================
    # System UI zones (pixels)
    # ==========================================================================
    STATUS_BAR_HEIGHT: int = 80
    NAV_BAR_HEIGHT: int = 130

    @classmethod
    def from_env(cls) -> "ExplorerDefaults":
        """Create config from environment variables with defaults."""
        return cls(
            MQTT_BROKER=os.getenv("MQTT_BROKER", cls.MQTT_BROKER),
            MQTT_PORT=int(os.getenv("MQTT_PORT", cls.MQTT_PORT)),
            DATA_DIR=os.getenv("DATA_DIR", cls.DATA_DIR),
            POLICY_DB_PATH=os.getenv("POLICY_DB_PATH", cls.POLICY_DB_PATH),
            POLICY_WRITE_BEHIND=_get_env_bool(
                "POLICY_WRITE_BEHIND", cls.POLICY_WRITE_BEHIND
            ),
            STUCK_THRESHOLD=int(os.getenv("STUCK_THRESHOLD", cls.STUCK_THRESHOLD)),
            RESTART_THRESHOLD=int(
                os.getenv("RESTART_THRESHOLD", cls.RESTART_THRESHOLD)
            ),
            PLATEAU_SECONDS=float(os.getenv("PLATEAU_SECONDS", cls.PLATEAU_SECONDS)),
            HUMAN_HELP_TIMEOUT_SECONDS=float(
                os.getenv("HUMAN_HELP_TIMEOUT_SECONDS", cls.HUMAN_HELP_TIMEOUT_SECONDS)
            ),
        )


# Global defaults instance - can be overridden at runtime
Defaults = ExplorerDefaults()


def load_defaults_from_env():
    """Reload defaults from environment variables."""
    global Defaults
    Defaults = ExplorerDefaults.from_env()
    return Defaults
