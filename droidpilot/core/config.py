"""Configuration management for the DroidPilot test orchestrator."""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables
load_dotenv()


class Config(BaseSettings):
    """Configuration class for DroidPilot runs."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DROIDPILOT_",
        case_sensitive=False,
        extra="ignore",  # Ignore unexpected env vars rather than raising errors
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_to_file: bool = Field(default=True, description="Write rotating log files under log_dir")
    log_dir: str = Field(default="logs")

    # Result cache
    cache_db_path: str = Field(default=".testpilot/cache/test_cache.db")
    cache_enabled: bool = Field(default=True)
    cache_retention_days: int = Field(default=30, description="Entries older than this are pruned")

    # Interruption automaton
    automaton_tick_interval: float = Field(default=0.3, description="Seconds between automaton ticks")
    automaton_status_every: int = Field(default=33, description="Heartbeat log every N ticks")
    automaton_error_every: int = Field(default=50, description="Log every Nth tick error")
    extra_accept_labels: list[str] = Field(default_factory=list, description="Additional permission accept labels")

    # Retry
    retry_max_retries: int = Field(default=3)
    retry_initial_delay: float = Field(default=5.0)
    retry_backoff_multiplier: float = Field(default=2.0)
    retry_max_delay: float = Field(default=120.0)

    # Scheduling
    max_concurrency: int = Field(default=3)
    max_devices: int = Field(default=4)
    batch_size: int = Field(default=10)
    batch_pause: float = Field(default=2.0, description="Seconds between batches")
    test_timeout: float = Field(default=600.0, description="Per-attempt script timeout in seconds")

    # Pump lease
    lease_max_attempts: int = Field(default=3)
    lease_retry_delay: float = Field(default=0.1)

    # Reporting
    max_error_length: int = Field(default=2000)

    # Device control
    adb_path: str = Field(default="adb")
    adb_timeout: float = Field(default=30.0)
    watcher_package: str = Field(default="com.testpilot.watcher.test")
    watcher_class: str = Field(default="com.testpilot.watcher.NativeWatcher#testWatchForDialogs")
    watcher_apk_path: Optional[str] = Field(default=None, description="Installed before the watcher starts when set")
    watcher_startup_delay: float = Field(default=2.0)
    watcher_stop_timeout: float = Field(default=5.0)
    app_package: Optional[str] = Field(default=None, description="Package under test")

    def validate_config(self) -> bool:
        """Validate configuration values."""
        if self.automaton_tick_interval <= 0:
            raise ValueError("Automaton tick interval must be positive")

        if self.retry_max_retries < 0:
            raise ValueError("Max retries cannot be negative")

        if self.retry_backoff_multiplier < 1.0:
            raise ValueError("Backoff multiplier must be at least 1.0")

        if self.max_concurrency < 1 or self.max_devices < 1:
            raise ValueError("Concurrency and device limits must be positive")

        return True

    def get_cache_path(self) -> str:
        """Get the absolute path of the result cache database."""
        return os.path.join(os.getcwd(), self.cache_db_path)


# Global configuration instance
config = Config()
