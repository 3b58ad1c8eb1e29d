from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageTuningBounds(BaseModel):
    """Ranges each replica's storage tuning is drawn from (``[min, max)``)."""

    segment_size_min: int = Field(
        8 * 1024, gt=0, description="Smallest max-segment-size in bytes."
    )
    segment_size_max: int = Field(
        24 * 1024, gt=0, description="Upper bound for max-segment-size in bytes."
    )
    entries_per_segment_min: int = Field(100, gt=0)
    entries_per_segment_max: int = Field(1100, gt=0)
    compaction_threads_min: int = Field(1, gt=0)
    compaction_threads_max: int = Field(5, gt=0)
    entry_buffer_size_min: int = Field(1, gt=0)
    entry_buffer_size_max: int = Field(101, gt=0)
    minor_compaction_interval_min: float = Field(
        15.0, gt=0, description="Seconds between minor compactions (lower bound)."
    )
    minor_compaction_interval_max: float = Field(45.0, gt=0)
    major_compaction_interval_min: float = Field(
        60.0, gt=0, description="Seconds between major compactions (lower bound)."
    )
    major_compaction_interval_max: float = Field(120.0, gt=0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "StorageTuningBounds":
        for name in (
            "segment_size",
            "entries_per_segment",
            "compaction_threads",
            "entry_buffer_size",
            "minor_compaction_interval",
            "major_compaction_interval",
        ):
            low = getattr(self, f"{name}_min")
            high = getattr(self, f"{name}_max")
            if high <= low:
                raise ValueError(f"{name}_max must be greater than {name}_min")
        return self


class FuzzSettings(BaseSettings):
    """Fuzz harness configuration settings.

    Defaults reproduce the fixed constants of a full soak run; every value
    can be overridden through ``CHAOSKV_*`` environment variables (nested
    storage bounds use ``CHAOSKV_STORAGE_BOUNDS__<FIELD>``) or a ``.env``
    file.
    """

    model_config = SettingsConfigDict(
        env_prefix="CHAOSKV_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    iterations: int = Field(1000, ge=1, description="Fuzz iterations to run.")
    observation_window: float = Field(
        15 * 60.0,
        gt=0,
        description="Seconds each iteration runs its workload and faults.",
    )
    seed: int | None = Field(
        None, description="Seed for the harness random source (None = random)."
    )

    host: str = Field("localhost", description="Host name used in member addresses.")
    port_base: int = Field(
        5000, gt=0, lt=65535, description="Member ports are allocated above this."
    )
    client_port_offset: int = Field(
        1000, gt=0, description="Client port = server port + this offset."
    )
    storage_root: Path = Field(
        Path("target/fuzz-logs"),
        description="Directory holding one storage subtree per replica.",
    )

    replica_count_min: int = Field(3, ge=1)
    replica_count_max: int = Field(6, ge=1)
    client_count_min: int = Field(1, ge=1)
    client_count_max: int = Field(5, ge=1)

    bootstrap_timeout_per_replica: float = Field(
        30.0, gt=0, description="Bootstrap wait is this times the replica count."
    )
    connect_timeout: float = Field(
        30.0, gt=0, description="Bounded wait for each initial client connect."
    )
    shutdown_timeout: float = Field(
        10.0, gt=0, description="Per-replica and per-client wait during reset."
    )

    workload_period: float = Field(
        0.1, gt=0, description="Seconds between submissions of each client."
    )
    key_pool_size: int = Field(1024, ge=1, description="Distinct keys in the pool.")
    submit_timeout: float = Field(
        30.0, gt=0, description="Seconds before a submission counts as timed out."
    )

    fault_delay_min: float = Field(
        10.0, ge=0, description="Lower bound of shutdown/restart timer delays."
    )
    fault_delay_max: float = Field(
        130.0, gt=0, description="Upper bound of shutdown/restart timer delays."
    )

    connection_backoff_base: float = Field(
        0.05, gt=0, description="First Fibonacci backoff step in seconds."
    )
    connection_backoff_max: float = Field(
        5.0, gt=0, description="Cap on a single backoff step in seconds."
    )

    storage_bounds: StorageTuningBounds = Field(default_factory=StorageTuningBounds)

    log_level: str = Field("INFO", description="Minimum loguru level.")
    log_debug_scopes: tuple[str, ...] = Field(
        (), description="Module prefixes logged at DEBUG regardless of level."
    )
    log_file: Path | None = Field(
        None, description="Optional rotating log file alongside stderr."
    )

    @model_validator(mode="after")
    def _check_ranges(self) -> "FuzzSettings":
        if self.replica_count_max < self.replica_count_min:
            raise ValueError("replica_count_max must be >= replica_count_min")
        if self.client_count_max < self.client_count_min:
            raise ValueError("client_count_max must be >= client_count_min")
        if self.fault_delay_max <= self.fault_delay_min:
            raise ValueError("fault_delay_max must be greater than fault_delay_min")
        if self.replica_count_max >= self.client_port_offset:
            raise ValueError("client_port_offset must exceed replica_count_max")
        return self
