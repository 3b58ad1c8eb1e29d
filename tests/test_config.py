"""Tests for harness settings, validation and environment overrides."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from chaoskv.core.config import FuzzSettings, StorageTuningBounds


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    # Keep a developer's .env or CHAOSKV_* exports out of these tests
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("CHAOSKV_"):
            monkeypatch.delenv(name)


class TestDefaults:
    def test_soak_run_defaults(self):
        settings = FuzzSettings()

        assert settings.iterations == 1000
        assert settings.observation_window == 900.0
        assert settings.port_base == 5000
        assert settings.client_port_offset == 1000
        assert settings.storage_root == Path("target/fuzz-logs")
        assert (settings.replica_count_min, settings.replica_count_max) == (3, 6)
        assert (settings.client_count_min, settings.client_count_max) == (1, 5)
        assert (settings.fault_delay_min, settings.fault_delay_max) == (10.0, 130.0)
        assert settings.key_pool_size == 1024
        assert settings.seed is None

    def test_storage_bound_defaults(self):
        bounds = StorageTuningBounds()

        assert bounds.entries_per_segment_min == 100
        assert bounds.entries_per_segment_max == 1100
        assert bounds.compaction_threads_max == 5
        assert bounds.minor_compaction_interval_min == 15.0
        assert bounds.major_compaction_interval_max == 120.0


class TestValidation:
    def test_replica_range_must_be_ordered(self):
        with pytest.raises(ValidationError, match="replica_count_max"):
            FuzzSettings(replica_count_min=5, replica_count_max=3)

    def test_client_range_must_be_ordered(self):
        with pytest.raises(ValidationError, match="client_count_max"):
            FuzzSettings(client_count_min=4, client_count_max=2)

    def test_fault_delays_must_be_ordered(self):
        with pytest.raises(ValidationError, match="fault_delay_max"):
            FuzzSettings(fault_delay_min=10.0, fault_delay_max=10.0)

    def test_client_ports_cannot_overlap_server_ports(self):
        with pytest.raises(ValidationError, match="client_port_offset"):
            FuzzSettings(client_port_offset=6)

    def test_field_bounds(self):
        with pytest.raises(ValidationError):
            FuzzSettings(iterations=0)
        with pytest.raises(ValidationError):
            FuzzSettings(observation_window=0)
        with pytest.raises(ValidationError):
            FuzzSettings(port_base=70000)

    def test_storage_bounds_must_be_ordered(self):
        with pytest.raises(ValidationError, match="compaction_threads_max"):
            StorageTuningBounds(compaction_threads_min=3, compaction_threads_max=3)

    def test_equal_replica_bounds_allowed(self):
        settings = FuzzSettings(replica_count_min=4, replica_count_max=4)
        assert settings.replica_count_min == settings.replica_count_max == 4


class TestEnvironment:
    def test_env_prefix_overrides(self, monkeypatch):
        monkeypatch.setenv("CHAOSKV_ITERATIONS", "7")
        monkeypatch.setenv("CHAOSKV_OBSERVATION_WINDOW", "2.5")
        monkeypatch.setenv("CHAOSKV_SEED", "99")

        settings = FuzzSettings()

        assert settings.iterations == 7
        assert settings.observation_window == 2.5
        assert settings.seed == 99

    def test_nested_storage_bounds(self, monkeypatch):
        monkeypatch.setenv("CHAOSKV_STORAGE_BOUNDS__COMPACTION_THREADS_MAX", "9")

        settings = FuzzSettings()

        assert settings.storage_bounds.compaction_threads_max == 9
        assert settings.storage_bounds.compaction_threads_min == 1

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("CHAOSKV_KEY_POOL_SIZE=32\n")

        assert FuzzSettings().key_pool_size == 32

    def test_init_arguments_win_over_env(self, monkeypatch):
        monkeypatch.setenv("CHAOSKV_ITERATIONS", "7")

        assert FuzzSettings(iterations=3).iterations == 3
