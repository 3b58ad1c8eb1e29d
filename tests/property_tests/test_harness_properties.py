"""
Property-based tests for harness invariants.

- Member allocation never hands out a port twice, and server ports never
  collide with client ports.
- Random storage tuning always lands inside the configured bounds and keeps
  the per-identity storage directory.
- A fault round arms between zero and N-2 distinct replicas.
- The segmented log returns exactly what was appended after a reopen,
  whatever the segment and buffer sizes.
"""

import asyncio
import random
import tempfile
from pathlib import Path

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from chaoskv.core.config import FuzzSettings
from chaoskv.core.scheduling import SchedulingContext
from chaoskv.datastructures.members import MemberRegistry, MemberRole
from chaoskv.datastructures.operations import Put, Remove
from chaoskv.harness.faults import FaultInjectionScheduler, ReplicaFaultState
from chaoskv.harness.lifecycle import ClusterLifecycleManager
from chaoskv.service.protocols import StorageConfig
from chaoskv.service.storage import LogEntry, SegmentedLog
from tests.test_helpers import StubBackend

SETTINGS = FuzzSettings(storage_root=Path("unused"))


class TestMemberProperties:
    @given(
        count=st.integers(min_value=1, max_value=50),
        port_base=st.integers(min_value=1000, max_value=60000),
        offset=st.integers(min_value=51, max_value=2000),
    )
    def test_addresses_never_collide(self, count, port_base, offset):
        members = MemberRegistry(port_base=port_base, client_port_offset=offset)
        for _ in range(count):
            members.next_member()

        servers = members.server_addresses()
        clients = members.client_addresses()
        assert len(set(servers)) == count
        assert len(set(clients)) == count
        assert not set(servers) & set(clients)
        for member in members:
            assert member.storage_key == member.address.stable_hash()

    @given(st.lists(st.sampled_from(list(MemberRole)), min_size=1, max_size=20))
    def test_quorum_is_majority_of_voting(self, roles):
        members = MemberRegistry()
        for role in roles:
            members.next_member(role)

        voting = sum(1 for role in roles if role is MemberRole.VOTING)
        quorum = members.quorum_size()
        assert quorum == voting // 2 + 1
        assert 2 * quorum > voting


class TestStorageTuningProperties:
    @given(st.integers(min_value=0, max_value=2**32))
    def test_tuning_within_bounds(self, seed):
        members = MemberRegistry()
        identity = members.next_member()
        lifecycle = ClusterLifecycleManager(
            StubBackend(), members, SETTINGS, random.Random(seed)
        )
        bounds = SETTINGS.storage_bounds

        config = lifecycle.random_storage(identity)

        assert config.directory == SETTINGS.storage_root / str(identity.storage_key)
        assert bounds.segment_size_min <= config.max_segment_size
        assert config.max_segment_size < bounds.segment_size_max
        assert bounds.entries_per_segment_min <= config.max_entries_per_segment
        assert config.max_entries_per_segment < bounds.entries_per_segment_max
        assert bounds.compaction_threads_min <= config.compaction_threads
        assert config.compaction_threads < bounds.compaction_threads_max
        assert 0.0 <= config.compaction_threshold < 1.0
        assert bounds.entry_buffer_size_min <= config.entry_buffer_size
        assert config.entry_buffer_size < bounds.entry_buffer_size_max
        assert (
            bounds.minor_compaction_interval_min
            <= config.minor_compaction_interval
            <= bounds.minor_compaction_interval_max
        )


class TestFaultRoundProperties:
    @given(
        replica_count=st.integers(min_value=1, max_value=12),
        seed=st.integers(min_value=0, max_value=2**32),
    )
    @settings(max_examples=60, deadline=None)
    def test_round_size_bounds(self, replica_count, seed):
        async def scenario():
            lifecycle = ClusterLifecycleManager(
                StubBackend(), MemberRegistry(), SETTINGS, random.Random(seed)
            )
            await lifecycle.build_replicas(replica_count)
            context = SchedulingContext("chaos")
            scheduler = FaultInjectionScheduler(
                lifecycle, context, random.Random(seed), delay_min=60, delay_max=61
            )
            armed = scheduler.schedule_round()
            states = list(scheduler.states)
            scheduler.cancel_all()
            await context.close()
            return armed, states

        armed, states = asyncio.run(scenario())

        assert len(armed) == len(set(armed))
        assert len(armed) <= max(replica_count - 2, 0)
        pending = [
            index
            for index, state in enumerate(states)
            if state is ReplicaFaultState.SHUTDOWN_PENDING
        ]
        assert sorted(armed) == pending


class TestSegmentedLogProperties:
    @given(
        commands=st.lists(
            st.one_of(
                st.builds(Put, st.sampled_from("abcd"), st.text(max_size=16)),
                st.builds(Remove, st.sampled_from("abcd")),
            ),
            max_size=40,
        ),
        entries_per_segment=st.integers(min_value=1, max_value=10),
        buffer_size=st.integers(min_value=1, max_value=10),
        gaps=st.lists(st.integers(min_value=1, max_value=3), min_size=40, max_size=40),
    )
    @settings(
        max_examples=50,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow],
    )
    def test_reopen_returns_appended_entries(
        self, commands, entries_per_segment, buffer_size, gaps
    ):
        async def scenario(directory: Path):
            config = StorageConfig(
                directory=directory,
                max_entries_per_segment=entries_per_segment,
                entry_buffer_size=buffer_size,
            )
            index = 0
            appended = []
            log = SegmentedLog(config)
            log.open()
            for command, gap in zip(commands, gaps):
                index += gap
                entry = LogEntry(index, command)
                log.append(entry)
                appended.append(entry)
            await log.close()

            reopened = SegmentedLog(config)
            reopened.open()
            recovered = list(reopened.entries())
            last_index = reopened.last_index
            await reopened.close()
            return appended, recovered, last_index

        with tempfile.TemporaryDirectory() as root:
            appended, recovered, last_index = asyncio.run(
                scenario(Path(root) / "log")
            )

        assert recovered == appended
        assert last_index == (appended[-1].index if appended else 0)
