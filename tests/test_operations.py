"""Tests for the operation catalog and its record codec."""

import dataclasses

import pytest

from chaoskv.datastructures.operations import (
    CompactionMode,
    ConsistencyLevel,
    Get,
    Put,
    Remove,
    operation_from_record,
    to_record,
)


class TestOperationCatalog:
    def test_compaction_hints(self):
        assert Put("k", "v").compaction is CompactionMode.QUORUM
        assert Remove("k").compaction is CompactionMode.TOMBSTONE

    def test_command_query_classification(self):
        assert Put("k", "v").is_command
        assert Remove("k").is_command
        assert not Get("k").is_command

    def test_get_defaults_to_linearizable(self):
        assert Get("k").consistency is ConsistencyLevel.LINEARIZABLE

    def test_only_sequential_reads_skip_quorum(self):
        assert not ConsistencyLevel.SEQUENTIAL.requires_quorum
        assert ConsistencyLevel.LINEARIZABLE_LEASE.requires_quorum
        assert ConsistencyLevel.LINEARIZABLE.requires_quorum

    def test_operations_are_frozen(self):
        put = Put("k", "v")
        with pytest.raises(dataclasses.FrozenInstanceError):
            put.value = "other"  # type: ignore[misc]

    def test_request_ids_are_unique(self):
        ids = {Put("k", "v").request_id for _ in range(100)}
        assert len(ids) == 100


class TestRecords:
    @pytest.mark.parametrize(
        "operation",
        [
            Put("key-1", "value-1"),
            Remove("key-2"),
            Get("key-3", ConsistencyLevel.SEQUENTIAL),
        ],
    )
    def test_record_round_trip(self, operation):
        assert operation_from_record(to_record(operation)) == operation

    def test_record_shape(self):
        record = to_record(Get("k", ConsistencyLevel.LINEARIZABLE_LEASE))
        assert record["op"] == "get"
        assert record["consistency"] == "linearizable_lease"

    def test_unknown_record_rejected(self):
        with pytest.raises(ValueError):
            operation_from_record({"op": "increment", "key": "k"})

    def test_non_operation_rejected(self):
        with pytest.raises(TypeError):
            to_record("put k v")  # type: ignore[arg-type]
