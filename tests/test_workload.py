"""Tests for the key pool, workload generator and outcome classification."""

import asyncio
import random
from collections import Counter

import pytest

from chaoskv.core.errors import NoQuorumError
from chaoskv.datastructures.operations import Get, Put, Remove
from chaoskv.harness.workload import (
    KeyPool,
    OperationKind,
    OutcomeCounter,
    SubmissionOutcome,
    WorkloadGenerator,
    classify_outcome,
)


class TestKeyPool:
    def test_generate_distinct_keys(self):
        pool = KeyPool.generate(1024, random.Random(1))

        assert len(pool) == 1024
        assert len(set(pool.keys)) == 1024

    def test_seeded_generation_is_reproducible(self):
        assert KeyPool.generate(8, random.Random(3)) == KeyPool.generate(
            8, random.Random(3)
        )

    def test_pool_is_immutable(self):
        pool = KeyPool.generate(4, random.Random(1))
        assert isinstance(pool.keys, tuple)

    def test_invalid_sizes(self):
        with pytest.raises(ValueError):
            KeyPool.generate(0)
        with pytest.raises(ValueError):
            KeyPool(())


class TestWorkloadGenerator:
    def test_operations_use_pool_keys(self):
        pool = KeyPool.generate(16, random.Random(1))
        generator = WorkloadGenerator(pool, random.Random(2))

        for _ in range(200):
            assert generator.next_operation().key in pool

    def test_operation_kinds_are_roughly_uniform(self):
        pool = KeyPool.generate(16, random.Random(1))
        generator = WorkloadGenerator(pool, random.Random(2))
        kinds = Counter(
            type(generator.next_operation()).__name__ for _ in range(3000)
        )

        assert set(kinds) == {"Put", "Get", "Remove"}
        for count in kinds.values():
            assert 800 < count < 1200
        assert sum(generator.generated.values()) == 3000

    def test_reads_use_configured_levels(self):
        from chaoskv.datastructures.operations import ConsistencyLevel

        pool = KeyPool.generate(4, random.Random(1))
        generator = WorkloadGenerator(
            pool,
            random.Random(2),
            consistency_levels=[ConsistencyLevel.SEQUENTIAL],
        )
        operations = [generator.next_operation() for _ in range(100)]
        reads = [op for op in operations if isinstance(op, Get)]

        assert reads
        assert {read.consistency for read in reads} == {ConsistencyLevel.SEQUENTIAL}

    def test_kind_maps_to_operation(self):
        pool = KeyPool.generate(4, random.Random(1))
        generator = WorkloadGenerator(pool, random.Random(2))
        expected = {
            OperationKind.WRITE: Put,
            OperationKind.READ: Get,
            OperationKind.DELETE: Remove,
        }
        for kind, operation_type in expected.items():
            generator.next_kind = lambda kind=kind: kind
            assert isinstance(generator.next_operation(), operation_type)


class TestClassifyOutcome:
    @pytest.mark.asyncio
    async def test_classification(self):
        loop = asyncio.get_running_loop()

        def finished(result=None, exc=None, cancel=False):
            future = loop.create_future()
            if cancel:
                future.cancel()
            elif exc is not None:
                future.set_exception(exc)
            else:
                future.set_result(result)
            return future

        assert classify_outcome(finished("v"))[0] is SubmissionOutcome.SUCCESS
        assert (
            classify_outcome(finished(cancel=True))[0] is SubmissionOutcome.CANCELLED
        )
        assert (
            classify_outcome(finished(exc=TimeoutError()))[0]
            is SubmissionOutcome.TIMEOUT
        )
        assert (
            classify_outcome(finished(exc=NoQuorumError("down")))[0]
            is SubmissionOutcome.REJECTED
        )
        outcome, error = classify_outcome(finished(exc=KeyError("k")))
        assert outcome is SubmissionOutcome.FAILED
        assert isinstance(error, KeyError)

    def test_counter_tallies(self):
        counter = OutcomeCounter()
        counter(Put("k", "v"), SubmissionOutcome.SUCCESS, None)
        counter(Put("k", "v"), SubmissionOutcome.SUCCESS, None)
        counter(Get("k"), SubmissionOutcome.FAILED, RuntimeError("x"))

        assert counter.total == 3
        assert counter.as_dict()["success"] == 2
        assert counter.as_dict()["failed"] == 1
        assert counter.as_dict()["timeout"] == 0
