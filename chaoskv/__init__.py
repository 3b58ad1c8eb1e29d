"""
chaoskv - Chaos fuzzing harness for a replicated key/value service

Builds a randomly sized cluster of replicas, drives concurrent random
put/get/remove workload from several clients over a shared key pool, and
gracefully shuts down and restarts random subsets of replicas on random
timers. Any uncaught error in the harness's callbacks fails the run.

## Architecture

- **datastructures**: member identities, operations and the test state machine
- **service**: the service contract and an in-process backend with durable
  segmented logs
- **harness**: workload, client pool, replica lifecycle, fault injection and
  the experiment driver
- **core**: configuration, logging, scheduling contexts and errors

## Quick Start

```python
import asyncio

from chaoskv import ExperimentDriver, FuzzSettings

settings = FuzzSettings(iterations=3, observation_window=30)
report = asyncio.run(ExperimentDriver(settings).run())
```
"""

from .core.config import FuzzSettings, StorageTuningBounds
from .core.errors import ChaosKVError, IterationFailedError
from .datastructures.members import Address, MemberRegistry, ReplicaIdentity
from .datastructures.operations import ConsistencyLevel, Get, Put, Remove
from .datastructures.state_machine import FuzzStateMachine
from .harness.driver import ExperimentDriver, ExperimentReport

__version__ = "0.1.0"

__all__ = [
    "Address",
    "ChaosKVError",
    "ConsistencyLevel",
    "ExperimentDriver",
    "ExperimentReport",
    "FuzzSettings",
    "FuzzStateMachine",
    "Get",
    "IterationFailedError",
    "MemberRegistry",
    "Put",
    "Remove",
    "ReplicaIdentity",
    "StorageTuningBounds",
]
