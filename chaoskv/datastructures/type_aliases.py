"""
Semantic type aliases for chaoskv datastructures.

These aliases keep signatures self-documenting: a replica index and a port
number are both ints, but they are not interchangeable.
"""

# Time types
type Timestamp = float
type DurationSeconds = float

# Identity types
type MemberId = int
type StorageKey = int
type SessionId = str
type RequestId = str

# Network types
type HostAddress = str
type PortNumber = int

# Cluster types
type ReplicaIndex = int
type LogIndex = int

# Key/value payloads
type MapKey = str
type MapValue = str
