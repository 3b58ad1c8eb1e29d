"""
Replica identities and the fixed member registry of one experiment run.

A replica's identity must survive a shutdown/restart cycle unchanged so the
cluster treats the restarted process as the same member rejoining. Both the
member id and the storage key are therefore derived from the server address
with a process-independent hash (Python's builtin ``hash`` of a ``str`` is
salted per process and would change across runs).
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from .type_aliases import HostAddress, MemberId, PortNumber, StorageKey

DEFAULT_HOST: HostAddress = "localhost"
DEFAULT_PORT_BASE: PortNumber = 5000
DEFAULT_CLIENT_PORT_OFFSET: int = 1000


class MemberRole(Enum):
    """Participation level of a replica in the cluster."""

    VOTING = "voting"  # Counts toward quorum
    NON_VOTING = "non_voting"  # Receives replicated state but never votes


@dataclass(frozen=True, slots=True)
class Address:
    """Host/port pair used by both the peer and the client-facing endpoint."""

    host: HostAddress
    port: PortNumber

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("Address host cannot be empty")
        if not 0 < self.port < 65536:
            raise ValueError(f"Port out of range: {self.port}")

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    def stable_hash(self) -> int:
        """31-bit hash that is identical in every process."""
        digest = hashlib.sha256(str(self).encode()).digest()
        return int.from_bytes(digest[:4], "big") & 0x7FFFFFFF


@dataclass(frozen=True, slots=True)
class ReplicaIdentity:
    """
    Immutable identity of one cluster member.

    ``server_address`` is the peer-facing endpoint and also the member's
    canonical address; ``client_address`` is where client sessions connect.
    """

    server_address: Address
    client_address: Address
    role: MemberRole = MemberRole.VOTING
    member_id: MemberId = field(init=False)

    def __post_init__(self) -> None:
        if self.server_address == self.client_address:
            raise ValueError("Server and client addresses must differ")
        object.__setattr__(self, "member_id", self.server_address.stable_hash())

    @property
    def address(self) -> Address:
        return self.server_address

    @property
    def storage_key(self) -> StorageKey:
        """Key naming this member's storage directory."""
        return self.member_id

    @property
    def is_voting(self) -> bool:
        return self.role is MemberRole.VOTING

    def __str__(self) -> str:
        return f"{self.server_address} ({self.role.value})"


class MemberRegistry:
    """
    Ordered, append-only set of replica identities for one experiment run.

    Addresses are handed out sequentially from ``port_base``: the n-th
    member gets server port ``port_base + n`` and client port
    ``port_base + n + client_port_offset``.
    """

    def __init__(
        self,
        *,
        host: HostAddress = DEFAULT_HOST,
        port_base: PortNumber = DEFAULT_PORT_BASE,
        client_port_offset: int = DEFAULT_CLIENT_PORT_OFFSET,
    ) -> None:
        if client_port_offset <= 0:
            raise ValueError("Client port offset must be positive")
        self.host = host
        self.port_base = port_base
        self.client_port_offset = client_port_offset
        self._port = port_base
        self._members: list[ReplicaIdentity] = []

    def next_member(self, role: MemberRole = MemberRole.VOTING) -> ReplicaIdentity:
        """Allocate and register the next identity."""
        self._port += 1
        if self._port - self.port_base >= self.client_port_offset:
            raise ValueError(
                "Server ports would collide with client ports; "
                "increase client_port_offset"
            )
        identity = ReplicaIdentity(
            server_address=Address(self.host, self._port),
            client_address=Address(self.host, self._port + self.client_port_offset),
            role=role,
        )
        self._members.append(identity)
        return identity

    @property
    def members(self) -> tuple[ReplicaIdentity, ...]:
        return tuple(self._members)

    def server_addresses(self) -> list[Address]:
        return [member.server_address for member in self._members]

    def client_addresses(self) -> list[Address]:
        return [member.client_address for member in self._members]

    def voting_members(self) -> list[ReplicaIdentity]:
        return [member for member in self._members if member.is_voting]

    def quorum_size(self) -> int:
        """Smallest majority of voting members."""
        return len(self.voting_members()) // 2 + 1

    def find(self, address: Address) -> ReplicaIdentity | None:
        for member in self._members:
            if address in (member.server_address, member.client_address):
                return member
        return None

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[ReplicaIdentity]:
        return iter(self._members)

    def __getitem__(self, index: int) -> ReplicaIdentity:
        return self._members[index]
