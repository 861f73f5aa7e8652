"""
vmfleet/backends/base.py

Capability interfaces for the external collaborators the core talks to:
  - HypervisorBackend: VM, volume and DHCP lease operations.
  - RemoteSessionProvider: administrative sessions (connect / exec).
  - ClusterAPI: the formed cluster's management API.

The planner, executor, prober and bootstrap coordinator depend only on these
classes, so they can be driven by in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field

from vmfleet.models.cluster import ClusterNodeStatus
from vmfleet.models.ssh import RemoteResult, SSHConfig


class VMDefinition(BaseModel):
    """Everything needed to instantiate one virtual machine."""

    name: str
    cpus: int
    memory_mib: int
    pool: str
    root_volume: str
    seed_volume: str
    network: str
    mac: str


class VMInfo(BaseModel):
    name: str
    running: bool
    macs: List[str] = Field(default_factory=list)


class DhcpLease(BaseModel):
    mac: str
    ip: str
    hostname: Optional[str] = None


class HypervisorBackend(ABC):
    """
    Imperative virtualization API. Create operations must be idempotent by
    name (an existing resource is returned, not an error); destroy/delete
    operations return False when the resource is already absent.
    """

    @abstractmethod
    async def create_vm(self, definition: VMDefinition) -> str:
        """Define and start a VM; returns its identifier."""

    @abstractmethod
    async def destroy_vm(self, name: str) -> bool:
        """Power off (if running) and remove a VM definition."""

    @abstractmethod
    async def list_vms(self) -> List[VMInfo]:
        """All VMs known to the hypervisor."""

    @abstractmethod
    async def create_volume(
        self,
        pool: str,
        name: str,
        capacity_bytes: int,
        content: Optional[bytes] = None,
    ) -> str:
        """Create a raw volume, optionally filled with `content`; returns its id."""

    @abstractmethod
    async def clone_volume(
        self, pool: str, source: str, name: str, capacity_bytes: int
    ) -> str:
        """Create `name` from the base image volume `source`; returns its id."""

    @abstractmethod
    async def delete_volume(self, pool: str, name: str) -> bool:
        """Delete a volume."""

    @abstractmethod
    async def list_leases(self, network: str) -> List[DhcpLease]:
        """Current DHCP leases on the shared network."""

    async def release_lease(self, network: str, mac: str) -> None:
        """Forget any address reservation for `mac`. Default: nothing to do."""
        return None


class RemoteSession(BaseModel):
    """An established administrative session (host keys pinned)."""

    config: SSHConfig


class RemoteSessionProvider(ABC):
    @abstractmethod
    async def connect(
        self, host: str, user: str, private_key: str, timeout: float
    ) -> RemoteSession:
        """
        Establish a session. Raises SSHConnectionError for transient failures
        and SSHAuthenticationError when the key is rejected.
        """

    @abstractmethod
    async def exec(
        self,
        session: RemoteSession,
        command: List[str],
        *,
        timeout: Optional[float] = None,
        input_data: Optional[bytes] = None,
    ) -> RemoteResult:
        """Run `command` remotely and return (exit_code, stdout, stderr)."""


class ClusterAPI(ABC):
    @abstractmethod
    async def get_node_status(self) -> List[ClusterNodeStatus]:
        """(name, ready) for every node registered with the cluster."""

    @abstractmethod
    async def apply_manifest(self, doc: str) -> None:
        """Apply a (multi-document) YAML manifest."""
