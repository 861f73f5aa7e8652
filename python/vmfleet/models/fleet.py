"""
vmfleet/models/fleet.py

Pydantic models for desired and actual fleet state:
 - NodeRole, NodeStatus
 - RoleSpec, FleetSpec (desired state, immutable per run)
 - NodeRecord (actual state of one instantiated node)
 - CreateNode, DestroyNode, PlanAction, ReconciliationPlan
"""

from __future__ import annotations

import hashlib
import re
import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Annotated

_PREFIX_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


class NodeRole(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


# Planner/teardown ordering: control plane first on the way up.
ROLE_ORDER: Tuple[NodeRole, ...] = (NodeRole.CONTROL_PLANE, NodeRole.WORKER)


class NodeStatus(str, Enum):
    """Provisioning status: Pending -> Created -> Booting -> Ready, or Failed."""

    PENDING = "Pending"
    CREATED = "Created"
    BOOTING = "Booting"
    READY = "Ready"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (NodeStatus.READY, NodeStatus.FAILED)


class RoleSpec(BaseModel):
    """Uniform sizing and identity settings for every node of one role.

    Attributes:
        count: Number of nodes of this role.
        hostname_prefix: Combined with a two-digit index to form hostnames.
        cpus: vCPU count.
        memory_mib: Memory size in MiB.
        disk_gib: Root disk size in GiB.
        disk_pool: Storage pool holding the base image and node volumes.
        base_image: Name of the base OS image volume inside the pool.
        ssh_user: Administrative user created by the seed configuration.
        ssh_public_key: Public key authorized for ssh_user.
        ssh_private_key_path: Local path of the matching private key.
        timezone: Timezone written by the seed configuration.
    """

    model_config = ConfigDict(frozen=True)

    count: int = Field(ge=0)
    hostname_prefix: str
    cpus: int = Field(gt=0)
    memory_mib: int = Field(gt=0)
    disk_gib: int = Field(gt=0)
    disk_pool: str = "default"
    base_image: str
    ssh_user: str = "ubuntu"
    ssh_public_key: str
    ssh_private_key_path: str
    timezone: str = "UTC"

    @field_validator("hostname_prefix")
    @classmethod
    def validate_prefix(cls, value: str) -> str:
        if not _PREFIX_RE.match(value) or len(value) > 60:
            raise ValueError(
                f"hostname_prefix '{value}' must be lowercase letters, digits or '-'"
                " and may not start with '-'."
            )
        return value

    @field_validator("ssh_public_key")
    @classmethod
    def validate_public_key(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("ssh_public_key must be a non-empty string")
        return value.strip()

    def hostname(self, index: int) -> str:
        return f"{self.hostname_prefix}{index:02d}"


class FleetSpec(BaseModel):
    """Desired state for the two node roles sharing one virtual network.

    Control-plane count >= 1 is checked by the planner, not here, so that a
    spec with zero control-plane nodes can be represented and rejected with
    InvalidSpec.
    """

    model_config = ConfigDict(frozen=True)

    cluster_name: str = "k8s"
    network: str = "default"
    control_plane: RoleSpec
    worker: RoleSpec

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, value: str) -> str:
        if not _PREFIX_RE.match(value):
            raise ValueError(f"cluster_name '{value}' is not a valid name fragment.")
        return value

    @model_validator(mode="after")
    def check_unique_hostnames(self) -> FleetSpec:
        names = [
            self.role(role).hostname(index)
            for role in ROLE_ORDER
            for index in range(self.role(role).count)
        ]
        if len(names) != len(set(names)):
            raise ValueError(
                "Hostname prefixes produce duplicate hostnames across roles."
            )
        return self

    def role(self, role: NodeRole) -> RoleSpec:
        return self.control_plane if role == NodeRole.CONTROL_PLANE else self.worker

    def node_key_for_hostname(self, hostname: str) -> Optional[Tuple[NodeRole, int]]:
        """
        Map a hostname back to (role, index) under this spec's naming scheme,
        regardless of the current counts. Longest matching prefix wins.
        """
        candidates = sorted(
            ROLE_ORDER, key=lambda r: len(self.role(r).hostname_prefix), reverse=True
        )
        for role in candidates:
            prefix = self.role(role).hostname_prefix
            suffix = hostname[len(prefix) :]
            if hostname.startswith(prefix) and len(suffix) >= 2 and suffix.isdigit():
                return role, int(suffix)
        return None

    def resource_name(self, role: NodeRole, index: int, kind: str) -> str:
        """Volume/seed names, namespaced by cluster, role and index."""
        return f"{self.cluster_name}-{role.value}-{index:02d}-{kind}"

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_str: str, overrides: Optional[Dict[str, Any]] = None) -> FleetSpec:
        """
        Build a FleetSpec from YAML, applying nested `overrides` on top
        (e.g. {"worker": {"count": 3}}).
        """
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValueError("Fleet file must contain a mapping at the top level.")
        return cls.model_validate(_deep_merge(data, overrides or {}))


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def mac_for_hostname(hostname: str) -> str:
    """Deterministic locally-administered MAC in the QEMU/KVM OUI range."""
    digest = hashlib.sha256(hostname.encode("utf-8")).digest()
    return "52:54:00:" + ":".join(f"{b:02x}" for b in digest[:3])


class NodeRecord(BaseModel):
    """Actual state of one instantiated node.

    Attributes:
        role: Node role.
        index: Index within the role; (role, index) is the record key.
        hostname: Generated hostname, also the VM name.
        ip: Address from the DHCP lease, None until observed.
        mac: NIC MAC address, used to match DHCP leases.
        disk_pool: Pool holding the node's volumes.
        volume_id: Backing root volume.
        seed_volume_id: Seed configuration (cloud-init) disk.
        status: Provisioning status.
        error: Last failure attached to this node, if any.
        created_at / updated_at: Epoch seconds.
    """

    role: NodeRole
    index: int = Field(ge=0)
    hostname: str
    ip: Optional[str] = None
    mac: Optional[str] = None
    disk_pool: Optional[str] = None
    volume_id: Optional[str] = None
    seed_volume_id: Optional[str] = None
    status: NodeStatus = NodeStatus.PENDING
    error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def node_id(self) -> str:
        return self.hostname

    @property
    def key(self) -> Tuple[NodeRole, int]:
        return self.role, self.index

    def transition(self, status: NodeStatus, **changes: Any) -> NodeRecord:
        """Return a copy in `status`, with any other field updates applied."""
        return self.model_copy(
            update={"status": status, "updated_at": time.time(), **changes}
        )


class CreateNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["create"] = "create"
    role: NodeRole
    index: int = Field(ge=0)

    @property
    def key(self) -> Tuple[NodeRole, int]:
        return self.role, self.index

    def describe(self) -> str:
        return f"Create({self.role.value}, {self.index})"


class DestroyNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["destroy"] = "destroy"
    node_id: str
    role: NodeRole
    index: int = Field(ge=0)

    @property
    def key(self) -> Tuple[NodeRole, int]:
        return self.role, self.index

    def describe(self) -> str:
        return f"Destroy({self.node_id})"


PlanAction = Annotated[Union[CreateNode, DestroyNode], Field(discriminator="kind")]


class ReconciliationPlan(BaseModel):
    """Ordered list of actions reconciling actual state with a FleetSpec."""

    actions: List[PlanAction] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def creates(self) -> List[CreateNode]:
        return [a for a in self.actions if isinstance(a, CreateNode)]

    def destroys(self) -> List[DestroyNode]:
        return [a for a in self.actions if isinstance(a, DestroyNode)]

    def describe(self) -> List[str]:
        return [a.describe() for a in self.actions]
