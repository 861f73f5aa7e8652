"""
vmfleet/models/cluster.py

Defines Pydantic models for cluster formation:
 - ClusterJoinToken: credentials captured after control-plane initialization
 - BootstrapPhase: coordinator state machine phases
 - ClusterNodeStatus: one row of the cluster API node listing
 - NodeOutcome / BootstrapReport: the run summary
"""

from __future__ import annotations

import hashlib
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator

from vmfleet.models.fleet import NodeRole


class ClusterJoinToken(BaseModel):
    """
    Join credentials for worker nodes.

    Attributes:
        token: Bootstrap token ("abcdef.0123456789abcdef"); never printed by repr.
        ca_cert_hash: Discovery hash of the cluster CA ("sha256:<hex>").
        advertise_address: Control-plane endpoint ("host:port").
        created_at: Epoch seconds when the token was captured.
        expires_at: Epoch seconds after which the token must be re-fetched.
    """

    token: SecretStr
    ca_cert_hash: str
    advertise_address: str
    created_at: float = Field(default_factory=time.time)
    expires_at: Optional[float] = None

    @field_validator("ca_cert_hash")
    @classmethod
    def validate_hash(cls, val: str) -> str:
        if not val.startswith("sha256:") or len(val) != len("sha256:") + 64:
            raise ValueError("ca_cert_hash must be 'sha256:' followed by 64 hex digits")
        return val

    def expired(self, now: Optional[float] = None, margin: float = 60.0) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) + margin >= self.expires_at

    def fingerprint(self) -> str:
        """Short SHA-256 of the token value, safe for the audit trail."""
        digest = hashlib.sha256(self.token.get_secret_value().encode("utf-8"))
        return digest.hexdigest()[:16]

    def to_storable(self) -> dict:
        data = self.model_dump(mode="json")
        data["token"] = self.token.get_secret_value()
        return data


class BootstrapPhase(str, Enum):
    UNBOOTSTRAPPED = "Unbootstrapped"
    CONTROL_PLANE_READY = "ControlPlaneReady"
    NETWORK_READY = "NetworkReady"
    JOINING = "Joining"
    FORMED = "Formed"


class FormationStatus(str, Enum):
    FORMED = "Formed"
    PARTIALLY_FORMED = "PartiallyFormed"
    FAILED_TO_FORM = "FailedToForm"


class NodeFormation(str, Enum):
    FORMED = "Formed"
    FAILED = "Failed"


class ClusterNodeStatus(BaseModel):
    name: str
    ready: bool


class NodeOutcome(BaseModel):
    hostname: str
    role: NodeRole
    state: NodeFormation
    attempts: int = 0
    error: Optional[str] = None


class BootstrapReport(BaseModel):
    """Rolled-up result of one bootstrap run."""

    status: FormationStatus
    phase: BootstrapPhase
    control_plane: Optional[str] = None
    nodes: List[NodeOutcome] = Field(default_factory=list)
    healthy_nodes: List[str] = Field(default_factory=list)
    token_fingerprint: Optional[str] = None
    error: Optional[str] = None
    finished_at: float = Field(default_factory=time.time)

    def formed(self) -> List[NodeOutcome]:
        return [n for n in self.nodes if n.state == NodeFormation.FORMED]

    def failed(self) -> List[NodeOutcome]:
        return [n for n in self.nodes if n.state == NodeFormation.FAILED]
