"""
vmfleet/models/state.py

Persisted and reported state:
 - FleetState: node records + bootstrap phase, stored between invocations
 - AuditEntry: one line of the append-only audit trail
 - ActionOutcome / ApplyReport: result of applying a ReconciliationPlan
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from vmfleet.models.cluster import BootstrapPhase, BootstrapReport
from vmfleet.models.fleet import NodeRecord, NodeRole, NodeStatus, PlanAction


class FleetState(BaseModel):
    records: List[NodeRecord] = Field(default_factory=list)
    bootstrap_phase: BootstrapPhase = BootstrapPhase.UNBOOTSTRAPPED
    last_bootstrap: Optional[BootstrapReport] = None
    updated_at: float = Field(default_factory=time.time)

    def record_for(self, role: NodeRole, index: int) -> Optional[NodeRecord]:
        return next((r for r in self.records if r.key == (role, index)), None)


class AuditEntry(BaseModel):
    """
    One audit trail line. `resources` holds the identifiers touched by the
    action (vm, volumes, mac, ip) so fleet history can be reconstructed.
    """

    timestamp: float = Field(default_factory=time.time)
    action: str
    node_id: Optional[str] = None
    outcome: str
    resources: Dict[str, Any] = Field(default_factory=dict)
    detail: Optional[str] = None


class ActionOutcome(BaseModel):
    action: PlanAction
    record: Optional[NodeRecord] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ApplyReport(BaseModel):
    """Summary of plan execution followed by readiness probing."""

    outcomes: List[ActionOutcome] = Field(default_factory=list)
    ready: List[str] = Field(default_factory=list)
    not_ready: Dict[str, str] = Field(default_factory=dict)

    @property
    def provision_failures(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.provision_failures and not self.not_ready


class FleetReadiness(BaseModel):
    """Terminal state of every probed node after a fleet readiness call."""

    records: List[NodeRecord] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)

    def ready(self) -> List[NodeRecord]:
        return [r for r in self.records if r.status == NodeStatus.READY]
