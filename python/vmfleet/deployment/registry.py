"""
vmfleet/deployment/registry.py

NodeRegistry: the single owner of the fleet's NodeRecords during a run.
Every change is written through to StateStorage immediately, so an
interrupted or cancelled run leaves the stored state matching what was
actually done.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Tuple

from vmfleet.models.cluster import BootstrapPhase, BootstrapReport
from vmfleet.models.fleet import ROLE_ORDER, NodeRecord, NodeRole, NodeStatus
from vmfleet.models.state import FleetState
from vmfleet.utils.state_storage import StateStorage

NodeKey = Tuple[NodeRole, int]


class NodeRegistry:
    def __init__(self, storage: StateStorage, state: Optional[FleetState] = None) -> None:
        self.storage = storage
        state = state or FleetState()
        self._records: Dict[NodeKey, NodeRecord] = {r.key: r for r in state.records}
        self.bootstrap_phase = state.bootstrap_phase
        self.last_bootstrap = state.last_bootstrap
        self._lock = asyncio.Lock()

    @classmethod
    async def load(cls, storage: StateStorage) -> NodeRegistry:
        return cls(storage, await storage.read_state())

    def snapshot(self) -> FleetState:
        return FleetState(
            records=self.records(),
            bootstrap_phase=self.bootstrap_phase,
            last_bootstrap=self.last_bootstrap,
            updated_at=time.time(),
        )

    def records(self, role: Optional[NodeRole] = None) -> List[NodeRecord]:
        order = {r: i for i, r in enumerate(ROLE_ORDER)}
        return sorted(
            (r for r in self._records.values() if role is None or r.role == role),
            key=lambda r: (order[r.role], r.index),
        )

    def get(self, key: NodeKey) -> Optional[NodeRecord]:
        return self._records.get(key)

    def by_id(self, node_id: str) -> Optional[NodeRecord]:
        return next((r for r in self._records.values() if r.node_id == node_id), None)

    def with_status(self, *statuses: NodeStatus) -> List[NodeRecord]:
        return [r for r in self.records() if r.status in statuses]

    async def _persist(self) -> None:
        await self.storage.write_state(self.snapshot())

    async def put(self, record: NodeRecord) -> NodeRecord:
        async with self._lock:
            self._records[record.key] = record
            await self._persist()
        return record

    async def remove(self, key: NodeKey) -> Optional[NodeRecord]:
        async with self._lock:
            removed = self._records.pop(key, None)
            await self._persist()
        return removed

    async def set_bootstrap(
        self, phase: BootstrapPhase, report: Optional[BootstrapReport] = None
    ) -> None:
        async with self._lock:
            self.bootstrap_phase = phase
            if report is not None:
                self.last_bootstrap = report
            await self._persist()

    async def reset_bootstrap(self) -> None:
        async with self._lock:
            self.bootstrap_phase = BootstrapPhase.UNBOOTSTRAPPED
            self.last_bootstrap = None
            await self._persist()

    async def save(self) -> None:
        async with self._lock:
            await self._persist()
