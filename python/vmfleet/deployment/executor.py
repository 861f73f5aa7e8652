"""
vmfleet/deployment/executor.py

Carries out planned actions against a HypervisorBackend.

CreateNode:
  1) clone the base image into the node's root volume (copy-on-write),
  2) build and upload the seed configuration disk (ssh key, hostname, timezone),
  3) define and start the VM on the shared network (DHCP, deterministic MAC),
  4) mark the record Created.
The record is written as Pending before the first step and updated after each
one, so an interrupted create can be resumed by applying CreateNode again.

DestroyNode:
  power off and undefine the VM, delete both volumes, release the lease.
Resources that are already absent are logged, not treated as errors.

Actions on the same (role, index) are serialized; independent actions run
concurrently, bounded by `max_parallel`. Every create/destroy is audited.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Tuple, Union

from vmfleet.backends.base import HypervisorBackend, VMDefinition
from vmfleet.deployment.registry import NodeKey, NodeRegistry
from vmfleet.errors import ProvisionError
from vmfleet.models.fleet import (
    ROLE_ORDER,
    CreateNode,
    DestroyNode,
    FleetSpec,
    NodeRecord,
    NodeStatus,
    ReconciliationPlan,
    mac_for_hostname,
)
from vmfleet.models.state import ActionOutcome
from vmfleet.utils.async_command_runner import CommandError
from vmfleet.utils.cloudinit import SeedConfig, build_seed_image
from vmfleet.utils.state_storage import AuditLog

logger = logging.getLogger(__name__)

GIB = 1024**3

SeedBuilder = Callable[[SeedConfig], Awaitable[bytes]]
Action = Union[CreateNode, DestroyNode]


class ProvisioningExecutor:
    def __init__(
        self,
        spec: FleetSpec,
        backend: HypervisorBackend,
        registry: NodeRegistry,
        audit: AuditLog,
        seed_builder: SeedBuilder = build_seed_image,
        max_parallel: int = 4,
    ) -> None:
        self.spec = spec
        self.backend = backend
        self.registry = registry
        self.audit = audit
        self.seed_builder = seed_builder
        self._slots = asyncio.Semaphore(max_parallel)
        self._locks: Dict[NodeKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _volume_names(self, action: Action) -> Tuple[str, str]:
        return (
            self.spec.resource_name(action.role, action.index, "root.qcow2"),
            self.spec.resource_name(action.role, action.index, "seed.iso"),
        )

    async def apply(self, action: Action) -> NodeRecord:
        """
        Apply a single action and return the resulting record (for a destroy,
        the record as it was before removal).

        Raises:
            ProvisionError: if the hypervisor rejects any step.
        """
        async with self._locks[action.key]:
            if isinstance(action, CreateNode):
                return await self._create(action)
            return await self._destroy(action)

    async def apply_plan(self, plan: ReconciliationPlan) -> List[ActionOutcome]:
        """
        Apply every action of `plan`. A failing action is recorded on its
        outcome and does not stop the others. Control-plane creates finish
        before worker creates start, and all creates finish before destroys.
        """
        numbered = list(enumerate(plan.actions))
        phases: List[List[Tuple[int, Action]]] = [
            [(i, a) for i, a in numbered if isinstance(a, CreateNode) and a.role == role]
            for role in ROLE_ORDER
        ] + [[(i, a) for i, a in numbered if isinstance(a, DestroyNode)]]

        outcomes: Dict[int, ActionOutcome] = {}

        async def _run(position: int, action: Action) -> None:
            async with self._slots:
                try:
                    record = await self.apply(action)
                    outcomes[position] = ActionOutcome(action=action, record=record)
                except ProvisionError as exc:
                    outcomes[position] = ActionOutcome(
                        action=action, record=self.registry.get(action.key), error=str(exc)
                    )

        for phase in phases:
            if phase:
                await asyncio.gather(*[_run(i, a) for i, a in phase])

        return [outcomes[i] for i in sorted(outcomes)]

    async def _create(self, action: CreateNode) -> NodeRecord:
        role_spec = self.spec.role(action.role)
        hostname = role_spec.hostname(action.index)
        root_name, seed_name = self._volume_names(action)

        record = self.registry.get(action.key)
        if record is not None and record.status != NodeStatus.PENDING:
            logger.info("Node %s already provisioned (%s).", record.node_id, record.status.value)
            return record

        record = await self.registry.put(
            (record or NodeRecord(role=action.role, index=action.index, hostname=hostname)).model_copy(
                update={
                    "mac": (record.mac if record and record.mac else mac_for_hostname(hostname)),
                    "disk_pool": role_spec.disk_pool,
                    "status": NodeStatus.PENDING,
                }
            )
        )
        assert record.mac is not None
        logger.info("Creating node %s (%s #%d).", hostname, action.role.value, action.index)

        try:
            volume_id = await self.backend.clone_volume(
                role_spec.disk_pool, role_spec.base_image, root_name, role_spec.disk_gib * GIB
            )
            record = await self.registry.put(record.model_copy(update={"volume_id": volume_id}))

            seed = await self.seed_builder(
                SeedConfig(
                    hostname=hostname,
                    ssh_user=role_spec.ssh_user,
                    ssh_public_key=role_spec.ssh_public_key,
                    timezone=role_spec.timezone,
                    instance_id=f"{self.spec.cluster_name}-{hostname}",
                )
            )
            seed_id = await self.backend.create_volume(
                role_spec.disk_pool, seed_name, len(seed), seed
            )
            record = await self.registry.put(record.model_copy(update={"seed_volume_id": seed_id}))

            await self.backend.create_vm(
                VMDefinition(
                    name=hostname,
                    cpus=role_spec.cpus,
                    memory_mib=role_spec.memory_mib,
                    pool=role_spec.disk_pool,
                    root_volume=root_name,
                    seed_volume=seed_name,
                    network=self.spec.network,
                    mac=record.mac,
                )
            )
        except (ProvisionError, CommandError) as exc:
            record = await self.registry.put(record.model_copy(update={"error": str(exc)}))
            await self.audit.record(
                "create",
                "failed",
                node_id=hostname,
                resources=self._resources(record, root_name, seed_name),
                detail=str(exc),
            )
            raise ProvisionError(f"Creating {hostname} failed: {exc}", node_id=hostname) from exc

        record = await self.registry.put(record.transition(NodeStatus.CREATED, error=None))
        await self.audit.record(
            "create",
            "succeeded",
            node_id=hostname,
            resources=self._resources(record, root_name, seed_name),
        )
        return record

    async def _destroy(self, action: DestroyNode) -> NodeRecord:
        record = self.registry.get(action.key) or self.registry.by_id(action.node_id)
        role_spec = self.spec.role(action.role)
        root_name, seed_name = self._volume_names(action)
        pool = record.disk_pool if record and record.disk_pool else role_spec.disk_pool
        mac = record.mac if record and record.mac else mac_for_hostname(action.node_id)
        logger.info("Destroying node %s.", action.node_id)

        try:
            vm_removed = await self.backend.destroy_vm(action.node_id)
            root_removed = await self.backend.delete_volume(pool, root_name)
            seed_removed = await self.backend.delete_volume(pool, seed_name)
            await self.backend.release_lease(self.spec.network, mac)
        except (ProvisionError, CommandError) as exc:
            await self.audit.record(
                "destroy", "failed", node_id=action.node_id, detail=str(exc)
            )
            raise ProvisionError(
                f"Destroying {action.node_id} failed: {exc}", node_id=action.node_id
            ) from exc

        removed_any = vm_removed or root_removed or seed_removed
        if not removed_any:
            logger.info("Node %s had no remaining resources.", action.node_id)

        await self.registry.remove(action.key)
        final = record or NodeRecord(
            role=action.role, index=action.index, hostname=action.node_id, mac=mac
        )
        await self.audit.record(
            "destroy",
            "succeeded" if removed_any else "already-absent",
            node_id=action.node_id,
            resources={
                "vm": action.node_id if vm_removed else None,
                "root_volume": root_name if root_removed else None,
                "seed_volume": seed_name if seed_removed else None,
                "pool": pool,
                "mac": mac,
            },
        )
        return final

    def _resources(self, record: NodeRecord, root_name: str, seed_name: str) -> Dict[str, object]:
        return {
            "vm": record.hostname,
            "pool": record.disk_pool,
            "root_volume": root_name,
            "root_volume_id": record.volume_id,
            "seed_volume": seed_name,
            "seed_volume_id": record.seed_volume_id,
            "mac": record.mac,
            "network": self.spec.network,
        }
