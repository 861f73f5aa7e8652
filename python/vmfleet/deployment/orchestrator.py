"""
vmfleet/deployment/orchestrator.py

FleetOrchestrator ties the pieces together for one fleet:

  plan      -> diff the FleetSpec against the known NodeRecords
  apply     -> plan, execute (create/destroy), probe new nodes until Ready
  destroy   -> explicit teardown of every record, then drop the join token
  bootstrap -> form the Kubernetes cluster from the Ready nodes
  status    -> the persisted FleetState

Known records come from state storage. `refresh` re-reads the hypervisor,
which remains the source of truth: matching VMs with no record are adopted,
records whose VM is gone are marked Failed (never deleted).
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import aiofiles

from vmfleet.backends.base import HypervisorBackend, RemoteSessionProvider
from vmfleet.backends.libvirt import LibvirtBackend
from vmfleet.backends.openssh import OpenSSHSessionProvider
from vmfleet.deployment import planner
from vmfleet.deployment.bootstrap import (
    BootstrapCoordinator,
    ClusterAPIFactory,
    ManifestLoader,
    kubectl_cluster_api,
    load_manifest,
)
from vmfleet.deployment.executor import ProvisioningExecutor, SeedBuilder
from vmfleet.deployment.prober import NodeCredentials, ReadinessProber
from vmfleet.deployment.registry import NodeRegistry
from vmfleet.errors import InvalidSpec
from vmfleet.models.cluster import BootstrapReport
from vmfleet.models.fleet import (
    ROLE_ORDER,
    FleetSpec,
    NodeRecord,
    NodeRole,
    NodeStatus,
    ReconciliationPlan,
    mac_for_hostname,
)
from vmfleet.models.settings import OrchestratorSettings
from vmfleet.models.state import ActionOutcome, ApplyReport, FleetState
from vmfleet.secrets.join_token import TokenStore, make_token_store
from vmfleet.utils.cloudinit import build_seed_image
from vmfleet.utils.state_storage import AuditLog, StateStorage, make_state_storage

logger = logging.getLogger(__name__)


async def load_credentials(spec: FleetSpec) -> Dict[NodeRole, NodeCredentials]:
    """
    Read each role's private key from its ssh_private_key_path.

    Raises:
        InvalidSpec: if a key file cannot be read.
    """
    creds: Dict[NodeRole, NodeCredentials] = {}
    for role in ROLE_ORDER:
        role_spec = spec.role(role)
        path = os.path.expanduser(role_spec.ssh_private_key_path)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as fkey:
                key = await fkey.read()
        except OSError as exc:
            raise InvalidSpec(f"Cannot read {role.value} private key '{path}': {exc}") from exc
        creds[role] = NodeCredentials(user=role_spec.ssh_user, private_key=key)
    return creds


class FleetOrchestrator:
    def __init__(
        self,
        spec: FleetSpec,
        settings: OrchestratorSettings,
        backend: HypervisorBackend,
        sessions: RemoteSessionProvider,
        storage: StateStorage,
        token_store: TokenStore,
        registry: NodeRegistry,
        seed_builder: SeedBuilder = build_seed_image,
        manifest_loader: ManifestLoader = load_manifest,
        cluster_api_factory: ClusterAPIFactory = kubectl_cluster_api,
        credentials: Optional[Dict[NodeRole, NodeCredentials]] = None,
    ) -> None:
        self.spec = spec
        self.settings = settings
        self.backend = backend
        self.sessions = sessions
        self.storage = storage
        self.token_store = token_store
        self.registry = registry
        self.audit = AuditLog(storage)
        self.manifest_loader = manifest_loader
        self.cluster_api_factory = cluster_api_factory
        self._credentials = credentials
        self.executor = ProvisioningExecutor(
            spec,
            backend,
            registry,
            self.audit,
            seed_builder=seed_builder,
            max_parallel=settings.max_parallel_actions,
        )

    @classmethod
    async def open(
        cls,
        spec: FleetSpec,
        settings: OrchestratorSettings,
        backend: HypervisorBackend,
        sessions: RemoteSessionProvider,
        storage: StateStorage,
        token_store: TokenStore,
        **kwargs: Any,
    ) -> FleetOrchestrator:
        """Load stored state (if any) and build an orchestrator around it."""
        stored = await storage.read_state()
        registry = NodeRegistry(storage, stored)
        orch = cls(spec, settings, backend, sessions, storage, token_store, registry, **kwargs)
        if stored is None:
            logger.info("No stored state for %s; discovering from the hypervisor.", spec.cluster_name)
            await orch.refresh()
        return orch

    async def close(self) -> None:
        await self.token_store.close()

    async def credentials(self) -> Dict[NodeRole, NodeCredentials]:
        if self._credentials is None:
            self._credentials = await load_credentials(self.spec)
        return self._credentials

    async def refresh(self) -> FleetState:
        """Reconcile stored records with what the hypervisor actually runs."""
        vms = {vm.name: vm for vm in await self.backend.list_vms()}

        for name, vm in sorted(vms.items()):
            key = self.spec.node_key_for_hostname(name)
            if key is None or self.registry.get(key) is not None:
                continue
            role, index = key
            record = NodeRecord(
                role=role,
                index=index,
                hostname=name,
                mac=vm.macs[0] if vm.macs else mac_for_hostname(name),
                disk_pool=self.spec.role(role).disk_pool,
                status=NodeStatus.CREATED if vm.running else NodeStatus.FAILED,
                error=None if vm.running else "VM is not running",
            )
            await self.registry.put(record)
            await self.audit.record(
                "adopt", record.status.value, node_id=name, resources={"vm": name, "macs": vm.macs}
            )
            logger.info("Adopted %s from the hypervisor (%s).", name, record.status.value)

        for record in self.registry.records():
            if record.node_id in vms or record.status in (NodeStatus.PENDING, NodeStatus.FAILED):
                continue
            await self.registry.put(
                record.transition(NodeStatus.FAILED, error="VM no longer exists on the hypervisor")
            )
            await self.audit.record("refresh", "vanished", node_id=record.node_id)
            logger.warning("VM for %s has disappeared.", record.node_id)

        await self.registry.save()
        return self.registry.snapshot()

    async def plan(self, refresh: bool = False) -> ReconciliationPlan:
        if refresh:
            await self.refresh()
        return planner.plan(self.spec, self.registry.records())

    async def apply(self, refresh: bool = False) -> ApplyReport:
        """
        Plan, execute and probe. Nodes that fail to provision or never become
        Ready are reported; others continue.

        Raises:
            InvalidSpec: before anything is applied.
        """
        planner.check_spec(self.spec)
        plan = await self.plan(refresh=refresh)
        for line in plan.describe():
            logger.info("Planned: %s", line)

        outcomes = await self.executor.apply_plan(plan)

        to_probe = self.registry.with_status(NodeStatus.CREATED, NodeStatus.BOOTING)
        not_ready: Dict[str, str] = {}
        if to_probe:
            prober = ReadinessProber(
                self.backend,
                self.sessions,
                self.spec.network,
                await self.credentials(),
                self.settings.probe,
                on_update=self.registry.put,
            )
            readiness = await prober.await_fleet(to_probe)
            not_ready = readiness.failures

        return ApplyReport(
            outcomes=outcomes,
            ready=[r.node_id for r in self.registry.with_status(NodeStatus.READY)],
            not_ready=not_ready,
        )

    async def destroy(self, refresh: bool = False) -> List[ActionOutcome]:
        """Tear down every known node, workers first. Records go only on success."""
        if refresh:
            await self.refresh()
        outcomes = await self.executor.apply_plan(planner.teardown_plan(self.registry.records()))
        if all(o.ok for o in outcomes):
            await self.token_store.delete()
            await self.registry.reset_bootstrap()
            await self.audit.record("teardown", "succeeded", resources={"nodes": len(outcomes)})
        else:
            await self.audit.record(
                "teardown",
                "partial",
                detail="; ".join(o.error or "" for o in outcomes if not o.ok),
            )
        return outcomes

    async def bootstrap(self) -> BootstrapReport:
        planner.check_spec(self.spec)
        coordinator = BootstrapCoordinator(
            self.registry,
            self.sessions,
            await self.credentials(),
            self.token_store,
            self.audit,
            self.settings.bootstrap,
            ssh_connect_timeout=self.settings.probe.ssh_connect_timeout,
            manifest_loader=self.manifest_loader,
            cluster_api_factory=self.cluster_api_factory,
        )
        return await coordinator.run()

    async def status(self, refresh: bool = False) -> FleetState:
        if refresh:
            return await self.refresh()
        return self.registry.snapshot()


async def build_orchestrator(
    spec: FleetSpec, settings: OrchestratorSettings
) -> FleetOrchestrator:
    """Orchestrator over libvirt (virsh) and OpenSSH, with configured storage."""
    storage = make_state_storage(settings.storage, spec.cluster_name)
    token_store = make_token_store(settings.tokens, spec.cluster_name, settings.storage.state_dir)
    return await FleetOrchestrator.open(
        spec,
        settings,
        LibvirtBackend(settings.libvirt_uri),
        OpenSSHSessionProvider(),
        storage,
        token_store,
    )
