"""
vmfleet/deployment/bootstrap.py

Forms a kubeadm cluster from the Ready nodes of a fleet:

  Unbootstrapped
    -> `kubeadm init` on the lowest-index Ready control-plane node; once a
       node is initialized, later runs keep using it
  ControlPlaneReady (join token captured and stored)
    -> pod-network add-on applied through the cluster API
  NetworkReady
    -> remaining control-plane nodes, then workers, join in parallel
  Joining
    -> cluster node status polled until every joined node is Ready
  Formed

Control-plane initialization or add-on failure ends the run with
FailedToForm and no joins are attempted. A failed join is reset and retried
with backoff, re-fetching the token when it has expired or was rejected; it
never blocks other nodes. Control plane plus a strict subset of the other
nodes is reported as PartiallyFormed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

import aiofiles
import aiohttp

from vmfleet.backends.base import ClusterAPI, RemoteSession, RemoteSessionProvider
from vmfleet.backends.kubectl import KubectlClusterAPI
from vmfleet.deployment.node_prep import prepare_node, run_remote
from vmfleet.deployment.prober import NodeCredentials
from vmfleet.deployment.registry import NodeRegistry
from vmfleet.errors import (
    BootstrapError,
    JoinError,
    SSHAuthenticationError,
    SSHConnectionError,
)
from vmfleet.models.cluster import (
    BootstrapPhase,
    BootstrapReport,
    ClusterJoinToken,
    FormationStatus,
    NodeFormation,
    NodeOutcome,
)
from vmfleet.models.fleet import NodeRecord, NodeRole, NodeStatus
from vmfleet.models.settings import BootstrapSettings
from vmfleet.secrets.join_token import TokenStore
from vmfleet.utils import kubeadm
from vmfleet.utils.async_command_runner import CommandError
from vmfleet.utils.async_retry import async_retry
from vmfleet.utils.state_storage import AuditLog

logger = logging.getLogger(__name__)

ManifestLoader = Callable[[str], Awaitable[str]]
ClusterAPIFactory = Callable[[RemoteSessionProvider, RemoteSession], ClusterAPI]

# Failures that end the control-plane phase of a run.
_CONTROL_PLANE_ERRORS = (
    CommandError,
    SSHConnectionError,
    SSHAuthenticationError,
    BootstrapError,
    ValueError,
    RuntimeError,
    OSError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


async def load_manifest(source: str) -> str:
    """Read a manifest from a local path or fetch it from an http(s) URL."""
    if source.startswith(("http://", "https://")):
        timeout = aiohttp.ClientTimeout(total=120)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(source) as resp:
                if resp.status != 200:
                    raise BootstrapError(
                        f"Fetching pod-network manifest failed: HTTP {resp.status}"
                    )
                return await resp.text()
    async with aiofiles.open(source, "r", encoding="utf-8") as fman:
        return await fman.read()


def kubectl_cluster_api(
    sessions: RemoteSessionProvider, session: RemoteSession
) -> ClusterAPI:
    return KubectlClusterAPI(sessions, session)


class BootstrapCoordinator:
    def __init__(
        self,
        registry: NodeRegistry,
        sessions: RemoteSessionProvider,
        credentials: Dict[NodeRole, NodeCredentials],
        token_store: TokenStore,
        audit: AuditLog,
        settings: Optional[BootstrapSettings] = None,
        ssh_connect_timeout: float = 10.0,
        manifest_loader: ManifestLoader = load_manifest,
        cluster_api_factory: ClusterAPIFactory = kubectl_cluster_api,
    ) -> None:
        self.registry = registry
        self.sessions = sessions
        self.credentials = credentials
        self.token_store = token_store
        self.audit = audit
        self.settings = settings or BootstrapSettings()
        self.ssh_connect_timeout = ssh_connect_timeout
        self.manifest_loader = manifest_loader
        self.cluster_api_factory = cluster_api_factory

        self._cp_session: Optional[RemoteSession] = None
        self._token: Optional[ClusterJoinToken] = None
        self._token_lock = asyncio.Lock()
        self._certificate_key: Optional[str] = None

    # ------------------------------
    # Sessions
    # ------------------------------
    async def _connect(self, record: NodeRecord) -> RemoteSession:
        if record.ip is None:
            raise SSHConnectionError(f"{record.node_id} has no known address.")
        creds = self.credentials[record.role]
        return await self.sessions.connect(
            record.ip, creds.user, creds.private_key, timeout=self.ssh_connect_timeout
        )

    async def _exists(self, session: RemoteSession, path: str) -> bool:
        result = await self.sessions.exec(
            session, kubeadm.file_exists_command(path), timeout=60
        )
        return result.ok

    # ------------------------------
    # Control plane
    # ------------------------------
    async def _init_control_plane(self, cp: NodeRecord) -> bool:
        """
        Prepare and initialize the control-plane node. Returns False when it
        was already initialized.
        """
        assert cp.ip is not None
        session = await self._connect(cp)
        self._cp_session = session
        if self.settings.prepare_nodes:
            await prepare_node(
                self.sessions,
                session,
                self.settings.kubernetes_version,
                timeout=self.settings.command_timeout,
            )

        if await self._exists(session, kubeadm.ADMIN_CONF):
            logger.info("Control plane on %s is already initialized.", cp.node_id)
            return False

        logger.info("Initializing control plane on %s (%s).", cp.node_id, cp.ip)
        await run_remote(
            self.sessions,
            session,
            kubeadm.init_command(
                cp.hostname,
                cp.ip,
                self.settings.pod_network_cidr,
                self.settings.api_server_port,
            ),
            timeout=self.settings.command_timeout,
            sensitive=False,
        )
        return True

    async def _create_token(self) -> ClusterJoinToken:
        assert self._cp_session is not None
        out = await run_remote(
            self.sessions,
            self._cp_session,
            kubeadm.token_create_command(self.settings.token_ttl_seconds),
            timeout=120,
        )
        token = kubeadm.parse_join_command(out, self.settings.token_ttl_seconds)
        await self.token_store.save(token)
        await self.audit.record(
            "join-token",
            "created",
            resources={
                "fingerprint": token.fingerprint(),
                "advertise_address": token.advertise_address,
                "expires_at": token.expires_at,
            },
        )
        logger.info("Captured join token %s.", token.fingerprint())
        return token

    async def _initial_token(self, cp: NodeRecord, fresh_init: bool) -> ClusterJoinToken:
        """Reuse the stored token for an existing control plane while it is valid."""
        if not fresh_init:
            stored = await self.token_store.load()
            if (
                stored is not None
                and not stored.expired()
                and stored.advertise_address.split(":")[0] == cp.ip
            ):
                logger.info("Reusing stored join token %s.", stored.fingerprint())
                return stored
        return await self._create_token()

    async def _current_token(self) -> ClusterJoinToken:
        async with self._token_lock:
            if self._token is None or self._token.expired():
                self._token = await self._create_token()
            return self._token

    async def _replace_token(self, rejected: ClusterJoinToken) -> None:
        async with self._token_lock:
            if self._token is None or self._token.fingerprint() == rejected.fingerprint():
                self._token = await self._create_token()

    async def _current_certificate_key(self) -> str:
        async with self._token_lock:
            if self._certificate_key is None:
                assert self._cp_session is not None
                out = await run_remote(
                    self.sessions,
                    self._cp_session,
                    kubeadm.upload_certs_command(),
                    timeout=300,
                )
                self._certificate_key = kubeadm.parse_certificate_key(out)
            return self._certificate_key

    # ------------------------------
    # Joins
    # ------------------------------
    async def _join_once(self, record: NodeRecord) -> None:
        """
        One join attempt. A node that already has a kubelet configuration is
        treated as joined.

        Raises:
            JoinError: kubeadm join failed (the node has been reset).
            SSHAuthenticationError: never retried.
        """
        session = await self._connect(record)
        if self.settings.prepare_nodes:
            await prepare_node(
                self.sessions,
                session,
                self.settings.kubernetes_version,
                timeout=self.settings.command_timeout,
            )
        if await self._exists(session, kubeadm.KUBELET_CONF):
            logger.info("%s has already joined.", record.node_id)
            return

        token = await self._current_token()
        control_plane = record.role == NodeRole.CONTROL_PLANE
        cert_key = await self._current_certificate_key() if control_plane else None
        result = await self.sessions.exec(
            session,
            kubeadm.join_command(
                token, record.hostname, control_plane, cert_key, record.ip
            ),
            timeout=self.settings.command_timeout,
        )
        if result.ok:
            return

        if kubeadm.token_rejected(result.stderr):
            logger.warning("Join token was rejected by %s; re-fetching.", record.node_id)
            await self._replace_token(token)
        await self.sessions.exec(session, kubeadm.reset_command(), timeout=300)
        raise JoinError(
            f"kubeadm join on {record.node_id} exited with {result.exit_code}",
            node_id=record.node_id,
        )

    async def _join(self, record: NodeRecord) -> NodeOutcome:
        attempts = 0

        @async_retry(
            retries=self.settings.join_retries,
            delay=self.settings.join_retry_delay,
            backoff=self.settings.join_retry_backoff,
            noisy=True,
            give_up_on=(SSHAuthenticationError,),
        )
        async def _attempt() -> None:
            nonlocal attempts
            attempts += 1
            await self._join_once(record)

        try:
            await _attempt()
        except (JoinError, CommandError, SSHConnectionError, SSHAuthenticationError, ValueError) as exc:
            await self.audit.record(
                "join", "failed", node_id=record.node_id, detail=str(exc)
            )
            return NodeOutcome(
                hostname=record.hostname,
                role=record.role,
                state=NodeFormation.FAILED,
                attempts=attempts,
                error=str(exc),
            )

        await self.audit.record("join", "succeeded", node_id=record.node_id)
        return NodeOutcome(
            hostname=record.hostname,
            role=record.role,
            state=NodeFormation.FORMED,
            attempts=attempts,
        )

    # ------------------------------
    # Health
    # ------------------------------
    async def _await_healthy(self, api: ClusterAPI, expected: Set[str]) -> Set[str]:
        """
        Poll node status until every expected node is Ready or the timeout
        passes. Returns the names reported Ready at the last poll.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.node_status_timeout
        healthy: Set[str] = set()
        while True:
            try:
                statuses = await asyncio.wait_for(
                    api.get_node_status(), timeout=max(deadline - loop.time(), 0.001)
                )
                healthy = {s.name for s in statuses if s.ready}
            except (BootstrapError, CommandError, SSHConnectionError, asyncio.TimeoutError) as exc:
                logger.debug("Node status not available yet: %s", exc)
            if expected <= healthy:
                return healthy
            remaining = deadline - loop.time()
            if remaining <= 0:
                return healthy
            await asyncio.sleep(min(self.settings.node_status_interval, remaining))

    # ------------------------------
    # Run
    # ------------------------------
    async def _finish(self, report: BootstrapReport) -> BootstrapReport:
        await self.registry.set_bootstrap(report.phase, report)
        await self.audit.record(
            "bootstrap",
            report.status.value,
            node_id=report.control_plane,
            resources={
                "phase": report.phase.value,
                "healthy_nodes": report.healthy_nodes,
                "failed_nodes": [n.hostname for n in report.failed()],
                "token_fingerprint": report.token_fingerprint,
            },
            detail=report.error,
        )
        return report

    def _pinned_control_plane(self) -> Optional[str]:
        """The node an earlier run initialized, if the cluster got that far."""
        last = self.registry.last_bootstrap
        if self.registry.bootstrap_phase == BootstrapPhase.UNBOOTSTRAPPED or last is None:
            return None
        return last.control_plane

    async def _initialized_control_plane(
        self, candidates: List[NodeRecord]
    ) -> Optional[NodeRecord]:
        """First Ready control-plane node that already holds an admin.conf."""
        for record in candidates:
            try:
                session = await self._connect(record)
                if await self._exists(session, kubeadm.ADMIN_CONF):
                    return record
            except (SSHConnectionError, SSHAuthenticationError, CommandError) as exc:
                logger.warning("Could not inspect %s: %s", record.node_id, exc)
        return None

    async def run(self) -> BootstrapReport:
        """Drive the fleet from Unbootstrapped to Formed (or as far as possible)."""
        ready_cps = [
            r
            for r in self.registry.records(NodeRole.CONTROL_PLANE)
            if r.status == NodeStatus.READY
        ]
        pinned = self._pinned_control_plane()
        if pinned is not None:
            cp_record = self.registry.by_id(pinned)
            if cp_record is None or cp_record.status != NodeStatus.READY:
                return await self._finish(
                    BootstrapReport(
                        status=FormationStatus.FAILED_TO_FORM,
                        phase=self.registry.bootstrap_phase,
                        control_plane=pinned,
                        error=f"Initialized control plane {pinned} is not Ready.",
                    )
                )
            cp = cp_record
        elif not ready_cps:
            return await self._finish(
                BootstrapReport(
                    status=FormationStatus.FAILED_TO_FORM,
                    phase=BootstrapPhase.UNBOOTSTRAPPED,
                    error="No Ready control-plane node to initialize.",
                )
            )
        else:
            # State may have been lost after an init; never start a second cluster.
            cp = await self._initialized_control_plane(ready_cps[1:]) or ready_cps[0]

        phase = BootstrapPhase.UNBOOTSTRAPPED
        try:
            fresh = await self._init_control_plane(cp)
            self._token = await self._initial_token(cp, fresh)
            phase = BootstrapPhase.CONTROL_PLANE_READY
            await self.registry.set_bootstrap(phase)

            assert self._cp_session is not None
            api = self.cluster_api_factory(self.sessions, self._cp_session)
            manifest = await self.manifest_loader(self.settings.pod_network_manifest)
            await api.apply_manifest(manifest)
            phase = BootstrapPhase.NETWORK_READY
            await self.registry.set_bootstrap(phase)
        except _CONTROL_PLANE_ERRORS as exc:
            stage = (
                "control-plane initialization"
                if phase == BootstrapPhase.UNBOOTSTRAPPED
                else "pod-network deployment"
            )
            logger.error("Bootstrap failed during %s on %s: %s", stage, cp.node_id, exc)
            return await self._finish(
                BootstrapReport(
                    status=FormationStatus.FAILED_TO_FORM,
                    phase=phase,
                    control_plane=cp.node_id,
                    token_fingerprint=self._token.fingerprint() if self._token else None,
                    error=f"{stage} failed: {exc}",
                )
            )

        phase = BootstrapPhase.JOINING
        await self.registry.set_bootstrap(phase)

        others = [r for r in self.registry.records() if r.key != cp.key]
        not_ready = [
            NodeOutcome(
                hostname=r.hostname,
                role=r.role,
                state=NodeFormation.FAILED,
                error=f"node is {r.status.value}, not Ready",
            )
            for r in others
            if r.status != NodeStatus.READY
        ]
        joinable = [r for r in others if r.status == NodeStatus.READY]

        # Extra control-plane nodes join before workers.
        outcomes: List[NodeOutcome] = []
        for role in (NodeRole.CONTROL_PLANE, NodeRole.WORKER):
            group = [r for r in joinable if r.role == role]
            if group:
                outcomes += await asyncio.gather(*[self._join(r) for r in group])

        joined = {o.hostname for o in outcomes if o.state == NodeFormation.FORMED}
        healthy = await self._await_healthy(api, joined | {cp.hostname})

        final: List[NodeOutcome] = []
        for outcome in outcomes:
            if outcome.state == NodeFormation.FORMED and outcome.hostname not in healthy:
                outcome = outcome.model_copy(
                    update={
                        "state": NodeFormation.FAILED,
                        "error": "joined but not Ready within "
                        f"{self.settings.node_status_timeout:g}s",
                    }
                )
            final.append(outcome)
        final += not_ready

        if cp.hostname not in healthy:
            status = FormationStatus.FAILED_TO_FORM
            error: Optional[str] = f"control plane {cp.hostname} never reported Ready"
        elif all(o.state == NodeFormation.FORMED for o in final):
            status, error = FormationStatus.FORMED, None
            phase = BootstrapPhase.FORMED
        else:
            status = FormationStatus.PARTIALLY_FORMED
            error = "some nodes failed to join: " + ", ".join(
                o.hostname for o in final if o.state == NodeFormation.FAILED
            )

        token = self._token
        return await self._finish(
            BootstrapReport(
                status=status,
                phase=phase,
                control_plane=cp.node_id,
                nodes=final,
                healthy_nodes=sorted(healthy),
                token_fingerprint=token.fingerprint() if token else None,
                error=error,
            )
        )
