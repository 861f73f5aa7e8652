"""
vmfleet/deployment/prober.py

Readiness probing for freshly created nodes. A node is polled at a fixed
interval until:
  (a) a DHCP lease for its MAC appears           => Created -> Booting
  (b) an administrative ssh session succeeds and
  (c) the cloud-init completion marker exists    => Booting -> Ready
If the deadline passes first the node becomes Failed. Connection refusals
and other transient ssh errors are retried silently; an authentication
failure fails the node immediately.

Nodes are probed concurrently; the fleet call returns when every node is
Ready or Failed, or when the global timeout expires.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from vmfleet.backends.base import HypervisorBackend, RemoteSessionProvider
from vmfleet.errors import (
    ProvisionError,
    ReadinessError,
    ReadinessTimeoutError,
    SSHAuthenticationError,
    SSHConnectionError,
)
from vmfleet.models.fleet import NodeRecord, NodeRole, NodeStatus
from vmfleet.models.settings import ProbeSettings
from vmfleet.models.state import FleetReadiness
from vmfleet.utils.async_command_runner import CommandError

logger = logging.getLogger(__name__)

RecordCallback = Callable[[NodeRecord], Awaitable[Any]]


class NodeCredentials(BaseModel):
    user: str
    private_key: str = Field(repr=False)


class ReadinessProber:
    def __init__(
        self,
        backend: HypervisorBackend,
        sessions: RemoteSessionProvider,
        network: str,
        credentials: Dict[NodeRole, NodeCredentials],
        settings: Optional[ProbeSettings] = None,
        on_update: Optional[RecordCallback] = None,
    ) -> None:
        self.backend = backend
        self.sessions = sessions
        self.network = network
        self.credentials = credentials
        self.settings = settings or ProbeSettings()
        self.on_update = on_update
        self._latest: Dict[str, NodeRecord] = {}

    async def _update(self, record: NodeRecord) -> NodeRecord:
        self._latest[record.node_id] = record
        if self.on_update is not None:
            await self.on_update(record)
        return record

    async def _probe_once(self, record: NodeRecord) -> Tuple[NodeRecord, str]:
        """
        One polling round. Returns the (possibly advanced) record and, when it
        is not Ready yet, what it is waiting for.
        """
        if record.ip is None:
            leases = await self.backend.list_leases(self.network)
            mac = (record.mac or "").lower()
            lease = next((l for l in leases if l.mac.lower() == mac), None) or next(
                (l for l in leases if l.hostname == record.hostname), None
            )
            if lease is None:
                return record, "no DHCP lease observed"
            logger.info("Node %s leased %s.", record.node_id, lease.ip)
            record = await self._update(record.transition(NodeStatus.BOOTING, ip=lease.ip))
        elif record.status in (NodeStatus.CREATED, NodeStatus.FAILED):
            record = await self._update(record.transition(NodeStatus.BOOTING))

        assert record.ip is not None
        creds = self.credentials[record.role]
        session = await self.sessions.connect(
            record.ip, creds.user, creds.private_key, timeout=self.settings.ssh_connect_timeout
        )
        result = await self.sessions.exec(
            session, ["test", "-f", self.settings.completion_marker], timeout=60
        )
        if result.exit_code != 0:
            return record, "cloud-init still running"

        logger.info("Node %s is ready.", record.node_id)
        return await self._update(record.transition(NodeStatus.READY, error=None)), ""

    async def _fail(self, record: NodeRecord, reason: str) -> NodeRecord:
        return await self._update(record.transition(NodeStatus.FAILED, error=reason))

    async def await_ready(self, record: NodeRecord, timeout: Optional[float] = None) -> NodeRecord:
        """
        Poll `record` until it is Ready.

        Raises:
            ReadinessTimeoutError: the deadline passed; the node is marked Failed.
            ReadinessError: authentication was rejected; the node is marked Failed.
        """
        if record.status == NodeStatus.READY:
            return record

        timeout = timeout if timeout is not None else self.settings.node_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        waiting_for = "no DHCP lease observed"
        self._latest[record.node_id] = record

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                record, waiting_for = await asyncio.wait_for(
                    self._probe_once(record), timeout=remaining
                )
            except asyncio.TimeoutError:
                break
            except SSHAuthenticationError as exc:
                await self._fail(self._latest[record.node_id], str(exc))
                raise ReadinessError(
                    f"{record.node_id}: {exc}", node_id=record.node_id
                ) from exc
            except (SSHConnectionError, CommandError, ProvisionError) as exc:
                record = self._latest[record.node_id]
                waiting_for = str(exc)
                logger.debug("Node %s not reachable yet: %s", record.node_id, exc)
            else:
                if record.status == NodeStatus.READY:
                    return record

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.settings.interval, remaining))

        record = self._latest[record.node_id]
        await self._fail(record, f"not ready after {timeout:g}s: {waiting_for}")
        raise ReadinessTimeoutError(
            f"{record.node_id} not ready after {timeout:g}s ({waiting_for})",
            node_id=record.node_id,
        )

    async def await_fleet(
        self,
        records: Iterable[NodeRecord],
        node_timeout: Optional[float] = None,
        fleet_timeout: Optional[float] = None,
    ) -> FleetReadiness:
        """
        Probe every record concurrently until all reach Ready or Failed, or the
        global timeout expires (remaining nodes are then marked Failed).
        """
        records = list(records)
        if not records:
            return FleetReadiness()

        fleet_timeout = fleet_timeout if fleet_timeout is not None else self.settings.fleet_timeout
        tasks: Dict[asyncio.Task[NodeRecord], NodeRecord] = {
            asyncio.create_task(self.await_ready(r, node_timeout)): r for r in records
        }

        try:
            done, pending = await asyncio.wait(tasks, timeout=fleet_timeout)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        failures: Dict[str, str] = {}
        final: List[NodeRecord] = []
        for task, original in tasks.items():
            node_id = original.node_id
            if task in pending:
                reason = f"fleet readiness timeout after {fleet_timeout:g}s"
                final.append(await self._fail(self._latest.get(node_id, original), reason))
                failures[node_id] = reason
                continue
            exc = task.exception()
            if exc is None:
                final.append(task.result())
            elif isinstance(exc, ReadinessError):
                failures[node_id] = str(exc)
                final.append(self._latest.get(node_id, original))
            else:
                raise exc

        return FleetReadiness(records=final, failures=failures)
