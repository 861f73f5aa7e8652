"""
vmfleet/tests/test_executor.py

ProvisioningExecutor against the in-memory hypervisor.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Dict, Set

import pytest

from vmfleet.deployment.executor import ProvisioningExecutor
from vmfleet.deployment.planner import plan, teardown_plan
from vmfleet.deployment.registry import NodeRegistry
from vmfleet.errors import ProvisionError
from vmfleet.models.fleet import CreateNode, DestroyNode, NodeRole, NodeStatus
from vmfleet.tests.fakes import FakeHypervisor, fake_seed_builder, make_spec
from vmfleet.utils.state_storage import AuditLog, LocalStateStorage


def _executor(tmp_path, spec, hypervisor, registry=None, max_parallel=4):
    storage = LocalStateStorage(spec.cluster_name, str(tmp_path))
    registry = registry or NodeRegistry(storage)
    executor = ProvisioningExecutor(
        spec,
        hypervisor,
        registry,
        AuditLog(storage),
        seed_builder=fake_seed_builder,
        max_parallel=max_parallel,
    )
    return executor, registry, storage


def test_apply_plan_creates_vms_volumes_and_records(tmp_path) -> None:
    spec = make_spec(1, 2)
    hv = FakeHypervisor()

    async def _scenario():
        executor, registry, storage = _executor(tmp_path, spec, hv)
        outcomes = await executor.apply_plan(plan(spec, []))
        return outcomes, registry, await storage.read_state(), await storage.read_audit()

    outcomes, registry, stored, audit = asyncio.run(_scenario())

    assert all(o.ok for o in outcomes)
    assert sorted(hv.vms) == ["control-plane-node-00", "worker-node-00", "worker-node-01"]
    assert ("default", "k8s-worker-01-root.qcow2") in hv.volumes
    assert hv.volumes[("default", "k8s-worker-01-seed.iso")] == b"seed:worker-node-01"
    records = registry.records()
    assert [r.status for r in records] == [NodeStatus.CREATED] * 3
    assert all(r.mac and r.volume_id and r.seed_volume_id for r in records)

    # Control-plane VM is defined before any worker VM.
    vm_calls = [name for call, name in hv.calls if call == "create_vm"]
    assert vm_calls[0] == "control-plane-node-00"

    assert stored is not None and len(stored.records) == 3
    assert [(e.action, e.outcome) for e in audit] == [("create", "succeeded")] * 3
    assert audit[0].resources["root_volume"] == "k8s-control-plane-00-root.qcow2"


def test_failed_create_leaves_pending_record_with_error(tmp_path) -> None:
    spec = make_spec(1, 2)
    hv = FakeHypervisor()
    hv.fail_create_vm.add("worker-node-01")

    async def _scenario() -> None:
        executor, registry, storage = _executor(tmp_path, spec, hv)
        outcomes = await executor.apply_plan(plan(spec, []))

        failed = [o for o in outcomes if not o.ok]
        assert len(failed) == 1
        assert "out of capacity" in failed[0].error
        record = registry.get((NodeRole.WORKER, 1))
        assert record.status == NodeStatus.PENDING
        assert "out of capacity" in record.error
        assert registry.get((NodeRole.WORKER, 0)).status == NodeStatus.CREATED

        audit = await storage.read_audit()
        assert ("create", "failed") in [(e.action, e.outcome) for e in audit]

        # The next plan resumes the interrupted create.
        hv.fail_create_vm.clear()
        again = plan(spec, registry.records())
        assert again.describe() == ["Create(worker, 1)"]
        await executor.apply_plan(again)
        resumed = registry.get((NodeRole.WORKER, 1))
        assert resumed.status == NodeStatus.CREATED
        assert resumed.error is None

    asyncio.run(_scenario())


def test_single_apply_raises_provision_error(tmp_path) -> None:
    spec = make_spec(1, 0)
    hv = FakeHypervisor()
    hv.fail_clone.add("k8s-control-plane-00-root.qcow2")

    async def _apply() -> None:
        executor, _, _ = _executor(tmp_path, spec, hv)
        await executor.apply(CreateNode(role=NodeRole.CONTROL_PLANE, index=0))

    with pytest.raises(ProvisionError) as excinfo:
        asyncio.run(_apply())
    assert excinfo.value.node_id == "control-plane-node-00"
    assert not hv.vms


def test_create_of_existing_node_is_a_no_op(tmp_path) -> None:
    spec = make_spec(1, 0)
    hv = FakeHypervisor()
    action = CreateNode(role=NodeRole.CONTROL_PLANE, index=0)

    async def _twice() -> None:
        executor, _, _ = _executor(tmp_path, spec, hv)
        await executor.apply(action)
        await executor.apply(action)

    asyncio.run(_twice())
    assert [c for c in hv.calls if c[0] == "create_vm"] == [("create_vm", "control-plane-node-00")]


def test_destroy_removes_everything_and_is_idempotent(tmp_path) -> None:
    spec = make_spec(1, 2)
    hv = FakeHypervisor()

    async def _scenario():
        executor, registry, storage = _executor(tmp_path, spec, hv)
        await executor.apply_plan(plan(spec, []))
        await hv.list_leases(spec.network)
        await executor.apply_plan(teardown_plan(registry.records()))
        await executor.apply(
            DestroyNode(node_id="worker-node-00", role=NodeRole.WORKER, index=0)
        )
        return registry, await storage.read_audit()

    registry, audit = asyncio.run(_scenario())

    assert not hv.vms
    assert not hv.volumes
    assert not hv.leases
    assert len(hv.released) == 4
    assert registry.records() == []
    destroys = [e for e in audit if e.action == "destroy"]
    assert [e.node_id for e in destroys[:3]] == [
        "worker-node-01",
        "worker-node-00",
        "control-plane-node-00",
    ]
    assert destroys[-1].outcome == "already-absent"


def test_shrink_removes_highest_worker(tmp_path) -> None:
    hv = FakeHypervisor()
    big = make_spec(1, 3)
    small = make_spec(1, 1)

    async def _scenario():
        executor, registry, _ = _executor(tmp_path, big, hv)
        await executor.apply_plan(plan(big, []))
        shrink, _, _ = _executor(tmp_path, small, hv, registry=registry)
        await shrink.apply_plan(plan(small, registry.records()))
        return registry

    registry = asyncio.run(_scenario())

    assert sorted(hv.vms) == ["control-plane-node-00", "worker-node-00"]
    assert [r.hostname for r in registry.records()] == ["control-plane-node-00", "worker-node-00"]
    assert not [v for v in hv.volumes if "worker-02" in v[1] or "worker-01" in v[1]]


class GatedHypervisor(FakeHypervisor):
    """
    Root-volume clones pause briefly so concurrent actions overlap, and
    record how many ran at once. Clones named in `blocked` wait for `release`.
    """

    def __init__(self) -> None:
        super().__init__()
        self.active = 0
        self.max_active = 0
        self.active_by_volume: Counter = Counter()
        self.max_by_volume: Dict[str, int] = {}
        self.blocked: Set[str] = set()
        self.release = asyncio.Event()
        self.blocked_started = asyncio.Event()

    async def clone_volume(self, pool: str, source: str, name: str, capacity_bytes: int) -> str:
        self.active += 1
        self.active_by_volume[name] += 1
        self.max_active = max(self.max_active, self.active)
        self.max_by_volume[name] = max(self.max_by_volume.get(name, 0), self.active_by_volume[name])
        try:
            if name in self.blocked:
                self.blocked_started.set()
                await self.release.wait()
            await asyncio.sleep(0.05)
            return await super().clone_volume(pool, source, name, capacity_bytes)
        finally:
            self.active -= 1
            self.active_by_volume[name] -= 1


def test_independent_creates_run_in_parallel_up_to_the_limit(tmp_path) -> None:
    spec = make_spec(1, 4)

    async def _scenario(max_parallel: int) -> GatedHypervisor:
        hv = GatedHypervisor()
        executor, _, _ = _executor(tmp_path / str(max_parallel), spec, hv, max_parallel=max_parallel)
        outcomes = await executor.apply_plan(plan(spec, []))
        assert all(o.ok for o in outcomes)
        return hv

    assert asyncio.run(_scenario(2)).max_active == 2
    assert asyncio.run(_scenario(4)).max_active == 4


def test_actions_on_the_same_node_are_serialized(tmp_path) -> None:
    spec = make_spec(1, 1)
    create = CreateNode(role=NodeRole.WORKER, index=0)
    destroy = DestroyNode(node_id="worker-node-00", role=NodeRole.WORKER, index=0)

    async def _scenario():
        hv = GatedHypervisor()
        executor, registry, _ = _executor(tmp_path, spec, hv)
        await asyncio.gather(executor.apply(create), executor.apply(create), executor.apply(destroy))
        return hv, registry

    hv, registry = asyncio.run(_scenario())

    assert hv.max_by_volume["k8s-worker-00-root.qcow2"] == 1
    assert hv.calls.count(("clone_volume", "k8s-worker-00-root.qcow2")) == 1
    assert hv.calls.index(("create_vm", "worker-node-00")) < hv.calls.index(
        ("destroy_vm", "worker-node-00")
    )
    assert "worker-node-00" not in hv.vms
    assert registry.get((NodeRole.WORKER, 0)) is None


def test_cancelled_apply_leaves_resumable_pending_records(tmp_path) -> None:
    spec = make_spec(1, 1)

    async def _scenario():
        hv = GatedHypervisor()
        hv.blocked.add("k8s-worker-00-root.qcow2")
        executor, _, storage = _executor(tmp_path, spec, hv)
        task = asyncio.ensure_future(executor.apply_plan(plan(spec, [])))
        await hv.blocked_started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        interrupted = await storage.read_state()
        vms_at_cancel = sorted(hv.vms)
        replanned = plan(spec, interrupted.records)

        hv.blocked.clear()
        registry = await NodeRegistry.load(storage)
        resumed, _, _ = _executor(tmp_path, spec, hv, registry=registry)
        outcomes = await resumed.apply_plan(replanned)
        return hv, interrupted, vms_at_cancel, replanned, outcomes, await storage.read_state()

    hv, interrupted, vms_at_cancel, replanned, outcomes, final = asyncio.run(_scenario())

    by_name = {r.hostname: r for r in interrupted.records}
    assert by_name["control-plane-node-00"].status == NodeStatus.CREATED
    assert by_name["worker-node-00"].status == NodeStatus.PENDING
    assert by_name["worker-node-00"].mac is not None
    assert vms_at_cancel == ["control-plane-node-00"]

    assert replanned.describe() == ["Create(worker, 0)"]
    assert all(o.ok for o in outcomes)
    assert [r.status for r in final.records] == [NodeStatus.CREATED, NodeStatus.CREATED]
    assert sorted(hv.vms) == ["control-plane-node-00", "worker-node-00"]
