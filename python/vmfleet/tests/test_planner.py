"""
vmfleet/tests/test_planner.py

Reconciliation planning: create/destroy ordering, idempotence, InvalidSpec.
"""

from __future__ import annotations

from typing import List

import pytest

from vmfleet.deployment.planner import plan, teardown_plan
from vmfleet.errors import InvalidSpec
from vmfleet.models.fleet import (
    CreateNode,
    DestroyNode,
    NodeRecord,
    NodeRole,
    NodeStatus,
)
from vmfleet.tests.fakes import make_spec

CP = NodeRole.CONTROL_PLANE
W = NodeRole.WORKER


def _records_for(spec, status: NodeStatus = NodeStatus.READY) -> List[NodeRecord]:
    return [
        NodeRecord(role=role, index=i, hostname=spec.role(role).hostname(i), status=status)
        for role in (CP, W)
        for i in range(spec.role(role).count)
    ]


def test_empty_actual_creates_every_node_control_plane_first() -> None:
    spec = make_spec(control_planes=3, workers=4)
    result = plan(spec, [])

    creates = result.creates()
    assert len(creates) == 7
    assert not result.destroys()
    roles = [a.role for a in creates]
    assert roles == [CP] * 3 + [W] * 4
    assert [a.index for a in creates if a.role == W] == [0, 1, 2, 3]


def test_scenario_one_control_plane_two_workers() -> None:
    result = plan(make_spec(1, 2), [])
    assert result.describe() == [
        "Create(control-plane, 0)",
        "Create(worker, 0)",
        "Create(worker, 1)",
    ]


def test_plan_is_idempotent_after_apply() -> None:
    spec = make_spec(2, 3)
    first = plan(spec, [])
    applied = [
        NodeRecord(role=a.role, index=a.index, hostname=spec.role(a.role).hostname(a.index))
        for a in first.creates()
    ]
    # Created (not Pending) records count as present regardless of later status.
    applied = [r.transition(NodeStatus.CREATED) for r in applied]
    assert plan(spec, applied).is_empty


def test_shrinking_destroys_highest_indices_in_descending_order() -> None:
    big = make_spec(1, 5)
    small = make_spec(1, 2)
    result = plan(small, _records_for(big))

    assert not result.creates()
    destroys = result.destroys()
    assert [d.index for d in destroys] == [4, 3, 2]
    assert all(d.role == W for d in destroys)
    assert destroys[0].node_id == "worker-node-04"


def test_destroys_follow_creates() -> None:
    actual = _records_for(make_spec(1, 3))
    result = plan(make_spec(2, 1), actual)
    kinds = [a.kind for a in result.actions]
    assert kinds == ["create", "destroy", "destroy"]
    assert isinstance(result.actions[0], CreateNode) and result.actions[0].index == 1


def test_sizing_drift_is_ignored() -> None:
    spec = make_spec(1, 1)
    resized = spec.model_copy(
        update={"worker": spec.worker.model_copy(update={"cpus": 16, "memory_mib": 65536})}
    )
    assert plan(resized, _records_for(spec)).is_empty


def test_zero_control_plane_is_invalid() -> None:
    with pytest.raises(InvalidSpec):
        plan(make_spec(control_planes=0, workers=2), [])


def test_pending_records_are_planned_again() -> None:
    spec = make_spec(1, 1)
    records = _records_for(spec)
    records[1] = records[1].transition(NodeStatus.PENDING)
    result = plan(spec, records)
    assert [a.describe() for a in result.actions] == ["Create(worker, 0)"]


def test_failed_records_are_left_alone() -> None:
    spec = make_spec(1, 1)
    records = _records_for(spec, status=NodeStatus.FAILED)
    assert plan(spec, records).is_empty


def test_teardown_destroys_workers_then_control_plane() -> None:
    result = teardown_plan(_records_for(make_spec(2, 2)))
    assert all(isinstance(a, DestroyNode) for a in result.actions)
    assert [(a.role, a.index) for a in result.actions] == [(W, 1), (W, 0), (CP, 1), (CP, 0)]
