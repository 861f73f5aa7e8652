"""
vmfleet/deployment/planner.py

Computes the minimal set of CreateNode/DestroyNode actions that reconciles
the actual node records with a FleetSpec.

Per role, desired indices are 0..count-1:
  - desired but absent from actual   => CreateNode
  - present in actual but not desired => DestroyNode
  - present in both                   => untouched (no in-place resize)

A record still in Pending status is an interrupted create; it is planned
again as CreateNode, and the executor resumes it.

Ordering: control-plane creates, then worker creates, then destroys (workers
before control plane), each role's destroys in descending index order so the
lowest-numbered nodes are the most stable.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from vmfleet.errors import InvalidSpec
from vmfleet.models.fleet import (
    ROLE_ORDER,
    CreateNode,
    DestroyNode,
    FleetSpec,
    NodeRecord,
    NodeRole,
    NodeStatus,
    PlanAction,
    ReconciliationPlan,
)

logger = logging.getLogger(__name__)


def check_spec(desired: FleetSpec) -> None:
    """Raise InvalidSpec when the desired state can never form a cluster."""
    if desired.control_plane.count < 1:
        raise InvalidSpec("At least one control-plane node is required.")


def _index_records(actual: Iterable[NodeRecord]) -> Dict[NodeRole, Dict[int, NodeRecord]]:
    by_role: Dict[NodeRole, Dict[int, NodeRecord]] = {role: {} for role in ROLE_ORDER}
    for record in actual:
        by_role[record.role].setdefault(record.index, record)
    return by_role


def plan(desired: FleetSpec, actual: Iterable[NodeRecord]) -> ReconciliationPlan:
    """
    Diff `desired` against `actual`.

    Raises:
        InvalidSpec: if the desired control-plane count is zero. No actions
            are produced in that case.
    """
    check_spec(desired)
    by_role = _index_records(actual)

    creates: List[PlanAction] = []
    destroys: List[PlanAction] = []

    for role in ROLE_ORDER:
        existing = by_role[role]
        wanted = range(desired.role(role).count)
        creates.extend(
            CreateNode(role=role, index=index)
            for index in wanted
            if index not in existing or existing[index].status == NodeStatus.PENDING
        )

    for role in reversed(ROLE_ORDER):
        existing = by_role[role]
        count = desired.role(role).count
        destroys.extend(
            DestroyNode(node_id=existing[index].node_id, role=role, index=index)
            for index in sorted(existing, reverse=True)
            if index >= count
        )

    result = ReconciliationPlan(actions=creates + destroys)
    logger.debug("Planned %d action(s): %s", len(result.actions), result.describe())
    return result


def teardown_plan(actual: Iterable[NodeRecord]) -> ReconciliationPlan:
    """
    Explicit teardown: destroy every record, workers first, each role in
    descending index order.
    """
    by_role = _index_records(actual)
    return ReconciliationPlan(
        actions=[
            DestroyNode(node_id=by_role[role][index].node_id, role=role, index=index)
            for role in reversed(ROLE_ORDER)
            for index in sorted(by_role[role], reverse=True)
        ]
    )
