"""
vmfleet/backends/kubectl.py

ClusterAPI implemented by running `kubectl` on the initialized control-plane
node over an administrative session, using the admin kubeconfig written by
`kubeadm init`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from vmfleet.backends.base import ClusterAPI, RemoteSession, RemoteSessionProvider
from vmfleet.errors import BootstrapError
from vmfleet.models.cluster import ClusterNodeStatus
from vmfleet.models.validator import parse_json_as

ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"


def parse_node_list(raw_json: str) -> List[ClusterNodeStatus]:
    """
    Turn `kubectl get nodes -o json` into (name, ready) rows. A node is ready
    when its "Ready" condition has status "True".
    """
    doc = parse_json_as(raw_json, Dict[str, Any])
    statuses: List[ClusterNodeStatus] = []
    for item in doc.get("items", []):
        name = item.get("metadata", {}).get("name")
        if not name:
            continue
        conditions = item.get("status", {}).get("conditions", [])
        ready = any(
            c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
        )
        statuses.append(ClusterNodeStatus(name=name, ready=ready))
    return statuses


class KubectlClusterAPI(ClusterAPI):
    def __init__(
        self,
        sessions: RemoteSessionProvider,
        session: RemoteSession,
        kubeconfig: str = ADMIN_KUBECONFIG,
        timeout: Optional[float] = 120.0,
    ) -> None:
        self.sessions = sessions
        self.session = session
        self.kubeconfig = kubeconfig
        self.timeout = timeout

    def _kubectl(self, *args: str) -> List[str]:
        return ["sudo", "kubectl", "--kubeconfig", self.kubeconfig, *args]

    async def get_node_status(self) -> List[ClusterNodeStatus]:
        result = await self.sessions.exec(
            self.session,
            self._kubectl("get", "nodes", "-o", "json"),
            timeout=self.timeout,
        )
        if not result.ok:
            raise BootstrapError(
                f"kubectl get nodes failed ({result.exit_code}): {result.stderr}"
            )
        return parse_node_list(result.stdout)

    async def apply_manifest(self, doc: str) -> None:
        result = await self.sessions.exec(
            self.session,
            self._kubectl("apply", "-f", "-"),
            timeout=self.timeout,
            input_data=doc.encode("utf-8"),
        )
        if not result.ok:
            raise BootstrapError(
                f"kubectl apply failed ({result.exit_code}): {result.stderr}"
            )
