"""
vmfleet/utils/kubeadm.py

Command builders and output parsers for the kubeadm steps of cluster
formation. Nothing here runs commands; the bootstrap coordinator sends them
through a RemoteSessionProvider.
"""

from __future__ import annotations

import re
import shlex
import time
from typing import List, Optional

from pydantic import SecretStr

from vmfleet.models.cluster import ClusterJoinToken

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"

_CERT_KEY_RE = re.compile(r"^[0-9a-f]{64}$")

# kubeadm join stderr fragments meaning the token itself was refused.
TOKEN_REJECTED_MARKERS = (
    "jws signature",
    "token id",
    "invalid bootstrap token",
    "unauthorized",
    "token has expired",
)


def init_command(
    hostname: str,
    advertise_ip: str,
    pod_network_cidr: str,
    api_server_port: int = 6443,
) -> List[str]:
    return [
        "sudo",
        "kubeadm",
        "init",
        "--node-name",
        hostname,
        "--apiserver-advertise-address",
        advertise_ip,
        "--apiserver-bind-port",
        str(api_server_port),
        "--control-plane-endpoint",
        f"{advertise_ip}:{api_server_port}",
        "--pod-network-cidr",
        pod_network_cidr,
    ]


def token_create_command(ttl_seconds: int) -> List[str]:
    return [
        "sudo",
        "kubeadm",
        "token",
        "create",
        "--ttl",
        f"{ttl_seconds}s",
        "--print-join-command",
    ]


def upload_certs_command() -> List[str]:
    return ["sudo", "kubeadm", "init", "phase", "upload-certs", "--upload-certs"]


def join_command(
    token: ClusterJoinToken,
    hostname: str,
    control_plane: bool = False,
    certificate_key: Optional[str] = None,
    advertise_ip: Optional[str] = None,
) -> List[str]:
    cmd = [
        "sudo",
        "kubeadm",
        "join",
        token.advertise_address,
        "--token",
        token.token.get_secret_value(),
        "--discovery-token-ca-cert-hash",
        token.ca_cert_hash,
        "--node-name",
        hostname,
    ]
    if control_plane:
        if not certificate_key:
            raise ValueError("A certificate key is required to join a control-plane node.")
        cmd += ["--control-plane", "--certificate-key", certificate_key]
        if advertise_ip:
            cmd += ["--apiserver-advertise-address", advertise_ip]
    return cmd


def reset_command() -> List[str]:
    return ["sudo", "kubeadm", "reset", "-f"]


def file_exists_command(path: str) -> List[str]:
    return ["sudo", "test", "-f", path]


def parse_join_command(
    output: str, ttl_seconds: Optional[int] = None, now: Optional[float] = None
) -> ClusterJoinToken:
    """
    Parse the line printed by `kubeadm token create --print-join-command`:

        kubeadm join 192.168.122.10:6443 --token abcdef.0123456789abcdef \
            --discovery-token-ca-cert-hash sha256:<64 hex>

    Raises:
        ValueError: if no complete join command is found.
    """
    flat = output.replace("\\\n", " ")
    line = next(
        (ln for ln in flat.splitlines() if ln.strip().startswith("kubeadm join")), None
    )
    if line is None:
        raise ValueError("No 'kubeadm join' command in output.")

    args = shlex.split(line)
    address = args[2] if len(args) > 2 and not args[2].startswith("-") else None
    token_value = _flag_value(args, "--token")
    ca_hash = _flag_value(args, "--discovery-token-ca-cert-hash")
    if not (address and token_value and ca_hash):
        raise ValueError("Incomplete 'kubeadm join' command in output.")

    created = now if now is not None else time.time()
    return ClusterJoinToken(
        token=SecretStr(token_value),
        ca_cert_hash=ca_hash,
        advertise_address=address,
        created_at=created,
        expires_at=created + ttl_seconds if ttl_seconds else None,
    )


def _flag_value(args: List[str], flag: str) -> Optional[str]:
    for i, arg in enumerate(args):
        if arg == flag and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith(flag + "="):
            return arg.split("=", 1)[1]
    return None


def parse_certificate_key(output: str) -> str:
    """The certificate key is the last 64-hex-digit line of `upload-certs` output."""
    keys = [ln.strip() for ln in output.splitlines() if _CERT_KEY_RE.match(ln.strip())]
    if not keys:
        raise ValueError("No certificate key in upload-certs output.")
    return keys[-1]


def token_rejected(stderr: str) -> bool:
    lower = stderr.lower()
    return any(marker in lower for marker in TOKEN_REJECTED_MARKERS)
