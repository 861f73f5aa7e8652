"""
vmfleet/deployment/node_prep.py

Idempotent base OS configuration for kubeadm nodes (Ubuntu, APT-based), run
over an administrative session before `kubeadm init` / `kubeadm join`:
  - Disable swap permanently.
  - Load overlay / br_netfilter and persist them.
  - Configure sysctl for bridged traffic and IP forwarding.
  - Install containerd with the systemd cgroup driver.
  - Install kubelet/kubeadm/kubectl pinned to one minor version and hold them.

Every step is safe to re-run on an already prepared node.
"""

from __future__ import annotations

import logging
import textwrap
from typing import List, Optional

from vmfleet.backends.base import RemoteSession, RemoteSessionProvider
from vmfleet.utils.async_command_runner import CommandError
from vmfleet.utils.ssh import remote_script_command, remote_write_file_command

logger = logging.getLogger(__name__)


async def run_remote(
    sessions: RemoteSessionProvider,
    session: RemoteSession,
    command: List[str],
    *,
    timeout: Optional[float] = None,
    sensitive: bool = True,
    successful_return_codes: Optional[List[int]] = None,
    input_data: Optional[bytes] = None,
) -> str:
    """
    Run `command` on the session's host and return stdout.

    Raises:
        CommandError: if the exit code is not in `successful_return_codes`
            (default [0]). With `sensitive`, stderr is left out of the message.
    """
    result = await sessions.exec(
        session, command, timeout=timeout, input_data=input_data
    )
    ok_codes = successful_return_codes or [0]
    if result.exit_code not in ok_codes:
        detail = "" if sensitive else f"\nStderr: {result.stderr.strip()}"
        raise CommandError(
            f"Remote command on {session.config.hostname} failed with return code "
            f"{result.exit_code}.{detail}",
            result.exit_code,
            result.stderr,
        )
    return result.stdout


async def _disable_swap(sessions: RemoteSessionProvider, session: RemoteSession) -> None:
    await run_remote(sessions, session, ["sudo", "swapoff", "-a"])
    sed_cmd = r"sudo sed -i.bak '/\sswap\s/s/^#*/#/' /etc/fstab"
    await run_remote(sessions, session, ["bash", "-c", sed_cmd])


async def _load_kernel_modules(
    sessions: RemoteSessionProvider, session: RemoteSession
) -> None:
    for mod in ["overlay", "br_netfilter"]:
        await run_remote(sessions, session, ["sudo", "modprobe", mod])
    await run_remote(
        sessions,
        session,
        remote_write_file_command("overlay\nbr_netfilter\n", "/etc/modules-load.d/k8s.conf"),
    )


async def _configure_sysctl(sessions: RemoteSessionProvider, session: RemoteSession) -> None:
    content = textwrap.dedent(
        """\
        net.ipv4.ip_forward=1
        net.bridge.bridge-nf-call-iptables=1
        net.bridge.bridge-nf-call-ip6tables=1
        """
    )
    await run_remote(
        sessions, session, remote_write_file_command(content, "/etc/sysctl.d/99-kubernetes.conf")
    )
    await run_remote(sessions, session, ["sudo", "sysctl", "--system"])


async def _install_containerd(
    sessions: RemoteSessionProvider, session: RemoteSession, timeout: float
) -> None:
    """
    Install containerd if missing and make sure the CRI plugin uses the
    systemd cgroup driver (kubelet's default on kubeadm clusters).
    """
    check = await sessions.exec(
        session,
        ["bash", "-c", "command -v containerd && grep -q 'SystemdCgroup = true' /etc/containerd/config.toml"],
        timeout=60,
    )
    if check.ok:
        logger.debug("containerd already configured on %s", session.config.hostname)
        return

    script = textwrap.dedent(
        """\
        #!/usr/bin/env bash
        set -eux
        export DEBIAN_FRONTEND=noninteractive
        apt-get update -y
        apt-get install -y containerd apt-transport-https ca-certificates curl gpg
        mkdir -p /etc/containerd
        containerd config default | sed 's/SystemdCgroup = false/SystemdCgroup = true/' > /etc/containerd/config.toml
        systemctl enable containerd
        systemctl restart containerd
        """
    )
    await run_remote(sessions, session, remote_script_command(script), timeout=timeout)


async def _install_kube_packages(
    sessions: RemoteSessionProvider,
    session: RemoteSession,
    kubernetes_version: str,
    timeout: float,
) -> None:
    """
    Install kubelet, kubeadm and kubectl from the pkgs.k8s.io repository for
    `kubernetes_version` (a minor version, e.g. "1.30") and hold them.
    """
    check = await sessions.exec(
        session,
        ["bash", "-c", f"kubeadm version -o short 2>/dev/null | grep -q '^v{kubernetes_version}\\.'"],
        timeout=60,
    )
    if check.ok:
        logger.debug("kubeadm %s already installed on %s", kubernetes_version, session.config.hostname)
    else:
        repo = f"https://pkgs.k8s.io/core:/stable:/v{kubernetes_version}/deb/"
        script = textwrap.dedent(
            f"""\
            #!/usr/bin/env bash
            set -eux
            export DEBIAN_FRONTEND=noninteractive
            mkdir -p -m 755 /etc/apt/keyrings
            curl -fsSL {repo}Release.key | gpg --dearmor --yes -o /etc/apt/keyrings/kubernetes-apt-keyring.gpg
            echo 'deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] {repo} /' > /etc/apt/sources.list.d/kubernetes.list
            apt-mark unhold kubelet kubeadm kubectl || true
            apt-get update -y
            apt-get install -y kubelet kubeadm kubectl
            apt-mark hold kubelet kubeadm kubectl
            """
        )
        await run_remote(sessions, session, remote_script_command(script), timeout=timeout)

    await run_remote(sessions, session, ["sudo", "systemctl", "enable", "--now", "kubelet"])


async def prepare_node(
    sessions: RemoteSessionProvider,
    session: RemoteSession,
    kubernetes_version: str,
    timeout: float = 1800.0,
) -> None:
    """
    Bring one node to the state kubeadm expects. Safe to call repeatedly.

    Raises:
        CommandError: if any step fails on the node.
    """
    host = session.config.hostname
    logger.info("Preparing %s for kubeadm (Kubernetes %s).", host, kubernetes_version)
    await _disable_swap(sessions, session)
    await _load_kernel_modules(sessions, session)
    await _configure_sysctl(sessions, session)
    await _install_containerd(sessions, session, timeout)
    await _install_kube_packages(sessions, session, kubernetes_version, timeout)
