"""
vmfleet/utils/ssh.py

Provides high-level functions for SSH-related operations, leveraging ephemeral
known_hosts and private keys stored in /dev/shm. This includes:
  - ssh_get_server_key: minimal handshake to retrieve server host keys (TOFU).
  - run_ssh_command_result: strict host-key-checking SSH, returning the raw result.
  - classify_ssh_failure: maps ssh's exit code 255 to connection vs. auth errors.
  - remote_write_file_command: builds a command that writes a file remotely
    via hex encoding (no quoting problems).

Freshly provisioned VMs have no known host keys, so the first successful
handshake pins them (trust on first use); every later command runs with
StrictHostKeyChecking=yes against the pinned keys.
"""

from __future__ import annotations

import os
import shlex
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.ospath

from vmfleet.errors import SSHAuthenticationError, SSHConnectionError
from vmfleet.models.ssh import RemoteResult, SSHConfig
from vmfleet.models.validator import validate_type
from vmfleet.utils.async_command_runner import CommandError, run_command_result
from vmfleet.utils.ephemeral_file import ephemeral_manager

SSH_FAILURE_CODE = 255

_AUTH_MARKERS = (
    "permission denied",
    "too many authentication failures",
    "no supported authentication methods",
    "host key verification failed",
)
_TRANSIENT_MARKERS = (
    "connection refused",
    "no route to host",
    "connection timed out",
    "operation timed out",
    "connection reset",
    "connection closed",
    "network is unreachable",
    "could not resolve hostname",
    "kex_exchange_identification",
)


def classify_ssh_failure(stderr: str) -> Optional[Exception]:
    """
    Given stderr from an ssh invocation that exited with 255, return the error
    to raise, or None if stderr does not look like an ssh-level failure.
    Authentication problems are never transient.
    """
    lower = stderr.lower()
    if any(marker in lower for marker in _AUTH_MARKERS):
        return SSHAuthenticationError(
            "SSH authentication failed; check the configured key pair and user."
        )
    if any(marker in lower for marker in _TRANSIENT_MARKERS):
        first_line = stderr.strip().splitlines()[0] if stderr.strip() else ""
        return SSHConnectionError(f"SSH connection failed: {first_line}")
    return None


def _ssh_base_args(
    port: int,
    pk_path: str,
    kh_path: str,
    strict: str,
    connect_timeout: int,
) -> List[str]:
    return [
        "ssh",
        "-p",
        str(port),
        "-i",
        pk_path,
        "-o",
        "BatchMode=yes",
        "-o",
        "IdentitiesOnly=yes",
        "-o",
        f"StrictHostKeyChecking={strict}",
        "-o",
        f"UserKnownHostsFile={kh_path}",
        "-o",
        "GlobalKnownHostsFile=/dev/null",
        "-o",
        f"ConnectTimeout={connect_timeout}",
    ]


@asynccontextmanager
async def _ssh_files(
    private_key: str, host_keys: Optional[List[str]]
) -> AsyncGenerator[Tuple[str, str], None]:
    """Materialize the private key and known_hosts in an ephemeral directory."""
    async with ephemeral_manager(
        file_names=["ssh_known_hosts", "ssh_idkey"], prefix="vmfleet-ssh-"
    ) as paths_union:
        paths = validate_type(paths_union, Dict[str, str])
        kh_path, pk_path = paths["ssh_known_hosts"], paths["ssh_idkey"]

        async with aiofiles.open(kh_path, "w", encoding="utf-8") as fkh:
            for line in host_keys or []:
                await fkh.write(line + "\n")

        async with aiofiles.open(pk_path, "wb") as fpk:
            await fpk.write(private_key.encode("utf-8"))
        os.chmod(pk_path, 0o600)

        yield kh_path, pk_path


async def ssh_get_server_key(
    cfg: SSHConfig,
    *,
    connect_timeout: int = 10,
) -> List[str]:
    """
    Perform a minimal SSH handshake with StrictHostKeyChecking=accept-new
    to authenticate and retrieve the server's host key lines (TOFU).

    Returns:
      A list of known_hosts lines for the server.

    Raises:
      SSHAuthenticationError: if the key is rejected.
      SSHConnectionError: if the host is not reachable yet.
      CommandError: for any other failure.
    """
    async with _ssh_files(cfg.private_key, None) as (kh_path, pk_path):
        ssh_cmd = _ssh_base_args(
            cfg.port, pk_path, kh_path, "accept-new", connect_timeout
        ) + [f"{cfg.user}@{cfg.hostname}", "exit", "0"]
        result = await run_command_result(ssh_cmd, timeout=connect_timeout + 15)

        if result.return_code != 0:
            classified = classify_ssh_failure(result.stderr)
            if classified is not None:
                raise classified
            raise CommandError(
                f"SSH handshake failed with return code {result.return_code}.",
                result.return_code,
            )

        lines: List[str] = []
        if await aiofiles.ospath.exists(kh_path):
            async with aiofiles.open(kh_path, "r", encoding="utf-8") as fkh:
                content = await fkh.readlines()
                lines = [ln.strip() for ln in content if ln.strip()]

        if not lines:
            raise CommandError(
                "ssh_get_server_key found no lines; server key not retrieved."
            )
        return lines


async def run_ssh_command_result(
    ssh_config: SSHConfig,
    remote_command: List[str],
    *,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    input_data: Optional[bytes] = None,
    connect_timeout: int = 10,
) -> RemoteResult:
    """
    Run an SSH command in strict host-key-checking mode and return the remote
    (exit_code, stdout, stderr). Exit code 255 is classified into
    SSHAuthenticationError / SSHConnectionError when stderr says so.

    Raises:
      CommandError: if host_keys are missing or ssh could not be run.
    """
    if not ssh_config.host_keys:
        raise CommandError("run_ssh_command_result requires non-empty host_keys.")

    async with _ssh_files(ssh_config.private_key, ssh_config.host_keys) as (
        kh_path,
        pk_path,
    ):
        ssh_cmd = _ssh_base_args(
            ssh_config.port, pk_path, kh_path, "yes", connect_timeout
        ) + [f"{ssh_config.user}@{ssh_config.hostname}"]
        if env:
            remote_command = ["env"] + [f"{k}={v}" for k, v in env.items()] + remote_command
        ssh_cmd.append(" ".join(shlex.quote(x) for x in remote_command))

        result = await run_command_result(
            ssh_cmd, timeout=timeout, input_data=input_data
        )

    if result.return_code == SSH_FAILURE_CODE:
        classified = classify_ssh_failure(result.stderr)
        if classified is not None:
            raise classified

    return RemoteResult(
        exit_code=result.return_code, stdout=result.stdout, stderr=result.stderr
    )


def remote_write_file_command(content: str, path: str, mode: str = "0644") -> List[str]:
    """
    Build a command that writes `content` to `path` on the remote host with sudo.
    The payload is hex-encoded so no shell quoting of the content is needed.
    """
    enc = content.encode("utf-8").hex()
    quoted = shlex.quote(path)
    script = (
        f"echo '{enc}' | xxd -r -p | sudo tee {quoted} >/dev/null"
        f" && sudo chmod {mode} {quoted}"
    )
    return ["bash", "-c", script]


def remote_script_command(script: str) -> List[str]:
    """Build a command that runs a multi-line bash script with sudo."""
    enc = script.encode("utf-8").hex()
    return ["bash", "-c", f"echo '{enc}' | xxd -r -p | sudo bash -s"]
