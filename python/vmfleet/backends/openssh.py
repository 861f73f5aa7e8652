"""
vmfleet/backends/openssh.py

RemoteSessionProvider backed by the local OpenSSH client. `connect` performs
the trust-on-first-use handshake and returns a session with the host keys
pinned; `exec` then runs commands with strict host-key checking.
"""

from __future__ import annotations

from typing import List, Optional

from vmfleet.backends.base import RemoteSession, RemoteSessionProvider
from vmfleet.models.ssh import RemoteResult, SSHConfig
from vmfleet.utils.ssh import run_ssh_command_result, ssh_get_server_key


class OpenSSHSessionProvider(RemoteSessionProvider):
    def __init__(self, port: int = 22) -> None:
        self.port = port

    async def connect(
        self, host: str, user: str, private_key: str, timeout: float
    ) -> RemoteSession:
        cfg = SSHConfig(user=user, hostname=host, port=self.port, private_key=private_key)
        host_keys = await ssh_get_server_key(cfg, connect_timeout=max(int(timeout), 1))
        return RemoteSession(config=cfg.model_copy(update={"host_keys": host_keys}))

    async def exec(
        self,
        session: RemoteSession,
        command: List[str],
        *,
        timeout: Optional[float] = None,
        input_data: Optional[bytes] = None,
    ) -> RemoteResult:
        return await run_ssh_command_result(
            session.config, command, timeout=timeout, input_data=input_data
        )
