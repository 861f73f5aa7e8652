"""
vmfleet/models/ssh.py

SSH models shared by the readiness prober and the bootstrap coordinator.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class SSHConfig(BaseModel):
    """
    SSH configuration for connecting to a remote host.
    If host_keys is empty => no known keys yet => a trust-on-first-use handshake
    is done by the session provider when connecting.
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: str = Field(repr=False)
    host_keys: Optional[List[str]] = None

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key must be a non-empty string")
        if not val.endswith("\n"):
            val += "\n"
        return val


class RemoteResult(BaseModel):
    """Result of one remote command: (exit_code, stdout, stderr)."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
