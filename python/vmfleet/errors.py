"""
vmfleet/errors.py

Error taxonomy for the orchestrator. Every FleetError carries the CLI exit
code used when it ends a run, and, where relevant, the node or action it
concerns.
"""

from __future__ import annotations

from typing import Optional

EXIT_OK = 0
EXIT_GENERIC = 1


class FleetError(Exception):
    """Base class for orchestrator failures."""

    exit_code: int = EXIT_GENERIC


class InvalidSpec(FleetError):
    """The desired state is unusable (e.g. zero control-plane nodes)."""

    exit_code = 3


class ProvisionError(FleetError):
    """A hypervisor-level failure while creating or destroying a node."""

    exit_code = 4

    def __init__(self, message: str, node_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.node_id = node_id


class ReadinessError(FleetError):
    """A node did not become Ready."""

    exit_code = 5

    def __init__(self, message: str, node_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.node_id = node_id


class ReadinessTimeoutError(ReadinessError, TimeoutError):
    """The readiness deadline elapsed before the node became Ready."""


class SSHConnectionError(FleetError):
    """Transient failure to reach a host over ssh (refused, unreachable, reset)."""


class SSHAuthenticationError(FleetError):
    """The host rejected our key. Treated as fatal misconfiguration."""


class BootstrapError(FleetError):
    """Control-plane initialization or add-on deployment failed."""

    exit_code = 6


class JoinError(FleetError):
    """A single worker could not join the cluster."""

    exit_code = 7

    def __init__(self, message: str, node_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.node_id = node_id
