"""
vmfleet/models/settings.py

Orchestrator configuration, assembled by the CLI from named options.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from vmfleet.models.vault import VaultSettings


class ProbeSettings(BaseModel):
    """Readiness polling. All waits are bounded."""

    interval: float = Field(default=5.0, gt=0)
    node_timeout: float = Field(default=600.0, gt=0)
    fleet_timeout: float = Field(default=900.0, gt=0)
    ssh_connect_timeout: int = Field(default=10, gt=0)
    completion_marker: str = "/var/lib/cloud/instance/boot-finished"


class BootstrapSettings(BaseModel):
    kubernetes_version: str = "1.30"
    pod_network_cidr: str = "10.244.0.0/16"
    pod_network_manifest: str = (
        "https://github.com/flannel-io/flannel/releases/latest/download/kube-flannel.yml"
    )
    api_server_port: int = Field(default=6443, ge=1, le=65535)
    token_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    join_retries: int = Field(default=3, ge=1)
    join_retry_delay: float = Field(default=10.0, ge=0)
    join_retry_backoff: float = Field(default=2.0, ge=1.0)
    node_status_timeout: float = Field(default=600.0, gt=0)
    node_status_interval: float = Field(default=10.0, gt=0)
    command_timeout: float = Field(default=1800.0, gt=0)
    prepare_nodes: bool = True


class MinioSettings(BaseModel):
    endpoint: str
    bucket: str = "vmfleet"
    access_key: str
    secret_key: str = Field(repr=False)
    secure: bool = True
    prefix: str = "fleets"


class StorageSettings(BaseModel):
    backend: Literal["local", "minio"] = "local"
    state_dir: str = ".vmfleet"
    minio: Optional[MinioSettings] = None

    @model_validator(mode="after")
    def check_backend(self) -> StorageSettings:
        if self.backend == "minio" and self.minio is None:
            raise ValueError("minio settings are required for the minio backend.")
        return self


class TokenStoreSettings(BaseModel):
    backend: Literal["file", "vault"] = "file"
    vault: Optional[VaultSettings] = None
    vault_path: str = "vmfleet/join-token"

    @model_validator(mode="after")
    def check_backend(self) -> TokenStoreSettings:
        if self.backend == "vault" and self.vault is None:
            raise ValueError("vault settings are required for the vault token store.")
        return self


class OrchestratorSettings(BaseModel):
    libvirt_uri: str = "qemu:///system"
    storage: StorageSettings = Field(default_factory=StorageSettings)
    tokens: TokenStoreSettings = Field(default_factory=TokenStoreSettings)
    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    bootstrap: BootstrapSettings = Field(default_factory=BootstrapSettings)
    max_parallel_actions: int = Field(default=4, ge=1)
