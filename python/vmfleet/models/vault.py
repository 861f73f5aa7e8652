from __future__ import annotations

from typing import Optional
from pydantic import BaseModel, Field, SecretStr
from pydantic.functional_validators import model_validator


class VaultSettings(BaseModel):
    """Connection settings for the Vault-backed join token store (KV v2)."""

    vault_addr: str = Field(default="http://127.0.0.1:8200")
    vault_role_name: Optional[str] = None
    token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    verify_ssl: bool = True
    direct_vault_token: Optional[SecretStr] = None
    kv_mount: str = "secret"

    @model_validator(mode="after")
    def check_auth_method(self) -> VaultSettings:
        """
        Exactly one of vault_role_name (Kubernetes auth) and direct_vault_token.
        """
        if self.vault_role_name and self.direct_vault_token:
            raise ValueError(
                "vault_role_name and direct_vault_token are mutually exclusive."
            )
        if not self.vault_role_name and not self.direct_vault_token:
            raise ValueError(
                "One of vault_role_name or direct_vault_token is required."
            )
        return self
