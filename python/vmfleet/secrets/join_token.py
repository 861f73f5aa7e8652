"""
vmfleet/secrets/join_token.py

Storage for the cluster's ClusterJoinToken between invocations:
  - FileTokenStore: a JSON file readable only by its owner (0600)
  - VaultTokenStore: a Vault KV v2 secret

The token is created once per control-plane initialization and removed when
the fleet is torn down.
"""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from typing import Optional

import aiofiles
import aiofiles.os
import aiofiles.ospath
from pydantic import ValidationError

from vmfleet.models.cluster import ClusterJoinToken
from vmfleet.models.settings import TokenStoreSettings
from vmfleet.secrets.vault_client import AsyncVaultClient


class TokenStore(ABC):
    @abstractmethod
    async def load(self) -> Optional[ClusterJoinToken]:
        """The stored token, or None."""

    @abstractmethod
    async def save(self, token: ClusterJoinToken) -> None:
        """Replace the stored token."""

    @abstractmethod
    async def delete(self) -> None:
        """Remove the stored token; no error if there is none."""

    async def close(self) -> None:
        """Release any connection held by the store."""
        return None


class FileTokenStore(TokenStore):
    def __init__(self, path: str) -> None:
        self.path = path

    async def load(self) -> Optional[ClusterJoinToken]:
        if not await aiofiles.ospath.exists(self.path):
            return None
        async with aiofiles.open(self.path, "r", encoding="utf-8") as ftok:
            raw = await ftok.read()
        try:
            return ClusterJoinToken.model_validate_json(raw)
        except ValidationError as ve:
            raise RuntimeError(f"Stored join token at '{self.path}' is invalid: {ve}") from ve

    async def save(self, token: ClusterJoinToken) -> None:
        await aiofiles.os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.close(fd)
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as ftok:
            await ftok.write(json.dumps(token.to_storable()))
        await aiofiles.os.replace(tmp_path, self.path)

    async def delete(self) -> None:
        if await aiofiles.ospath.exists(self.path):
            await aiofiles.os.remove(self.path)


class VaultTokenStore(TokenStore):
    def __init__(self, vault_client: AsyncVaultClient, vault_path: str) -> None:
        self.vault_client = vault_client
        self.vault_path = vault_path

    async def load(self) -> Optional[ClusterJoinToken]:
        raw = await self.vault_client.read_secret(self.vault_path)
        if raw is None:
            return None
        try:
            return ClusterJoinToken.model_validate(raw)
        except ValidationError as ve:
            raise RuntimeError(
                f"Failed to parse join token from Vault path '{self.vault_path}': {ve}"
            ) from ve

    async def save(self, token: ClusterJoinToken) -> None:
        await self.vault_client.write_secret(self.vault_path, token.to_storable())

    async def delete(self) -> None:
        await self.vault_client.delete_secret(self.vault_path, hard=True)

    async def close(self) -> None:
        await self.vault_client.close()


def make_token_store(
    settings: TokenStoreSettings, cluster_name: str, state_dir: str
) -> TokenStore:
    """Token store for `cluster_name`; file stores live beside the local state."""
    if settings.backend == "vault":
        assert settings.vault is not None
        return VaultTokenStore(
            AsyncVaultClient(settings.vault),
            f"{settings.vault_path.strip('/')}/{cluster_name}",
        )
    return FileTokenStore(os.path.join(state_dir, cluster_name, "join-token.json"))
