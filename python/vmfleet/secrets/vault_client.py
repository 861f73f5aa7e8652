"""
A small asynchronous Vault client: KV v2 read/write/delete, authenticated
either with a direct token or a Kubernetes service-account login.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

import aiofiles
import aiohttp

from vmfleet.models.validator import validate_type
from vmfleet.models.vault import VaultSettings


class AsyncVaultClient:
    """Asynchronous KV v2 client for the join token store."""

    def __init__(self, settings: VaultSettings) -> None:
        self._vault_addr = settings.vault_addr.rstrip("/")
        self._vault_role_name = settings.vault_role_name
        self._token_path = settings.token_path
        self._verify_ssl = settings.verify_ssl
        self._kv_mount = settings.kv_mount.strip("/")
        self._direct_token = (
            settings.direct_vault_token.get_secret_value()
            if settings.direct_vault_token is not None
            else None
        )

        self._session: Optional[aiohttp.ClientSession] = None
        self._client_token: Optional[str] = None

    async def __aenter__(self) -> AsyncVaultClient:
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _login(self) -> None:
        """Kubernetes service-account login (or direct token if configured).

        Raises:
            RuntimeError: If the login is rejected or no role is configured.
        """
        if self._direct_token is not None:
            self._client_token = self._direct_token
            return

        if not self._vault_role_name:
            raise RuntimeError("Cannot login via K8s: vault_role_name not set.")

        session = await self.ensure_session()
        async with aiofiles.open(self._token_path, "r") as f:
            jwt = (await f.read()).strip()

        url = f"{self._vault_addr}/v1/auth/kubernetes/login"
        payload = {"jwt": jwt, "role": self._vault_role_name}
        async with session.post(url, json=payload, ssl=self._verify_ssl) as resp:
            js = validate_type(await resp.json(), Dict[str, Any])
            if resp.status != 200:
                raise RuntimeError(f"Vault login failed: {resp.status}")

        auth_data = js.get("auth")
        if not isinstance(auth_data, dict) or "client_token" not in auth_data:
            raise RuntimeError("Vault did not return a valid client_token.")
        self._client_token = auth_data["client_token"]

    async def _headers(self) -> Dict[str, str]:
        if self._client_token is None:
            await self._login()
        if not self._client_token:
            raise RuntimeError("Vault token unavailable.")
        return {"X-Vault-Token": self._client_token}

    def _url(self, area: str, path: str) -> str:
        return f"{self._vault_addr}/v1/{self._kv_mount}/{area}/{path.strip('/')}"

    async def read_secret(self, path: str) -> Optional[Dict[str, Any]]:
        """Read the latest version of a KV v2 secret; None if it does not exist."""
        session = await self.ensure_session()
        headers = await self._headers()
        async with session.get(
            self._url("data", path), headers=headers, ssl=self._verify_ssl
        ) as resp:
            if resp.status == 404:
                return None
            if resp.status != 200:
                raise RuntimeError(f"Error reading secret '{path}': {resp.status}")
            data_js = validate_type(await resp.json(), Dict[str, Any])

        sub_data = data_js.get("data", {}).get("data")
        if not isinstance(sub_data, dict):
            raise RuntimeError(f"Vault secret '{path}' has no data.")
        return sub_data

    async def write_secret(self, path: str, data: Dict[str, Any]) -> None:
        """Write a new version of a KV v2 secret."""
        session = await self.ensure_session()
        headers = await self._headers()
        async with session.post(
            self._url("data", path),
            json={"data": data},
            headers=headers,
            ssl=self._verify_ssl,
        ) as resp:
            if resp.status not in (200, 204):
                raise RuntimeError(f"Error writing secret '{path}': {resp.status}")

    async def delete_secret(self, path: str, hard: bool = False) -> None:
        """Soft-delete the latest version, or (hard) remove all versions and metadata."""
        session = await self.ensure_session()
        headers = await self._headers()
        url = self._url("metadata" if hard else "data", path)
        async with session.delete(url, headers=headers, ssl=self._verify_ssl) as resp:
            if resp.status not in (200, 204, 404):
                label = "Hard" if hard else "Soft"
                raise RuntimeError(f"{label} delete of '{path}' failed: {resp.status}")
