"""
vmfleet/utils/state_storage.py

Defines storage classes for the persisted FleetState and the audit trail:
  - LocalStateStorage: a directory holding state.json and audit.jsonl
  - MinioStateStorage: objects in a MinIO/S3 bucket

For a fleet with no stored state, read_state returns None so the caller can
fall back to discovering actual state from the hypervisor.
"""

from __future__ import annotations

import asyncio
import io
import json
import os
import time
import uuid
from abc import ABC, abstractmethod
from typing import List, Optional

import aiofiles
import aiofiles.os
import aiofiles.ospath
from minio import Minio
from minio.error import S3Error

from vmfleet.models.settings import MinioSettings, StorageSettings
from vmfleet.models.state import AuditEntry, FleetState


class StateStorage(ABC):
    """Abstract base class for reading/writing fleet state and audit entries."""

    def __init__(self, cluster_name: str) -> None:
        self.cluster_name = cluster_name

    @abstractmethod
    async def read_state(self) -> Optional[FleetState]:
        """Return the stored FleetState, or None if nothing was stored yet."""

    @abstractmethod
    async def write_state(self, state: FleetState) -> None:
        """Replace the stored FleetState."""

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None:
        """Append one entry to the audit trail. Entries are never rewritten."""

    @abstractmethod
    async def read_audit(self) -> List[AuditEntry]:
        """All audit entries, oldest first."""


class LocalStateStorage(StateStorage):
    """
    Stores state under '<state_dir>/<cluster_name>/state.json' (atomically
    replaced) and the audit trail in 'audit.jsonl' next to it.
    """

    def __init__(self, cluster_name: str, state_dir: str) -> None:
        super().__init__(cluster_name)
        self.base_dir = os.path.join(state_dir, cluster_name)

    @property
    def state_path(self) -> str:
        return os.path.join(self.base_dir, "state.json")

    @property
    def audit_path(self) -> str:
        return os.path.join(self.base_dir, "audit.jsonl")

    async def _ensure_dir(self) -> None:
        await aiofiles.os.makedirs(self.base_dir, exist_ok=True)

    async def read_state(self) -> Optional[FleetState]:
        if not await aiofiles.ospath.exists(self.state_path):
            return None
        async with aiofiles.open(self.state_path, "r", encoding="utf-8") as fst:
            return FleetState.model_validate_json(await fst.read())

    async def write_state(self, state: FleetState) -> None:
        await self._ensure_dir()
        tmp_path = f"{self.state_path}.{uuid.uuid4().hex}.tmp"
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as ftmp:
            await ftmp.write(state.model_dump_json(indent=2))
        await aiofiles.os.replace(tmp_path, self.state_path)

    async def append_audit(self, entry: AuditEntry) -> None:
        await self._ensure_dir()
        async with aiofiles.open(self.audit_path, "a", encoding="utf-8") as fau:
            await fau.write(entry.model_dump_json() + "\n")

    async def read_audit(self) -> List[AuditEntry]:
        if not await aiofiles.ospath.exists(self.audit_path):
            return []
        async with aiofiles.open(self.audit_path, "r", encoding="utf-8") as fau:
            lines = await fau.readlines()
        return [AuditEntry.model_validate_json(ln) for ln in lines if ln.strip()]


class MinioStateStorage(StateStorage):
    """
    Stores state in '<prefix>/<cluster_name>/state.json' and each audit entry
    as its own object under '<prefix>/<cluster_name>/audit/', named so that
    lexical order is chronological. Blocking client calls run in a thread.
    """

    def __init__(
        self,
        cluster_name: str,
        minio_client: Minio,
        bucket_name: str,
        prefix: str = "fleets",
    ) -> None:
        super().__init__(cluster_name)
        self.client = minio_client
        self.bucket_name = bucket_name
        self.base_key = f"{prefix.strip('/')}/{cluster_name}"

    def _state_key(self) -> str:
        return f"{self.base_key}/state.json"

    def _audit_prefix(self) -> str:
        return f"{self.base_key}/audit/"

    def _get_text(self, key: str) -> Optional[str]:
        response = None
        try:
            response = self.client.get_object(self.bucket_name, key)
            return response.read().decode("utf-8")
        except S3Error as ex:
            if ex.code in ("NoSuchKey", "NoSuchObject", "NoSuchBucket"):
                return None
            raise
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def _put_text(self, key: str, text: str, content_type: str) -> None:
        data = text.encode("utf-8")
        if not self.client.bucket_exists(self.bucket_name):
            self.client.make_bucket(self.bucket_name)
        self.client.put_object(
            bucket_name=self.bucket_name,
            object_name=key,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    async def read_state(self) -> Optional[FleetState]:
        text = await asyncio.to_thread(self._get_text, self._state_key())
        return FleetState.model_validate_json(text) if text is not None else None

    async def write_state(self, state: FleetState) -> None:
        await asyncio.to_thread(
            self._put_text,
            self._state_key(),
            state.model_dump_json(indent=2),
            "application/json",
        )

    async def append_audit(self, entry: AuditEntry) -> None:
        key = f"{self._audit_prefix()}{int(entry.timestamp * 1e6):020d}-{uuid.uuid4().hex[:8]}.json"
        await asyncio.to_thread(
            self._put_text, key, entry.model_dump_json(), "application/json"
        )

    async def read_audit(self) -> List[AuditEntry]:
        def do_list_and_read() -> List[str]:
            try:
                objects = self.client.list_objects(
                    self.bucket_name, prefix=self._audit_prefix(), recursive=True
                )
                keys = sorted(obj.object_name for obj in objects)
            except S3Error as ex:
                if ex.code == "NoSuchBucket":
                    return []
                raise
            return [text for text in (self._get_text(k) for k in keys) if text]

        texts = await asyncio.to_thread(do_list_and_read)
        return [AuditEntry.model_validate_json(t) for t in texts]


def build_minio_client(settings: MinioSettings) -> Minio:
    return Minio(
        settings.endpoint,
        access_key=settings.access_key,
        secret_key=settings.secret_key,
        secure=settings.secure,
    )


def make_state_storage(settings: StorageSettings, cluster_name: str) -> StateStorage:
    if settings.backend == "minio":
        assert settings.minio is not None
        return MinioStateStorage(
            cluster_name=cluster_name,
            minio_client=build_minio_client(settings.minio),
            bucket_name=settings.minio.bucket,
            prefix=settings.minio.prefix,
        )
    return LocalStateStorage(cluster_name=cluster_name, state_dir=settings.state_dir)


class AuditLog:
    """Append-only audit trail of create/destroy/bootstrap actions."""

    def __init__(self, storage: StateStorage) -> None:
        self.storage = storage
        self._lock = asyncio.Lock()

    async def record(
        self,
        action: str,
        outcome: str,
        *,
        node_id: Optional[str] = None,
        resources: Optional[dict] = None,
        detail: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            timestamp=time.time(),
            action=action,
            node_id=node_id,
            outcome=outcome,
            resources=json.loads(json.dumps(resources or {}, default=str)),
            detail=detail,
        )
        async with self._lock:
            await self.storage.append_audit(entry)
        return entry

    async def entries(self) -> List[AuditEntry]:
        return await self.storage.read_audit()
