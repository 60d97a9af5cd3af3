"""Session artifact storage.

Artifacts are JSON documents addressed by ``(session_id, name)``. A write
replaces the whole document in one step, so readers see either the previous
version or the new one. Visibility of a write to other readers may lag, which
is what ``waiter.DependencyWaiter`` compensates for.
"""

import asyncio
import json
import logging
from typing import Any, Optional, Protocol, Sequence

from supabase import Client, create_client

from .errors import StoreFailure

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Artifact names
# ---------------------------------------------------------------------------
METADATA = "metadata"
ANALYSIS = "analysis"
ORIGIN = "origin"
DETAILED = "detailed"
VALUE = "value"
PREMIUM_DATA = "premium-data"
REPORT = "report"


def artifact_path(session_id: str, name: str) -> str:
    return f"sessions/{session_id}/{name}.json"


_IMAGE_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}


def image_path(session_id: str, mime_type: str) -> str:
    ext = _IMAGE_EXTENSIONS.get(mime_type, "jpg")
    return f"sessions/{session_id}/UserUploadedImage.{ext}"


def _encode(document: dict) -> bytes:
    try:
        return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise StoreFailure(f"Artifact is not JSON-serializable: {e}") from e


class ArtifactStore(Protocol):
    async def exists(self, session_id: str, name: str) -> bool: ...

    async def read(self, session_id: str, name: str) -> dict: ...

    async def write(self, session_id: str, name: str, document: dict) -> None: ...

    async def list_existing(self, session_id: str, names: Sequence[str]) -> list[bool]: ...

    async def save_image(self, session_id: str, data: bytes, mime_type: str) -> str: ...


# ═══════════════════════════════════════════════════════════════════════════
# IN-MEMORY (tests, local development)
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryArtifactStore:
    """Keeps serialized documents in a dict; reads always return a fresh copy."""

    def __init__(self):
        self._docs: dict[str, bytes] = {}
        self._images: dict[str, bytes] = {}

    def seed(self, session_id: str, name: str, document: dict) -> None:
        """Synchronous write, for fixtures."""
        self._docs[artifact_path(session_id, name)] = _encode(document)

    def delete(self, session_id: str, name: str) -> None:
        self._docs.pop(artifact_path(session_id, name), None)

    async def exists(self, session_id: str, name: str) -> bool:
        return artifact_path(session_id, name) in self._docs

    async def read(self, session_id: str, name: str) -> dict:
        raw = self._docs.get(artifact_path(session_id, name))
        if raw is None:
            raise StoreFailure(f"Artifact '{name}' not found for session {session_id}")
        return json.loads(raw)

    async def write(self, session_id: str, name: str, document: dict) -> None:
        self._docs[artifact_path(session_id, name)] = _encode(document)

    async def list_existing(self, session_id: str, names: Sequence[str]) -> list[bool]:
        return [artifact_path(session_id, n) in self._docs for n in names]

    async def save_image(self, session_id: str, data: bytes, mime_type: str) -> str:
        path = image_path(session_id, mime_type)
        self._images[path] = data
        return f"memory://{path}"


# ═══════════════════════════════════════════════════════════════════════════
# SUPABASE STORAGE
# ═══════════════════════════════════════════════════════════════════════════

_SIGNED_URL_TTL_S = 7 * 24 * 3600


class SupabaseArtifactStore:
    """Artifacts as JSON objects in a Supabase Storage bucket.

    The storage client is synchronous, so every call runs in a worker thread.
    Writes use ``upsert`` which replaces the object atomically.
    """

    def __init__(self, client: Client, bucket: str):
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings) -> "SupabaseArtifactStore":
        client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        return cls(client, settings.storage_bucket)

    def _files(self):
        return self._client.storage.from_(self._bucket)

    def _list_names(self, session_id: str) -> set[str]:
        entries = self._files().list(f"sessions/{session_id}") or []
        return {e.get("name", "") for e in entries}

    async def exists(self, session_id: str, name: str) -> bool:
        return (await self.list_existing(session_id, [name]))[0]

    async def list_existing(self, session_id: str, names: Sequence[str]) -> list[bool]:
        try:
            present = await asyncio.to_thread(self._list_names, session_id)
        except Exception as e:
            raise StoreFailure(f"Listing session {session_id} failed: {e}") from e
        return [f"{n}.json" in present for n in names]

    async def read(self, session_id: str, name: str) -> dict:
        path = artifact_path(session_id, name)
        try:
            raw = await asyncio.to_thread(self._files().download, path)
        except Exception as e:
            raise StoreFailure(f"Reading {path} failed: {e}") from e
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreFailure(f"{path} is not valid JSON: {e}") from e

    async def write(self, session_id: str, name: str, document: dict) -> None:
        path = artifact_path(session_id, name)
        body = _encode(document)
        try:
            await asyncio.to_thread(
                self._files().upload,
                path,
                body,
                {"content-type": "application/json", "cache-control": "no-cache", "upsert": "true"},
            )
        except Exception as e:
            raise StoreFailure(f"Writing {path} failed: {e}") from e
        logger.debug("Wrote %s (%d bytes)", path, len(body))

    async def save_image(self, session_id: str, data: bytes, mime_type: str) -> str:
        path = image_path(session_id, mime_type)
        try:
            await asyncio.to_thread(
                self._files().upload, path, data, {"content-type": mime_type, "upsert": "true"}
            )
            signed = await asyncio.to_thread(
                self._files().create_signed_url, path, _SIGNED_URL_TTL_S
            )
        except Exception as e:
            raise StoreFailure(f"Uploading image for session {session_id} failed: {e}") from e
        return signed.get("signedURL") or signed.get("signedUrl") or ""


async def read_optional(store: ArtifactStore, session_id: str, name: str) -> Optional[dict[str, Any]]:
    """Read an artifact if it exists, else None."""
    if not await store.exists(session_id, name):
        return None
    return await store.read(session_id, name)
