# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Archive collaborator writing messages to genro-storage volumes.

Messages are stored as ``<volume>:<prefix>/<domain>/<user>/<stamp>_<hex>.eml``
with the metadata in a ``.meta.json`` sidecar next to each message. Any
backend genro-storage supports (local filesystem, S3, GCS, Azure Blob, ...)
can host the archive, selected by the volume configuration.

Example:
    Archiving to a local directory::

        from genro_storage import AsyncStorageManager

        storage = AsyncStorageManager()
        storage.configure([
            {"name": "archive", "type": "local", "path": "/var/mail-archive"}
        ])

        archive = StorageArchive(storage, volume="archive")
        await archive.ensure_container()
        await archive.put("example.com/alice/20250101120000_ab12.eml", raw, {"Subject": "Hi"})
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Optional

from .logger import get_logger

if TYPE_CHECKING:
    from genro_storage import AsyncStorageManager as AsyncStorageManagerType

DEFAULT_CONTAINER = "email-messages"
METADATA_SUFFIX = ".meta.json"


def sanitize_metadata_value(value: object) -> str:
    """Reduce a metadata value to printable ASCII.

    Whitespace and control characters become a single space; any other
    character outside ``0x20-0x7E`` becomes ``?``.
    """
    text = "" if value is None else str(value)
    out = []
    for ch in text:
        code = ord(ch)
        if 0x20 <= code <= 0x7E:
            out.append(ch)
        elif ch.isspace() or code < 0x20 or code == 0x7F:
            out.append(" ")
        else:
            out.append("?")
    return " ".join("".join(out).split())


def sanitize_metadata(metadata: Dict[str, object]) -> Dict[str, str]:
    return {sanitize_metadata_value(k): sanitize_metadata_value(v) for k, v in metadata.items()}


def _path_segment(value: str) -> str:
    segment = sanitize_metadata_value(value).replace("/", "_").replace("\\", "_").strip()
    if segment in {"", ".", ".."}:
        return "_"
    return segment


def archive_path(domain: str, user: str, when: Optional[datetime] = None, unique: Optional[str] = None) -> str:
    """Build ``{domain}/{user}/{yyyyMMddHHmmss}_{hex128}.eml``."""
    when = (when or datetime.now(timezone.utc)).astimezone(timezone.utc)
    unique = unique or uuid.uuid4().hex
    return f"{_path_segment(domain)}/{_path_segment(user)}/{when:%Y%m%d%H%M%S}_{unique}.eml"


class StorageArchive:
    """Archive messages on a genro-storage volume.

    Attributes:
        volume: Name of the configured storage volume.
        prefix: Container directory inside the volume.
    """

    def __init__(
        self,
        storage_manager: "AsyncStorageManagerType",
        volume: str = "archive",
        prefix: str = DEFAULT_CONTAINER,
        logger=None,
    ):
        self._storage = storage_manager
        self.volume = volume
        self.prefix = prefix.strip("/")
        self.logger = logger or get_logger("Archive")

    def _location(self, path: str) -> str:
        path = path.lstrip("/")
        if self.prefix:
            path = f"{self.prefix}/{path}"
        return f"{self.volume}:{path}"

    async def ensure_container(self) -> None:
        """Create the container directory if the backend needs one."""
        node = self._storage.node(self._location(""))
        await node.mkdir(parents=True, exist_ok=True)

    async def put(self, path: str, content: bytes, metadata: Optional[Dict[str, object]] = None) -> str:
        """Write ``content`` and its metadata sidecar.

        Returns:
            The ``volume:path`` location of the stored message.

        Raises:
            StorageError: Propagated from genro-storage when the write fails.
        """
        location = self._location(path)
        node = self._storage.node(location)
        await node.write(content, mode="wb")
        if metadata:
            sidecar = self._storage.node(location + METADATA_SUFFIX)
            await sidecar.write(json.dumps(sanitize_metadata(metadata)).encode("ascii"), mode="wb")
        self.logger.debug("Archived %d bytes to %s", len(content), location)
        return location

    async def get(self, path: str) -> bytes:
        node = self._storage.node(self._location(path))
        return await node.read(mode="rb")
