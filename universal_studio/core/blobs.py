"""In-process binary object store handing out short-lived `blob:` handles."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

import structlog

log = structlog.get_logger(__name__)

BLOB_SCHEME = "blob:"


@dataclass(frozen=True)
class Blob:
    data: bytes
    mime_type: str


class BlobStore:
    """Owns generated media bytes until whoever holds the handle releases them."""

    def __init__(self) -> None:
        self._blobs: dict[str, Blob] = {}

    def put(self, data: bytes, mime_type: str) -> str:
        handle = f"{BLOB_SCHEME}{uuid4().hex}"
        self._blobs[handle] = Blob(data=data, mime_type=mime_type)
        log.debug("blob_allocated", handle=handle, mime_type=mime_type, size=len(data))
        return handle

    def get(self, handle: str) -> Blob | None:
        return self._blobs.get(handle)

    def release(self, handle: str) -> bool:
        """Drop a handle. Returns False if it was unknown or already released."""
        if self._blobs.pop(handle, None) is None:
            return False
        log.debug("blob_released", handle=handle)
        return True

    def __contains__(self, handle: object) -> bool:
        return handle in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


def is_blob_handle(value: object) -> bool:
    return isinstance(value, str) and value.startswith(BLOB_SCHEME)
