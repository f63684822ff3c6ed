from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote


DISPOSITION_INLINE = "inline"
DISPOSITION_ATTACHMENT = "attachment"
DISPOSITIONS = (DISPOSITION_INLINE, DISPOSITION_ATTACHMENT)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class PutResult:
    path: str
    url: str


class StorageDriver(Protocol):
    kind: str

    async def put(self, path: str, data: bytes, content_type: str | None = None) -> PutResult:
        ...

    async def get(self, path: str) -> bytes:
        ...

    async def delete(self, path: str) -> None:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...

    async def presigned_url(
        self,
        path: str,
        ttl_seconds: int,
        *,
        filename: str | None = None,
        disposition: str = DISPOSITION_ATTACHMENT,
    ) -> str:
        ...

    def public_url(self, path: str) -> str:
        ...


def content_disposition(filename: str | None, disposition: str) -> str | None:
    # RFC 6266 header with an ASCII fallback plus RFC 5987 UTF-8 filename.
    if disposition not in DISPOSITIONS:
        raise ValueError(f"disposition must be one of: {', '.join(DISPOSITIONS)}")
    if not filename:
        return disposition if disposition == DISPOSITION_ATTACHMENT else None
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "").replace("\\", "")
    ascii_name = ascii_name or "download"
    return f"{disposition}; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename, safe='')}"


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{quote(path.lstrip('/'), safe='/')}"
