from __future__ import annotations

import asyncio
import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from typing import Any

from tenantbroker.core.errors import StorageOperationError
from tenantbroker.services.storage.drivers.base import StorageDriver
from tenantbroker.services.storage.paths import sanitize_path_segment


logger = logging.getLogger(__name__)

ERROR_REPORT_NAME = "export-errors.json"


@dataclass(frozen=True)
class ExportItem:
    path: str
    name: str
    folder: str = "files"
    item_id: str | None = None


@dataclass
class BulkExportResult:
    archive: bytes
    success_count: int
    failure_count: int
    errors: list[dict[str, Any]] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "errors": self.errors,
        }


def export_items_from_rows(documents: list[dict[str, Any]], entities: list[dict[str, Any]]) -> list[ExportItem]:
    # Group documents under the owning entity's display name, as tenants browse them.
    names = {str(row.get("id")): str(row.get("name") or "Unknown") for row in entities}
    items: list[ExportItem] = []
    for doc in documents:
        path = doc.get("path") or doc.get("storage_path")
        if not path:
            continue
        items.append(
            ExportItem(
                path=str(path),
                name=str(doc.get("original_name") or doc.get("name") or path.rsplit("/", 1)[-1]),
                folder=names.get(str(doc.get("entity_id")), "Unknown"),
                item_id=str(doc["id"]) if doc.get("id") is not None else None,
            )
        )
    return items


def _unique_name(candidate: str, used: set[str]) -> str:
    if candidate not in used:
        used.add(candidate)
        return candidate
    stem, dot, ext = candidate.rpartition(".")
    if not dot or "/" in ext:
        stem, ext = candidate, ""
    counter = 2
    while True:
        renamed = f"{stem} ({counter}).{ext}" if ext else f"{stem} ({counter})"
        if renamed not in used:
            used.add(renamed)
            return renamed
        counter += 1


async def bulk_download(
    driver: StorageDriver,
    items: list[ExportItem],
    *,
    max_parallel: int = 4,
) -> BulkExportResult:
    """Fetch every item into an in-memory ZIP with bounded parallelism.

    Per-item failures are collected as ``{item, error}`` pairs. The export
    only fails outright when nothing could be fetched.
    """
    semaphore = asyncio.Semaphore(max(1, max_parallel))

    async def _fetch(item: ExportItem) -> bytes | Exception:
        async with semaphore:
            try:
                return await driver.get(item.path)
            except Exception as exc:
                logger.warning("bulk_download_item_failed path=%s", item.path, exc_info=exc)
                return exc

    results = await asyncio.gather(*(_fetch(item) for item in items))

    buffer = io.BytesIO()
    errors: list[dict[str, Any]] = []
    success_count = 0
    used: set[str] = set()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as archive:
        for item, result in zip(items, results):
            if isinstance(result, Exception):
                errors.append({"item": item.item_id or item.path, "error": str(result) or result.__class__.__name__})
                continue
            arcname = _unique_name(
                f"{sanitize_path_segment(item.folder, fallback='Unknown')}/{sanitize_path_segment(item.name)}",
                used,
            )
            archive.writestr(arcname, result)
            success_count += 1
        if errors:
            # Entries always live under a folder, so the report name cannot collide.
            archive.writestr(ERROR_REPORT_NAME, json.dumps(errors, indent=2))

    if items and success_count == 0:
        raise StorageOperationError(f"Bulk download failed for all {len(items)} files")
    logger.info("bulk_download_completed total=%s succeeded=%s failed=%s", len(items), success_count, len(errors))
    return BulkExportResult(
        archive=buffer.getvalue(),
        success_count=success_count,
        failure_count=len(errors),
        errors=errors,
    )
