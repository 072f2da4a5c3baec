"""Orphaned blob tracking and sweep.

An upload writes the blob first and the metadata record second. When the
second step fails and the compensating blob delete also fails, the blob
id is recorded here. ``sweep_orphans`` is the maintenance pass that
compares blob-store ids to referenced file ids and removes the rest.
"""
import logging
from dataclasses import dataclass, field

from clouddrive.services.file_storage import BlobStore
from clouddrive.services.metadata_store import MetadataStore, Select

logger = logging.getLogger(__name__)


class OrphanLedger:
    """Blob ids known to have no metadata record."""

    def __init__(self):
        self._pending: set[str] = set()

    def record(self, blob_id: str) -> None:
        logger.error("Orphaned blob recorded for reconciliation: %s", blob_id)
        self._pending.add(blob_id)

    def resolve(self, blob_id: str) -> None:
        self._pending.discard(blob_id)

    def pending(self) -> list[str]:
        return sorted(self._pending)

    def __len__(self) -> int:
        return len(self._pending)


@dataclass
class SweepReport:
    scanned: int = 0
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


async def sweep_orphans(
    metadata: MetadataStore,
    blobs: BlobStore,
    bucket: str,
    files_collection: str,
    ledger: OrphanLedger | None = None,
) -> SweepReport:
    """Delete every blob in ``bucket`` that no file record references.

    Best-effort: a failed delete is logged and reported, the sweep continues.
    Run it while no uploads are in flight; a blob whose metadata write has
    not landed yet looks the same as an orphan.
    """
    referenced = {
        doc["id"]
        for doc in await metadata.list_documents(files_collection, [Select(("id",))])
    }
    blob_ids = await blobs.list_ids(bucket)
    report = SweepReport(scanned=len(blob_ids))

    for blob_id in blob_ids:
        if blob_id in referenced:
            if ledger is not None:
                ledger.resolve(blob_id)
            continue
        try:
            await blobs.delete(bucket, blob_id)
        except Exception as e:
            logger.warning("Failed to delete orphaned blob %s: %s", blob_id, e)
            report.failed.append(blob_id)
            continue
        report.deleted.append(blob_id)
        if ledger is not None:
            ledger.resolve(blob_id)

    if report.deleted or report.failed:
        logger.info(
            "Orphan sweep: scanned=%d deleted=%d failed=%d",
            report.scanned, len(report.deleted), len(report.failed),
        )
    return report
