"""
Import the upstream MDM server's device inventory into local state.

Idempotent: importing the same inventory twice leaves one row per UDID.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db_utils import find_or_create_device
from mdm_client import MDMClient
from observability import structured_logger, metrics
from schemas import DeviceFromMDM


@dataclass
class ImportSummary:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


def device_fields(record: DeviceFromMDM) -> dict:
    """
    Column values for an upstream record.

    A device the server already reports as enrolled has completed the
    enrollment handshake, so its milestone flags are raised together.
    """
    fields = {
        "serial_number": record.serial_number,
        "active": record.enrollment_status,
    }
    if record.enrollment_status:
        fields["authenticate_received"] = True
        fields["token_update_received"] = True
        fields["initial_tasks_run"] = True
    return fields


def import_devices(db: Session, records: list[DeviceFromMDM]) -> ImportSummary:
    summary = ImportSummary()

    for record in records:
        if not record.udid:
            summary.skipped += 1
            continue

        try:
            result = find_or_create_device(db, record.udid, **device_fields(record))
        except SQLAlchemyError as e:
            db.rollback()
            summary.failed += 1
            structured_logger.log_event(
                "import.device.failed",
                level="ERROR",
                device_udid=record.udid,
                error=str(e),
                error_type=type(e).__name__
            )
            continue

        if result["created"]:
            summary.created += 1
        else:
            summary.updated += 1

    return summary


async def fetch_devices_from_mdm(client: MDMClient, session_factory: Callable[[], Session]) -> ImportSummary:
    """
    Pull the full inventory and upsert each device.

    Raises:
        UpstreamError: the inventory could not be fetched or decoded
    """
    start_time = datetime.now(timezone.utc)
    records = await client.fetch_devices()

    db = session_factory()
    try:
        summary = import_devices(db, records)
    finally:
        db.close()

    elapsed_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
    structured_logger.log_event(
        "import.completed",
        received=len(records),
        created=summary.created,
        updated=summary.updated,
        skipped=summary.skipped,
        failed=summary.failed,
        elapsed_ms=round(elapsed_ms, 2)
    )
    metrics.inc_counter("import_devices_total", {"result": "created"}, summary.created)
    metrics.inc_counter("import_devices_total", {"result": "updated"}, summary.updated)
    metrics.observe_histogram("import_duration_ms", elapsed_ms)

    return summary
