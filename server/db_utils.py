"""
Persistence helpers shared by the reconciliation passes.

All writers resolve conflicts through the device UDID primary key: creation is
find-or-create, updates are last-writer-wins.

record_profile_list is called by the ProfileList acknowledgement webhook in
the device-facing API layer; the passes here only read the snapshots.
"""
from datetime import datetime, timezone
from sqlalchemy.orm import Session
from sqlalchemy import select, delete, update
from sqlalchemy.exc import IntegrityError
from typing import Iterable, List
import logging

from certificates import fingerprint_der, normalize_fingerprint
from models import (
    Certificate,
    Command,
    CommandStatus,
    Device,
    PayloadContent,
    ProfileList,
)

logger = logging.getLogger(__name__)

# Enrollment handshake milestones. Writers may raise these, never clear them.
HANDSHAKE_FLAGS = ("authenticate_received", "token_update_received", "initial_tasks_run")


def log_db_operation(event: str, entity: str, keys: dict, latency_ms: float):
    logger.info(
        f"db_operation event={event} entity={entity} keys={keys} latency_ms={latency_ms}"
    )


def _elapsed_ms(start: datetime) -> float:
    return round((datetime.now(timezone.utc) - start).total_seconds() * 1000, 2)


def _apply_device_fields(device: Device, fields: dict) -> None:
    for name, value in fields.items():
        if name in HANDSHAKE_FLAGS and not value:
            continue
        setattr(device, name, value)


def find_or_create_device(db: Session, udid: str, **fields) -> dict:
    """
    Upsert a device by UDID.

    Handshake flags passed as False are ignored so an import can never
    roll a device back to an earlier enrollment stage.

    Args:
        db: Database session
        udid: Device UDID (primary key)
        **fields: Device column values to set

    Returns:
        dict with 'created' (bool) and 'device' keys
    """
    start = datetime.now(timezone.utc)

    existing = db.get(Device, udid)
    if existing is None:
        device = Device(ud_id=udid)
        _apply_device_fields(device, fields)
        db.add(device)
        try:
            db.commit()
        except IntegrityError:
            # Another pass created the row between our read and insert
            db.rollback()
            existing = db.get(Device, udid)
            if existing is None:
                raise
        else:
            db.refresh(device)
            log_db_operation('create', 'devices', {'ud_id': udid}, _elapsed_ms(start))
            return {'created': True, 'device': device}

    _apply_device_fields(existing, fields)
    db.commit()
    db.refresh(existing)
    log_db_operation('update', 'devices', {'ud_id': udid}, _elapsed_ms(start))
    return {'created': False, 'device': existing}


def list_devices(db: Session) -> List[Device]:
    return list(db.scalars(select(Device).order_by(Device.ud_id)))


def devices_awaiting_configuration(db: Session) -> List[Device]:
    return list(db.scalars(
        select(Device).where(Device.awaiting_configuration.is_(True)).order_by(Device.ud_id)
    ))


def mark_device_configured(db: Session, udid: str) -> bool:
    """
    Clear awaiting_configuration and record that the initial tasks ran.

    Returns:
        True only for the call that performed the transition.
    """
    start = datetime.now(timezone.utc)
    result = db.execute(
        update(Device)
        .where(Device.ud_id == udid, Device.awaiting_configuration.is_(True))
        .values(awaiting_configuration=False, initial_tasks_run=True)
    )
    db.commit()
    log_db_operation('configured', 'devices', {'ud_id': udid}, _elapsed_ms(start))
    return result.rowcount == 1


def distinct_udids_with_command_status(db: Session, status: str = CommandStatus.NOT_NOW) -> List[str]:
    """Distinct device UDIDs owning at least one command in the given status."""
    rows = db.execute(
        select(Command.device_ud_id)
        .where(Command.status == status)
        .distinct()
        .order_by(Command.device_ud_id)
    )
    return [row[0] for row in rows]


def delete_orphaned_certificates(db: Session) -> int:
    start = datetime.now(timezone.utc)
    result = db.execute(
        delete(Certificate).where(Certificate.device_ud_id.is_(None))
    )
    db.commit()
    log_db_operation('cleanup', 'certificates', {'device_ud_id': None}, _elapsed_ms(start))
    return result.rowcount or 0


def record_command(
    db: Session,
    udid: str,
    request_type: str,
    command_uuid: str,
    status: str = CommandStatus.QUEUED
) -> Command:
    start = datetime.now(timezone.utc)
    command = db.get(Command, command_uuid)
    if command is None:
        command = Command(command_uuid=command_uuid, device_ud_id=udid, request_type=request_type)
        db.add(command)
    command.status = status
    db.commit()
    log_db_operation('create', 'commands',
                     {'command_uuid': command_uuid, 'ud_id': udid}, _elapsed_ms(start))
    return command


def _signer_fingerprints(entry: dict) -> List[str]:
    fingerprints = []
    for der in entry.get("SignerCertificates") or []:
        fingerprints.append(fingerprint_der(der))
    for value in entry.get("SignerFingerprints") or []:
        fingerprints.append(normalize_fingerprint(value))
    return fingerprints


def record_profile_list(db: Session, udid: str, entries: Iterable[dict]) -> List[ProfileList]:
    """
    Replace the installed-profile snapshot for a device.

    Args:
        db: Database session
        udid: Reporting device
        entries: ProfileList response items, keyed the way the device reports
            them (PayloadUUID, PayloadIdentifier, PayloadContent,
            SignerCertificates as DER bytes)
    """
    start = datetime.now(timezone.utc)

    for existing in db.scalars(select(ProfileList).where(ProfileList.device_ud_id == udid)):
        db.delete(existing)

    stored = []
    for entry in entries:
        profile_list = ProfileList(
            device_ud_id=udid,
            payload_uuid=entry.get("PayloadUUID", ""),
            payload_identifier=entry.get("PayloadIdentifier", ""),
            payload_display_name=entry.get("PayloadDisplayName"),
            signer_fingerprints=_signer_fingerprints(entry),
        )
        for content in entry.get("PayloadContent") or []:
            profile_list.payload_content.append(PayloadContent(
                payload_type=content.get("PayloadType", ""),
                payload_uuid=content.get("PayloadUUID"),
                payload_identifier=content.get("PayloadIdentifier"),
            ))
        db.add(profile_list)
        stored.append(profile_list)

    db.commit()
    log_db_operation('replace', 'profile_lists',
                     {'ud_id': udid, 'count': len(stored)}, _elapsed_ms(start))
    return stored


def profile_lists_for_device(db: Session, udid: str) -> List[ProfileList]:
    return list(db.scalars(
        select(ProfileList).where(ProfileList.device_ud_id == udid).order_by(ProfileList.id)
    ))


def devices_with_profile_lists(db: Session) -> List[Device]:
    udids = select(ProfileList.device_ud_id).distinct()
    return list(db.scalars(
        select(Device).where(Device.ud_id.in_(udids)).order_by(Device.ud_id)
    ))
