"""
Enrollment profile signer verification.

A device reports its installed profiles together with the certificates that
signed them. When profile signing is enabled the enrollment profile must be
signed by the currently configured certificate; anything else is drift and the
profile is reinstalled.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from certificates import SigningCertificate
from db_utils import devices_with_profile_lists, profile_lists_for_device
from errors import DirectorError
from models import MDM_PAYLOAD_TYPE, Device, ProfileList
from observability import structured_logger, metrics


@dataclass
class ProfileForVerification:
    payload_uuid: str
    payload_identifier: str
    hashed_payload_uuid: str
    device_ud_id: str
    installed: bool


@dataclass
class VerificationSummary:
    checked: int = 0
    reinstalled: int = 0
    failed: Dict[str, str] = field(default_factory=dict)


class Reinstaller(Protocol):
    async def reinstall(self, device: Device) -> None:
        ...


def validate_profile_in_profile_list(
    profile: ProfileForVerification,
    profile_lists: Sequence[ProfileList],
    signing_cert: Optional[SigningCertificate]
) -> tuple[bool, bool]:
    """
    Compare a desired profile against the device's installed profiles.

    Returns:
        (found, needs_reinstall)
    """
    for installed in profile_lists:
        if installed.payload_identifier != profile.payload_identifier:
            continue

        if not profile.installed:
            return True, False

        if installed.payload_uuid != profile.hashed_payload_uuid:
            return True, True

        if signing_cert is not None:
            if not any(signing_cert.matches(fp) for fp in installed.signer_fingerprints or []):
                return True, True

        return True, False

    return False, profile.installed


def find_enrollment_profile(profile_lists: Sequence[ProfileList]) -> Optional[ProfileList]:
    for profile_list in profile_lists:
        for content in profile_list.payload_content:
            if content.payload_type == MDM_PAYLOAD_TYPE:
                return profile_list
    return None


def enrollment_profile_needs_reinstall(
    device: Device,
    profile_lists: Sequence[ProfileList],
    signing_cert: Optional[SigningCertificate]
) -> bool:
    enrollment = find_enrollment_profile(profile_lists)
    if enrollment is None:
        structured_logger.log_event(
            "verification.enrollment_profile.missing",
            level="WARN",
            device_udid=device.ud_id
        )
        return True

    profile = ProfileForVerification(
        payload_uuid=enrollment.payload_uuid,
        payload_identifier=enrollment.payload_identifier,
        hashed_payload_uuid=enrollment.payload_uuid,
        device_ud_id=device.ud_id,
        installed=True,
    )
    _, needs_reinstall = validate_profile_in_profile_list(profile, profile_lists, signing_cert)
    return needs_reinstall


async def ensure_cert_on_enrollment_profile(
    device: Device,
    profile_lists: Sequence[ProfileList],
    signing_cert: Optional[SigningCertificate],
    reinstaller: Reinstaller,
    sign_enabled: bool = True
) -> bool:
    """
    Reinstall the enrollment profile if its signer no longer matches ours.

    Returns:
        True when a reinstall was requested

    Raises:
        DirectorError: the reinstall failed
    """
    if not sign_enabled:
        return False

    if not enrollment_profile_needs_reinstall(device, profile_lists, signing_cert):
        return False

    structured_logger.log_event(
        "verification.signer_drift",
        level="WARN",
        device_udid=device.ud_id,
        device_serial=device.serial_number,
        expected_fingerprint=signing_cert.fingerprint if signing_cert else None
    )
    await reinstaller.reinstall(device)
    return True


def _record_failure(summary: VerificationSummary, udid: str, operation: str, error: Exception) -> None:
    summary.failed[udid] = str(error)
    metrics.inc_counter("enrollment_reinstalls_total", {"result": "error"})
    structured_logger.log_event(
        "verification.reinstall.failed",
        level="ERROR",
        device_udid=udid,
        operation=operation,
        error=str(error)
    )


async def verify_enrollment_profiles(
    session_factory: Callable[[], Session],
    signing_cert: Optional[SigningCertificate],
    reinstaller: Reinstaller,
    sign_enabled: bool = True
) -> VerificationSummary:
    """Run signer verification for every device that has reported its profiles."""
    summary = VerificationSummary()
    if not sign_enabled:
        return summary

    db = session_factory()
    try:
        devices = devices_with_profile_lists(db)

        for device in devices:
            udid = device.ud_id
            summary.checked += 1
            try:
                reinstalled = await ensure_cert_on_enrollment_profile(
                    device,
                    profile_lists_for_device(db, udid),
                    signing_cert,
                    reinstaller,
                    sign_enabled
                )
            except DirectorError as e:
                _record_failure(summary, udid, e.operation, e)
                continue
            except SQLAlchemyError as e:
                db.rollback()
                _record_failure(summary, udid, "verify_enrollment_profile", e)
                continue

            if reinstalled:
                summary.reinstalled += 1
                metrics.inc_counter("enrollment_reinstalls_total", {"result": "queued"})
    finally:
        db.close()

    return summary
