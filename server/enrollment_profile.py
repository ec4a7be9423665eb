"""
Reinstall the enrollment profile on devices whose installed copy has drifted.

The profile is read from disk on every reinstall so a rotated profile is
picked up without a restart.
"""
from typing import Callable, List, Optional, Protocol
import base64
import plistlib
from xml.parsers.expat import ExpatError

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7
from sqlalchemy.orm import Session

from certificates import load_certificate_object, load_signing_certificate, load_signing_key
from db_utils import record_command
from errors import EnrollmentProfileError, ProfileSigningError, UpstreamError
from mdm_client import MDMClient
from models import Device, DeviceProfile
from observability import structured_logger
from schemas import CommandPayload

INSTALL_PROFILE = "InstallProfile"


def _plist_body(data: bytes) -> bytes:
    """
    Return the property list inside data.

    A signed profile is a CMS envelope with the XML plist embedded verbatim.
    """
    if data.startswith(b"bplist") or data.lstrip().startswith(b"<?xml"):
        return data
    start = data.find(b"<?xml")
    end = data.find(b"</plist>")
    if start == -1 or end == -1:
        return data
    return data[start:end + len(b"</plist>")]


def decode_profile(data: bytes) -> DeviceProfile:
    try:
        content = plistlib.loads(_plist_body(data))
    except (plistlib.InvalidFileException, ValueError, ExpatError) as e:
        raise EnrollmentProfileError("decode_profile", f"failed to unmarshal enrollment profile: {e}") from e

    if not isinstance(content, dict):
        raise EnrollmentProfileError("decode_profile", "enrollment profile is not a dictionary")

    payload_uuid = content.get("PayloadUUID")
    payload_identifier = content.get("PayloadIdentifier")
    if not payload_uuid or not payload_identifier:
        raise EnrollmentProfileError("decode_profile", "enrollment profile is missing PayloadUUID or PayloadIdentifier")

    return DeviceProfile(
        payload_uuid=payload_uuid,
        payload_identifier=payload_identifier,
        mobileconfig_data=data,
    )


def load_enrollment_profile(path: str) -> DeviceProfile:
    if not path:
        raise EnrollmentProfileError("load_enrollment_profile", "no enrollment profile configured")
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise EnrollmentProfileError("load_enrollment_profile", f"failed to read enrollment profile: {e}") from e
    return decode_profile(data)


class ProfilePusher(Protocol):
    async def push_profiles(self, devices: List[Device], profiles: List[DeviceProfile]) -> List[str]:
        ...


class SigningProfilePusher:
    """Signs each profile with the configured identity and queues InstallProfile."""

    def __init__(
        self,
        client: MDMClient,
        cert_path: str,
        key_path: str,
        key_password: Optional[str] = None,
        session_factory: Optional[Callable[[], Session]] = None
    ):
        self.client = client
        self.cert_path = cert_path
        self.key_path = key_path
        self.key_password = key_password
        self.session_factory = session_factory

    def sign(self, data: bytes) -> bytes:
        cert = load_certificate_object(load_signing_certificate(self.cert_path))
        key = load_signing_key(self.key_path, self.key_password)
        try:
            return (
                pkcs7.PKCS7SignatureBuilder()
                .set_data(data)
                .add_signer(cert, key, hashes.SHA256())
                .sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.Binary])
            )
        except (TypeError, ValueError) as e:
            raise ProfileSigningError("sign_profile", str(e)) from e

    async def push_profiles(self, devices: List[Device], profiles: List[DeviceProfile]) -> List[str]:
        command_uuids = []
        for profile in profiles:
            signed = self.sign(profile.mobileconfig_data)
            for device in devices:
                command_uuids.append(
                    await queue_install_profile(self.client, device.ud_id, signed, self.session_factory)
                )
        return command_uuids


async def queue_install_profile(
    client: MDMClient,
    udid: str,
    data: bytes,
    session_factory: Optional[Callable[[], Session]] = None
) -> str:
    payload = CommandPayload(
        udid=udid,
        request_type=INSTALL_PROFILE,
        payload=base64.b64encode(data).decode("ascii"),
    )
    command_uuid = await client.send_command(payload)

    if session_factory is not None and command_uuid:
        db = session_factory()
        try:
            record_command(db, udid, INSTALL_PROFILE, command_uuid)
        finally:
            db.close()

    return command_uuid


class EnrollmentProfileInstaller:
    def __init__(
        self,
        client: MDMClient,
        profile_path: str,
        pre_signed: bool,
        pusher: Optional[ProfilePusher] = None,
        session_factory: Optional[Callable[[], Session]] = None
    ):
        self.client = client
        self.profile_path = profile_path
        self.pre_signed = pre_signed
        self.pusher = pusher
        self.session_factory = session_factory

    async def reinstall(self, device: Device) -> None:
        """
        Push a fresh copy of the enrollment profile to one device.

        Raises:
            EnrollmentProfileError: the profile could not be loaded or queued
        """
        profile = load_enrollment_profile(self.profile_path)

        structured_logger.log_event(
            "enrollment_profile.reinstall",
            device_udid=device.ud_id,
            device_serial=device.serial_number,
            pre_signed=self.pre_signed
        )

        if self.pre_signed:
            try:
                await queue_install_profile(
                    self.client, device.ud_id, profile.mobileconfig_data, self.session_factory
                )
            except UpstreamError as e:
                raise EnrollmentProfileError("reinstall_enrollment_profile", f"failed to push enrollment profile: {e}") from e
            return

        if self.pusher is None:
            raise EnrollmentProfileError("reinstall_enrollment_profile", "profile signing is not configured")

        try:
            await self.pusher.push_profiles([device], [profile])
        except (UpstreamError, ProfileSigningError) as e:
            raise EnrollmentProfileError("reinstall_enrollment_profile", f"failed to push enrollment profile: {e}") from e
