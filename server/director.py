"""
Director service: the reconciliation passes and the dependencies they share.

Constructed once at startup and handed to the scheduler.
"""
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from certificates import SigningCertificate, load_signing_certificate
from config import Config
from db_utils import delete_orphaned_certificates, devices_awaiting_configuration, mark_device_configured, record_command
from device_import import ImportSummary, fetch_devices_from_mdm
from enrollment_profile import EnrollmentProfileInstaller, SigningProfilePusher
from errors import DirectorError, UpstreamError
from mdm_client import MDMClient
from models import Device
from observability import structured_logger, metrics
from profile_verification import VerificationSummary, verify_enrollment_profiles
from push_dispatcher import PushDispatcher, PushSummary
from schemas import CommandPayload

# Queued on every device that finishes enrollment, before DeviceConfigured
INITIAL_INFORMATION_REQUESTS = ("DeviceInformation", "ProfileList", "SecurityInfo")


@dataclass
class CheckinResult:
    push: PushSummary
    orphaned_certificates_deleted: int
    verification: Optional[VerificationSummary] = None


class Director:
    def __init__(
        self,
        config: Config,
        session_factory: Callable[[], Session],
        client: MDMClient
    ):
        self.config = config
        self.session_factory = session_factory
        self.client = client
        self.dispatcher = PushDispatcher(
            client,
            session_factory,
            concurrency=config.push_concurrency,
            not_now_retry_ceiling=config.not_now_retry_ceiling,
        )

        pusher = None
        if config.signing_cert and config.signing_key:
            pusher = SigningProfilePusher(
                client,
                config.signing_cert,
                config.signing_key,
                config.signing_key_password,
                session_factory,
            )
        self.installer = EnrollmentProfileInstaller(
            client,
            config.enrollment_profile,
            pre_signed=config.signed_enrollment_profile,
            pusher=pusher,
            session_factory=session_factory,
        )
        self._signing_cert: Optional[SigningCertificate] = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        session_factory: Callable[[], Session],
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "Director":
        client = MDMClient(
            config.server_url,
            config.api_key,
            timeout=config.http_timeout_seconds,
            transport=transport,
        )
        return cls(config, session_factory, client)

    async def aclose(self) -> None:
        await self.client.aclose()

    def signing_certificate(self) -> Optional[SigningCertificate]:
        if self._signing_cert is None and self.config.signing_cert:
            self._signing_cert = load_signing_certificate(self.config.signing_cert)
        return self._signing_cert

    async def push_device(self, udid: str) -> None:
        await self.dispatcher.push_device(udid)

    async def retry_commands(self) -> PushSummary:
        return await self.dispatcher.push_not_now()

    async def fetch_devices(self) -> ImportSummary:
        return await fetch_devices_from_mdm(self.client, self.session_factory)

    async def request_device_information(self, device: Device) -> None:
        """
        Run the post-enrollment tasks for a device awaiting configuration.

        The awaiting_configuration flag is cleared only after every request
        was queued, so a failed attempt is retried on the next sweep.
        """
        for request_type in INITIAL_INFORMATION_REQUESTS + ("DeviceConfigured",):
            command_uuid = await self.client.send_command(
                CommandPayload(udid=device.ud_id, request_type=request_type)
            )
            if command_uuid:
                db = self.session_factory()
                try:
                    record_command(db, device.ud_id, request_type, command_uuid)
                finally:
                    db.close()

        db = self.session_factory()
        try:
            transitioned = mark_device_configured(db, device.ud_id)
        finally:
            db.close()

        if transitioned:
            metrics.inc_counter("devices_configured_total")
            structured_logger.log_event(
                "initial_tasks.completed",
                device_udid=device.ud_id,
                device_serial=device.serial_number
            )

    async def process_unconfigured_devices(self) -> int:
        """Returns the number of devices whose initial tasks were queued."""
        db = self.session_factory()
        try:
            devices = devices_awaiting_configuration(db)
        finally:
            db.close()

        processed = 0
        for device in devices:
            structured_logger.log_event(
                "initial_tasks.scheduled", level="DEBUG", device_udid=device.ud_id
            )
            try:
                await self.request_device_information(device)
            except (UpstreamError, SQLAlchemyError) as e:
                structured_logger.log_event(
                    "initial_tasks.failed",
                    level="ERROR",
                    device_udid=device.ud_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                continue
            processed += 1
        return processed

    async def process_scheduled_checkin(self) -> CheckinResult:
        if self.config.debug:
            structured_logger.log_event("checkin.debug_mode", level="DEBUG")

        push = await self.dispatcher.push_all()

        db = self.session_factory()
        try:
            deleted = delete_orphaned_certificates(db)
        except SQLAlchemyError as e:
            db.rollback()
            raise DirectorError("cleanup_null_certificates", str(e)) from e
        finally:
            db.close()

        if deleted:
            structured_logger.log_event("checkin.certificates.purged", deleted=deleted)

        result = CheckinResult(push=push, orphaned_certificates_deleted=deleted)

        if self.config.sign:
            result.verification = await verify_enrollment_profiles(
                self.session_factory,
                self.signing_certificate(),
                self.installer,
                sign_enabled=True,
            )

        return result
