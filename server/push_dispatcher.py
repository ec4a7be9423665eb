"""
Push-wake dispatch for enrolled devices.

A wake only nudges the device to check in and fetch its queued commands;
delivery of any individual command is not confirmed here.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
import asyncio
import time

from sqlalchemy.orm import Session

from db_utils import distinct_udids_with_command_status, list_devices
from errors import UpstreamError
from mdm_client import MDMClient
from models import CommandStatus
from observability import structured_logger, metrics

PUSH_EXPIRATION_SECONDS = 3600


def expiration_window(now: Optional[float] = None) -> int:
    """Unix time until which the MDM server keeps retrying the wake."""
    if now is None:
        now = time.time()
    return int(now) + PUSH_EXPIRATION_SECONDS


@dataclass
class PushSummary:
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: Dict[str, str] = field(default_factory=dict)


class PushDispatcher:
    def __init__(
        self,
        client: MDMClient,
        session_factory: Callable[[], Session],
        concurrency: int = 50,
        not_now_retry_ceiling: int = 0,
        clock: Callable[[], float] = time.time
    ):
        self.client = client
        self.session_factory = session_factory
        self.concurrency = concurrency
        self.not_now_retry_ceiling = not_now_retry_ceiling
        self.clock = clock
        # Consecutive NotNow sweeps per UDID, only consulted when a ceiling is set
        self._not_now_attempts: Dict[str, int] = {}

    async def push_device(self, udid: str) -> None:
        """
        Wake a single device.

        Raises:
            UpstreamError: the request could not be sent
        """
        start = time.monotonic()
        try:
            response = await self.client.push(udid, expiration_window(self.clock()))
        except UpstreamError:
            metrics.inc_counter("push_wakes_total", {"result": "error"})
            raise

        latency_ms = (time.monotonic() - start) * 1000
        metrics.inc_counter("push_wakes_total", {"result": "sent"})
        metrics.observe_histogram("push_latency_ms", latency_ms)
        structured_logger.log_event(
            "push.wake.sent",
            level="DEBUG",
            device_udid=udid,
            status_code=response.status_code,
            latency_ms=round(latency_ms, 2)
        )

    async def _push_bounded(self, udid: str, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            await self.push_device(udid)

    async def push_all(self) -> PushSummary:
        """Wake every known device, at most `concurrency` requests in flight."""
        db = self.session_factory()
        try:
            udids = [device.ud_id for device in list_devices(db)]
        finally:
            db.close()

        summary = PushSummary(attempted=len(udids))
        if not udids:
            return summary

        structured_logger.log_event("push.all.started", level="DEBUG", device_count=len(udids))

        semaphore = asyncio.Semaphore(self.concurrency)
        results = await asyncio.gather(
            *(self._push_bounded(udid, semaphore) for udid in udids),
            return_exceptions=True
        )

        for udid, result in zip(udids, results):
            if isinstance(result, Exception):
                summary.failed[udid] = str(result)
            else:
                summary.succeeded += 1

        if summary.failed:
            structured_logger.log_event(
                "push.all.partial_failure",
                level="ERROR",
                attempted=summary.attempted,
                failed=len(summary.failed),
                errors=summary.failed
            )
        else:
            structured_logger.log_event("push.all.completed", attempted=summary.attempted)

        return summary

    def _over_ceiling(self, udid: str) -> bool:
        if not self.not_now_retry_ceiling:
            return False
        attempts = self._not_now_attempts.get(udid, 0)
        if attempts >= self.not_now_retry_ceiling:
            return True
        self._not_now_attempts[udid] = attempts + 1
        return False

    async def push_not_now(self) -> PushSummary:
        """
        Wake, one at a time, every device holding a NotNow command.

        The expiration is recomputed for each wake, so every sweep extends the
        retry window. A device that fails to wake is logged and skipped.
        """
        db = self.session_factory()
        try:
            udids = distinct_udids_with_command_status(db, CommandStatus.NOT_NOW)
        finally:
            db.close()

        for stale in set(self._not_now_attempts) - set(udids):
            del self._not_now_attempts[stale]

        summary = PushSummary()
        for udid in udids:
            if self._over_ceiling(udid):
                summary.skipped += 1
                structured_logger.log_event(
                    "push.not_now.ceiling_reached",
                    level="WARN",
                    device_udid=udid,
                    ceiling=self.not_now_retry_ceiling
                )
                continue

            summary.attempted += 1
            try:
                await self.push_device(udid)
            except UpstreamError as e:
                summary.failed[udid] = str(e)
                structured_logger.log_event(
                    "push.not_now.failed",
                    level="ERROR",
                    device_udid=udid,
                    error=str(e)
                )
                continue
            summary.succeeded += 1

        return summary
