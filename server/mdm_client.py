"""
HTTP client for the upstream MDM server.

One AsyncClient is shared by every pass; it holds no per-call state.
"""
from typing import List, Optional
import json

import httpx
from pydantic import ValidationError

from errors import UpstreamError
from schemas import DEVICE_LIST, CommandPayload, CommandResponse, DeviceFromMDM, DevicesFromMDM

MDM_USERNAME = "micromdm"


class MDMClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(MDM_USERNAME, api_key),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "MDMClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def push(self, udid: str, expiration: int) -> httpx.Response:
        """
        Ask the MDM server to send a wake notification to a device.

        Any completed round trip counts as success, whatever the status code;
        only transport failures raise.
        """
        try:
            response = await self._client.get(
                f"/push/{udid}",
                params={"expiration": str(expiration)},
            )
        except httpx.HTTPError as e:
            raise UpstreamError("push_device", f"{udid}: {e}") from e
        return response

    async def fetch_devices(self) -> List[DeviceFromMDM]:
        """Full device inventory from POST /v1/devices with an empty filter."""
        try:
            response = await self._client.post(
                "/v1/devices",
                content=b"{}",
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamError("fetch_devices", str(e)) from e

        try:
            raw = response.json()
        except json.JSONDecodeError as e:
            raise UpstreamError("fetch_devices", f"invalid JSON body: {e}") from e

        try:
            if isinstance(raw, list):
                return DEVICE_LIST.validate_python(raw)
            return DevicesFromMDM.model_validate(raw).devices
        except ValidationError as e:
            raise UpstreamError("fetch_devices", f"unexpected inventory shape: {e}") from e

    async def send_command(self, payload: CommandPayload) -> str:
        """Queue a command on the MDM server and return its command UUID."""
        try:
            response = await self._client.post(
                "/v1/commands",
                json=payload.model_dump(exclude_none=True),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamError("send_command", f"{payload.request_type} for {payload.udid}: {e}") from e

        try:
            return CommandResponse.model_validate(response.json()).payload.command_uuid
        except (json.JSONDecodeError, ValidationError) as e:
            raise UpstreamError("send_command", f"invalid command response: {e}") from e
