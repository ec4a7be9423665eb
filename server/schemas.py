from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing import Optional


class DeviceFromMDM(BaseModel):
    model_config = ConfigDict(extra="ignore")

    udid: str = ""
    serial_number: str = ""
    enrollment_status: bool = False


class DevicesFromMDM(BaseModel):
    devices: list[DeviceFromMDM] = Field(default_factory=list)


DEVICE_LIST = TypeAdapter(list[DeviceFromMDM])


class CommandPayload(BaseModel):
    """Body of POST /v1/commands. Payload is the base64 profile for InstallProfile."""
    udid: str = Field(..., min_length=1)
    request_type: str = Field(..., min_length=1)
    payload: Optional[str] = None
    queries: Optional[list[str]] = None


class CommandInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command_uuid: str = ""
    request_type: str = ""


class CommandResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payload: CommandInfo = Field(default_factory=CommandInfo)
