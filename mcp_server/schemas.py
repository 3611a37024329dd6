"""Pydantic schemas for MCP tool responses.

These schemas define the structured output formats for MCP tools,
ensuring consistent JSON responses across all tools.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict


class DeviceSummary(BaseModel):
    """A removable block device."""

    model_config = ConfigDict(extra="forbid")

    path: str
    name: str
    size_bytes: int
    size_formatted: str
    is_removable: bool
    partitions: list[str]
    label: str | None = None


class ListDevicesResponse(BaseModel):
    """Response for list_devices tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    devices: list[DeviceSummary]
    total: int
    error: dict[str, Any] | None = None


class DetectImageResponse(BaseModel):
    """Response for detect_image tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    image_path: str
    compression: str | None = None
    declared_size_bytes: int | None = None
    estimated_size_bytes: int | None = None
    error: dict[str, Any] | None = None


class FlashResponse(BaseModel):
    """Response for flash_image tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    status: str | None = None
    stage: str | None = None
    flash_record_id: int | None = None
    image_path: str | None = None
    device_path: str | None = None
    compression: str | None = None
    bytes_written: int = 0
    total_bytes: int = 0
    device_size_bytes: int | None = None
    message: str | None = None
    error: dict[str, Any] | None = None


class FlashStatusResponse(BaseModel):
    """Response for flash_status tool."""

    model_config = ConfigDict(extra="forbid")

    is_flashing: bool
    stage: str
    stage_code: int
    bytes_written: int
    total_bytes: int
    speed_bytes_per_sec: int
    percentage: float
    eta_seconds: int | None = None
    message: str | None = None
    flash_record_id: int | None = None


class CancelFlashResponse(BaseModel):
    """Response for cancel_flash tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    cancel_requested: bool
    stage: str


class FlashRecordSummary(BaseModel):
    """Summary of a flash record."""

    model_config = ConfigDict(extra="forbid")

    id: int
    image_name: str
    device_path: str
    compression: str
    status: str
    final_stage: str
    bytes_written: int
    total_bytes: int
    requested_at: str | None = None
    finished_at: str | None = None
    error_type: str | None = None
    error_message: str | None = None


class ListFlashRecordsResponse(BaseModel):
    """Response for list_flash_records tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    records: list[FlashRecordSummary]
    total: int
    error: dict[str, Any] | None = None


__all__ = [
    "CancelFlashResponse",
    "DetectImageResponse",
    "DeviceSummary",
    "FlashRecordSummary",
    "FlashResponse",
    "FlashStatusResponse",
    "ListDevicesResponse",
    "ListFlashRecordsResponse",
]
