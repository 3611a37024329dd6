"""Removable-media flashing.

This module handles:
- Removable block device discovery (privileged)
- Unmounting every filesystem on the target
- The staged, cancellable decompress-and-copy flash
- Progress accounting and flash history records
"""

from sdflasher.flash.device import (
    BlockDevice,
    BlockListingError,
    DeviceCatalogError,
    PermissionDeniedError,
    devices_from_json,
    devices_to_json,
    get_device_size,
    list_removable_devices,
)
from sdflasher.flash.models import FlashRecord
from sdflasher.flash.orchestrator import (
    AlreadyInProgressError,
    DeviceNotFoundError,
    FlashCallback,
    FlashError,
    FlashIOError,
    FlashOrchestrator,
    FlashRequest,
    InvalidTargetError,
    NotBlockDeviceError,
    NullCallback,
    ObserverDisconnectedError,
    PartitionDeviceError,
    SizeExceededError,
    SystemDeviceError,
    UnmountError,
)
from sdflasher.flash.progress import FlashProgress, ProgressAccountant
from sdflasher.flash.service import (
    ConfirmationRequiredError,
    FlashHandle,
    FlashPlan,
    FlashResult,
    FlashServiceError,
    flash_image,
    get_flash_records,
    plan_flash,
    start_flash,
)
from sdflasher.flash.unmount import (
    UnmountCoordinator,
    UnmountFailureError,
    UnmountResult,
)

__all__ = [
    # Models
    "FlashRecord",
    # Device catalog
    "BlockDevice",
    "BlockListingError",
    "DeviceCatalogError",
    "PermissionDeniedError",
    "devices_from_json",
    "devices_to_json",
    "get_device_size",
    "list_removable_devices",
    # Unmount
    "UnmountCoordinator",
    "UnmountFailureError",
    "UnmountResult",
    # Orchestrator
    "AlreadyInProgressError",
    "DeviceNotFoundError",
    "FlashCallback",
    "FlashError",
    "FlashIOError",
    "FlashOrchestrator",
    "FlashProgress",
    "FlashRequest",
    "InvalidTargetError",
    "NotBlockDeviceError",
    "NullCallback",
    "ObserverDisconnectedError",
    "PartitionDeviceError",
    "ProgressAccountant",
    "SizeExceededError",
    "SystemDeviceError",
    "UnmountError",
    # Service
    "ConfirmationRequiredError",
    "FlashHandle",
    "FlashPlan",
    "FlashResult",
    "FlashServiceError",
    "flash_image",
    "get_flash_records",
    "plan_flash",
    "start_flash",
]
