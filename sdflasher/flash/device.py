"""Device catalog for removable block devices.

This module discovers flash targets through the privileged shell:
- Enumerate the kernel block-device namespace
- Skip loop, device-mapper, RAM-disk and zram nodes
- Keep removable media and MMC cards (minus boot/RPMB regions)
- Drop anything below the minimum size (decoy/virtual nodes)
- Record partition nodes for each device

It also answers the naming questions used to vet a flash target, such as
whether a path names a partition or the disk holding the root filesystem.

Nothing is cached; every call re-scans.
"""

import json
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Any

from sdflasher.config import Settings, get_settings
from sdflasher.privileged.shell import PrivilegedShell
from sdflasher.types import format_bytes

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512

# Virtual block nodes that are never flash targets
_SKIPPED_PREFIXES = ("loop", "dm-", "ram", "zram")

# sda1, vdb2, hda1
_PARTITION_NAME_SD = re.compile(r"^([shv]d[a-z]+)\d+$")
# nvme0n1p1, mmcblk0p1, loop0p1
_PARTITION_NAME_P = re.compile(r"^(nvme\d+n\d+|mmcblk\d+|loop\d+)p\d+$")


@dataclass(frozen=True)
class BlockDevice:
    """A flashable block device, as seen by one catalog scan.

    Attributes:
        path: Device node path (e.g., '/dev/mmcblk1').
        name: Kernel device name (e.g., 'mmcblk1').
        size_bytes: Raw capacity (sector count * 512).
        is_removable: Kernel-reported removable flag.
        partitions: Partition device paths in listing order.
        label: Volume label, if known.
    """

    path: str
    name: str
    size_bytes: int
    is_removable: bool
    partitions: tuple[str, ...] = field(default_factory=tuple)
    label: str | None = None

    @property
    def size_formatted(self) -> str:
        return format_bytes(self.size_bytes)

    @property
    def has_partitions(self) -> bool:
        return len(self.partitions) > 0


class DeviceCatalogError(Exception):
    """Base exception for device catalog errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class PermissionDeniedError(DeviceCatalogError):
    """Privileged access is not available."""

    def __init__(self) -> None:
        super().__init__(
            "Privileged access not granted. Run as root or enable sudo.",
            error_code="PERMISSION_DENIED",
        )


class BlockListingError(DeviceCatalogError):
    """The block-device namespace could not be listed."""

    def __init__(self, sys_block_dir: str) -> None:
        super().__init__(
            f"Failed to list block devices in {sys_block_dir}",
            error_code="BLOCK_LISTING_FAILED",
        )
        self.sys_block_dir = sys_block_dir


def is_skipped_name(device_name: str) -> bool:
    """Check if a kernel device name is a virtual node to ignore."""
    return device_name.startswith(_SKIPPED_PREFIXES)


def is_mmc_card(device_name: str) -> bool:
    """Check if a device is an MMC/SD card by name.

    Some card readers do not report their media as removable, so MMC
    devices are treated as flashable regardless. The boot and RPMB
    hardware partitions of eMMC chips are excluded.

    Args:
        device_name: Kernel device name.

    Returns:
        True for MMC card devices.
    """
    return (
        device_name.startswith("mmcblk")
        and "boot" not in device_name
        and "rpmb" not in device_name
    )


def kernel_name(device_path: str) -> str:
    """Kernel name of a device node ('/dev/sdb' -> 'sdb')."""
    return device_path.rstrip("/").rsplit("/", 1)[-1]


def is_partition_name(name: str) -> bool:
    """Check if a kernel device name looks like a partition.

    This uses naming conventions:
    - sda1, vdb2 (SCSI/SATA/USB, virtio)
    - mmcblk0p1 (MMC/SD cards)
    - nvme0n1p1 (NVMe)
    - loop0p1 (Loop devices with partitions)
    """
    return bool(_PARTITION_NAME_SD.match(name) or _PARTITION_NAME_P.match(name))


def whole_device_name(name: str) -> str:
    """Strip a partition suffix ('mmcblk0p2' -> 'mmcblk0', 'sda1' -> 'sda')."""
    match = _PARTITION_NAME_SD.match(name) or _PARTITION_NAME_P.match(name)
    return match.group(1) if match else name


def is_partition_of(name: str, disk_name: str) -> bool:
    """Check if a kernel name is a partition of the given whole device.

    Disks whose name ends in a digit number their partitions with a 'p'
    separator (mmcblk1p1), so mmcblk10p1 is never a partition of mmcblk1.
    """
    if not disk_name or not name.startswith(disk_name):
        return False
    suffix = name[len(disk_name):]
    if disk_name[-1].isdigit():
        return re.fullmatch(r"p[0-9]+", suffix) is not None
    return re.fullmatch(r"[0-9]+", suffix) is not None


def resolve_device_path(shell: PrivilegedShell, device_path: str) -> str:
    """Follow symlinks such as /dev/disk/by-id/... to the device node.

    Returns the path unchanged when it cannot be resolved.
    """
    result = shell.exec(f"readlink -f {shlex.quote(device_path)}")
    resolved = result.first_line if result.success else None
    return resolved or device_path


def is_block_device(shell: PrivilegedShell, device_path: str) -> bool:
    """Check if a path is a block device node."""
    return shell.exec(f"test -b {shlex.quote(device_path)}").success


def get_root_device_name(
    shell: PrivilegedShell, settings: Settings | None = None
) -> str | None:
    """Get the kernel name of the disk that holds the root filesystem.

    Reads the mount table to find the device mounted at '/'.

    Returns:
        Whole-device name (e.g., 'mmcblk0'), or None if unknown.
    """
    if settings is None:
        settings = get_settings()

    result = shell.exec(f"cat {shlex.quote(settings.mounts_path)}")
    if not result.success:
        logger.warning(
            "Could not read %s to determine root device", settings.mounts_path
        )
        return None

    for line in result.stdout_lines:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "/":
            source = resolve_device_path(shell, parts[0])
            return whole_device_name(kernel_name(source))
    return None


def _read_sectors(shell: PrivilegedShell, sys_block_dir: str, device_name: str) -> int:
    result = shell.exec(f"cat {shlex.quote(f'{sys_block_dir}/{device_name}/size')}")
    value = result.first_line if result.success else None
    try:
        return int(value) if value else 0
    except ValueError:
        logger.warning("Unreadable sector count for %s: %r", device_name, value)
        return 0


def _read_removable(shell: PrivilegedShell, sys_block_dir: str, device_name: str) -> bool:
    result = shell.exec(
        f"cat {shlex.quote(f'{sys_block_dir}/{device_name}/removable')}"
    )
    return result.success and result.first_line == "1"


def _list_partitions(
    shell: PrivilegedShell, sys_block_dir: str, dev_dir: str, disk_name: str
) -> list[str]:
    result = shell.exec(f"ls {shlex.quote(f'{sys_block_dir}/{disk_name}/')}")
    if not result.success:
        return []

    # sda -> sda1, mmcblk0 -> mmcblk0p1, nvme0n1 -> nvme0n1p1
    return [
        f"{dev_dir}/{entry.strip()}"
        for entry in result.stdout_lines
        if is_partition_of(entry.strip(), disk_name)
    ]


def list_removable_devices(
    shell: PrivilegedShell,
    settings: Settings | None = None,
) -> list[BlockDevice]:
    """Enumerate removable block devices suitable for flashing.

    Args:
        shell: Privileged shell capability.
        settings: Application settings (paths and size floor).

    Returns:
        Devices in kernel listing order.

    Raises:
        PermissionDeniedError: Privileged access is not available.
        BlockListingError: The block namespace could not be listed.
    """
    if settings is None:
        settings = get_settings()

    if not shell.is_privileged():
        logger.error("Privileged access not available for device scan")
        raise PermissionDeniedError()

    sys_block_dir = settings.sys_block_dir.rstrip("/")
    dev_dir = settings.dev_dir.rstrip("/")

    listing = shell.exec(f"ls {shlex.quote(sys_block_dir + '/')}")
    if not listing.success:
        raise BlockListingError(sys_block_dir)

    devices: list[BlockDevice] = []
    for raw_name in listing.stdout_lines:
        device_name = raw_name.strip()
        if not device_name or is_skipped_name(device_name):
            continue

        is_removable = _read_removable(shell, sys_block_dir, device_name)
        if not is_removable and not is_mmc_card(device_name):
            continue

        size_bytes = _read_sectors(shell, sys_block_dir, device_name) * SECTOR_SIZE
        if size_bytes < settings.min_device_size:
            logger.debug(
                "Skipping %s: %d bytes is below the %d byte floor",
                device_name,
                size_bytes,
                settings.min_device_size,
            )
            continue

        device = BlockDevice(
            path=f"{dev_dir}/{device_name}",
            name=device_name,
            size_bytes=size_bytes,
            is_removable=is_removable,
            partitions=tuple(
                _list_partitions(shell, sys_block_dir, dev_dir, device_name)
            ),
        )
        devices.append(device)

    logger.info("Found %d removable device(s)", len(devices))
    return devices


def get_device_size(
    shell: PrivilegedShell,
    device_path: str,
    settings: Settings | None = None,
) -> int | None:
    """Read the true size of a block device from its sector count.

    Args:
        shell: Privileged shell capability.
        device_path: Path to the device.
        settings: Application settings.

    Returns:
        Size in bytes, or None if unknown.
    """
    if settings is None:
        settings = get_settings()

    sectors = _read_sectors(
        shell, settings.sys_block_dir.rstrip("/"), kernel_name(device_path)
    )
    if sectors <= 0:
        return None
    return sectors * SECTOR_SIZE


def device_to_dict(device: BlockDevice) -> dict[str, Any]:
    """Encode a device with the transport field names."""
    data: dict[str, Any] = {
        "path": device.path,
        "name": device.name,
        "sizeBytes": device.size_bytes,
        "isRemovable": device.is_removable,
        "partitions": list(device.partitions),
    }
    if device.label is not None:
        data["label"] = device.label
    return data


def device_from_dict(data: dict[str, Any]) -> BlockDevice:
    """Decode a device from its transport form."""
    label = data.get("label")
    return BlockDevice(
        path=str(data["path"]),
        name=str(data["name"]),
        size_bytes=int(data["sizeBytes"]),
        is_removable=bool(data["isRemovable"]),
        partitions=tuple(str(p) for p in data.get("partitions", [])),
        label=str(label) if label else None,
    )


def devices_to_json(devices: list[BlockDevice]) -> str:
    """Encode a device listing as a JSON array."""
    return json.dumps([device_to_dict(d) for d in devices])


def devices_from_json(payload: str) -> list[BlockDevice]:
    """Decode a JSON array produced by devices_to_json."""
    return [device_from_dict(item) for item in json.loads(payload)]


__all__ = [
    "SECTOR_SIZE",
    "BlockDevice",
    "BlockListingError",
    "DeviceCatalogError",
    "PermissionDeniedError",
    "device_from_dict",
    "device_to_dict",
    "devices_from_json",
    "devices_to_json",
    "get_device_size",
    "get_root_device_name",
    "is_block_device",
    "is_mmc_card",
    "is_partition_name",
    "is_partition_of",
    "is_skipped_name",
    "kernel_name",
    "list_removable_devices",
    "resolve_device_path",
    "whole_device_name",
]
