"""Unmount coordination before flashing.

Every filesystem mounted from the target device (or one of its
partitions) is unmounted through the privileged shell:
1. Scan the live mount table for mounts sourced from the device
2. Per mount point: umount, then umount -f, then umount -l
3. A glob umount of '<device>*' catches anything the scan missed

A mount point that resists every attempt is logged and reported in the
result. It only aborts the flash when strict_unmount is enabled.
"""

import logging
import re
import shlex
from dataclasses import dataclass, field

from sdflasher.config import Settings, get_settings
from sdflasher.flash.device import is_partition_of, kernel_name
from sdflasher.privileged.shell import PrivilegedShell

logger = logging.getLogger(__name__)

# Octal escapes used in /proc/mounts for space, tab, newline and backslash
_MOUNT_ESCAPE = re.compile(r"\\([0-7]{3})")

# Attempted in order until one succeeds
_UNMOUNT_VARIANTS = ("umount", "umount -f", "umount -l")


class UnmountFailureError(Exception):
    """One or more mount points resisted every unmount strategy."""

    def __init__(self, device_path: str, mount_points: list[str]) -> None:
        mounts_str = ", ".join(mount_points)
        message = f"Could not unmount {mounts_str} on {device_path}"
        super().__init__(message)
        self.message = message
        self.error_code = "UNMOUNT_FAILED"
        self.device_path = device_path
        self.mount_points = mount_points


@dataclass
class UnmountResult:
    """Outcome of an unmount pass.

    Attributes:
        success: Whether the pass completed.
        unmounted: Mount points that were released.
        failed: Mount points that stayed mounted.
        error_message: Reason the pass did not complete.
    """

    success: bool
    unmounted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    error_message: str | None = None


def _unescape(value: str) -> str:
    return _MOUNT_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), value)


def belongs_to_device(mounted_source: str, device_path: str) -> bool:
    """Check if a mount source is the device or one of its partitions.

    Args:
        mounted_source: Source column of the mount table.
        device_path: Path to the whole device.

    Returns:
        True for the device itself and for names like sdb1 or mmcblk0p1.
    """
    disk_name = kernel_name(device_path)
    mounted_name = kernel_name(mounted_source)
    return mounted_name == disk_name or is_partition_of(mounted_name, disk_name)


def parse_mount_table(lines: list[str], device_path: str) -> list[str]:
    """Extract mount points sourced from a device.

    Args:
        lines: Lines of a /proc/mounts style table.
        device_path: Path to the whole device.

    Returns:
        Mount points in table order.
    """
    mount_points: list[str] = []
    for line in lines:
        parts = line.split()
        if len(parts) < 2:
            continue
        source, mount_point = parts[0], _unescape(parts[1])
        if belongs_to_device(source, device_path):
            mount_points.append(mount_point)
    return mount_points


class UnmountCoordinator:
    """Release every mount that holds the target device.

    Args:
        shell: Privileged shell capability.
        settings: Application settings (mount table path, strictness).
    """

    def __init__(self, shell: PrivilegedShell, settings: Settings | None = None) -> None:
        self.shell = shell
        self.settings = settings if settings is not None else get_settings()

    def find_mount_points(self, device_path: str) -> list[str]:
        """Return the current mount points of a device and its partitions."""
        result = self.shell.exec(f"cat {shlex.quote(self.settings.mounts_path)}")
        if not result.success:
            logger.warning(
                "Could not read %s, skipping mount scan", self.settings.mounts_path
            )
            return []
        return parse_mount_table(result.stdout_lines, device_path)

    def _unmount_one(self, mount_point: str) -> bool:
        for variant in _UNMOUNT_VARIANTS:
            if self.shell.exec(f"{variant} {shlex.quote(mount_point)}").success:
                logger.debug("Unmounted %s with '%s'", mount_point, variant)
                return True
            logger.debug("'%s' failed for %s", variant, mount_point)
        return False

    def unmount(self, device_path: str) -> UnmountResult:
        """Unmount every filesystem mounted from a device.

        Args:
            device_path: Path to the whole device.

        Returns:
            UnmountResult; success is False only when the pass itself
            could not complete.

        Raises:
            UnmountFailureError: A mount point resisted every attempt and
                strict_unmount is enabled.
        """
        logger.info("Unmounting partitions of %s", device_path)
        unmounted: list[str] = []
        failed: list[str] = []

        try:
            for mount_point in self.find_mount_points(device_path):
                if self._unmount_one(mount_point):
                    unmounted.append(mount_point)
                else:
                    logger.warning(
                        "Could not unmount %s, continuing anyway", mount_point
                    )
                    failed.append(mount_point)

            # Second line of defence for partitions the scan missed
            self.shell.exec(f"umount {shlex.quote(device_path)}* 2>/dev/null")
        except Exception as e:
            logger.error("Unmount of %s failed: %s", device_path, e)
            return UnmountResult(
                success=False,
                unmounted=unmounted,
                failed=failed,
                error_message=str(e),
            )

        if failed and self.settings.strict_unmount:
            raise UnmountFailureError(device_path, failed)

        logger.info(
            "Unmount pass done for %s (unmounted=%d, stuck=%d)",
            device_path,
            len(unmounted),
            len(failed),
        )
        return UnmountResult(success=True, unmounted=unmounted, failed=failed)


__all__ = [
    "UnmountCoordinator",
    "UnmountFailureError",
    "UnmountResult",
    "belongs_to_device",
    "parse_mount_table",
]
