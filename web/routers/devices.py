"""Removable device endpoints.

- GET /devices - List flashable removable block devices
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as http_status

from sdflasher.config import Settings
from sdflasher.flash.device import (
    BlockListingError,
    PermissionDeniedError,
    device_to_dict,
    list_removable_devices,
)
from sdflasher.privileged.shell import PrivilegedShell
from web.deps import get_app_settings, get_shell

router = APIRouter()


@router.get("")
def list_devices_endpoint(
    shell: PrivilegedShell = Depends(get_shell),
    settings: Settings = Depends(get_app_settings),
) -> list[dict[str, Any]]:
    """List removable block devices.

    Returns:
        Devices in kernel order, in the device listing JSON format.

    Raises:
        HTTPException: 403 without privileged access, 503 when the block
            namespace cannot be read.
    """
    try:
        found = list_removable_devices(shell, settings)
    except PermissionDeniedError as e:
        raise HTTPException(
            status_code=http_status.HTTP_403_FORBIDDEN,
            detail={"code": e.error_code, "message": e.message},
        ) from None
    except BlockListingError as e:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": e.error_code, "message": e.message},
        ) from None
    return [device_to_dict(device) for device in found]
