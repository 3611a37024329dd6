"""SD Flasher - flash disk images onto removable block devices.

This package provides device discovery, compression-aware image reading,
and a staged, cancellable flash engine with progress reporting.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
