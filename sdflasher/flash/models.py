"""Flash ORM models.

This module defines the FlashRecord model, an audit trail of flash
attempts: which image went to which device, how far it got and how it
ended.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from sdflasher.db import Base
from sdflasher.types import FlashStage, FlashStatus


class FlashRecord(Base):
    """ORM model for one flash attempt.

    Attributes:
        id: Primary key.
        image_name: File name of the image.
        image_path: Local path of the image, if any.
        compression: Compression kind of the image.
        device_path: Block device path (e.g., '/dev/sdX').
        device_size_bytes: Device capacity at flash time, if known.
        requested_at: Timestamp when the flash was requested.
        started_at: Timestamp when the flash started.
        finished_at: Timestamp when the flash finished.
        status: Flash status (pending, running, succeeded, failed, cancelled).
        final_stage: Last stage reached.
        bytes_written: Bytes written to the device.
        total_bytes: Estimated total bytes.
        verify_requested: Whether verification was requested.
        error_type: Error code if the flash failed.
        error_message: Human-readable outcome message on failure.
    """

    __tablename__ = "flash_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Image
    image_name: Mapped[str] = mapped_column(String(255), nullable=False)
    image_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    compression: Mapped[str] = mapped_column(String(10), nullable=False)

    # Device identification
    device_path: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    device_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Timing
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Outcome
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FlashStatus.PENDING.value, index=True
    )
    final_stage: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FlashStage.IDLE.value
    )
    bytes_written: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    verify_requested: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Errors
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_flash_records_device_status", "device_path", "status"),)

    def __repr__(self) -> str:
        """Return string representation of FlashRecord."""
        return (
            f"<FlashRecord(id={self.id}, image_name='{self.image_name}', "
            f"device_path='{self.device_path}', status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this flash as running."""
        self.status = FlashStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this flash as succeeded."""
        self.status = FlashStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_cancelled(self) -> None:
        """Mark this flash as cancelled."""
        self.status = FlashStatus.CANCELLED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this flash as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = FlashStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this flash succeeded."""
        return self.status == FlashStatus.SUCCEEDED.value


__all__ = ["FlashRecord"]
