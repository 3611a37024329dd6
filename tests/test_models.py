"""Tests for the FlashRecord model and database helpers.

These tests use an in-memory SQLite database.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from sdflasher.db import Base, create_all_tables, get_engine, get_session
from sdflasher.flash.models import FlashRecord
from sdflasher.types import FlashStatus


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def memory_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(memory_session_factory):
    session = memory_session_factory()
    try:
        yield session
    finally:
        session.close()


def _record(**overrides) -> FlashRecord:
    values = {
        "image_name": "raspios.img.xz",
        "image_path": "/tmp/raspios.img.xz",
        "compression": "xz",
        "device_path": "/dev/sdb",
    }
    values.update(overrides)
    return FlashRecord(**values)


class TestDatabaseSetup:
    """Test database setup and helpers."""

    def test_create_all_tables(self, tmp_path):
        engine = get_engine(f"sqlite:///{tmp_path / 'nested' / 'test.db'}")
        create_all_tables(engine)
        assert "flash_records" in Base.metadata.tables
        assert (tmp_path / "nested" / "test.db").exists()

    def test_get_session_commits(self, memory_session_factory):
        with get_session(memory_session_factory) as session:
            session.add(_record())

        with memory_session_factory() as session:
            assert session.query(FlashRecord).count() == 1

    def test_get_session_rolls_back(self, memory_session_factory):
        with pytest.raises(RuntimeError):
            with get_session(memory_session_factory) as session:
                session.add(_record())
                session.flush()
                raise RuntimeError("boom")

        with memory_session_factory() as session:
            assert session.query(FlashRecord).count() == 0


class TestFlashRecordModel:
    """Test FlashRecord model CRUD operations."""

    def test_defaults(self, session):
        record = _record()
        session.add(record)
        session.commit()

        assert record.id is not None
        assert record.status == FlashStatus.PENDING.value
        assert record.final_stage == "idle"
        assert record.bytes_written == 0
        assert record.verify_requested is False
        assert record.requested_at is not None
        assert record.started_at is None

    def test_device_path_required(self, session):
        session.add(_record(device_path=None))
        with pytest.raises(IntegrityError):
            session.commit()

    def test_lifecycle_succeeded(self, session):
        record = _record()
        record.mark_running()
        assert record.status == "running"
        assert record.started_at is not None

        record.mark_succeeded()
        session.add(record)
        session.commit()

        assert record.is_succeeded()
        assert record.finished_at is not None

    def test_mark_failed(self, session):
        record = _record()
        record.mark_failed(error_type="SIZE_EXCEEDED", message="too big")
        session.add(record)
        session.commit()

        assert record.status == "failed"
        assert record.error_type == "SIZE_EXCEEDED"
        assert record.error_message == "too big"
        assert record.is_succeeded() is False

    def test_mark_cancelled(self):
        record = _record()
        record.mark_cancelled()
        assert record.status == "cancelled"
        assert record.error_type is None

    def test_large_byte_counts(self, session):
        record = _record(total_bytes=64 * 1024**3, bytes_written=32 * 1024**3)
        session.add(record)
        session.commit()
        session.expire_all()

        loaded = session.get(FlashRecord, record.id)
        assert loaded.total_bytes == 64 * 1024**3

    def test_repr(self):
        record = _record(status="running")
        assert "device_path='/dev/sdb'" in repr(record)
        assert "status='running'" in repr(record)
