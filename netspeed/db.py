"""Database utilities and ORM models."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Integer, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


class Base(DeclarativeBase):
    pass


class SpeedTestRecord(Base):
    __tablename__ = "speedtest_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope_id: Mapped[str] = mapped_column(String(64), index=True)
    device_host: Mapped[str] = mapped_column(String(255), index=True)
    device_name: Mapped[Optional[str]] = mapped_column(String(255))
    device_type: Mapped[Optional[str]] = mapped_column(String(32))
    direction: Mapped[str] = mapped_column(String(32), index=True)
    status: Mapped[str] = mapped_column(String(16), default="completed")
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    download_bps: Mapped[float] = mapped_column(Float, default=0.0)
    upload_bps: Mapped[float] = mapped_column(Float, default=0.0)
    download_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    upload_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    download_retransmits: Mapped[int] = mapped_column(Integer, default=0)
    upload_retransmits: Mapped[int] = mapped_column(Integer, default=0)
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0)
    parallel_streams: Mapped[int] = mapped_column(Integer, default=0)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[Optional[str]] = mapped_column(Text)
    local_address: Mapped[Optional[str]] = mapped_column(String(64))
    path_stale: Mapped[bool] = mapped_column(Boolean, default=False)
    path_json: Mapped[Optional[str]] = mapped_column(Text)
    raw_download: Mapped[Optional[str]] = mapped_column(Text)
    raw_upload: Mapped[Optional[str]] = mapped_column(Text)
    ping_ms: Mapped[Optional[float]] = mapped_column(Float)
    jitter_ms: Mapped[Optional[float]] = mapped_column(Float)
    download_latency_ms: Mapped[Optional[float]] = mapped_column(Float)
    upload_latency_ms: Mapped[Optional[float]] = mapped_column(Float)
    wan_group: Mapped[Optional[str]] = mapped_column(String(32))
    wan_name: Mapped[Optional[str]] = mapped_column(String(128))
    notes: Mapped[Optional[str]] = mapped_column(Text)


def init_db(data_dir: Path) -> sessionmaker:
    db_path = data_dir / "speedtests.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, future=True, expire_on_commit=False)


@contextmanager
def get_session(Session: sessionmaker) -> Iterator:
    session = Session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
