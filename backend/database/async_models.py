"""Async SQLAlchemy 2.0 ORM models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class DeviceSettings(Base):
    """User preferences, one row per device, restored on every session open."""

    __tablename__ = "device_settings"

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    voice_speed: Mapped[int] = mapped_column(Integer, default=50)
    high_contrast: Mapped[bool] = mapped_column(Boolean, default=False)
    haptic_feedback: Mapped[bool] = mapped_column(Boolean, default=True)
    audio_descriptions: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AssistSession(Base):
    __tablename__ = "assist_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    device_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    hazards_detected: Mapped[int] = mapped_column(Integer, default=0)
    routes_completed: Mapped[int] = mapped_column(Integer, default=0)


class HazardLog(Base):
    __tablename__ = "hazard_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True
    )
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    label: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    distance_m: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
