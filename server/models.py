from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Text, create_engine, Integer, Index, Boolean, ForeignKey, LargeBinary, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from typing import List, Optional
import os

# PayloadType of the MDM payload inside an enrollment profile
MDM_PAYLOAD_TYPE = "com.apple.mdm"

class CommandStatus:
    QUEUED = "Queued"
    SENT = "Sent"
    ACKNOWLEDGED = "Acknowledged"
    NOT_NOW = "NotNow"
    ERROR = "Error"

class Base(DeclarativeBase):
    pass

class Device(Base):
    __tablename__ = "devices"

    ud_id: Mapped[str] = mapped_column(String, primary_key=True)
    serial_number: Mapped[str] = mapped_column(String, nullable=False, default="", index=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    authenticate_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    token_update_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    initial_tasks_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    awaiting_configuration: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    profile_lists: Mapped[List["ProfileList"]] = relationship(
        back_populates="device", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index('idx_device_awaiting_configuration', 'awaiting_configuration'),
    )

class Command(Base):
    __tablename__ = "commands"

    command_uuid: Mapped[str] = mapped_column(String, primary_key=True)
    device_ud_id: Mapped[str] = mapped_column(String, ForeignKey("devices.ud_id"), nullable=False, index=True)
    request_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=CommandStatus.QUEUED)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('idx_command_status_device', 'status', 'device_ud_id'),
    )

class Certificate(Base):
    __tablename__ = "certificates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # NULL means the certificate is no longer associated with any device
    device_ud_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("devices.ud_id"), nullable=True, index=True)
    common_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    fingerprint: Mapped[str] = mapped_column(String, nullable=False)
    not_after: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    data: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)

class ProfileList(Base):
    """A profile the device reported as installed in its last ProfileList response."""
    __tablename__ = "profile_lists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_ud_id: Mapped[str] = mapped_column(String, ForeignKey("devices.ud_id"), nullable=False, index=True)
    payload_uuid: Mapped[str] = mapped_column(String, nullable=False)
    payload_identifier: Mapped[str] = mapped_column(String, nullable=False)
    payload_display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    signer_fingerprints: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reported_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    device: Mapped["Device"] = relationship(back_populates="profile_lists")
    payload_content: Mapped[List["PayloadContent"]] = relationship(
        back_populates="profile_list", cascade="all, delete-orphan"
    )

class PayloadContent(Base):
    __tablename__ = "payload_contents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    profile_list_id: Mapped[int] = mapped_column(Integer, ForeignKey("profile_lists.id"), nullable=False, index=True)
    payload_type: Mapped[str] = mapped_column(String, nullable=False)
    payload_uuid: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payload_identifier: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    profile_list: Mapped["ProfileList"] = relationship(back_populates="payload_content")

class DeviceProfile(Base):
    """Desired profile content. Rows without a device are fleet-wide."""
    __tablename__ = "device_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_ud_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("devices.ud_id"), nullable=True, index=True)
    payload_uuid: Mapped[str] = mapped_column(String, nullable=False)
    payload_identifier: Mapped[str] = mapped_column(String, nullable=False, index=True)
    mobileconfig_data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./director.db")

if "sqlite" in DATABASE_URL:
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    # Scheduler passes and the wake fan-out share this pool
    engine = create_engine(
        DATABASE_URL,
        pool_size=20,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def init_db():
    Base.metadata.create_all(bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
