"""SQLAlchemy-backed ConfigStore and RecordStore."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import DuplicateRecordError, StorageError
from .models import AttachmentRecord, ConnectionProfile, ProtocolKind
from .stores import ConfigStore, RecordStore

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


class ProfileRow(Base):
    __tablename__ = "email_ingestion_configs"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    email_address: Mapped[str] = mapped_column(Text, nullable=False)
    protocol: Mapped[str] = mapped_column(Text, nullable=False)
    username: Mapped[str | None] = mapped_column(Text)
    password: Mapped[str | None] = mapped_column(Text)
    token: Mapped[str | None] = mapped_column(Text)
    host: Mapped[str | None] = mapped_column(Text)
    port: Mapped[int | None] = mapped_column(Integer)
    use_tls: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class AttachmentRow(Base):
    __tablename__ = "pdf_attachments"
    __table_args__ = (
        UniqueConstraint("profile_id", "file_name", "received_at", name="uq_pdf_attachments_source"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    profile_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("email_ingestion_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    local_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processing_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def make_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(url, echo=False, pool_size=5, max_overflow=10)


class Database:
    """Engine plus session factory, created once at startup."""

    def __init__(self, url: str) -> None:
        self.engine = make_engine(url)
        self.session = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ready")

    async def close(self) -> None:
        await self.engine.dispose()


# ------------------------------------------------------------------
# Stores
# ------------------------------------------------------------------


def _to_profile(row: ProfileRow) -> ConnectionProfile:
    return ConnectionProfile(
        id=row.id,
        email_address=row.email_address,
        protocol=ProtocolKind(row.protocol),
        username=row.username,
        password=row.password,
        token=row.token,
        host=row.host,
        port=row.port,
        use_tls=row.use_tls,
        active=row.active,
        last_checked_at=_utc(row.last_checked_at),
        last_error=row.last_error,
    )


def _to_record(row: AttachmentRow) -> AttachmentRecord:
    return AttachmentRecord(
        id=row.id,
        profile_id=row.profile_id,
        from_address=row.from_address,
        received_at=_utc(row.received_at),
        subject=row.subject,
        file_name=row.file_name,
        local_path=row.local_path,
        file_size=row.file_size,
        processed=row.processed,
        processing_error=row.processing_error,
    )


class SqlConfigStore(ConfigStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session = session_factory

    async def save(self, profile: ConnectionProfile) -> None:
        """Insert or replace a profile.  Used by account administration."""
        row = ProfileRow(
            id=profile.id,
            email_address=profile.email_address,
            protocol=profile.protocol.value,
            username=profile.username,
            password=profile.password.get_secret_value() if profile.password else None,
            token=profile.token.get_secret_value() if profile.token else None,
            host=profile.host,
            port=profile.port,
            use_tls=profile.use_tls,
            active=profile.active,
            last_checked_at=_utc(profile.last_checked_at),
            last_error=profile.last_error,
        )
        try:
            async with self._session() as session:
                await session.merge(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"could not save profile {profile.id}: {exc}") from exc

    async def get(self, account_id: str) -> ConnectionProfile | None:
        try:
            async with self._session() as session:
                row = await session.get(ProfileRow, account_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"could not load profile {account_id}: {exc}") from exc
        return _to_profile(row) if row is not None else None

    async def list_active(self) -> list[ConnectionProfile]:
        try:
            async with self._session() as session:
                result = await session.execute(
                    select(ProfileRow).where(ProfileRow.active.is_(True)).order_by(ProfileRow.id)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise StorageError(f"could not list active profiles: {exc}") from exc
        return [_to_profile(row) for row in rows]

    async def _apply_update(self, account_id: str, fields: dict[str, Any]) -> None:
        values = dict(fields)
        stmt = update(ProfileRow).where(ProfileRow.id == account_id)
        if values.get("last_checked_at") is not None:
            values["last_checked_at"] = _utc(values["last_checked_at"])
            # A run that finished earlier must not overwrite a newer result.
            stmt = stmt.where(
                or_(
                    ProfileRow.last_checked_at.is_(None),
                    ProfileRow.last_checked_at <= values["last_checked_at"],
                )
            )
        try:
            async with self._session() as session:
                result = await session.execute(stmt.values(**values))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"could not update profile {account_id}: {exc}") from exc
        if result.rowcount == 0:
            logger.warning("profile_update_ignored", account_id=account_id, fields=sorted(fields))


class SqlRecordStore(RecordStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session = session_factory

    async def create(self, record: AttachmentRecord) -> AttachmentRecord:
        row = AttachmentRow(
            id=str(uuid.uuid4()),
            profile_id=record.profile_id,
            from_address=record.from_address,
            received_at=_utc(record.received_at),
            subject=record.subject,
            file_name=record.file_name,
            local_path=record.local_path,
            file_size=record.file_size,
            processed=record.processed,
            processing_error=record.processing_error,
        )
        try:
            async with self._session() as session:
                session.add(row)
                await session.commit()
        except IntegrityError as exc:
            if "unique" in str(exc.orig).lower():
                raise DuplicateRecordError(
                    f"record for {record.file_name!r} received {record.received_at} already exists"
                ) from exc
            raise StorageError(f"could not record {record.file_name!r}: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"could not record {record.file_name!r}: {exc}") from exc
        return _to_record(row)

    async def get(self, record_id: str) -> AttachmentRecord | None:
        try:
            async with self._session() as session:
                row = await session.get(AttachmentRow, record_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"could not load record {record_id}: {exc}") from exc
        return _to_record(row) if row is not None else None

    async def delete(self, record_id: str) -> bool:
        try:
            async with self._session() as session:
                row = await session.get(AttachmentRow, record_id)
                if row is None:
                    return False
                await session.delete(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"could not delete record {record_id}: {exc}") from exc
        return True

    async def list(self, profile_id: str | None = None) -> list[AttachmentRecord]:
        stmt = select(AttachmentRow).order_by(AttachmentRow.received_at.desc())
        if profile_id is not None:
            stmt = stmt.where(AttachmentRow.profile_id == profile_id)
        try:
            async with self._session() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise StorageError(f"could not list records: {exc}") from exc
        return [_to_record(row) for row in rows]
