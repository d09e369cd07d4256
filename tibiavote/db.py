"""
Database abstraction for Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    and_,
    create_engine,
    or_,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker


class DuplicateMediaError(Exception):
    """Raised when a media row with the same sha256 already exists."""


class DbClient(Protocol):
    """Interface for database access."""

    def get_media_by_sha(self, sha256: bytes) -> Optional["MediaRecord"]:
        ...

    def get_media(self, media_id: str) -> Optional["MediaRecord"]:
        ...

    def insert_media(self, record: "MediaRecord") -> "MediaRecord":
        ...

    def add_weapon(self, record: "WeaponRecord") -> None:
        ...

    def add_perk(self, record: "PerkRecord") -> None:
        ...

    def get_weapon(self, weapon_id: str) -> Optional["WeaponRecord"]:
        ...

    def get_perk(self, perk_id: str) -> Optional["PerkRecord"]:
        ...

    def list_weapons_missing_media(self, limit: int) -> list["WeaponRecord"]:
        ...

    def list_perks_missing_media(self, limit: int) -> list["PerkRecord"]:
        ...

    def set_weapon_media(self, weapon_id: str, media_id: str) -> None:
        ...

    def set_perk_media(
        self,
        perk_id: str,
        *,
        main_media_id: Optional[str] = None,
        type_media_id: Optional[str] = None,
    ) -> None:
        ...


@dataclass
class MediaRecord:
    storage_path: str
    sha256: bytes
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    source_url: Optional[str] = None
    format: Optional[str] = None
    bytes: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    attribution: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())

    @property
    def sha256_hex(self) -> str:
        return self.sha256.hex()


@dataclass
class WeaponRecord:
    id: str
    name: str
    image_url: Optional[str] = None
    image_media_id: Optional[str] = None


@dataclass
class PerkRecord:
    id: str
    name: str
    weapon_id: Optional[str] = None
    main_icon_url: Optional[str] = None
    type_icon_url: Optional[str] = None
    main_media_id: Optional[str] = None
    type_media_id: Optional[str] = None

    @property
    def needs_main_media(self) -> bool:
        return not self.main_media_id and bool(self.main_icon_url)

    @property
    def needs_type_media(self) -> bool:
        return not self.type_media_id and bool(self.type_icon_url)


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.media: Dict[str, MediaRecord] = {}
        self.weapons: Dict[str, WeaponRecord] = {}
        self.perks: Dict[str, PerkRecord] = {}
        self.insert_calls = 0
        self._lock = threading.Lock()

    def get_media_by_sha(self, sha256: bytes) -> Optional[MediaRecord]:
        with self._lock:
            for record in self.media.values():
                if record.sha256 == sha256:
                    return replace(record)
        return None

    def get_media(self, media_id: str) -> Optional[MediaRecord]:
        with self._lock:
            record = self.media.get(media_id)
            return replace(record) if record else None

    def insert_media(self, record: MediaRecord) -> MediaRecord:
        with self._lock:
            self.insert_calls += 1
            if any(existing.sha256 == record.sha256 for existing in self.media.values()):
                raise DuplicateMediaError(record.sha256_hex)
            self.media[record.id] = replace(record)
        return record

    def add_weapon(self, record: WeaponRecord) -> None:
        with self._lock:
            self.weapons[record.id] = replace(record)

    def add_perk(self, record: PerkRecord) -> None:
        with self._lock:
            self.perks[record.id] = replace(record)

    def get_weapon(self, weapon_id: str) -> Optional[WeaponRecord]:
        with self._lock:
            record = self.weapons.get(weapon_id)
            return replace(record) if record else None

    def get_perk(self, perk_id: str) -> Optional[PerkRecord]:
        with self._lock:
            record = self.perks.get(perk_id)
            return replace(record) if record else None

    def list_weapons_missing_media(self, limit: int) -> list[WeaponRecord]:
        with self._lock:
            rows = [
                replace(weapon)
                for weapon in self.weapons.values()
                if weapon.image_media_id is None and weapon.image_url
            ]
        return rows[:limit]

    def list_perks_missing_media(self, limit: int) -> list[PerkRecord]:
        with self._lock:
            rows = [
                replace(perk)
                for perk in self.perks.values()
                if perk.needs_main_media or perk.needs_type_media
            ]
        return rows[:limit]

    def set_weapon_media(self, weapon_id: str, media_id: str) -> None:
        with self._lock:
            weapon = self.weapons.get(weapon_id)
            if weapon:
                weapon.image_media_id = media_id

    def set_perk_media(
        self,
        perk_id: str,
        *,
        main_media_id: Optional[str] = None,
        type_media_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            perk = self.perks.get(perk_id)
            if not perk:
                return
            if main_media_id:
                perk.main_media_id = main_media_id
            if type_media_id:
                perk.type_media_id = type_media_id


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str, *, create_tables: bool = False):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        # The hosted database owns the schema; tests and local runs create it.
        if create_tables:
            Base.metadata.create_all(self.engine)

    def _to_media_record(self, row: "MediaRow") -> MediaRecord:
        return MediaRecord(
            id=row.id,
            source_url=row.source_url,
            storage_path=row.storage_path,
            width=row.width,
            height=row.height,
            format=row.format,
            bytes=row.bytes,
            sha256=bytes(row.sha256),
            attribution=row.attribution,
            created_at=row.created_at,
        )

    def _to_weapon_record(self, row: "WeaponRow") -> WeaponRecord:
        return WeaponRecord(
            id=row.id,
            name=row.name,
            image_url=row.image_url,
            image_media_id=row.image_media_id,
        )

    def _to_perk_record(self, row: "PerkRow") -> PerkRecord:
        return PerkRecord(
            id=row.id,
            name=row.name,
            weapon_id=row.weapon_id,
            main_icon_url=row.main_icon_url,
            type_icon_url=row.type_icon_url,
            main_media_id=row.main_media_id,
            type_media_id=row.type_media_id,
        )

    def get_media_by_sha(self, sha256: bytes) -> Optional[MediaRecord]:
        with self.Session() as session:
            row = session.execute(
                select(MediaRow).where(MediaRow.sha256 == sha256)
            ).scalar_one_or_none()
            return self._to_media_record(row) if row else None

    def get_media(self, media_id: str) -> Optional[MediaRecord]:
        with self.Session() as session:
            row = session.get(MediaRow, media_id)
            return self._to_media_record(row) if row else None

    def insert_media(self, record: MediaRecord) -> MediaRecord:
        with self.Session() as session:
            session.add(
                MediaRow(
                    id=record.id,
                    source_url=record.source_url,
                    storage_path=record.storage_path,
                    width=record.width,
                    height=record.height,
                    format=record.format,
                    bytes=record.bytes,
                    sha256=record.sha256,
                    attribution=record.attribution,
                    created_at=record.created_at,
                )
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateMediaError(record.sha256_hex) from exc
        return record

    def add_weapon(self, record: WeaponRecord) -> None:
        with self.Session() as session:
            session.merge(
                WeaponRow(
                    id=record.id,
                    name=record.name,
                    image_url=record.image_url,
                    image_media_id=record.image_media_id,
                )
            )
            session.commit()

    def add_perk(self, record: PerkRecord) -> None:
        with self.Session() as session:
            session.merge(
                PerkRow(
                    id=record.id,
                    name=record.name,
                    weapon_id=record.weapon_id,
                    main_icon_url=record.main_icon_url,
                    type_icon_url=record.type_icon_url,
                    main_media_id=record.main_media_id,
                    type_media_id=record.type_media_id,
                )
            )
            session.commit()

    def get_weapon(self, weapon_id: str) -> Optional[WeaponRecord]:
        with self.Session() as session:
            row = session.get(WeaponRow, weapon_id)
            return self._to_weapon_record(row) if row else None

    def get_perk(self, perk_id: str) -> Optional[PerkRecord]:
        with self.Session() as session:
            row = session.get(PerkRow, perk_id)
            return self._to_perk_record(row) if row else None

    def list_weapons_missing_media(self, limit: int) -> list[WeaponRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(WeaponRow)
                    .where(
                        WeaponRow.image_media_id.is_(None),
                        WeaponRow.image_url.is_not(None),
                    )
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [self._to_weapon_record(row) for row in rows]

    def list_perks_missing_media(self, limit: int) -> list[PerkRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(PerkRow)
                    .where(
                        or_(
                            and_(
                                PerkRow.main_media_id.is_(None),
                                PerkRow.main_icon_url.is_not(None),
                            ),
                            and_(
                                PerkRow.type_media_id.is_(None),
                                PerkRow.type_icon_url.is_not(None),
                            ),
                        )
                    )
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [self._to_perk_record(row) for row in rows]

    def set_weapon_media(self, weapon_id: str, media_id: str) -> None:
        with self.Session() as session:
            row = session.get(WeaponRow, weapon_id)
            if row:
                row.image_media_id = media_id
                session.commit()

    def set_perk_media(
        self,
        perk_id: str,
        *,
        main_media_id: Optional[str] = None,
        type_media_id: Optional[str] = None,
    ) -> None:
        with self.Session() as session:
            row = session.get(PerkRow, perk_id)
            if not row:
                return
            if main_media_id:
                row.main_media_id = main_media_id
            if type_media_id:
                row.type_media_id = type_media_id
            session.commit()


Base = declarative_base()


class MediaRow(Base):
    __tablename__ = "media"

    id = Column(String, primary_key=True)
    source_url = Column(String, nullable=True)
    storage_path = Column(String, nullable=False)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    format = Column(String, nullable=True)
    bytes = Column(Integer, nullable=True)
    sha256 = Column(LargeBinary(32), nullable=False, unique=True)
    attribution = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class WeaponRow(Base):
    __tablename__ = "weapons"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
    image_media_id = Column(String, ForeignKey("media.id"), nullable=True)


class PerkRow(Base):
    __tablename__ = "perks"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    weapon_id = Column(String, nullable=True, index=True)
    main_icon_url = Column(String, nullable=True)
    type_icon_url = Column(String, nullable=True)
    main_media_id = Column(String, ForeignKey("media.id"), nullable=True)
    type_media_id = Column(String, ForeignKey("media.id"), nullable=True)
