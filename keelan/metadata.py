#!/usr/bin/env python3
"""
Crate and Ship Metadata Storage for Keelan.

State lives in a SQLite database (``<base>/database/keelan.db``) accessed
through SQLAlchemy. Three tables:

- build_descriptors: raw Keelanfile content plus its sha256 checksum
- crates:            immutable, content-addressed build artifacts
- ships:             supervised processes running a crate

Ship invariants kept here:
- process_id is set iff status == "running"
- stopped_at is stamped exactly when leaving "running"
"""

import hashlib
import os
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (DateTime, ForeignKey, Integer, String, Text,
                        UniqueConstraint, create_engine, event, select)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (DeclarativeBase, Mapped, Session, mapped_column,
                            sessionmaker)

from keelan.utils import DATABASE_FILE

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
STATUS_ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def checksum(content: str) -> str:
    """sha256 of a build descriptor's content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite connection with recommended settings."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


class Base(DeclarativeBase):
    pass


class BuildDescriptor(Base):
    """Keelanfile content a crate was built from."""

    __tablename__ = "build_descriptors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class Crate(Base):
    """A built, compressed root filesystem layer."""

    __tablename__ = "crates"
    __table_args__ = (UniqueConstraint("name", "tag", name="uq_crates_name_tag"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tag: Mapped[str] = mapped_column(String(64), nullable=False, default="latest")
    descriptor_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("build_descriptors.id", ondelete="SET NULL"), nullable=True
    )
    base_image: Mapped[str] = mapped_column(String(255), nullable=False)
    layer: Mapped[str] = mapped_column(Text, nullable=False)
    digest: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<Crate(name={self.name}, tag={self.tag}, digest={self.digest[:12]})>"


class Ship(Base):
    """A named, supervised process running a crate."""

    __tablename__ = "ships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    image_id: Mapped[int] = mapped_column(
        ForeignKey("crates.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    stopped_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    process_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<Ship(name={self.name}, status={self.status}, pid={self.process_id})>"


class MetadataStore:
    """
    Metadata store manager.

    Example:
        store = MetadataStore()
        descriptor = store.save_descriptor("web", content)
        crate = store.save_crate("web", "root", layer, digest, size, descriptor.id)
        store.create_ship("silent-orca", crate.id, pid=1234)
        store.mark_stopped("silent-orca", exit_code=0)
    """

    def __init__(self, db_path: str = DATABASE_FILE):
        self.db_path = db_path
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
        )
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def session(self) -> Session:
        return self._sessions()

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Build descriptors
    # ------------------------------------------------------------------

    def get_descriptor(self, name: str) -> Optional[BuildDescriptor]:
        with self.session() as s:
            return s.scalars(
                select(BuildDescriptor).where(BuildDescriptor.name == name).limit(1)
            ).first()

    def get_descriptor_by_id(self, descriptor_id: int) -> Optional[BuildDescriptor]:
        with self.session() as s:
            return s.get(BuildDescriptor, descriptor_id)

    def save_descriptor(self, name: str, content: str) -> BuildDescriptor:
        """
        Persist a build descriptor, reusing the row when identical content
        was stored before.
        """
        digest = checksum(content)
        with self.session() as s:
            existing = s.scalars(
                select(BuildDescriptor).where(BuildDescriptor.checksum == digest)
            ).first()
            if existing:
                return existing
            descriptor = BuildDescriptor(name=name, content=content, checksum=digest)
            s.add(descriptor)
            s.commit()
            return descriptor

    def delete_descriptor(self, descriptor_id: int) -> bool:
        """Delete a descriptor unless a crate still references it."""
        with self.session() as s:
            descriptor = s.get(BuildDescriptor, descriptor_id)
            if descriptor is None:
                return False
            in_use = s.scalars(
                select(Crate.id).where(Crate.descriptor_id == descriptor_id)
            ).first()
            if in_use is not None:
                return False
            s.delete(descriptor)
            s.commit()
            return True

    # ------------------------------------------------------------------
    # Crates
    # ------------------------------------------------------------------

    def get_crate(self, name: str, tag: str = "latest") -> Optional[Crate]:
        with self.session() as s:
            return s.scalars(
                select(Crate).where(Crate.name == name, Crate.tag == tag)
            ).first()

    def get_crate_by_id(self, crate_id: int) -> Optional[Crate]:
        with self.session() as s:
            return s.get(Crate, crate_id)

    def get_crate_by_digest(self, digest: str) -> Optional[Crate]:
        with self.session() as s:
            return s.scalars(select(Crate).where(Crate.digest == digest)).first()

    def crate_exists(self, name: str) -> bool:
        """A name is taken by a crate or by the descriptor of a build."""
        return self.get_crate(name) is not None or self.get_descriptor(name) is not None

    def list_crates(self) -> List[Crate]:
        with self.session() as s:
            return list(s.scalars(select(Crate).order_by(Crate.created_at)))

    def save_crate(
        self,
        name: str,
        base_image: str,
        layer: str,
        digest: str,
        size_bytes: int,
        descriptor_id: Optional[int],
        tag: str = "latest",
    ) -> Crate:
        crate = Crate(
            name=name,
            tag=tag,
            base_image=base_image,
            layer=layer,
            digest=digest,
            size_bytes=size_bytes,
            descriptor_id=descriptor_id,
        )
        with self.session() as s:
            s.add(crate)
            s.commit()
        return crate

    def delete_crate(self, name: str, tag: str = "latest") -> Optional[Crate]:
        with self.session() as s:
            crate = s.scalars(
                select(Crate).where(Crate.name == name, Crate.tag == tag)
            ).first()
            if crate is None:
                return None
            s.delete(crate)
            s.commit()
            return crate

    # ------------------------------------------------------------------
    # Ships
    # ------------------------------------------------------------------

    def get_ship(self, name: str) -> Optional[Ship]:
        with self.session() as s:
            return s.scalars(select(Ship).where(Ship.name == name)).first()

    def list_ships(self) -> List[Ship]:
        with self.session() as s:
            return list(s.scalars(select(Ship).order_by(Ship.created_at)))

    def list_running(self) -> List[Ship]:
        with self.session() as s:
            return list(s.scalars(select(Ship).where(Ship.status == STATUS_RUNNING)))

    def ships_for_crate(self, crate_id: int) -> List[Ship]:
        with self.session() as s:
            return list(s.scalars(select(Ship).where(Ship.image_id == crate_id)))

    def create_ship(
        self,
        name: str,
        image_id: int,
        pid: Optional[int],
        status: str = STATUS_RUNNING,
    ) -> Ship:
        now = utcnow()
        ship = Ship(
            name=name,
            image_id=image_id,
            status=status,
            process_id=pid if status == STATUS_RUNNING else None,
            started_at=now,
            stopped_at=None if status == STATUS_RUNNING else now,
        )
        with self.session() as s:
            s.add(ship)
            s.commit()
        return ship

    def mark_running(self, name: str, pid: int, image_id: Optional[int] = None) -> bool:
        with self.session() as s:
            ship = s.scalars(select(Ship).where(Ship.name == name)).first()
            if ship is None:
                return False
            ship.status = STATUS_RUNNING
            ship.process_id = pid
            ship.started_at = utcnow()
            ship.stopped_at = None
            ship.exit_code = None
            if image_id is not None:
                ship.image_id = image_id
            s.commit()
            return True

    def mark_stopped(
        self,
        name: str,
        exit_code: Optional[int] = None,
        only_pid: Optional[int] = None,
    ) -> bool:
        """
        Transition a ship to ``stopped``.

        Args:
            name: Ship name
            exit_code: Exit code to record, if known
            only_pid: Only act if the ship still records this PID

        Returns:
            True if the ship left ``running`` because of this call
        """
        with self.session() as s:
            ship = s.scalars(select(Ship).where(Ship.name == name)).first()
            if ship is None:
                return False
            if only_pid is not None and ship.process_id not in (None, only_pid):
                return False
            transitioned = ship.status == STATUS_RUNNING
            if transitioned:
                ship.status = STATUS_STOPPED
                ship.stopped_at = utcnow()
                ship.process_id = None
            if exit_code is not None and (transitioned or ship.exit_code is None):
                ship.exit_code = exit_code
            s.commit()
            return transitioned

    def mark_error(self, name: str, exit_code: Optional[int] = None) -> bool:
        with self.session() as s:
            ship = s.scalars(select(Ship).where(Ship.name == name)).first()
            if ship is None:
                return False
            if ship.status == STATUS_RUNNING:
                ship.stopped_at = utcnow()
            ship.status = STATUS_ERROR
            ship.process_id = None
            ship.exit_code = exit_code
            s.commit()
            return True

    def delete_ship(self, name: str) -> bool:
        with self.session() as s:
            ship = s.scalars(select(Ship).where(Ship.name == name)).first()
            if ship is None:
                return False
            s.delete(ship)
            s.commit()
            return True
