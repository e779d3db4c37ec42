"""
SQL Database Layer for MealMatch
Stores groups, actor profiles, the preference ledger and match records.

Uniqueness is enforced by the schema itself:
- ``preferences``: one row per (actor_id, item_id, group_id)
- ``matches``:     one row per (group_id, item_id)

Helpers in this module convert ORM rows into ``mealmatch.domain.models``
dataclasses so no other layer handles ORM objects.
"""

from __future__ import annotations

import secrets
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Set, Tuple

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, String,
    UniqueConstraint, create_engine, event, or_,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from mealmatch import config
from mealmatch.domain.enums import SwipeDirection
from mealmatch.domain.errors import GroupMembershipError, MatchNotFound, StorageUnavailable
from mealmatch.domain.models import Group, MatchRecord, PreferenceEvent
from mealmatch.metrics import increment

Base = declarative_base()

INVITE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I
INVITE_CODE_LENGTH = 6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Actor(Base):
    """Actor profile.  Only carries what the core needs: the push endpoint."""
    __tablename__ = "actors"

    id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=True)
    push_token = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class PairGroup(Base):
    """Two-slot group.  ``second_actor_id`` stays NULL until invite redemption."""
    __tablename__ = "groups"

    id = Column(String(36), primary_key=True, default=_new_id)
    first_actor_id = Column(String(64), nullable=False, index=True)
    second_actor_id = Column(String(64), nullable=True, index=True)
    invite_code = Column(String(16), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("first_actor_id != second_actor_id", name="ck_groups_distinct_actors"),
    )


class Preference(Base):
    """Append-only preference ledger row."""
    __tablename__ = "preferences"

    id = Column(String(36), primary_key=True, default=_new_id)
    actor_id = Column(String(64), nullable=False, index=True)
    item_id = Column(String(64), nullable=False, index=True)
    group_id = Column(String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    direction = Column(String(8), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("actor_id", "item_id", "group_id", name="uq_preferences_actor_item_group"),
        CheckConstraint("direction IN ('like', 'dislike')", name="ck_preferences_direction"),
    )


class Match(Base):
    """Derived match record, created only through ``insert_match_if_absent``."""
    __tablename__ = "matches"

    id = Column(String(36), primary_key=True, default=_new_id)
    group_id = Column(String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(String(64), nullable=False)
    is_favorite = Column(Boolean, nullable=False, default=False)
    matched_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("group_id", "item_id", name="uq_matches_group_item"),
        Index("ix_matches_group_matched_at", "group_id", "matched_at"),
    )


# ---------------------------------------------------------------------------
# Engine / sessions
# ---------------------------------------------------------------------------

def build_engine(url: str = config.DATABASE_URL) -> Engine:
    """Create an engine; SQLite connections get WAL and a busy timeout."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={int(config.SQLITE_BUSY_TIMEOUT_MS)}")
            cursor.close()

        return engine
    return create_engine(url, pool_pre_ping=True)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)


def init_db(bind: Optional[Engine] = None):
    """Create all tables if they don't exist."""
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Session:
    """Get a database session. Caller must close it."""
    return SessionLocal()


@contextmanager
def storage_errors() -> Iterator[None]:
    """Translate connectivity faults into ``StorageUnavailable``.

    Constraint violations (``IntegrityError``) pass through untouched so the
    caller can tell "already there" apart from "datastore unreachable".
    """
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, InterfaceError) as exc:
        increment("storage_faults")
        raise StorageUnavailable(f"datastore unavailable: {exc.orig or exc}", cause=exc) from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            increment("storage_faults")
            raise StorageUnavailable(f"datastore connection lost: {exc.orig or exc}", cause=exc) from exc
        raise


# ---------------------------------------------------------------------------
# Row -> domain conversion
# ---------------------------------------------------------------------------

def to_group(row: PairGroup) -> Group:
    return Group(
        id=row.id,
        first=row.first_actor_id,
        second=row.second_actor_id,
        invite_code=row.invite_code,
    )


def to_preference(row: Preference) -> PreferenceEvent:
    return PreferenceEvent(
        id=row.id,
        actor_id=row.actor_id,
        item_id=row.item_id,
        group_id=row.group_id,
        direction=SwipeDirection(row.direction),
        created_at=_aware(row.created_at),
    )


def to_match(row: Match) -> MatchRecord:
    return MatchRecord(
        id=row.id,
        group_id=row.group_id,
        item_id=row.item_id,
        is_favorite=bool(row.is_favorite),
        matched_at=_aware(row.matched_at),
    )


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def get_group(db: Session, group_id: str) -> Optional[Group]:
    row = db.get(PairGroup, group_id)
    return to_group(row) if row else None


def resolve_group(db: Session, actor_id: str) -> Optional[Group]:
    """Return the actor's group, preferring a complete one over a pending invite."""
    rows = (
        db.query(PairGroup)
        .filter(or_(PairGroup.first_actor_id == actor_id, PairGroup.second_actor_id == actor_id))
        .order_by(PairGroup.created_at.desc())
        .all()
    )
    if not rows:
        return None
    complete = [r for r in rows if r.second_actor_id is not None]
    return to_group(complete[0] if complete else rows[0])


def create_group(db: Session, first_actor_id: str, invite_code: Optional[str] = None) -> Group:
    """Open a new incomplete group for ``first_actor_id``.

    An actor belongs to at most one group, so an open invite of their own
    counts too.
    """
    existing = resolve_group(db, first_actor_id)
    if existing is not None:
        raise GroupMembershipError(f"actor {first_actor_id} already belongs to group {existing.id}")

    row = PairGroup(
        first_actor_id=first_actor_id,
        invite_code=(invite_code or generate_invite_code()).upper(),
    )
    db.add(row)
    db.commit()
    return to_group(row)


def join_group(db: Session, invite_code: str, actor_id: str) -> Group:
    """Fill the second slot.  The incomplete -> complete transition happens once.

    A pending invite the joiner opened earlier is discarded in the same
    transaction, along with any preferences recorded in it.
    """
    code = invite_code.strip().upper()
    row = db.query(PairGroup).filter(PairGroup.invite_code == code).first()
    if row is None:
        raise GroupMembershipError(f"invalid invite code {code}")
    if row.first_actor_id == actor_id:
        raise GroupMembershipError("cannot join your own group")
    existing = resolve_group(db, actor_id)
    if existing is not None and existing.is_complete:
        raise GroupMembershipError(f"actor {actor_id} already belongs to group {existing.id}")

    # Conditional update: only one redeemer can fill the empty slot.
    updated = (
        db.query(PairGroup)
        .filter(PairGroup.id == row.id, PairGroup.second_actor_id.is_(None))
        .update({PairGroup.second_actor_id: actor_id, PairGroup.updated_at: _utcnow()},
                synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise GroupMembershipError(f"group for invite code {code} is already full")

    if existing is not None:
        db.query(Preference).filter(Preference.group_id == existing.id).delete(synchronize_session=False)
        dropped = (
            db.query(PairGroup)
            .filter(PairGroup.id == existing.id, PairGroup.second_actor_id.is_(None))
            .delete(synchronize_session=False)
        )
        if dropped != 1:
            # Someone redeemed the pending invite meanwhile.
            db.rollback()
            raise GroupMembershipError(f"actor {actor_id} already belongs to group {existing.id}")
    db.commit()
    db.refresh(row)
    return to_group(row)


# ---------------------------------------------------------------------------
# Actors / push endpoints
# ---------------------------------------------------------------------------

def set_push_token(db: Session, actor_id: str, token: Optional[str]) -> None:
    """Register (or clear, with ``None``) the actor's push endpoint."""
    row = db.get(Actor, actor_id)
    if row is None:
        row = Actor(id=actor_id, push_token=token)
        db.add(row)
    else:
        row.push_token = token
        row.updated_at = _utcnow()
    db.commit()


def get_push_token(db: Session, actor_id: str) -> Optional[str]:
    row = db.get(Actor, actor_id)
    return row.push_token if row and row.push_token else None


# ---------------------------------------------------------------------------
# Preference ledger
# ---------------------------------------------------------------------------

def insert_preference(
    db: Session,
    actor_id: str,
    item_id: str,
    group_id: str,
    direction: SwipeDirection,
) -> PreferenceEvent:
    """Append one ledger row.  Raises ``IntegrityError`` on a duplicate tuple."""
    row = Preference(
        actor_id=actor_id,
        item_id=item_id,
        group_id=group_id,
        direction=direction.value,
        created_at=_utcnow(),
    )
    db.add(row)
    db.commit()
    return to_preference(row)


def find_preference(
    db: Session,
    actor_id: str,
    item_id: str,
    group_id: str,
    direction: Optional[SwipeDirection] = None,
) -> Optional[PreferenceEvent]:
    query = db.query(Preference).filter(
        Preference.actor_id == actor_id,
        Preference.item_id == item_id,
        Preference.group_id == group_id,
    )
    if direction is not None:
        query = query.filter(Preference.direction == direction.value)
    row = query.first()
    return to_preference(row) if row else None


def count_preferences(db: Session, actor_id: str, item_id: str, group_id: str) -> int:
    return (
        db.query(Preference)
        .filter(
            Preference.actor_id == actor_id,
            Preference.item_id == item_id,
            Preference.group_id == group_id,
        )
        .count()
    )


def swiped_item_ids(db: Session, actor_id: str, group_id: str) -> Set[str]:
    """Items this actor already has a ledger entry for (catalog queue exclusion)."""
    rows = (
        db.query(Preference.item_id)
        .filter(Preference.actor_id == actor_id, Preference.group_id == group_id)
        .all()
    )
    return {r[0] for r in rows}


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------

def _dialect_insert(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


def insert_match_if_absent(db: Session, group_id: str, item_id: str) -> Tuple[MatchRecord, bool]:
    """Atomically create the (group_id, item_id) match unless it already exists.

    Returns ``(record, inserted)`` where ``inserted`` is True only for the one
    call whose row actually landed.  The decision is made by the unique
    constraint inside the store, never by a prior SELECT.
    """
    now = _utcnow()
    values = {
        "id": _new_id(),
        "group_id": group_id,
        "item_id": item_id,
        "is_favorite": False,
        "matched_at": now,
        "updated_at": now,
    }

    insert = _dialect_insert(db.get_bind().dialect.name)
    if insert is not None:
        stmt = (
            insert(Match.__table__)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["group_id", "item_id"])
        )
        result = db.execute(stmt)
        inserted = result.rowcount == 1
        db.commit()
    else:
        # Other backends: let the unique constraint reject the loser.
        try:
            db.add(Match(**values))
            db.commit()
            inserted = True
        except IntegrityError:
            db.rollback()
            inserted = False

    row = (
        db.query(Match)
        .filter(Match.group_id == group_id, Match.item_id == item_id)
        .one()
    )
    return to_match(row), inserted


def get_match(db: Session, group_id: str, item_id: str) -> Optional[MatchRecord]:
    row = (
        db.query(Match)
        .filter(Match.group_id == group_id, Match.item_id == item_id)
        .first()
    )
    return to_match(row) if row else None


def get_match_by_id(db: Session, match_id: str) -> Optional[MatchRecord]:
    row = db.get(Match, match_id)
    return to_match(row) if row else None


def list_matches(db: Session, group_id: str, favorites_only: bool = False) -> List[MatchRecord]:
    """Authoritative match list for a group, newest first."""
    query = db.query(Match).filter(Match.group_id == group_id)
    if favorites_only:
        query = query.filter(Match.is_favorite.is_(True))
    rows = query.order_by(Match.matched_at.desc(), Match.id.asc()).all()
    return [to_match(r) for r in rows]


def count_matches(db: Session, group_id: str, item_id: str) -> int:
    return (
        db.query(Match)
        .filter(Match.group_id == group_id, Match.item_id == item_id)
        .count()
    )


def set_match_favorite(db: Session, match_id: str, is_favorite: bool) -> MatchRecord:
    """Flip ``is_favorite``; the only mutation a match row ever receives."""
    row = db.get(Match, match_id)
    if row is None:
        raise MatchNotFound(match_id)
    row.is_favorite = bool(is_favorite)
    row.updated_at = _utcnow()
    db.commit()
    return to_match(row)
