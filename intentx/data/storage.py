"""Database schema and SQL-backed intent store using SQLAlchemy."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from intentx.data.store import IntentStore
from intentx.errors import DuplicateId, DuplicateIntent, NotFound, StaleState
from intentx.execution.intents import FailureReason, Intent, IntentStatus, Mutation

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class IntentDB(Base):
    """Swap intents, one row per intent, never deleted."""

    __tablename__ = "intents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(36), unique=True, nullable=False, index=True)
    user_address = Column(String(64), nullable=False, index=True)
    # Lowercased copy for case-insensitive owner lookups.
    user_address_lc = Column(String(64), nullable=False, index=True)
    source_token = Column(String(255), nullable=False)
    target_token = Column(String(255), nullable=False)
    # Decimal amounts stored as text to keep 18-decimal precision on SQLite.
    source_amount = Column(String(80), nullable=False)
    min_target_amount = Column(String(80), nullable=False)
    slippage_bps = Column(Integer, nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)
    executed_amount = Column(String(80), nullable=True)
    quoted_amount = Column(String(80), nullable=True)
    settlement_ref = Column(String(255), nullable=True, index=True)
    signature = Column(Text, nullable=False, default="")
    signed_at = Column(Integer, nullable=True)
    fingerprint = Column(String(64), unique=True, nullable=True, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    failure_reason = Column(String(40), nullable=True)
    last_error = Column(Text, nullable=True)
    route = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    executed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _load_intent(row: IntentDB) -> Intent:
    """Build an Intent from a database row."""
    intent = Intent(
        intent_id=row.intent_id,
        user_address=row.user_address,
        source_token=row.source_token,
        target_token=row.target_token,
        source_amount=Decimal(row.source_amount),
        min_target_amount=Decimal(row.min_target_amount),
        slippage_bps=row.slippage_bps,
        signature=row.signature or "",
        signed_at=row.signed_at,
        fingerprint=row.fingerprint,
        created_at=row.created_at,
    )
    intent.status = IntentStatus(row.status)
    intent.executed_at = row.executed_at
    intent.executed_amount = _dec(row.executed_amount)
    intent.quoted_amount = _dec(row.quoted_amount)
    intent.settlement_ref = row.settlement_ref
    intent.attempts = row.attempts or 0
    intent.failure_reason = FailureReason(row.failure_reason) if row.failure_reason else None
    intent.last_error = row.last_error
    intent.route = row.route
    return intent


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
    """Map mutation changes onto column values."""
    values: dict[str, Any] = {}
    for name, value in changes.items():
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, (IntentStatus, FailureReason)):
            value = value.value
        values[name] = value
    values["updated_at"] = datetime.utcnow()
    return values


def create_db_engine(db_url: str) -> Engine:
    """Create an engine and the schema for `db_url`."""
    kwargs: dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url in ("sqlite://", "sqlite:///"):
            # One shared connection, otherwise every session sees an empty DB.
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    Base.metadata.create_all(bind=engine)
    return engine


class SqlIntentStore(IntentStore):
    """Intent store backed by a relational database.

    `compare_and_transition` issues a conditional UPDATE guarded by the
    expected status; the database serializes competing writers and the
    rowcount decides the single winner.
    """

    def __init__(self, db_url: str | None = None, engine: Engine | None = None) -> None:
        """Initialize SQL store.

        Args:
            db_url: Database URL (ignored when `engine` is given).
            engine: Existing SQLAlchemy engine.
        """
        if engine is None:
            if not db_url:
                raise ValueError("SqlIntentStore needs a db_url or an engine")
            engine = create_db_engine(db_url)
        else:
            Base.metadata.create_all(bind=engine)
        self.engine = engine
        self._session_factory = sessionmaker(
            bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    def _session(self) -> Session:
        return self._session_factory()

    def put(self, intent: Intent) -> Intent:
        row = IntentDB(
            intent_id=intent.intent_id,
            user_address=intent.user_address,
            user_address_lc=intent.user_address.lower(),
            source_token=intent.source_token,
            target_token=intent.target_token,
            source_amount=str(intent.source_amount),
            min_target_amount=str(intent.min_target_amount),
            slippage_bps=intent.slippage_bps,
            status=intent.status.value,
            signature=intent.signature,
            signed_at=intent.signed_at,
            fingerprint=intent.fingerprint,
            attempts=intent.attempts,
            created_at=intent.created_at,
        )
        with self._session() as session:
            self._check_unique(session, intent)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # Lost an insert race; report which key collided.
                session.rollback()
                self._check_unique(session, intent)
                raise
            return _load_intent(row)

    def _check_unique(self, session: Session, intent: Intent) -> None:
        existing = session.scalar(
            select(IntentDB.intent_id).where(IntentDB.intent_id == intent.intent_id)
        )
        if existing is not None:
            raise DuplicateId(f"Intent id already exists: {intent.intent_id}")
        if intent.fingerprint:
            existing = session.scalar(
                select(IntentDB.intent_id).where(IntentDB.fingerprint == intent.fingerprint)
            )
            if existing is not None:
                raise DuplicateIntent(f"Signed payload already admitted as {existing}")

    def get(self, intent_id: str) -> Intent:
        with self._session() as session:
            row = session.scalar(select(IntentDB).where(IntentDB.intent_id == intent_id))
            if row is None:
                raise NotFound(f"Intent not found: {intent_id}")
            return _load_intent(row)

    def list_by_user(self, user_address: str) -> list[Intent]:
        with self._session() as session:
            rows = session.scalars(
                select(IntentDB)
                .where(IntentDB.user_address_lc == user_address.lower())
                .order_by(IntentDB.created_at.desc(), IntentDB.id.desc())
            ).all()
            return [_load_intent(r) for r in rows]

    def list_by_status(self, status: IntentStatus) -> list[Intent]:
        with self._session() as session:
            rows = session.scalars(
                select(IntentDB)
                .where(IntentDB.status == status.value)
                .order_by(IntentDB.created_at, IntentDB.id)
            ).all()
            return [_load_intent(r) for r in rows]

    def list_all(self) -> list[Intent]:
        with self._session() as session:
            rows = session.scalars(
                select(IntentDB).order_by(IntentDB.created_at.desc(), IntentDB.id.desc())
            ).all()
            return [_load_intent(r) for r in rows]

    def compare_and_transition(
        self, intent_id: str, expected_status: IntentStatus, mutation: Mutation
    ) -> Intent:
        with self._session() as session:
            row = session.scalar(select(IntentDB).where(IntentDB.intent_id == intent_id))
            if row is None:
                raise NotFound(f"Intent not found: {intent_id}")
            current = _load_intent(row)
            if current.status != expected_status:
                raise StaleState(
                    f"Intent {intent_id} is {current.status.value}, expected {expected_status.value}",
                    current_status=current.status.value,
                )
            current.apply(mutation)

            values = _column_values(mutation.changes())
            if mutation.increment_attempts:
                values["attempts"] = IntentDB.attempts + 1
            result = session.execute(
                update(IntentDB)
                .where(IntentDB.intent_id == intent_id)
                .where(IntentDB.status == expected_status.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise StaleState(
                    f"Intent {intent_id} changed concurrently, expected {expected_status.value}"
                )
            row = session.scalar(
                select(IntentDB)
                .where(IntentDB.intent_id == intent_id)
                .execution_options(populate_existing=True)
            )
            current = _load_intent(row)
            session.commit()

            logger.debug(
                "Intent transition committed",
                extra={
                    "intent_id": intent_id,
                    "from_status": expected_status.value,
                    "to_status": current.status.value,
                },
            )
            return current

    def close(self) -> None:
        self.engine.dispose()
