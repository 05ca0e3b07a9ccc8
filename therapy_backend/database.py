import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from therapy_backend.core import config
from therapy_backend.core.errors import Unavailable

logger = logging.getLogger(__name__)

Base = declarative_base()

_schema_lock = Lock()
_booking_schema_checked: set[str] = set()


def _is_memory_sqlite(url: str) -> bool:
    return url in ('sqlite://', 'sqlite:///:memory:') or 'mode=memory' in url


def build_engine(url: str | None = None) -> Engine:
    url = url or config.DATABASE_URL
    timeout_seconds = config.DB_STATEMENT_TIMEOUT_MS / 1000

    if url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False, 'timeout': timeout_seconds}}
        if _is_memory_sqlite(url):
            kwargs['poolclass'] = StaticPool
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, 'connect')
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA foreign_keys=ON')
            cursor.close()

        return engine

    connect_args = {}
    if url.startswith('postgresql'):
        connect_args['options'] = f'-c statement_timeout={config.DB_STATEMENT_TIMEOUT_MS}'
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=config.DB_POOL_TIMEOUT,
        connect_args=connect_args,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction_guard(db: Session) -> Iterator[Session]:
    """Roll back on any failure; store errors become a retryable Unavailable."""
    try:
        yield db
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning('Store operation failed, transaction rolled back: %s', exc)
        raise Unavailable() from exc
    except Exception:
        db.rollback()
        raise


def ensure_booking_schema(engine: Engine) -> None:
    """Add the partial unique index to booking tables created before it existed."""
    key = str(engine.url)
    if key in _booking_schema_checked:
        return

    with _schema_lock:
        if key in _booking_schema_checked:
            return

        inspector = inspect(engine)

        if 'bookings' not in inspector.get_table_names():
            _booking_schema_checked.add(key)
            return

        existing_columns = {column['name'] for column in inspector.get_columns('bookings')}
        migration_steps = [
            ('notes', 'ALTER TABLE bookings ADD COLUMN notes TEXT'),
            ('is_paid', 'ALTER TABLE bookings ADD COLUMN is_paid BOOLEAN NOT NULL DEFAULT FALSE'),
            ('payment_date', 'ALTER TABLE bookings ADD COLUMN payment_date TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_active_slot '
                    'ON bookings(availability_id, booking_date, start_time) '
                    "WHERE status IN ('pending', 'confirmed')"
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_bookings_therapist_date ON bookings(therapist_id, booking_date)')
            )

        _booking_schema_checked.add(key)
