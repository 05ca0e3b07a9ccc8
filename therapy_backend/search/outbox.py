"""Transactional outbox feeding the therapist-name search index.

Therapist changes are written to ``search_outbox`` inside the same transaction as
the change itself; ``OutboxWorker`` drains the table and applies each event to
the index, retrying with exponential backoff while the index is unreachable.
An event that keeps failing is dead-lettered after ``OUTBOX_MAX_ATTEMPTS``.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import event, insert, inspect, select
from sqlalchemy.orm import Session, sessionmaker

from therapy_backend.core import config
from therapy_backend.core.errors import SearchUnavailable
from therapy_backend.models.enums import UserRole, UserStatus
from therapy_backend.models.outbox import SearchOutboxEvent
from therapy_backend.models.user import User
from therapy_backend.search.projector import ChangeType, SearchIndexProjector, TherapistChangeEvent

logger = logging.getLogger(__name__)

TRACKED_FIELDS = ('name', 'status', 'role')
MAX_ERROR_LENGTH = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _value(member) -> str | None:
    return getattr(member, 'value', member)


def _outbox_row(user: User, change_type: ChangeType, changed_fields: tuple[str, ...]) -> dict:
    return {
        'therapist_id': user.id,
        'event_type': change_type.value,
        'name': user.name,
        'status': _value(user.status or UserStatus.PENDING),
        'changed_fields': list(changed_fields),
        'attempts': 0,
    }


def _dirty_therapist_row(user: User) -> dict | None:
    state = inspect(user)
    changed = tuple(field for field in TRACKED_FIELDS if state.attrs[field].history.has_changes())
    if not changed:
        return None

    is_therapist = user.role == UserRole.THERAPIST
    was_therapist = UserRole.THERAPIST in (state.attrs.role.history.deleted or ())
    if not is_therapist and not was_therapist:
        return None

    if not is_therapist:
        change_type = ChangeType.DELETED
    elif 'status' in changed or 'role' in changed:
        change_type = ChangeType.STATUS_CHANGED
    else:
        change_type = ChangeType.NAME_CHANGED
    return _outbox_row(user, change_type, changed)


@event.listens_for(Session, 'after_flush')
def record_therapist_changes(session: Session, _flush_context) -> None:
    rows = []
    for obj in session.new:
        if isinstance(obj, User) and obj.role == UserRole.THERAPIST:
            rows.append(_outbox_row(obj, ChangeType.CREATED, ('name', 'status')))

    for obj in session.dirty:
        if isinstance(obj, User):
            row = _dirty_therapist_row(obj)
            if row is not None:
                rows.append(row)

    for obj in session.deleted:
        if isinstance(obj, User) and obj.role == UserRole.THERAPIST:
            rows.append(_outbox_row(obj, ChangeType.DELETED, ()))

    if rows:
        session.connection().execute(insert(SearchOutboxEvent.__table__), rows)


def to_change_event(row: SearchOutboxEvent) -> TherapistChangeEvent:
    return TherapistChangeEvent(
        therapist_id=row.therapist_id,
        change_type=ChangeType(row.event_type),
        name=row.name,
        status=row.status,
        changed_fields=tuple(row.changed_fields or ()),
    )


@dataclass
class DrainResult:
    applied: int = 0
    failed: int = 0
    deferred: int = 0
    dead_lettered: int = 0


class OutboxWorker:
    def __init__(
        self,
        session_factory: sessionmaker,
        projector: SearchIndexProjector,
        poll_interval: float = config.OUTBOX_POLL_SECONDS,
        batch_size: int = config.OUTBOX_BATCH_SIZE,
        backoff_base: float = config.OUTBOX_BACKOFF_BASE_SECONDS,
        backoff_max: float = config.OUTBOX_BACKOFF_MAX_SECONDS,
        max_attempts: int = config.OUTBOX_MAX_ATTEMPTS,
    ):
        self.session_factory = session_factory
        self.projector = projector
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_attempts = max_attempts
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None

    def backoff_for(self, attempts: int) -> timedelta:
        delay = self.backoff_base * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(delay, self.backoff_max))

    def _live_rows_after(self, db: Session, last_id: int) -> list[SearchOutboxEvent]:
        return db.execute(
            select(SearchOutboxEvent)
            .where(SearchOutboxEvent.id > last_id, SearchOutboxEvent.dead_lettered_at.is_(None))
            .order_by(SearchOutboxEvent.id)
            .limit(self.batch_size)
        ).scalars().all()

    def _record_failure(self, row: SearchOutboxEvent, exc: SearchUnavailable, now: datetime) -> bool:
        """Schedule a retry, or dead-letter the row; True when dead-lettered."""
        row.attempts += 1
        row.last_error = str(exc)[:MAX_ERROR_LENGTH]

        if row.attempts >= self.max_attempts:
            row.dead_lettered_at = now
            row.next_attempt_at = None
            logger.error(
                'Search index update for therapist %s dead-lettered after %s attempts: %s',
                row.therapist_id,
                row.attempts,
                exc,
            )
            return True

        row.next_attempt_at = now + self.backoff_for(row.attempts)
        logger.warning(
            'Search index update for therapist %s failed (attempt %s), retrying at %s: %s',
            row.therapist_id,
            row.attempts,
            row.next_attempt_at.isoformat(),
            exc,
        )
        return False

    def drain_once(self, now: datetime | None = None) -> DrainResult:
        """Attempt up to ``batch_size`` due events, oldest first.

        A therapist whose earliest pending event fails or is not yet due keeps
        all of its later events queued, so index mutations never reorder. Rows
        of blocked therapists are paged past, not counted against the batch,
        so other therapists keep converging.
        """
        now = now or utcnow()
        result = DrainResult()
        blocked: set[int] = set()
        attempted = 0
        last_id = 0

        db = self.session_factory()
        try:
            while attempted < self.batch_size:
                rows = self._live_rows_after(db, last_id)
                if not rows:
                    break

                for row in rows:
                    if attempted >= self.batch_size:
                        break
                    last_id = row.id

                    if row.therapist_id in blocked:
                        result.deferred += 1
                        continue
                    if row.next_attempt_at is not None and row.next_attempt_at > now:
                        blocked.add(row.therapist_id)
                        result.deferred += 1
                        continue

                    attempted += 1
                    try:
                        self.projector.apply(to_change_event(row))
                    except SearchUnavailable as exc:
                        if self._record_failure(row, exc, now):
                            result.dead_lettered += 1
                        else:
                            result.failed += 1
                        blocked.add(row.therapist_id)
                    else:
                        db.delete(row)
                        result.applied += 1
                    db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        return result

    def pending_count(self) -> int:
        db = self.session_factory()
        try:
            return len(db.execute(
                select(SearchOutboxEvent.id).where(SearchOutboxEvent.dead_lettered_at.is_(None))
            ).all())
        finally:
            db.close()

    def dead_letter_count(self) -> int:
        db = self.session_factory()
        try:
            return len(db.execute(
                select(SearchOutboxEvent.id).where(SearchOutboxEvent.dead_lettered_at.is_not(None))
            ).all())
        finally:
            db.close()

    def wake(self) -> None:
        self._wake_event.set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='search-outbox', daemon=True)
        self._thread.start()
        logger.info('Search outbox worker started (poll every %ss)', self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info('Search outbox worker stopped')

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.drain_once()
            except Exception:
                logger.exception('Search outbox drain failed')
            self._wake_event.wait(self.poll_interval)
            self._wake_event.clear()
