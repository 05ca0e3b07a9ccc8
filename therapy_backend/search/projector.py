import enum
import logging
from dataclasses import dataclass

from therapy_backend.core import config
from therapy_backend.core.errors import InvalidInput
from therapy_backend.models.enums import UserStatus
from therapy_backend.search.name_index import TherapistNameDocument, TherapistNameIndex

logger = logging.getLogger(__name__)

# Fields whose change can alter a therapist's index document or membership.
INDEXED_FIELDS = frozenset({'name', 'status', 'role'})


class ChangeType(str, enum.Enum):
    CREATED = 'created'
    NAME_CHANGED = 'name_changed'
    STATUS_CHANGED = 'status_changed'
    DELETED = 'deleted'


class IndexAction(str, enum.Enum):
    UPSERT = 'upsert'
    DELETE = 'delete'
    NOOP = 'noop'


@dataclass(frozen=True)
class TherapistChangeEvent:
    therapist_id: int
    change_type: ChangeType
    name: str | None
    status: str | None
    changed_fields: tuple[str, ...] = ()

    @property
    def is_active(self) -> bool:
        return self.change_type != ChangeType.DELETED and self.status == UserStatus.ACTIVE.value


class SearchIndexProjector:
    """Keeps the therapist-name index in step with therapist records and serves prefix search."""

    def __init__(self, index: TherapistNameIndex, page_size: int = config.SEARCH_PAGE_SIZE):
        self.index = index
        self.page_size = page_size

    def plan(self, event: TherapistChangeEvent) -> IndexAction:
        if event.is_active:
            if event.change_type == ChangeType.CREATED or INDEXED_FIELDS.intersection(event.changed_fields):
                return IndexAction.UPSERT
            return IndexAction.NOOP
        return IndexAction.DELETE

    def apply(self, event: TherapistChangeEvent) -> IndexAction:
        """Apply one change; SearchUnavailable propagates so the caller can retry."""
        action = self.plan(event)

        if action == IndexAction.UPSERT:
            self.index.upsert(TherapistNameDocument(therapist_id=event.therapist_id, name=event.name or ''))
            logger.info('Indexed therapist %s (%s)', event.therapist_id, event.change_type.value)
            return action

        if action == IndexAction.DELETE:
            if not self.index.exists(event.therapist_id):
                return IndexAction.NOOP
            self.index.delete(event.therapist_id)
            logger.info('Removed therapist %s from search index', event.therapist_id)
            return action

        return action

    def search(self, name: str | None) -> list[dict]:
        term = (name or '').strip()
        if len(term) < config.SEARCH_MIN_PREFIX_LENGTH:
            raise InvalidInput(
                f'Search term must be at least {config.SEARCH_MIN_PREFIX_LENGTH} characters.'
            )
        return self.index.search_prefix(term, self.page_size)
