"""Rebuild the therapist-name search index from the database.

Indexes every active therapist, then drains any queued outbox events.

Usage:
    python -m therapy_backend.reindex_therapists
"""
import sys

from therapy_backend.core.errors import SearchUnavailable
from therapy_backend.database import build_engine, build_session_factory
from therapy_backend.search.name_index import TherapistNameDocument, TherapistNameIndex
from therapy_backend.search.outbox import OutboxWorker
from therapy_backend.search.projector import SearchIndexProjector
from therapy_backend.services.therapists import list_active_therapists


def reindex(session_factory, index: TherapistNameIndex) -> tuple[int, int]:
    """Return (indexed, failed) counts."""
    index.ensure_index()

    db = session_factory()
    try:
        therapists = list_active_therapists(db)
    finally:
        db.close()

    documents = [TherapistNameDocument(therapist_id=therapist.id, name=therapist.name) for therapist in therapists]
    failed = index.bulk_index(documents)

    OutboxWorker(session_factory, SearchIndexProjector(index)).drain_once()
    return len(documents) - failed, failed


def main() -> None:
    engine = build_engine()
    index = TherapistNameIndex()
    try:
        indexed, failed = reindex(build_session_factory(engine), index)
    except SearchUnavailable as exc:
        print(f"Search backend unavailable: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        index.close()
        engine.dispose()

    print(f"Indexed {indexed} active therapists.")
    if failed:
        print(f"{failed} therapists could not be indexed.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
