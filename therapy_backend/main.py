import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from therapy_backend.core import config
from therapy_backend.core.errors import SearchUnavailable
from therapy_backend.database import Base, build_engine, build_session_factory, ensure_booking_schema
from therapy_backend.models import availability, booking, outbox, user  # noqa: F401 - register tables
from therapy_backend.routes import availability_routes, booking_routes, therapist_routes
from therapy_backend.search.name_index import TherapistNameIndex
from therapy_backend.search.outbox import OutboxWorker
from therapy_backend.search.projector import SearchIndexProjector

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = app.state.engine

    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema(engine)
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')

    try:
        app.state.search_index.ensure_index()
    except SearchUnavailable:
        logger.exception('Search index bootstrap failed; name search stays unavailable until the backend is reachable.')

    worker = app.state.outbox_worker
    if worker is not None:
        worker.start()

    yield

    if worker is not None:
        worker.stop()
    app.state.search_index.close()
    engine.dispose()


def create_app(
    database_url: str | None = None,
    search_index: TherapistNameIndex | None = None,
    start_worker: bool | None = None,
) -> FastAPI:
    config.validate_runtime_config()

    app = FastAPI(title='Therapy Booking API', lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    engine = build_engine(database_url)
    session_factory = build_session_factory(engine)
    index = search_index or TherapistNameIndex()
    projector = SearchIndexProjector(index)

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.search_index = index
    app.state.projector = projector
    run_worker = config.OUTBOX_WORKER_ENABLED if start_worker is None else start_worker
    app.state.outbox_worker = OutboxWorker(session_factory, projector) if run_worker else None

    @app.get('/')
    def root():
        return {'status': 'Therapy Booking API Running'}

    app.include_router(availability_routes.router, prefix='/availability')
    app.include_router(booking_routes.router, prefix='/bookings')
    app.include_router(therapist_routes.router, prefix='/therapists')

    return app


app = create_app()
