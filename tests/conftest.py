import json
import re
from datetime import time
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from therapy_backend.auth.jwt_handler import create_access_token
from therapy_backend.database import Base, build_engine, build_session_factory
from therapy_backend.main import create_app
from therapy_backend.models.availability import AvailabilitySlot
from therapy_backend.models.enums import DayOfWeek, UserRole, UserStatus
from therapy_backend.models.user import User
from therapy_backend.search.name_index import EDGE_NGRAM_FIELD, TherapistNameIndex
from therapy_backend.search.outbox import OutboxWorker

TOKEN_PATTERN = re.compile(r'[a-z0-9]+')


def _tokens(text: str) -> list[str]:
    return TOKEN_PATTERN.findall(text.lower())


def name_matches(name: str, term: str) -> bool:
    """Approximates the edge-n-gram match OR phrase-prefix match the real query runs."""
    name_tokens = _tokens(name)
    query_tokens = _tokens(term)
    if not query_tokens:
        return False

    edge_match = all(
        2 <= len(token) <= 15 and any(candidate.startswith(token) for candidate in name_tokens)
        for token in query_tokens
    )
    if edge_match:
        return True

    head, last = query_tokens[:-1], query_tokens[-1]
    for start in range(len(name_tokens) - len(head)):
        if name_tokens[start:start + len(head)] == head and name_tokens[start + len(head)].startswith(last):
            return True
    return False


class FakeSearchBackend:
    """In-memory stand-in for the index REST API, served through httpx.MockTransport."""

    def __init__(self, index_name: str = 'therapist_names'):
        self.index_name = index_name
        self.index_created = False
        self.index_definition: dict | None = None
        self.documents: dict[str, dict] = {}
        self.available = True
        self.reject_searches = False
        self.failing_documents: set[str] = set()
        self.requests: list[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.available:
            raise httpx.ConnectError('connection refused', request=request)

        path = request.url.path
        method = request.method
        doc_prefix = f'/{self.index_name}/_doc/'

        if path == '/' and method == 'GET':
            return httpx.Response(200, json={'tagline': 'You Know, for Search'})

        if path == f'/{self.index_name}':
            if method == 'HEAD':
                return httpx.Response(200 if self.index_created else 404)
            if method == 'PUT':
                self.index_created = True
                self.index_definition = json.loads(request.content)
                return httpx.Response(200, json={'acknowledged': True})

        if path.startswith(doc_prefix):
            doc_id = path[len(doc_prefix):]
            if doc_id in self.failing_documents:
                raise httpx.ConnectError('connection reset', request=request)
            if method == 'HEAD':
                return httpx.Response(200 if doc_id in self.documents else 404)
            if method == 'PUT':
                created = doc_id not in self.documents
                self.documents[doc_id] = json.loads(request.content)
                return httpx.Response(201 if created else 200, json={'result': 'created' if created else 'updated'})
            if method == 'DELETE':
                if self.documents.pop(doc_id, None) is None:
                    return httpx.Response(404, json={'result': 'not_found'})
                return httpx.Response(200, json={'result': 'deleted'})

        if path == f'/{self.index_name}/_search' and method == 'POST':
            if self.reject_searches:
                return httpx.Response(400, json={'error': {'type': 'search_phase_execution_exception'}})
            body = json.loads(request.content)
            should = body['query']['bool']['should']
            term = should[0]['match'][EDGE_NGRAM_FIELD]['query']
            hits = [
                {'_id': doc_id, '_source': source}
                for doc_id, source in self.documents.items()
                if source.get('status') == 'active' and name_matches(source['name'], term)
            ]
            return httpx.Response(200, json={'hits': {'hits': hits[: body['size']]}})

        if path == '/_bulk' and method == 'POST':
            lines = [json.loads(line) for line in request.content.decode().splitlines() if line.strip()]
            items = []
            for action, source in zip(lines[0::2], lines[1::2]):
                doc_id = action['index']['_id']
                self.documents[doc_id] = source
                items.append({'index': {'_id': doc_id, 'status': 201}})
            return httpx.Response(200, json={'errors': False, 'items': items})

        return httpx.Response(404, json={'error': f'unhandled {method} {path}'})


@pytest.fixture
def engine():
    engine = build_engine('sqlite://')
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions on a file database, so each one gets its own connection."""
    engine = build_engine(f'sqlite:///{tmp_path / "store.db"}')
    Base.metadata.create_all(bind=engine)
    try:
        yield build_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture
def search_backend():
    return FakeSearchBackend()


@pytest.fixture
def search_index(search_backend):
    index = TherapistNameIndex(base_url='http://search.test', transport=search_backend.transport())
    try:
        yield index
    finally:
        index.close()


def make_user(db, name: str, role: UserRole = UserRole.CUSTOMER, status: UserStatus = UserStatus.ACTIVE, **kwargs) -> User:
    email = kwargs.pop('email', f"{name.lower().replace(' ', '.').replace('..', '.')}@example.com")
    user = User(email=email, name=name, role=role, status=status, **kwargs)
    db.add(user)
    db.commit()
    return user


def make_therapist(db, name: str = 'Dr. Ada', status: UserStatus = UserStatus.ACTIVE, session_fee=None) -> User:
    fee = Decimal(session_fee) if session_fee is not None else None
    return make_user(db, name, role=UserRole.THERAPIST, status=status, session_fee=fee)


def make_slot(
    db,
    therapist: User,
    day: DayOfWeek = DayOfWeek.MONDAY,
    start: time = time(9, 0),
    end: time = time(10, 0),
    is_available: bool = True,
) -> AvailabilitySlot:
    slot = AvailabilitySlot(
        therapist_id=therapist.id,
        day_of_week=day,
        is_weekday=day not in (DayOfWeek.SATURDAY, DayOfWeek.SUNDAY),
        start_time=start,
        end_time=end,
        is_available=is_available,
    )
    db.add(slot)
    db.commit()
    return slot


def auth_headers(user: User) -> dict:
    return {'Authorization': f'Bearer {create_access_token(user.id, user.role.value)}'}


@pytest.fixture
def app(search_index):
    return create_app(database_url='sqlite://', search_index=search_index, start_worker=False)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def app_db(app, client):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def drain_outbox(app) -> None:
    OutboxWorker(app.state.session_factory, app.state.projector).drain_once()
