"""HTTP client for the therapist-name search index (Elasticsearch REST API)."""

import json
import logging
from dataclasses import dataclass

import httpx

from therapy_backend.core import config
from therapy_backend.core.errors import SearchUnavailable

logger = logging.getLogger(__name__)

EDGE_NGRAM_FIELD = 'name.edge_ngram_completion'

INDEX_DEFINITION = {
    'settings': {
        'analysis': {
            'analyzer': {
                'edge_ngram_analyzer': {
                    'tokenizer': 'edge_ngram_tokenizer',
                    'filter': ['lowercase'],
                },
            },
            'tokenizer': {
                'edge_ngram_tokenizer': {
                    'type': 'edge_ngram',
                    'min_gram': config.SEARCH_MIN_PREFIX_LENGTH,
                    'max_gram': config.SEARCH_MAX_PREFIX_LENGTH,
                    'token_chars': ['letter', 'digit'],
                },
            },
        },
    },
    'mappings': {
        'properties': {
            'therapist_id': {'type': 'integer'},
            'name': {
                'type': 'text',
                'analyzer': 'standard',
                'fields': {
                    'keyword': {'type': 'keyword', 'ignore_above': 256},
                    'edge_ngram_completion': {
                        'type': 'text',
                        'analyzer': 'edge_ngram_analyzer',
                        'search_analyzer': 'standard',
                    },
                },
            },
            'status': {'type': 'keyword'},
        },
    },
}


@dataclass(frozen=True)
class TherapistNameDocument:
    therapist_id: int
    name: str
    status: str = 'active'

    def to_source(self) -> dict:
        return {'therapist_id': self.therapist_id, 'name': self.name, 'status': self.status}


def build_prefix_query(term: str, size: int) -> dict:
    return {
        'size': size,
        'query': {
            'bool': {
                'filter': [{'term': {'status': 'active'}}],
                'should': [
                    {'match': {EDGE_NGRAM_FIELD: {'query': term, 'operator': 'and'}}},
                    {'match_phrase_prefix': {'name': {'query': term}}},
                ],
                'minimum_should_match': 1,
            },
        },
    }


class TherapistNameIndex:
    """Thin wrapper over the index REST endpoints the projector and search route need.

    Every transport failure or unexpected status is raised as SearchUnavailable so
    callers can tell an unreachable backend apart from an empty result.
    """

    def __init__(
        self,
        base_url: str = config.SEARCH_URL,
        index_name: str = config.SEARCH_INDEX_NAME,
        timeout: float = config.SEARCH_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self.index_name = index_name
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={'Content-Type': 'application/json'},
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise SearchUnavailable(f'Search backend unreachable: {exc}') from exc

    @staticmethod
    def _fail(response: httpx.Response, action: str) -> SearchUnavailable:
        return SearchUnavailable(f'Search backend rejected {action} (HTTP {response.status_code}).')

    def _doc_path(self, therapist_id: int) -> str:
        return f'/{self.index_name}/_doc/{therapist_id}'

    def ping(self) -> bool:
        try:
            response = self._request('GET', '/')
        except SearchUnavailable:
            return False
        return response.status_code == 200

    def ensure_index(self) -> bool:
        """Create the index with the edge-n-gram analyzer if it is missing; True when created."""
        response = self._request('HEAD', f'/{self.index_name}')
        if response.status_code == 200:
            return False
        if response.status_code != 404:
            raise self._fail(response, 'index lookup')

        response = self._request('PUT', f'/{self.index_name}', json=INDEX_DEFINITION)
        if response.status_code >= 400:
            raise self._fail(response, 'index creation')
        logger.info('Created search index %s', self.index_name)
        return True

    def exists(self, therapist_id: int) -> bool:
        response = self._request('HEAD', self._doc_path(therapist_id))
        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        raise self._fail(response, 'document lookup')

    def upsert(self, document: TherapistNameDocument) -> None:
        response = self._request('PUT', self._doc_path(document.therapist_id), json=document.to_source())
        if response.status_code >= 400:
            raise self._fail(response, 'document write')

    def delete(self, therapist_id: int) -> bool:
        response = self._request('DELETE', self._doc_path(therapist_id))
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise self._fail(response, 'document delete')
        return True

    def search_prefix(self, term: str, size: int = config.SEARCH_PAGE_SIZE) -> list[dict]:
        response = self._request('POST', f'/{self.index_name}/_search', json=build_prefix_query(term, size))
        if response.status_code >= 400:
            raise self._fail(response, 'search')

        hits = response.json().get('hits', {}).get('hits', [])
        return [
            {'id': hit['_source']['therapist_id'], 'name': hit['_source']['name']}
            for hit in hits
        ]

    def bulk_index(self, documents: list[TherapistNameDocument]) -> int:
        """Index documents in one request; returns the number of items the backend rejected."""
        if not documents:
            return 0

        lines = []
        for document in documents:
            lines.append(json.dumps({'index': {'_index': self.index_name, '_id': str(document.therapist_id)}}))
            lines.append(json.dumps(document.to_source()))
        payload = '\n'.join(lines) + '\n'

        response = self._request(
            'POST',
            '/_bulk',
            params={'refresh': 'true'},
            content=payload,
            headers={'Content-Type': 'application/x-ndjson'},
        )
        if response.status_code >= 400:
            raise self._fail(response, 'bulk index')

        body = response.json()
        if not body.get('errors'):
            return 0

        failed = 0
        for item in body.get('items', []):
            result = next(iter(item.values()))
            if result.get('error'):
                failed += 1
                logger.error(
                    'Bulk index failed for therapist %s: %s',
                    result.get('_id'),
                    result['error'].get('reason'),
                )
        return failed
