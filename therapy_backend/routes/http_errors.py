from contextlib import contextmanager
from typing import Iterator

from fastapi import HTTPException, status

from therapy_backend.core.errors import (
    Conflict,
    DomainError,
    InvalidInput,
    NotFound,
    SearchUnavailable,
    Unauthorized,
    Unavailable,
)

STATUS_BY_ERROR = {
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    Conflict: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    Unauthorized: status.HTTP_401_UNAUTHORIZED,
    Unavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    SearchUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_exception(exc: DomainError) -> HTTPException:
    status_code = STATUS_BY_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(
        status_code=status_code,
        detail={'error': type(exc).__name__, 'message': exc.message},
    )


@contextmanager
def domain_errors() -> Iterator[None]:
    try:
        yield
    except DomainError as exc:
        raise to_http_exception(exc) from exc
