import pytest
from fastapi import HTTPException

from carechat.errors import BadRequest, ChatError, Conflict, Forbidden, NotFound, Unauthorized


@pytest.mark.parametrize(
    "error_cls, status_code",
    [(BadRequest, 400), (Unauthorized, 401), (Forbidden, 403), (NotFound, 404), (Conflict, 409)],
)
def test_typed_errors_map_to_http_status(error_cls, status_code):
    exc = error_cls("nope")

    assert isinstance(exc, ChatError)
    assert isinstance(exc, HTTPException)
    assert exc.status_code == status_code
    assert exc.message == "nope"


def test_errors_fall_back_to_default_detail():
    assert NotFound().detail == "Not found"
    assert ChatError().status_code == 500
    assert Unauthorized().headers == {"WWW-Authenticate": "Bearer"}
