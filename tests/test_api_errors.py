import json

import pytest
from starlette.requests import Request

from sharpflow.api.errors import _not_found, _validation_fault
from sharpflow.errors import JobNotFoundError, ValidationFault


def _request() -> Request:
    return Request(
        {"type": "http", "method": "POST", "path": "/jobs", "headers": [], "query_string": b""}
    )


@pytest.mark.asyncio
async def test_validation_fault_is_400_with_fields() -> None:
    fault = ValidationFault("Invalid payload", details={"fields": ["mailbox"]})
    response = await _validation_fault(_request(), fault)

    assert response.status_code == 400
    assert json.loads(response.body) == {"detail": "Invalid payload", "fields": ["mailbox"]}


@pytest.mark.asyncio
async def test_not_found_is_404() -> None:
    response = await _not_found(_request(), JobNotFoundError("abc"))
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("handler", [_validation_fault, _not_found])
async def test_unexpected_exception_type_is_opaque_500(handler) -> None:
    response = await handler(_request(), RuntimeError("db password is hunter2"))

    assert response.status_code == 500
    detail = json.loads(response.body)["detail"]
    assert "hunter2" not in detail
    assert "(ref: " in detail
