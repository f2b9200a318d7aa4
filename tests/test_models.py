from __future__ import annotations

import pytest
from pydantic import ValidationError

from grow_sdk.errors import ApiError, ErrorKind
from grow_sdk.models import STORED_CONTEXT, HttpMethod, JsonBody, QueuedRequest, RawBody, coerce_body


def test_raw_body_rejects_text() -> None:
    with pytest.raises(ValidationError) as excinfo:
        RawBody(data="hello")
    assert "must be bytes" in str(excinfo.value)


def test_stored_raw_body_is_base64_decoded() -> None:
    entry = QueuedRequest(method=HttpMethod.PUT, path="/photo", body=RawBody(data=b"\x89PNG", content_type="image/png"))
    stored = entry.model_dump(mode="json")

    assert stored["body"]["data"] == "iVBORw=="
    restored = QueuedRequest.model_validate(stored, context=STORED_CONTEXT)
    assert restored.body == RawBody(data=b"\x89PNG", content_type="image/png")

    with pytest.raises(ValidationError):
        QueuedRequest.model_validate(stored)


def test_stored_raw_body_must_be_valid_base64() -> None:
    with pytest.raises(ValidationError):
        RawBody.model_validate({"data": "not base64!"}, context=STORED_CONTEXT)


def test_coerce_body() -> None:
    assert coerce_body(None) is None
    assert coerce_body(b"\x00") == RawBody(data=b"\x00")
    text = coerce_body("plain")
    assert isinstance(text, RawBody)
    assert text.data == b"plain"
    assert text.content_type.startswith("text/plain")
    assert coerce_body({"a": [1, 2]}) == JsonBody(value={"a": [1, 2]})

    with pytest.raises(ApiError) as excinfo:
        coerce_body({"when": object()})
    assert excinfo.value.kind is ErrorKind.VALIDATION
