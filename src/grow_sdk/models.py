"""Value types exchanged between callers and the request pipeline."""

from __future__ import annotations

import asyncio
import base64
import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Dict, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, JsonValue, ValidationError, ValidationInfo, field_validator

from .errors import ApiError, ErrorKind

ProgressCallback = Callable[[int, int], None]

# validation context for records read back from a DurableStore
STORED_CONTEXT = {"stored": True}


class HttpMethod(str, enum.Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    @property
    def is_mutating(self) -> bool:
        return self is not HttpMethod.GET


class JsonBody(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["json"] = "json"
    value: JsonValue

    def encode(self) -> bytes:
        return json.dumps(self.value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @property
    def content_type(self) -> str:
        return "application/json"


class RawBody(BaseModel):
    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    kind: Literal["raw"] = "raw"
    data: bytes
    content_type: str = "application/octet-stream"

    @field_validator("data", mode="before")
    @classmethod
    def _decode_stored(cls, value: Any, info: ValidationInfo) -> Any:
        if not isinstance(value, str):
            return value
        # persisted queue entries carry bytes as base64 text
        if info.context and info.context.get("stored"):
            return base64.b64decode(value, validate=True)
        raise ValueError("RawBody.data must be bytes; encode text before wrapping it")

    def encode(self) -> bytes:
        return self.data


Body = Annotated[Union[JsonBody, RawBody], Field(discriminator="kind")]


def coerce_body(value: Any) -> Optional[Union[JsonBody, RawBody]]:
    """Turn a caller-supplied payload into a tagged body, validating JSON payloads."""
    if value is None or isinstance(value, (JsonBody, RawBody)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return RawBody(data=bytes(value))
    if isinstance(value, str):
        return RawBody(data=value.encode("utf-8"), content_type="text/plain; charset=utf-8")
    try:
        return JsonBody(value=value)
    except ValidationError as exc:
        raise ApiError(
            f"Request body is not JSON serialisable: {type(value).__name__}",
            kind=ErrorKind.VALIDATION,
        ) from exc


def body_size(body: Optional[Union[JsonBody, RawBody]]) -> int:
    if body is None:
        return 0
    return len(body.encode())


class QueuedRequest(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    method: HttpMethod
    path: str = Field(..., min_length=1)
    body: Optional[Body] = None
    query_parameters: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt_count: int = Field(default=0, ge=0)


class ApiResponse(BaseModel):
    status_code: int
    body: Optional[Body] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    from_cache: bool = False

    @property
    def content(self) -> bytes:
        return self.body.encode() if self.body is not None else b""

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        if isinstance(self.body, JsonBody):
            return self.body.value
        if self.body is None:
            return None
        return json.loads(self.body.data)


class CancelToken:
    """Cancellation handle a caller can share across one or more requests."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Request was cancelled") -> None:
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RequestOptions:
    headers: Dict[str, str] = field(default_factory=dict)
    force_refresh: bool = False
    cache_ttl: Optional[float] = None
    timeout: Optional[float] = None
    cancel_token: Optional[CancelToken] = None
    on_send_progress: Optional[ProgressCallback] = None
    on_receive_progress: Optional[ProgressCallback] = None
    # replays clear this so a failed replay is not queued twice
    allow_defer: bool = True


__all__ = [
    "ApiResponse",
    "Body",
    "CancelToken",
    "HttpMethod",
    "JsonBody",
    "ProgressCallback",
    "QueuedRequest",
    "RawBody",
    "RequestOptions",
    "STORED_CONTEXT",
    "body_size",
    "coerce_body",
]
