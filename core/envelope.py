"""Request/reply envelopes exchanged over core NATS.

Request:  {"pattern": {"cmd": ...}, "data": {...}, "id": "<uuid>"}
Reply:    {"id": "<uuid>", "response": ..., "isDisposed": true}
          {"id": "<uuid>", "err": {...}, "isDisposed": true}
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import uuid6
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import BadRequestError, validation_error_to_bad_request


class RequestEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")
    pattern: Dict[str, Any] = Field(default_factory=dict)
    data: Any = None
    id: Optional[str] = None


class ReplyEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    id: Optional[str] = None
    response: Any = None
    err: Any = None
    is_disposed: bool = Field(default=True, alias="isDisposed")

    @property
    def failed(self) -> bool:
        return self.err is not None


def new_request_id() -> str:
    return str(uuid6.uuid7())


def _loads(raw: bytes, *, what: str) -> Any:
    try:
        return json.loads(raw.decode("utf-8")) if raw else {}
    except (UnicodeDecodeError, ValueError) as exc:
        raise BadRequestError(f"{what}: body is not valid JSON", cause=exc) from exc


def encode_request(pattern: Dict[str, Any], data: Any, *, request_id: Optional[str] = None) -> bytes:
    envelope = RequestEnvelope(pattern=pattern, data=data, id=request_id or new_request_id())
    return json.dumps(envelope.model_dump(mode="json"), default=str).encode("utf-8")


def decode_request(raw: bytes) -> RequestEnvelope:
    body = _loads(raw, what="request")
    if not isinstance(body, dict):
        raise BadRequestError("request: body must be an object")
    try:
        return RequestEnvelope.model_validate(body)
    except ValidationError as exc:
        raise validation_error_to_bad_request("request", exc) from None


def encode_reply(
    request_id: Optional[str],
    *,
    response: Any = None,
    err: Any = None,
) -> bytes:
    body: Dict[str, Any] = {"id": request_id, "isDisposed": True}
    if err is not None:
        body["err"] = err
    else:
        body["response"] = response
    return json.dumps(body, default=str).encode("utf-8")


def decode_reply(raw: bytes) -> ReplyEnvelope:
    body = _loads(raw, what="reply")
    if not isinstance(body, dict):
        raise BadRequestError("reply: body must be an object")
    try:
        return ReplyEnvelope.model_validate(body)
    except ValidationError as exc:
        raise validation_error_to_bad_request("reply", exc) from None
