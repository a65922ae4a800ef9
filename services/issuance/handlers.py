"""Inbound bus commands of the issuance service and their argument schemas."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.envelope import decode_request, encode_reply
from core.errors import (
    AppError,
    UnsupportedOperationError,
    rpc_error_from_exception,
    validation_error_to_bad_request,
)
from core.subject import parse_command

from .service import IssuanceService

logger = logging.getLogger("IssuanceHandlers")

CMD_SEND_CREDENTIAL_CREATE_OFFER = "send-credential-create-offer"
CMD_SEND_CREDENTIAL_CREATE_OFFER_OOB = "send-credential-create-offer-oob"
CMD_GET_ALL_ISSUED_CREDENTIALS = "get-all-issued-credentials"
CMD_GET_ISSUED_CREDENTIAL_BY_RECORD_ID = "get-issued-credentials-by-credentialRecordId"
CMD_WEBHOOK_ISSUE_CREDENTIAL = "webhook-get-issue-credential"
CMD_OUT_OF_BAND_CREDENTIAL_OFFER = "out-of-band-credential-offer"


def _coerce_org_id(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class _Args(BaseModel):
    # ``user`` and similar gateway context fields are accepted and ignored.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    org_id: str = Field(alias="orgId")

    @field_validator("org_id", mode="before")
    @classmethod
    def _normalize_org_id(cls, value: Any) -> Any:
        return _coerce_org_id(value)


class _CreateOfferArgs(_Args):
    credential_definition_id: str = Field(alias="credentialDefinitionId")
    comment: Optional[str] = None
    connection_id: str = Field(alias="connectionId")
    attributes: List[Dict[str, Any]] = Field(default_factory=list)


class _IssuedCredentialsArgs(_Args):
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    connection_id: Optional[str] = Field(default=None, alias="connectionId")
    state: Optional[str] = None


class _IssuedCredentialByIdArgs(_Args):
    credential_record_id: str = Field(alias="credentialRecordId")


class _WebhookArgs(_Args):
    thread_id: str = Field(alias="threadId")
    connection_id: Optional[str] = Field(default=None, alias="connectionId")
    protocol_version: Optional[str] = Field(default=None, alias="protocolVersion")
    credential_attributes: List[Dict[str, Any]] = Field(default_factory=list, alias="credentialAttributes")
    create_date_time: Optional[str] = Field(default=None, alias="createDateTime")


def _parse(command: str, model: type[BaseModel], data: Any) -> Any:
    try:
        return model.model_validate(data if data is not None else {})
    except ValidationError as exc:
        raise validation_error_to_bad_request(command, exc) from None


async def _send_create_offer(service: IssuanceService, data: Any) -> Any:
    args = _parse(CMD_SEND_CREDENTIAL_CREATE_OFFER, _CreateOfferArgs, data)
    return await service.send_credential_create_offer(
        org_id=args.org_id,
        credential_definition_id=args.credential_definition_id,
        comment=args.comment,
        connection_id=args.connection_id,
        attributes=args.attributes,
    )


async def _send_create_offer_oob(service: IssuanceService, data: Any) -> Any:
    args = _parse(CMD_SEND_CREDENTIAL_CREATE_OFFER_OOB, _CreateOfferArgs, data)
    return await service.send_credential_out_of_band(
        org_id=args.org_id,
        credential_definition_id=args.credential_definition_id,
        comment=args.comment,
        connection_id=args.connection_id,
        attributes=args.attributes,
    )


async def _get_issued_credentials(service: IssuanceService, data: Any) -> Any:
    args = _parse(CMD_GET_ALL_ISSUED_CREDENTIALS, _IssuedCredentialsArgs, data)
    return await service.get_issued_credentials(
        org_id=args.org_id,
        thread_id=args.thread_id,
        connection_id=args.connection_id,
        state=args.state,
    )


async def _get_issued_credential_by_id(service: IssuanceService, data: Any) -> Any:
    args = _parse(CMD_GET_ISSUED_CREDENTIAL_BY_RECORD_ID, _IssuedCredentialByIdArgs, data)
    return await service.get_issued_credential_by_record_id(
        org_id=args.org_id,
        credential_record_id=args.credential_record_id,
    )


async def _webhook_issue_credential(service: IssuanceService, data: Any) -> Any:
    args = _parse(CMD_WEBHOOK_ISSUE_CREDENTIAL, _WebhookArgs, data)
    return await service.save_issued_credential(
        org_id=args.org_id,
        thread_id=args.thread_id,
        connection_id=args.connection_id,
        protocol_version=args.protocol_version,
        credential_attributes=args.credential_attributes,
        create_date_time=args.create_date_time,
    )


async def _out_of_band_credential_offer(service: IssuanceService, data: Any) -> Any:
    # The gateway nests the request under ``outOfBandCredentialDto``.
    body = data.get("outOfBandCredentialDto", data) if isinstance(data, dict) else data
    result = await service.submit_out_of_band_issuance(body if body is not None else {})
    return {"allSucceeded": result.all_succeeded, "errors": list(result.errors)}


CommandHandler = Callable[[IssuanceService, Any], Awaitable[Any]]

COMMAND_HANDLERS: Dict[str, CommandHandler] = {
    CMD_SEND_CREDENTIAL_CREATE_OFFER: _send_create_offer,
    CMD_SEND_CREDENTIAL_CREATE_OFFER_OOB: _send_create_offer_oob,
    CMD_GET_ALL_ISSUED_CREDENTIALS: _get_issued_credentials,
    CMD_GET_ISSUED_CREDENTIAL_BY_RECORD_ID: _get_issued_credential_by_id,
    CMD_WEBHOOK_ISSUE_CREDENTIAL: _webhook_issue_credential,
    CMD_OUT_OF_BAND_CREDENTIAL_OFFER: _out_of_band_credential_offer,
}


async def dispatch_command(service: IssuanceService, command: Optional[str], data: Any) -> Any:
    handler = COMMAND_HANDLERS.get(command or "")
    if handler is None:
        raise UnsupportedOperationError(f"Unsupported command: {command}")
    return await handler(service, data)


async def handle_command_payload(service: IssuanceService, subject: str, raw: bytes) -> bytes:
    """Decode a request, run its command and encode the reply body.

    Failures never escape: they are logged and returned as the ``err`` member
    of the reply so the caller always gets an answer.
    """
    request_id: Optional[str] = None
    try:
        envelope = decode_request(raw)
        request_id = envelope.id
        command = parse_command(subject) or envelope.pattern.get("cmd")
        response = await dispatch_command(service, command, envelope.data)
    except AppError as exc:
        logger.error("Command failed subject=%s kind=%s: %s", subject, exc.kind, exc.message)
        return encode_reply(request_id, err=rpc_error_from_exception(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Command crashed subject=%s", subject)
        return encode_reply(request_id, err=rpc_error_from_exception(exc))
    return encode_reply(request_id, response=response)
