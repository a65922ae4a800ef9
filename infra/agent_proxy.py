from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from nats.errors import ConnectionClosedError, NoRespondersError, TimeoutError
from pydantic import BaseModel, ValidationError

from core.agent_commands import AgentReply, schema_for
from core.envelope import decode_reply, encode_request
from core.errors import BadRequestError, TransportError, validation_error_to_bad_request
from core.subject import cmd_subject, command_pattern
from infra.nats_client import NATSClient
from infra.observability.otel import get_tracer, traced


logger = logging.getLogger("AgentProxy")
_TRACER = get_tracer("infra.agent_proxy")


def _transport_error_from_err(command: str, err: Any) -> TransportError:
    if isinstance(err, dict):
        status = err.get("statusCode") or err.get("status") or 500
        message = err.get("message") or err.get("error") or f"{command} failed"
        try:
            status_code = int(status)
        except (TypeError, ValueError):
            status_code = 500
        return TransportError(str(message), status_code=status_code, detail=err)
    return TransportError(str(err) if err else f"{command} failed", status_code=500)


class AgentTransportProxy:
    """Sends a command to the agent service and awaits its single reply.

    No retries: each call is at-most-once. Calls are independent; nothing is
    ordered across concurrent calls.
    """

    def __init__(self, nats: NATSClient, *, timeout_seconds: Optional[float] = None) -> None:
        self.nats = nats
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def validate(command: str, payload: BaseModel | Dict[str, Any]) -> Dict[str, Any]:
        schema = schema_for(command)
        if isinstance(payload, BaseModel) and not isinstance(payload, schema):
            raise BadRequestError(
                f"{command}: payload must be {schema.__name__}, got {type(payload).__name__}"
            )
        try:
            model = payload if isinstance(payload, schema) else schema.model_validate(payload)
        except ValidationError as exc:
            raise validation_error_to_bad_request(command, exc) from None
        return model.model_dump(mode="json", by_alias=True)

    @traced(
        _TRACER,
        "agent.call",
        attributes_getter=lambda args: {"messaging.system": "nats", "vci.agent.command": args.get("command")},
        mark_error_on_exception=True,
    )
    async def call(self, command: str, payload: BaseModel | Dict[str, Any]) -> AgentReply:
        data = self.validate(command, payload)
        subject = cmd_subject(command)
        try:
            msg = await self.nats.request_core(
                subject,
                encode_request(command_pattern(command), data),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            logger.error("Agent call timed out cmd=%s", command)
            raise TransportError(f"{command}: agent did not reply in time", status_code=504, cause=exc) from exc
        except NoRespondersError as exc:
            logger.error("Agent call has no responders cmd=%s", command)
            raise TransportError(f"{command}: agent service unavailable", status_code=503, cause=exc) from exc
        except ConnectionClosedError as exc:
            raise TransportError(f"{command}: bus connection closed", status_code=503, cause=exc) from exc
        except Exception as exc:  # noqa: BLE001
            logger.error("Agent call failed cmd=%s: %s", command, exc)
            raise TransportError(f"{command}: {exc}", status_code=503, cause=exc) from exc

        try:
            reply = decode_reply(msg.data)
        except BadRequestError as exc:
            raise TransportError(f"{command}: malformed reply", status_code=502, cause=exc) from exc
        if reply.failed:
            error = _transport_error_from_err(command, reply.err)
            logger.error(
                "Agent replied with error cmd=%s status=%s: %s",
                command,
                error.status_code,
                error.message,
            )
            raise error
        return AgentReply(response=reply.response)
