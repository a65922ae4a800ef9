from contextlib import contextmanager
from typing import Any, Dict, List

import httpx
import pytest
from opentelemetry.trace import StatusCode

from core.agent_commands import CMD_SEND_CREDENTIAL_CREATE_OFFER
from core.config_defaults import default_config
from core.errors import BadRequestError, TransportError
from core.issuance_models import Recipient
from infra.agent_proxy import AgentTransportProxy
from infra.email_client import EmailEnvelope, SendGridEmailClient
from infra.observability import otel
from services.issuance.fan_out import FanOutExecutor


class _DummySpan:
    def __init__(self) -> None:
        self.attrs: Dict[str, Any] = {}
        self.recorded_exceptions: list[BaseException] = []
        self.status: Any = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attrs[str(key)] = value

    def record_exception(self, exc: BaseException) -> None:
        self.recorded_exceptions.append(exc)

    def set_status(self, status: Any) -> None:
        self.status = status


def _capture_spans(monkeypatch: pytest.MonkeyPatch) -> List[Dict[str, Any]]:
    started: List[Dict[str, Any]] = []

    @contextmanager
    def _fake_start_span(tracer: Any, name: str, **kwargs: Any):
        span = _DummySpan()
        started.append({"name": name, "span": span, **kwargs})
        try:
            yield span
        except Exception as exc:
            if kwargs.get("mark_error_on_exception"):
                otel.mark_span_error(span, exc)
            raise

    monkeypatch.setattr(otel, "start_span", _fake_start_span)
    return started


@pytest.mark.asyncio
async def test_traced_async_passes_headers_attributes_and_span(monkeypatch: pytest.MonkeyPatch) -> None:
    started = _capture_spans(monkeypatch)

    @otel.traced(
        "t_async",
        "demo.async",
        headers_arg="headers",
        span_arg="_span",
        attributes_getter=lambda args: {"vci.subject": str(args.get("subject"))},
        mark_error_on_exception=True,
    )
    async def _handler(subject: str, headers: Dict[str, str], _span: Any = None) -> Any:
        _span.set_attribute("vci.handler", "ok")
        return _span

    result = await _handler("s.1", {"traceparent": "tp"})

    assert len(started) == 1
    assert result is started[0]["span"]
    assert started[0]["name"] == "demo.async"
    assert started[0]["headers"] == {"traceparent": "tp"}
    assert started[0]["attributes"] == {"vci.subject": "s.1"}
    assert started[0]["mark_error_on_exception"] is True
    assert result.attrs["vci.handler"] == "ok"


def test_traced_sync_function(monkeypatch: pytest.MonkeyPatch) -> None:
    started = _capture_spans(monkeypatch)

    @otel.traced("t_sync", "demo.sync")
    def _handler(value: int) -> int:
        return value + 1

    assert _handler(1) == 2
    assert started[0]["name"] == "demo.sync"


def test_traced_rejects_empty_name() -> None:
    with pytest.raises(ValueError):
        otel.traced("t", "  ")


def test_mark_span_error_keeps_client_errors_compact() -> None:
    span = _DummySpan()

    otel.mark_span_error(span, BadRequestError("attributes are required"))

    assert span.recorded_exceptions == []
    assert span.attrs[otel.ERROR_TYPE_ATTR] == "BadRequestError"
    assert span.attrs[otel.ERROR_MESSAGE_ATTR] == "attributes are required"
    assert span.status.status_code == StatusCode.ERROR


def test_mark_span_error_records_server_side_exception() -> None:
    span = _DummySpan()
    exc = RuntimeError("boom\nsecond line")

    otel.mark_span_error(span, exc)

    assert span.recorded_exceptions == [exc]
    assert span.attrs[otel.ERROR_MESSAGE_ATTR] == "boom"


def test_inject_keeps_explicit_traceparent() -> None:
    headers = {"traceparent": "00-abc-def-01"}

    assert otel.inject_context_to_headers(headers)["traceparent"] == "00-abc-def-01"


def test_init_otel_is_off_with_default_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(otel, "_otel_initialized", False)
    monkeypatch.setattr(otel, "_otel_enabled", False)
    monkeypatch.setattr(otel, "_otel_ref_count", 0)

    assert otel.init_otel(cfg=default_config(), service_name="issuance") is False
    assert otel.is_otel_enabled() is False
    otel.shutdown_otel()


class _FailingNats:
    async def request_core(self, subject, payload, *, timeout=None):
        raise RuntimeError("socket gone")


@pytest.mark.asyncio
async def test_agent_call_span_is_marked_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    started = _capture_spans(monkeypatch)
    proxy = AgentTransportProxy(_FailingNats())
    payload = {
        "issueData": {"connectionId": "c"},
        "url": "http://agent/credentials/create-offer",
        "apiKey": "k",
    }

    with pytest.raises(TransportError):
        await proxy.call(CMD_SEND_CREDENTIAL_CREATE_OFFER, payload)

    span = started[0]
    assert span["name"] == "agent.call"
    assert span["attributes"]["vci.agent.command"] == CMD_SEND_CREDENTIAL_CREATE_OFFER
    assert span["span"].attrs[otel.ERROR_TYPE_ATTR] == "TransportError"


@pytest.mark.asyncio
async def test_fan_out_traces_chunks_and_recipients(monkeypatch: pytest.MonkeyPatch) -> None:
    started = _capture_spans(monkeypatch)

    async def pipeline(recipient: Recipient) -> None:
        if recipient.email_address == "b@example.com":
            raise RuntimeError("agent exploded")

    recipients = [Recipient(email_address=e) for e in ("a@example.com", "b@example.com", "c@example.com")]
    await FanOutExecutor(batch_size=2).fan_out(recipients, pipeline)

    chunks = [s for s in started if s["name"] == "issuance.fan_out.chunk"]
    per_recipient = [s for s in started if s["name"] == "issuance.fan_out.recipient"]
    assert [c["attributes"]["vci.chunk.size"] for c in chunks] == [2, 1]
    assert len(per_recipient) == 3
    outcomes = sorted(s["span"].attrs["vci.recipient.succeeded"] for s in per_recipient)
    assert outcomes == [False, True, True]
    errors = [s["span"].attrs.get("vci.recipient.error") for s in per_recipient]
    assert "agent exploded" in errors


@pytest.mark.asyncio
async def test_email_send_span_carries_http_status(monkeypatch: pytest.MonkeyPatch) -> None:
    started = _capture_spans(monkeypatch)
    envelope = EmailEnvelope(
        email_from="noreply@platform.test",
        email_to="holder@example.com",
        email_subject="Offer",
        email_html="<p>hi</p>",
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(403))) as http:
        client = SendGridEmailClient(api_key="sg-key", api_url="https://mail.test/send", client=http)
        assert await client.send_email(envelope) is False

    (span,) = started
    assert span["name"] == "email.send"
    assert span["span"].attrs["http.method"] == "POST"
    assert span["span"].attrs["http.status_code"] == 403
