from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from core.config_defaults import DEFAULT_EMAIL_API_URL, DEFAULT_EMAIL_TIMEOUT_SECONDS
from infra.observability.otel import get_tracer, traced


logger = logging.getLogger("EmailClient")
_TRACER = get_tracer("infra.email_client")


class EmailAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)
    filename: str
    content: str  # base64
    content_type: str = "application/octet-stream"
    disposition: str = "attachment"


class EmailEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)
    email_from: str
    email_to: str
    email_subject: str
    email_html: str
    email_attachments: List[EmailAttachment] = Field(default_factory=list)


def build_sendgrid_body(envelope: EmailEnvelope) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "personalizations": [{"to": [{"email": envelope.email_to}]}],
        "from": {"email": envelope.email_from},
        "subject": envelope.email_subject,
        "content": [{"type": "text/html", "value": envelope.email_html}],
    }
    if envelope.email_attachments:
        body["attachments"] = [
            {
                "content": att.content,
                "filename": att.filename,
                "type": att.content_type,
                "disposition": att.disposition,
            }
            for att in envelope.email_attachments
        ]
    return body


class SendGridEmailClient:
    """Delivers e-mail through the SendGrid v3 mail/send API.

    ``send_email`` reports delivery as a boolean; HTTP failures are logged and
    returned as ``False`` so one bad address never raises into the caller.
    """

    def __init__(
        self,
        *,
        api_key: str,
        api_url: str = DEFAULT_EMAIL_API_URL,
        timeout_seconds: float = DEFAULT_EMAIL_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_url = api_url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SendGridEmailClient":
        email_cfg = cfg.get("email", {}) if isinstance(cfg, dict) else {}
        return cls(
            api_key=str(email_cfg.get("api_key") or ""),
            api_url=str(email_cfg.get("api_url") or DEFAULT_EMAIL_API_URL),
            timeout_seconds=float(email_cfg.get("timeout_seconds") or DEFAULT_EMAIL_TIMEOUT_SECONDS),
        )

    @traced(_TRACER, "email.send", span_arg="_span")
    async def send_email(self, envelope: EmailEnvelope, *, _span: Any = None) -> bool:
        if _span is not None:
            _span.set_attribute("http.method", "POST")
            _span.set_attribute("http.url", self.api_url)
        try:
            resp = await self.client.post(
                self.api_url,
                json=build_sendgrid_body(envelope),
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            logger.error("Email delivery failed to=%s: %s", envelope.email_to, exc)
            return False
        if _span is not None:
            _span.set_attribute("http.status_code", resp.status_code)
        if resp.status_code >= 400:
            logger.error(
                "Email delivery rejected to=%s status=%s body=%s",
                envelope.email_to,
                resp.status_code,
                resp.text[:500],
            )
            return False
        return True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
