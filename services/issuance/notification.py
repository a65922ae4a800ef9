from __future__ import annotations

import base64
import io
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import qrcode
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape
from pydantic import BaseModel, ConfigDict

from infra.email_client import EmailAttachment, EmailEnvelope

_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

OUT_OF_BAND_ISSUANCE_TEMPLATE = "out_of_band_issuance.html"
QR_ATTACHMENT_NAME = "qrcode.png"
QR_CONTENT_TYPE = "image/png"


class NotificationArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    html_body: str
    qr_image_bytes: bytes
    attachment_name: str


class TemplateRenderer:
    def __init__(self, templates_dir: Optional[Path] = None) -> None:
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir or _TEMPLATES_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,
        )

    def render(self, template_name: str, context: Mapping[str, Any]) -> str:
        return self.env.get_template(template_name).render(**context)


def encode_qr_png(data: str) -> bytes:
    buffer = io.BytesIO()
    image = qrcode.make(data)
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_uri(png: bytes) -> str:
    return f"data:{QR_CONTENT_TYPE};base64,{base64.b64encode(png).decode('ascii')}"


class NotificationAssembler:
    """Turns an invitation URL into the HTML body and QR attachment of an offer e-mail."""

    def __init__(
        self,
        renderer: Optional[TemplateRenderer] = None,
        *,
        template_name: str = OUT_OF_BAND_ISSUANCE_TEMPLATE,
        attachment_name: str = QR_ATTACHMENT_NAME,
    ) -> None:
        self.renderer = renderer or TemplateRenderer()
        self.template_name = template_name
        self.attachment_name = attachment_name

    def assemble(
        self,
        invitation_url: str,
        recipient_email: str,
        template_context: Mapping[str, Any],
    ) -> NotificationArtifact:
        qr_png = encode_qr_png(invitation_url)
        context: Dict[str, Any] = dict(template_context)
        context.update(
            email=recipient_email,
            qr_data_uri=png_data_uri(qr_png),
            attachment_name=self.attachment_name,
        )
        html = self.renderer.render(self.template_name, context)
        return NotificationArtifact(
            html_body=html,
            qr_image_bytes=qr_png,
            attachment_name=self.attachment_name,
        )


def build_email_envelope(
    artifact: NotificationArtifact,
    *,
    email_from: str,
    email_to: str,
    subject: str,
) -> EmailEnvelope:
    return EmailEnvelope(
        email_from=email_from,
        email_to=email_to,
        email_subject=subject,
        email_html=artifact.html_body,
        email_attachments=[
            EmailAttachment(
                filename=artifact.attachment_name,
                content=base64.b64encode(artifact.qr_image_bytes).decode("ascii"),
                content_type=QR_CONTENT_TYPE,
                disposition="attachment",
            )
        ],
    )
