"""Per-recipient pipeline of an out-of-band credential offer broadcast."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from core.agent_commands import (
    CMD_OUT_OF_BAND_CREDENTIAL_OFFER,
    AgentReply,
    OutOfBandCredentialOfferCommand,
)
from core.errors import RecipientFailure
from core.issuance_models import AgentTarget, Organization, PlatformConfigRecord, Recipient
from infra.email_client import EmailEnvelope

from .agent_urls import build_invitation_url
from .messages import (
    CREDENTIAL_OFFER_NOT_FOUND,
    EMAIL_SEND_FAILED,
    INVITATION_NOT_FOUND,
    PLATFORM_CONFIG_NOT_FOUND,
)
from .notification import NotificationAssembler, build_email_envelope

logger = logging.getLogger("OfferPipeline")

DEFAULT_PROTOCOL_VERSION = "v1"
AUTO_ACCEPT_ALWAYS = "always"


class AgentCaller(Protocol):
    async def call(self, command: str, payload: Any) -> AgentReply: ...


class EmailSender(Protocol):
    async def send_email(self, envelope: EmailEnvelope) -> bool: ...


class PlatformConfigSource(Protocol):
    async def get_platform_config(self) -> Optional[PlatformConfigRecord]: ...


def build_credential_payload(
    *,
    credential_definition_id: str,
    attributes: List[Dict[str, Any]],
    comment: Optional[str],
    protocol_version: Optional[str] = None,
    connection_id: Optional[str] = None,
    include_protocol_version: bool = True,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if include_protocol_version:
        payload["protocolVersion"] = protocol_version or DEFAULT_PROTOCOL_VERSION
    payload.update(
        {
            "credentialFormats": {
                "indy": {
                    "attributes": attributes,
                    "credentialDefinitionId": credential_definition_id,
                }
            },
            "autoAcceptCredential": AUTO_ACCEPT_ALWAYS,
            "comment": comment,
        }
    )
    if connection_id is not None:
        payload["connectionId"] = connection_id
    return payload


@dataclass(frozen=True)
class SharedOfferParams:
    """Request-level state, read-only for the whole fan-out pass."""

    credential_definition_id: str
    protocol_version: Optional[str]
    comment: Optional[str]
    url: str
    api_key: Optional[str]
    target: AgentTarget
    organization: Organization
    attributes: List[Dict[str, Any]] = field(default_factory=list)


class OutOfBandOfferPipeline:
    """Offer, QR-encode, and e-mail a credential to one recipient.

    Raises ``RecipientFailure`` (or lets a transport error through) when the
    recipient cannot be served; the fan-out executor records either as that
    recipient's outcome.
    """

    def __init__(
        self,
        *,
        params: SharedOfferParams,
        proxy: AgentCaller,
        platform_configs: PlatformConfigSource,
        assembler: NotificationAssembler,
        email_sender: EmailSender,
        platform_name: str,
        email_from_default: str,
    ) -> None:
        self.params = params
        self.proxy = proxy
        self.platform_configs = platform_configs
        self.assembler = assembler
        self.email_sender = email_sender
        self.platform_name = platform_name
        self.email_from_default = email_from_default

    @property
    def email_subject(self) -> str:
        return f"{self.platform_name} Platform: Issuance of Your Credentials Required"

    def build_payload(self, recipient: Recipient) -> Dict[str, Any]:
        attributes = (
            recipient.attribute_override
            if recipient.attribute_override is not None
            else self.params.attributes
        )
        return build_credential_payload(
            credential_definition_id=self.params.credential_definition_id,
            attributes=list(attributes),
            comment=self.params.comment,
            protocol_version=self.params.protocol_version,
        )

    async def __call__(self, recipient: Recipient) -> None:
        command = OutOfBandCredentialOfferCommand(
            out_of_band_issuance_payload=self.build_payload(recipient),
            url=self.params.url,
            api_key=self.params.api_key,
        )
        reply = await self.proxy.call(CMD_OUT_OF_BAND_CREDENTIAL_OFFER, command)
        if reply is None or reply.response is None:
            raise RecipientFailure(CREDENTIAL_OFFER_NOT_FOUND)

        invitation_id = reply.invitation_id()
        if not invitation_id:
            raise RecipientFailure(INVITATION_NOT_FOUND)

        invitation_url = build_invitation_url(self.params.target, invitation_id)
        # QR encoding and template rendering are CPU-bound; keep them off the loop.
        artifact = await asyncio.to_thread(
            self.assembler.assemble,
            invitation_url,
            recipient.email_address,
            {"org_name": self.params.organization.name, "platform_name": self.platform_name},
        )

        platform_config = await self.platform_configs.get_platform_config()
        if platform_config is None:
            raise RecipientFailure(PLATFORM_CONFIG_NOT_FOUND)

        envelope = build_email_envelope(
            artifact,
            email_from=platform_config.email_from or self.email_from_default,
            email_to=recipient.email_address,
            subject=self.email_subject,
        )
        if not await self.email_sender.send_email(envelope):
            raise RecipientFailure(EMAIL_SEND_FAILED)
        logger.debug("Offer sent email=%s invitation=%s", recipient.email_address, invitation_id)
