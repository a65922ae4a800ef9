from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from core.agent_commands import (
    CMD_GET_ALL_ISSUED_CREDENTIALS,
    CMD_GET_ISSUED_CREDENTIAL_BY_ID,
    CMD_SEND_CREDENTIAL_CREATE_OFFER,
    CredentialCreateOfferCommand,
    GetIssuedCredentialByIdCommand,
    GetIssuedCredentialsCommand,
)
from core.config_defaults import (
    DEFAULT_EMAIL_FROM,
    DEFAULT_ISSUANCE_BATCH_SIZE,
    DEFAULT_ISSUANCE_RECIPIENT_TIMEOUT_SECONDS,
    DEFAULT_PLATFORM_NAME,
)
from core.errors import BadRequestError, NotFoundError, validation_error_to_bad_request
from core.issuance_models import (
    AgentTarget,
    FanOutResult,
    IssuanceRequest,
    Organization,
    PlatformConfigRecord,
)

from .agent_urls import (
    LABEL_CREATE_OFFER,
    LABEL_CREATE_OFFER_OOB,
    LABEL_GET_ISSUE_CREDENTIAL_BY_ID,
    LABEL_GET_ISSUE_CREDENTIALS,
    append_query_params,
    resolve_for_target,
)
from .fan_out import FanOutExecutor
from .messages import AGENT_ENDPOINT_NOT_FOUND, ORGANIZATION_NOT_FOUND
from .notification import NotificationAssembler
from .offer_pipeline import (
    AgentCaller,
    EmailSender,
    OutOfBandOfferPipeline,
    SharedOfferParams,
    build_credential_payload,
)

logger = logging.getLogger("IssuanceService")


class IssuanceRepository(Protocol):
    async def get_agent_endpoint(self, org_id: str) -> Optional[AgentTarget]: ...

    async def get_platform_config(self) -> Optional[PlatformConfigRecord]: ...

    async def get_organization(self, org_id: str) -> Optional[Organization]: ...

    async def save_issued_credential(
        self,
        *,
        org_id: str,
        connection_id: Optional[str],
        thread_id: str,
        protocol_version: Optional[str],
        credential_attributes: List[Dict[str, Any]],
        create_date_time: Optional[str],
    ) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class IssuanceSettings:
    platform_name: str = DEFAULT_PLATFORM_NAME
    email_from_default: str = DEFAULT_EMAIL_FROM
    batch_size: int = DEFAULT_ISSUANCE_BATCH_SIZE
    recipient_timeout_seconds: Optional[float] = DEFAULT_ISSUANCE_RECIPIENT_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "IssuanceSettings":
        platform_cfg = cfg.get("platform", {}) if isinstance(cfg, dict) else {}
        issuance_cfg = cfg.get("issuance", {}) if isinstance(cfg, dict) else {}
        return cls(
            platform_name=str(platform_cfg.get("name") or DEFAULT_PLATFORM_NAME),
            email_from_default=str(platform_cfg.get("email_from_default") or DEFAULT_EMAIL_FROM),
            batch_size=int(issuance_cfg.get("batch_size") or DEFAULT_ISSUANCE_BATCH_SIZE),
            recipient_timeout_seconds=issuance_cfg.get("recipient_timeout_seconds"),
        )


class IssuanceService:
    """Credential issuance operations backed by the organization's agent."""

    def __init__(
        self,
        *,
        settings: IssuanceSettings,
        repository: IssuanceRepository,
        proxy: AgentCaller,
        email_sender: EmailSender,
        assembler: Optional[NotificationAssembler] = None,
        executor: Optional[FanOutExecutor] = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.proxy = proxy
        self.email_sender = email_sender
        self.assembler = assembler or NotificationAssembler()
        self.executor = executor or FanOutExecutor(
            batch_size=settings.batch_size,
            recipient_timeout_seconds=settings.recipient_timeout_seconds,
        )

    async def _require_agent(self, org_id: str) -> AgentTarget:
        target = await self.repository.get_agent_endpoint(org_id)
        if target is None:
            raise NotFoundError(AGENT_ENDPOINT_NOT_FOUND, detail={"org_id": org_id})
        return target

    async def _agent_api_key(self, target: AgentTarget) -> Optional[str]:
        if target.api_key:
            return target.api_key
        platform_config = await self.repository.get_platform_config()
        return platform_config.api_key if platform_config else None

    async def send_credential_create_offer(
        self,
        *,
        org_id: str,
        credential_definition_id: str,
        comment: Optional[str],
        connection_id: str,
        attributes: List[Dict[str, Any]],
    ) -> Any:
        return await self._send_connection_offer(
            LABEL_CREATE_OFFER,
            org_id=org_id,
            credential_definition_id=credential_definition_id,
            comment=comment,
            connection_id=connection_id,
            attributes=attributes,
        )

    async def send_credential_out_of_band(
        self,
        *,
        org_id: str,
        credential_definition_id: str,
        comment: Optional[str],
        connection_id: str,
        attributes: List[Dict[str, Any]],
    ) -> Any:
        return await self._send_connection_offer(
            LABEL_CREATE_OFFER_OOB,
            org_id=org_id,
            credential_definition_id=credential_definition_id,
            comment=comment,
            connection_id=connection_id,
            attributes=attributes,
        )

    async def _send_connection_offer(
        self,
        method_label: str,
        *,
        org_id: str,
        credential_definition_id: str,
        comment: Optional[str],
        connection_id: str,
        attributes: List[Dict[str, Any]],
    ) -> Any:
        if not (credential_definition_id or "").strip():
            raise BadRequestError("credentialDefinitionId is required")
        target = await self._require_agent(org_id)
        url = resolve_for_target(method_label, target)
        command = CredentialCreateOfferCommand(
            issue_data=build_credential_payload(
                credential_definition_id=credential_definition_id,
                attributes=list(attributes or []),
                comment=comment,
                connection_id=connection_id,
                include_protocol_version=method_label != LABEL_CREATE_OFFER_OOB,
            ),
            url=url,
            api_key=await self._agent_api_key(target),
        )
        reply = await self.proxy.call(CMD_SEND_CREDENTIAL_CREATE_OFFER, command)
        return reply.response

    async def get_issued_credentials(
        self,
        *,
        org_id: str,
        thread_id: Optional[str] = None,
        connection_id: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Any:
        target = await self._require_agent(org_id)
        url = append_query_params(
            resolve_for_target(LABEL_GET_ISSUE_CREDENTIALS, target),
            {"threadId": thread_id, "connectionId": connection_id, "state": state},
        )
        command = GetIssuedCredentialsCommand(url=url, api_key=await self._agent_api_key(target))
        reply = await self.proxy.call(CMD_GET_ALL_ISSUED_CREDENTIALS, command)
        return reply.response

    async def get_issued_credential_by_record_id(self, *, org_id: str, credential_record_id: str) -> Any:
        if not (credential_record_id or "").strip():
            raise BadRequestError("credentialRecordId is required")
        target = await self._require_agent(org_id)
        url = resolve_for_target(LABEL_GET_ISSUE_CREDENTIAL_BY_ID, target, record_id=credential_record_id)
        command = GetIssuedCredentialByIdCommand(url=url, api_key=await self._agent_api_key(target))
        reply = await self.proxy.call(CMD_GET_ISSUED_CREDENTIAL_BY_ID, command)
        return reply.response

    async def save_issued_credential(
        self,
        *,
        org_id: str,
        thread_id: str,
        connection_id: Optional[str] = None,
        protocol_version: Optional[str] = None,
        credential_attributes: Optional[List[Dict[str, Any]]] = None,
        create_date_time: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record the credential state reported by the agent's webhook."""
        if not (thread_id or "").strip():
            raise BadRequestError("threadId is required")
        return await self.repository.save_issued_credential(
            org_id=org_id,
            connection_id=connection_id,
            thread_id=thread_id,
            protocol_version=protocol_version,
            credential_attributes=list(credential_attributes or []),
            create_date_time=create_date_time,
        )

    async def submit_out_of_band_issuance(self, request: IssuanceRequest | Dict[str, Any]) -> FanOutResult:
        """Broadcast an out-of-band credential offer by e-mail to every recipient.

        Agent endpoint, URL and organization are resolved once up front; a
        failure there aborts the whole request before any recipient is tried.
        Past that point failures are per recipient and only show up in the
        returned ``FanOutResult``.
        """
        if not isinstance(request, IssuanceRequest):
            try:
                request = IssuanceRequest.model_validate(request)
            except ValidationError as exc:
                raise validation_error_to_bad_request("out-of-band issuance", exc) from None

        try:
            target = await self._require_agent(request.org_id)
            url = resolve_for_target(LABEL_CREATE_OFFER_OOB, target)
            organization = await self.repository.get_organization(request.org_id)
            if organization is None:
                raise NotFoundError(ORGANIZATION_NOT_FOUND, detail={"org_id": request.org_id})
        except Exception as exc:
            logger.error("Out-of-band issuance setup failed org=%s: %s", request.org_id, exc)
            raise

        pipeline = OutOfBandOfferPipeline(
            params=SharedOfferParams(
                credential_definition_id=request.credential_definition_id,
                protocol_version=request.protocol_version,
                comment=request.comment,
                url=url,
                api_key=await self._agent_api_key(target),
                target=target,
                organization=organization,
                attributes=list(request.attributes),
            ),
            proxy=self.proxy,
            platform_configs=self.repository,
            assembler=self.assembler,
            email_sender=self.email_sender,
            platform_name=self.settings.platform_name,
            email_from_default=self.settings.email_from_default,
        )
        recipients = request.effective_recipients()
        result = await self.executor.fan_out(recipients, pipeline)
        if result.errors:
            logger.error(
                "Out-of-band issuance org=%s finished with %s failure(s): %s",
                request.org_id,
                len(result.errors),
                result.errors,
            )
        else:
            logger.info("Out-of-band issuance org=%s sent to %s recipient(s)", request.org_id, len(recipients))
        return result
