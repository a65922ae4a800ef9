"""Request/reply schemas for commands sent to the agent service."""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.errors import UnsupportedOperationError

CMD_SEND_CREDENTIAL_CREATE_OFFER = "agent-send-credential-create-offer"
CMD_OUT_OF_BAND_CREDENTIAL_OFFER = "agent-out-of-band-credential-offer"
CMD_GET_ALL_ISSUED_CREDENTIALS = "agent-get-all-issued-credentials"
CMD_GET_ISSUED_CREDENTIAL_BY_ID = "agent-get-issued-credentials-by-credentialDefinitionId"


class _AgentCommand(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    url: str
    api_key: Optional[str] = Field(default=None, alias="apiKey")

    @field_validator("url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        text = (value or "").strip()
        if not text:
            raise ValueError("url is required")
        return text


class CredentialCreateOfferCommand(_AgentCommand):
    issue_data: Dict[str, Any] = Field(alias="issueData")


class OutOfBandCredentialOfferCommand(_AgentCommand):
    out_of_band_issuance_payload: Dict[str, Any] = Field(alias="outOfBandIssuancePayload")


class GetIssuedCredentialsCommand(_AgentCommand):
    pass


class GetIssuedCredentialByIdCommand(_AgentCommand):
    pass


COMMAND_SCHEMAS: Dict[str, Type[_AgentCommand]] = {
    CMD_SEND_CREDENTIAL_CREATE_OFFER: CredentialCreateOfferCommand,
    CMD_OUT_OF_BAND_CREDENTIAL_OFFER: OutOfBandCredentialOfferCommand,
    CMD_GET_ALL_ISSUED_CREDENTIALS: GetIssuedCredentialsCommand,
    CMD_GET_ISSUED_CREDENTIAL_BY_ID: GetIssuedCredentialByIdCommand,
}


def schema_for(command: str) -> Type[_AgentCommand]:
    schema = COMMAND_SCHEMAS.get(command)
    if schema is None:
        raise UnsupportedOperationError(f"Unsupported agent command: {command}")
    return schema


class AgentReply(BaseModel):
    model_config = ConfigDict(extra="allow")
    response: Any = None

    def invitation_id(self) -> Optional[str]:
        """Return ``response.invitation["@id"]`` of an out-of-band offer reply."""
        response = self.response
        if not isinstance(response, dict):
            return None
        invitation = response.get("invitation")
        if not isinstance(invitation, dict):
            return None
        value = invitation.get("@id")
        return str(value) if value else None
