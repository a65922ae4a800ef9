from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AgentKind(IntEnum):
    """Deployment topology of the agent serving an organization."""

    DEDICATED = 1
    SHARED = 2


def _coerce_id(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("must be a string or integer id")
    if isinstance(value, int):
        return str(value)
    return value


class AgentTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    endpoint_base: str
    agent_kind: int
    tenant_id: Optional[str] = None
    api_key: Optional[str] = None


class PlatformConfigRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    email_from: Optional[str] = None
    api_key: Optional[str] = None


class Organization(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> Any:
        return _coerce_id(value)


class Recipient(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    email_address: str = Field(alias="emailId", min_length=1)
    attribute_override: Optional[List[Dict[str, Any]]] = Field(default=None, alias="attributes")


class IssuanceRequest(BaseModel):
    """Out-of-band issuance request as received from the gateway."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    org_id: str = Field(alias="orgId")
    credential_definition_id: str = Field(alias="credentialDefinitionId")
    protocol_version: Optional[str] = Field(default=None, alias="protocolVersion")
    comment: Optional[str] = None
    attributes: List[Dict[str, Any]] = Field(default_factory=list)
    recipients: List[Recipient] = Field(default_factory=list, alias="credentialOffer")
    email_id: Optional[str] = Field(default=None, alias="emailId")

    @field_validator("org_id", mode="before")
    @classmethod
    def _normalize_org_id(cls, value: Any) -> Any:
        return _coerce_id(value)

    @field_validator("credential_definition_id")
    @classmethod
    def _require_cred_def(cls, value: str) -> str:
        text = (value or "").strip()
        if not text:
            raise ValueError("credentialDefinitionId is required")
        return text

    @field_validator("recipients", "attributes", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        return value

    @model_validator(mode="after")
    def _require_target(self) -> "IssuanceRequest":
        if not self.recipients and not (self.email_id or "").strip():
            raise ValueError("either credentialOffer or emailId is required")
        return self

    def effective_recipients(self) -> List[Recipient]:
        """Explicit recipients, or the single implicit recipient in legacy mode."""
        if self.recipients:
            return list(self.recipients)
        return [Recipient(email_address=str(self.email_id).strip())]


class BatchOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    recipient: Recipient
    succeeded: bool
    error_detail: Optional[str] = None


class FanOutResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    all_succeeded: bool
    errors: List[str] = Field(default_factory=list)
