"""Agent endpoint resolution by operation and agent topology.

Dedicated agents expose operations directly under their endpoint. Shared
agents serve many tenants, so their paths carry the tenant id (``#``) and,
for record-scoped operations, the record id (``#``) followed by the tenant
id (``@``).
"""

from __future__ import annotations

from typing import Any, Mapping, NamedTuple, Optional

from core.errors import NotFoundError, UnsupportedOperationError
from core.issuance_models import AgentKind, AgentTarget

from .messages import AGENT_URL_NOT_FOUND

LABEL_CREATE_OFFER = "create-offer"
LABEL_CREATE_OFFER_OOB = "create-offer-oob"
LABEL_GET_ISSUE_CREDENTIALS = "get-issue-credentials"
LABEL_GET_ISSUE_CREDENTIAL_BY_ID = "get-issue-credential-by-credential-id"


class _Route(NamedTuple):
    dedicated: str
    shared: str
    record_scoped: bool = False


_ROUTES: Mapping[str, _Route] = {
    LABEL_CREATE_OFFER: _Route(
        dedicated="/credentials/create-offer",
        shared="/multi-tenancy/credentials/create-offer/#",
    ),
    LABEL_CREATE_OFFER_OOB: _Route(
        dedicated="/credentials/create-offer-oob",
        shared="/multi-tenancy/credentials/create-offer-oob/#",
    ),
    LABEL_GET_ISSUE_CREDENTIALS: _Route(
        dedicated="/credentials",
        shared="/multi-tenancy/credentials/#",
    ),
    LABEL_GET_ISSUE_CREDENTIAL_BY_ID: _Route(
        dedicated="/credentials",
        shared="/multi-tenancy/credentials/#/@",
        record_scoped=True,
    ),
}


def resolve_agent_url(
    method_label: str,
    agent_kind: Any,
    endpoint_base: str,
    tenant_id: Optional[str],
    record_id: Optional[str] = None,
) -> str:
    route = _ROUTES.get(method_label)
    if route is None:
        raise UnsupportedOperationError(
            f"Unsupported agent operation: {method_label}",
            detail={"method_label": method_label},
        )

    url = ""
    if route.record_scoped and not record_id:
        raise NotFoundError(AGENT_URL_NOT_FOUND, detail={"method_label": method_label, "missing": "record_id"})
    if agent_kind == AgentKind.DEDICATED:
        url = f"{endpoint_base}{route.dedicated}"
        if route.record_scoped:
            url = f"{url}/{record_id}"
    elif agent_kind == AgentKind.SHARED:
        if not tenant_id:
            raise NotFoundError(AGENT_URL_NOT_FOUND, detail={"method_label": method_label, "missing": "tenant_id"})
        if route.record_scoped:
            url = f"{endpoint_base}{route.shared}".replace("#", str(record_id), 1).replace("@", str(tenant_id), 1)
        else:
            url = f"{endpoint_base}{route.shared}".replace("#", str(tenant_id), 1)

    if not url:
        raise NotFoundError(AGENT_URL_NOT_FOUND, detail={"agent_kind": agent_kind})
    return url


def resolve_for_target(method_label: str, target: AgentTarget, record_id: Optional[str] = None) -> str:
    return resolve_agent_url(
        method_label,
        target.agent_kind,
        target.endpoint_base,
        target.tenant_id,
        record_id,
    )


def build_invitation_url(target: AgentTarget, invitation_id: str) -> str:
    """Public URL a holder's wallet opens to fetch an out-of-band invitation."""
    if target.tenant_id:
        return f"{target.endpoint_base}/multi-tenancy/url/{target.tenant_id}/{invitation_id}"
    return f"{target.endpoint_base}/url/{invitation_id}"


def append_query_params(url: str, params: Mapping[str, Any]) -> str:
    for key, value in params.items():
        if value is None:
            continue
        joiner = "&" if "?" in url else "?"
        url = f"{url}{joiner}{key}={value}"
    return url
