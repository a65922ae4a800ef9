import pytest

from core.errors import NotFoundError, UnsupportedOperationError
from core.issuance_models import AgentKind, AgentTarget
from services.issuance.agent_urls import (
    LABEL_CREATE_OFFER,
    LABEL_CREATE_OFFER_OOB,
    LABEL_GET_ISSUE_CREDENTIAL_BY_ID,
    LABEL_GET_ISSUE_CREDENTIALS,
    append_query_params,
    build_invitation_url,
    resolve_agent_url,
)

BASE = "http://agent:8001"


@pytest.mark.parametrize(
    ("label", "dedicated", "shared"),
    [
        (LABEL_CREATE_OFFER, "/credentials/create-offer", "/multi-tenancy/credentials/create-offer/t-1"),
        (LABEL_CREATE_OFFER_OOB, "/credentials/create-offer-oob", "/multi-tenancy/credentials/create-offer-oob/t-1"),
        (LABEL_GET_ISSUE_CREDENTIALS, "/credentials", "/multi-tenancy/credentials/t-1"),
    ],
)
def test_resolve_agent_url_by_topology(label, dedicated, shared) -> None:
    assert resolve_agent_url(label, AgentKind.DEDICATED, BASE, None) == BASE + dedicated
    assert resolve_agent_url(label, AgentKind.SHARED, BASE, "t-1") == BASE + shared


def test_record_scoped_url_places_record_then_tenant() -> None:
    assert (
        resolve_agent_url(LABEL_GET_ISSUE_CREDENTIAL_BY_ID, AgentKind.DEDICATED, BASE, None, "rec-9")
        == f"{BASE}/credentials/rec-9"
    )
    assert (
        resolve_agent_url(LABEL_GET_ISSUE_CREDENTIAL_BY_ID, AgentKind.SHARED, BASE, "t-1", "rec-9")
        == f"{BASE}/multi-tenancy/credentials/rec-9/t-1"
    )


@pytest.mark.parametrize("tenant_id", [None, ""])
@pytest.mark.parametrize(
    "label", [LABEL_CREATE_OFFER, LABEL_CREATE_OFFER_OOB, LABEL_GET_ISSUE_CREDENTIALS]
)
def test_shared_agent_without_tenant_is_not_found(label, tenant_id) -> None:
    with pytest.raises(NotFoundError) as info:
        resolve_agent_url(label, AgentKind.SHARED, BASE, tenant_id)
    assert info.value.message == "Agent url not found"


def test_record_scoped_url_needs_tenant_and_record() -> None:
    with pytest.raises(NotFoundError):
        resolve_agent_url(LABEL_GET_ISSUE_CREDENTIAL_BY_ID, AgentKind.SHARED, BASE, None, "rec-9")
    for kind in (AgentKind.SHARED, AgentKind.DEDICATED):
        with pytest.raises(NotFoundError) as info:
            resolve_agent_url(LABEL_GET_ISSUE_CREDENTIAL_BY_ID, kind, BASE, "t-1", None)
        assert info.value.detail["missing"] == "record_id"


def test_unknown_label_is_unsupported() -> None:
    with pytest.raises(UnsupportedOperationError):
        resolve_agent_url("revoke", AgentKind.DEDICATED, BASE, None)


def test_unknown_agent_kind_is_not_found() -> None:
    with pytest.raises(NotFoundError) as info:
        resolve_agent_url(LABEL_CREATE_OFFER, 7, BASE, "t-1")
    assert info.value.message == "Agent url not found"


def test_build_invitation_url_depends_on_tenant() -> None:
    shared = AgentTarget(endpoint_base=BASE, agent_kind=AgentKind.SHARED, tenant_id="t-1")
    dedicated = AgentTarget(endpoint_base=BASE, agent_kind=AgentKind.DEDICATED)

    assert build_invitation_url(shared, "inv-1") == f"{BASE}/multi-tenancy/url/t-1/inv-1"
    assert build_invitation_url(dedicated, "inv-1") == f"{BASE}/url/inv-1"


def test_append_query_params_skips_missing_values() -> None:
    url = append_query_params(f"{BASE}/credentials", {"threadId": "th", "connectionId": None, "state": "done"})
    assert url == f"{BASE}/credentials?threadId=th&state=done"
    assert append_query_params(f"{BASE}/credentials", {"state": None}) == f"{BASE}/credentials"
