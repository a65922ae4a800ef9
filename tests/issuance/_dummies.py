from typing import Any, Dict, List, Optional

from core.agent_commands import AgentReply
from core.issuance_models import AgentKind, AgentTarget, Organization, PlatformConfigRecord
from services.issuance.notification import NotificationArtifact


class _DummyProxy:
    def __init__(self, replies: Optional[Dict[str, Any]] = None, *, exc: Optional[Exception] = None):
        self.replies = dict(replies or {})
        self.exc = exc
        self.calls: List[tuple] = []

    async def call(self, command: str, payload: Any) -> Optional[AgentReply]:
        self.calls.append((command, payload))
        if self.exc is not None:
            raise self.exc
        reply = self.replies.get(command, {"invitation": {"@id": "inv-1"}})
        if callable(reply):
            reply = reply(payload)
        if isinstance(reply, Exception):
            raise reply
        return AgentReply(response=reply)


class _DummyRepository:
    def __init__(
        self,
        *,
        target: Optional[AgentTarget] = None,
        organization: Optional[Organization] = None,
        platform_config: Optional[PlatformConfigRecord] = None,
    ):
        self.target = target
        self.organization = organization
        self.platform_config = platform_config
        self.saved: List[Dict[str, Any]] = []

    async def get_agent_endpoint(self, org_id: str) -> Optional[AgentTarget]:
        return self.target

    async def get_platform_config(self) -> Optional[PlatformConfigRecord]:
        return self.platform_config

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        return self.organization

    async def save_issued_credential(self, **kwargs: Any) -> Dict[str, Any]:
        self.saved.append(kwargs)
        return {"id": "cred-1", "threadId": kwargs["thread_id"]}


class _DummyEmailSender:
    def __init__(self, *, fail_for: tuple = ()):
        self.fail_for = set(fail_for)
        self.sent: list = []

    async def send_email(self, envelope) -> bool:
        if envelope.email_to in self.fail_for:
            return False
        self.sent.append(envelope)
        return True


class _DummyAssembler:
    def __init__(self):
        self.calls: list = []

    def assemble(self, invitation_url, recipient_email, template_context) -> NotificationArtifact:
        self.calls.append((invitation_url, recipient_email, dict(template_context)))
        return NotificationArtifact(
            html_body=f"<p>{recipient_email} {invitation_url}</p>",
            qr_image_bytes=b"png",
            attachment_name="qrcode.png",
        )


def shared_target(**overrides: Any) -> AgentTarget:
    data = {
        "endpoint_base": "http://agent:8001",
        "agent_kind": AgentKind.SHARED,
        "tenant_id": "tenant-1",
        "api_key": "agent-key",
    }
    data.update(overrides)
    return AgentTarget(**data)


def default_repository(**overrides: Any) -> _DummyRepository:
    data: Dict[str, Any] = {
        "target": shared_target(),
        "organization": Organization(id="org-1", name="Acme University"),
        "platform_config": PlatformConfigRecord(email_from="noreply@platform.test", api_key="platform-key"),
    }
    data.update(overrides)
    return _DummyRepository(**data)
