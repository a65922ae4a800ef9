from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from psycopg_pool import AsyncConnectionPool

from core.issuance_models import AgentTarget, Organization, PlatformConfigRecord

from .base import BaseStore


class IssuanceStore(BaseStore):
    """Read agent/org/platform settings and record issued credentials.

    Tables are owned by the platform's migrations; this store only reads
    ``org_agents``, ``platform_config`` and ``organisation`` and upserts into
    ``credentials``.
    """

    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool: AsyncConnectionPool | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
    ) -> None:
        super().__init__(dsn, pool=pool, min_size=min_size, max_size=max_size)

    async def get_agent_endpoint(self, org_id: str, *, conn: Any = None) -> Optional[AgentTarget]:
        row = await self.fetch_one(
            """
            SELECT "agentEndPoint", "orgAgentTypeId", "tenantId", "apiKey"
            FROM org_agents
            WHERE "orgId" = %s
            LIMIT 1
            """,
            (org_id,),
            conn=conn,
        )
        if not row or not row.get("agentEndPoint"):
            return None
        return AgentTarget(
            endpoint_base=str(row["agentEndPoint"]),
            agent_kind=int(row.get("orgAgentTypeId") or 0),
            tenant_id=row.get("tenantId"),
            api_key=row.get("apiKey"),
        )

    async def get_platform_config(self, *, conn: Any = None) -> Optional[PlatformConfigRecord]:
        row = await self.fetch_one(
            'SELECT "emailFrom", "sgApiKey" FROM platform_config LIMIT 1',
            conn=conn,
        )
        if not row:
            return None
        return PlatformConfigRecord(email_from=row.get("emailFrom"), api_key=row.get("sgApiKey"))

    async def get_organization(self, org_id: str, *, conn: Any = None) -> Optional[Organization]:
        row = await self.fetch_one(
            "SELECT id, name FROM organisation WHERE id = %s",
            (org_id,),
            conn=conn,
        )
        if not row:
            return None
        return Organization(id=row["id"], name=str(row.get("name") or ""))

    async def save_issued_credential(
        self,
        *,
        org_id: str,
        connection_id: Optional[str],
        thread_id: str,
        protocol_version: Optional[str],
        credential_attributes: List[Dict[str, Any]],
        create_date_time: Optional[str],
        conn: Any = None,
    ) -> Dict[str, Any]:
        row = await self.fetch_one(
            """
            INSERT INTO credentials (
                "threadId", "connectionId", "protocolVersion",
                "credentialAttributes", "orgId", "createDateTime", "lastChangedDateTime"
            )
            VALUES (%s, %s, %s, %s::jsonb, %s, COALESCE(%s::timestamptz, NOW()), NOW())
            ON CONFLICT ("threadId") DO UPDATE SET
                "connectionId" = EXCLUDED."connectionId",
                "protocolVersion" = EXCLUDED."protocolVersion",
                "credentialAttributes" = EXCLUDED."credentialAttributes",
                "lastChangedDateTime" = NOW()
            RETURNING id, "threadId", "connectionId", "protocolVersion", "orgId"
            """,
            (
                thread_id,
                connection_id,
                protocol_version,
                json.dumps(credential_attributes or []),
                org_id,
                create_date_time,
            ),
            conn=conn,
        )
        return dict(row or {})
