from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from psycopg_pool import AsyncConnectionPool

from core.app_config import AppConfig, config_to_dict
from core.config_defaults import DEFAULT_POSTGRES_DSN
from infra.agent_proxy import AgentTransportProxy
from infra.email_client import SendGridEmailClient
from infra.nats_client import NATSClient
from infra.stores import IssuanceStore, create_pool


@dataclass(frozen=True)
class StoreFactory:
    dsn: str
    min_size: Optional[int]
    max_size: Optional[int]
    pool: AsyncConnectionPool

    def issuance_store(self) -> IssuanceStore:
        return IssuanceStore(pool=self.pool, dsn=self.dsn, min_size=self.min_size, max_size=self.max_size)


@dataclass(frozen=True)
class ServiceContext:
    cfg: Dict[str, Any]
    nats_cfg: Dict[str, Any]
    dsn: str
    pool: AsyncConnectionPool
    nats: NATSClient
    agent_proxy: AgentTransportProxy
    email: SendGridEmailClient
    stores: StoreFactory

    @classmethod
    def from_config(
        cls,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        dsn_default: str = DEFAULT_POSTGRES_DSN,
    ) -> "ServiceContext":
        cfg = config_to_dict(config)
        nats_cfg = cfg.get("nats", {}) if isinstance(cfg, dict) else {}
        pg_cfg = cfg.get("postgres", {}) if isinstance(cfg, dict) else {}
        dsn = pg_cfg.get("dsn", dsn_default)
        min_size = pg_cfg.get("min_size")
        max_size = pg_cfg.get("max_size")
        pool = create_pool(str(dsn), min_size=min_size, max_size=max_size)
        nats = NATSClient(config=nats_cfg)
        return cls(
            cfg=cfg,
            nats_cfg=nats_cfg,
            dsn=str(dsn),
            pool=pool,
            nats=nats,
            agent_proxy=AgentTransportProxy(nats, timeout_seconds=nats_cfg.get("request_timeout_seconds")),
            email=SendGridEmailClient.from_config(cfg),
            stores=StoreFactory(dsn=str(dsn), min_size=min_size, max_size=max_size, pool=pool),
        )

    async def open_pool(self) -> None:
        await self.pool.open()

    async def close_pool(self, *, timeout: Optional[float] = None) -> None:
        if timeout is None:
            await self.pool.close()
        else:
            await self.pool.close(timeout=timeout)
