"""Lifecycle of a bus worker: Postgres pool, NATS connection, stores and HTTP clients."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.app_config import AppConfig, normalize_config
from infra.observability.otel import init_otel, shutdown_otel
from infra.service_context import ServiceContext
from infra.stores.base import BaseStore


logger = logging.getLogger(__name__)

Closer = Tuple[str, Callable[[], Awaitable[None]]]


@dataclass
class ServiceRuntime:
    ctx: ServiceContext
    use_nats: bool = True
    service_name: str = "service"
    stores: List[BaseStore] = field(default_factory=list)
    _opened: bool = False
    _otel_ready: bool = False

    @classmethod
    def from_config(
        cls,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        use_nats: bool = True,
        service_name: Optional[str] = None,
    ) -> "ServiceRuntime":
        ctx = ServiceContext.from_config(normalize_config(config))
        return cls(ctx=ctx, use_nats=use_nats, service_name=service_name or "service")

    def register_store(self, store: BaseStore) -> BaseStore:
        self.stores.append(store)
        return store

    async def open(self) -> None:
        if self._opened:
            return
        self._otel_ready = init_otel(cfg=self.ctx.cfg, service_name=self.service_name)
        await self.ctx.open_pool()
        if self.use_nats:
            await self.ctx.nats.connect()
        for store in self.stores:
            await store.open()
        self._opened = True
        logger.info("%s runtime opened (%s store(s))", self.service_name, len(self.stores))

    def _closers(self) -> List[Closer]:
        # Reverse of open order; the shared pool goes last.
        closers: List[Closer] = [(type(store).__name__, store.close) for store in reversed(self.stores)]
        if self.use_nats:
            closers.append(("NATS", self.ctx.nats.close))
        closers.append(("email client", self.ctx.email.close))
        return closers

    async def close(self, *, pool_timeout: Optional[float] = None) -> None:
        if not self._opened:
            return
        for name, closer in self._closers():
            try:
                await closer()
            except Exception as exc:
                logger.warning("%s: closing %s failed: %s", self.service_name, name, exc, exc_info=True)
        try:
            await self.ctx.close_pool(timeout=pool_timeout)
        finally:
            self._opened = False
            if self._otel_ready:
                shutdown_otel()
                self._otel_ready = False
            logger.info("%s runtime closed", self.service_name)


class ServiceBase:
    """Base for workers; owns a ``ServiceRuntime`` and exposes its context."""

    def __init__(
        self,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        use_nats: bool = True,
        service_name: Optional[str] = None,
    ) -> None:
        self.runtime = ServiceRuntime.from_config(
            config,
            use_nats=use_nats,
            service_name=service_name or self.__class__.__name__,
        )
        self.ctx = self.runtime.ctx
        self.nats = self.ctx.nats

    def register_store(self, store: BaseStore) -> BaseStore:
        return self.runtime.register_store(store)

    async def open(self) -> None:
        await self.runtime.open()

    async def close(self) -> None:
        await self.runtime.close()

    async def __aenter__(self) -> "ServiceBase":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
