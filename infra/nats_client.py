import os
import ssl
import asyncio
import logging
from dataclasses import dataclass
from nats.aio.client import Client as NATS
from typing import Awaitable, Callable, Dict, Any, Optional, Set
from core.config_defaults import (
    DEFAULT_NATS_CERT_DIR,
    DEFAULT_NATS_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_NATS_SERVERS,
)
from infra.observability.otel import get_tracer, inject_context_to_headers, set_span_attrs, start_span, traced


logger = logging.getLogger("NATSClient")
_TRACER = get_tracer("infra.nats_client")


@dataclass(frozen=True)
class NATSSubscriptionHandle:
    """Handle returned by subscribe_core for lifecycle management."""

    subject: str
    subscription: Any

    async def stop(self) -> None:
        await self.subscription.unsubscribe()


class NATSClient:
    """Thin wrapper around core NATS request/reply with optional TLS.

    TLS, cert directory and server addresses come from config so local
    non-TLS runs need no certificates.
    """

    def __init__(
        self,
        servers: Optional[list[str]] = None,
        cert_dir: Optional[str] = None,
        tls_enabled: Optional[bool] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        cfg = config or {}

        raw_servers = (
            servers
            if isinstance(servers, list)
            else (cfg.get("servers") if isinstance(cfg.get("servers"), list) else None)
        )
        normalized_servers = [
            s.strip() for s in (raw_servers or []) if isinstance(s, str) and s.strip()
        ]
        self.servers = normalized_servers or list(DEFAULT_NATS_SERVERS)

        self.tls_enabled = bool(tls_enabled if tls_enabled is not None else cfg.get("tls_enabled", False))
        self.cert_dir = cert_dir or cfg.get("cert_dir") or DEFAULT_NATS_CERT_DIR
        self.request_timeout_seconds = float(
            cfg.get("request_timeout_seconds") or DEFAULT_NATS_REQUEST_TIMEOUT_SECONDS
        )

        self.nc = NATS()
        self._subscriptions: list[NATSSubscriptionHandle] = []
        self._tasks: Set[asyncio.Task] = set()

    def _build_ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.tls_enabled:
            return None
        ca_file = os.path.join(self.cert_dir, "ca.crt")
        client_cert = os.path.join(self.cert_dir, "client.crt")
        client_key = os.path.join(self.cert_dir, "client.key")

        if not os.path.exists(ca_file):
            logger.warning("Certs not found at %s, attempting TLS may fail", self.cert_dir)

        ssl_ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
        try:
            ssl_ctx.load_verify_locations(ca_file)
            ssl_ctx.load_cert_chain(certfile=client_cert, keyfile=client_key)
            ssl_ctx.check_hostname = False
        except FileNotFoundError:
            logger.warning("TLS files not found, switching to non-TLS connection for dev mode")
            return None
        return ssl_ctx

    async def connect(self):
        ssl_ctx = self._build_ssl_context()
        await self.nc.connect(
            servers=self.servers,
            tls=ssl_ctx,
        )
        proto = "tls" if ssl_ctx else "plain"
        logger.info("Connected to %s (%s)", self.servers, proto)

    @property
    def is_connected(self) -> bool:
        return bool(self.nc.is_connected)

    async def close(self):
        for handle in list(self._subscriptions):
            try:
                await handle.stop()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Unsubscribe failed subject=%s: %s", handle.subject, exc)
        self._subscriptions.clear()
        if self._tasks:
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.nc.close()

    async def publish_core(self, subject: str, payload: bytes):
        """Publish on core NATS (fire-and-forget, non-persistent)."""
        if not self.nc.is_connected:
            raise Exception("NATS not connected")
        await self.nc.publish(subject, payload)

    async def subscribe_core(
        self,
        subject: str,
        callback: Callable[[Any], Awaitable[None]],
        *,
        queue: str = "",
    ) -> NATSSubscriptionHandle:
        """
        Subscribe to a subject on core NATS (at-most-once delivery).

        When ``queue`` is set, replicas of a service share the subscription so
        each request is handled by one of them. Each message is processed in its
        own task so a slow handler does not block the subscription.
        """
        if not self.nc.is_connected:
            raise Exception("NATS not connected")

        async def _process(msg) -> None:
            with start_span(
                _TRACER,
                "nats.consume",
                headers=getattr(msg, "headers", None),
                attributes={
                    "messaging.system": "nats",
                    "messaging.destination": subject,
                    "messaging.operation": "process",
                },
            ):
                await callback(msg)

        async def _dispatch(msg) -> None:
            task = asyncio.create_task(_process(msg), name=f"nats_msg:{subject}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        sub = await self.nc.subscribe(subject, queue=queue, cb=_dispatch)
        handle = NATSSubscriptionHandle(subject=subject, subscription=sub)
        self._subscriptions.append(handle)
        logger.info("Subscribed to %s (queue=%s)", subject, queue or "-")
        return handle

    @traced(_TRACER, "nats.request", span_arg="_span")
    async def request_core(
        self,
        subject: str,
        payload: bytes,
        *,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        _span: Any = None,
    ):
        """Request/Reply using Core NATS; the current trace context rides in the headers."""
        if not self.nc.is_connected:
            raise Exception("NATS not connected")
        set_span_attrs(
            _span,
            {"messaging.system": "nats", "messaging.destination": subject, "messaging.operation": "request"},
        )
        return await self.nc.request(
            subject,
            payload,
            timeout=float(timeout if timeout is not None else self.request_timeout_seconds),
            headers=inject_context_to_headers(dict(headers or {})) or None,
        )
