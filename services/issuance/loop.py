"""Issuance service entrypoint (bus commands -> IssuanceService)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from core.app_config import AppConfig, load_app_config
from core.config_defaults import DEFAULT_ISSUANCE_QUEUE_GROUP
from core.subject import cmd_subject
from core.utils import set_loop_policy
from infra.service_runtime import ServiceBase

from .handlers import COMMAND_HANDLERS, handle_command_payload
from .service import IssuanceService, IssuanceSettings

set_loop_policy()

logger = logging.getLogger("IssuanceWorker")


class IssuanceWorker(ServiceBase):
    def __init__(
        self,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        service: Optional[IssuanceService] = None,
    ) -> None:
        super().__init__(config, service_name="issuance")
        cfg = self.ctx.cfg
        self.queue_group = str((cfg.get("issuance") or {}).get("queue_group") or DEFAULT_ISSUANCE_QUEUE_GROUP)
        self.store = self.register_store(self.ctx.stores.issuance_store())
        self.service = service or IssuanceService(
            settings=IssuanceSettings.from_config(cfg),
            repository=self.store,
            proxy=self.ctx.agent_proxy,
            email_sender=self.ctx.email,
        )

    async def start(self) -> None:
        await self.open()
        for command in COMMAND_HANDLERS:
            await self.nats.subscribe_core(cmd_subject(command), self._handle_request, queue=self.queue_group)
        logger.info("Issuance worker ready (%s commands, queue=%s)", len(COMMAND_HANDLERS), self.queue_group)
        while True:
            await asyncio.sleep(1)

    async def handle_payload(self, subject: str, raw: bytes) -> bytes:
        return await handle_command_payload(self.service, subject, raw)

    async def _handle_request(self, msg) -> None:
        body = await self.handle_payload(msg.subject, msg.data)
        if msg.reply:
            await self.nats.publish_core(msg.reply, body)


async def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    async with IssuanceWorker(load_app_config()) as worker:
        await worker.start()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
