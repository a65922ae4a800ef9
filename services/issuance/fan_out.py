"""Batched fan-out of one request into per-recipient operations.

Recipients are split into consecutive chunks. Chunks run one after another;
the recipients of a chunk run concurrently and the chunk drains completely
before the next one starts. The chunk size is a fixed concurrency cap, not
adaptive backpressure.

A recipient's failure is recorded as its ``BatchOutcome`` and never stops its
siblings or later chunks.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from core.config_defaults import DEFAULT_ISSUANCE_BATCH_SIZE
from core.issuance_models import BatchOutcome, FanOutResult, Recipient
from core.utils import chunked
from infra.observability.otel import get_tracer, traced

from .messages import RECIPIENT_TIMED_OUT

logger = logging.getLogger("FanOut")
_TRACER = get_tracer("services.issuance.fan_out")

# Completes normally on success; raises on any failure for that recipient.
RecipientPipeline = Callable[[Recipient], Awaitable[None]]


def chunk_recipients(recipients: Sequence[Recipient], batch_size: int) -> List[List[Recipient]]:
    return chunked(list(recipients), int(batch_size))


def aggregate(chunks: Sequence[Sequence[BatchOutcome]]) -> FanOutResult:
    """Flatten per-chunk outcomes into one verdict."""
    outcomes = [outcome for chunk in chunks for outcome in chunk]
    return FanOutResult(
        all_succeeded=all(outcome.succeeded for outcome in outcomes),
        errors=[o.error_detail for o in outcomes if not o.succeeded and o.error_detail],
    )


class FanOutExecutor:
    def __init__(
        self,
        *,
        batch_size: int = DEFAULT_ISSUANCE_BATCH_SIZE,
        recipient_timeout_seconds: Optional[float] = None,
    ) -> None:
        if int(batch_size) <= 0:
            raise ValueError("batch_size must be positive")
        self.batch_size = int(batch_size)
        self.recipient_timeout_seconds: Optional[float] = None
        if recipient_timeout_seconds is not None and float(recipient_timeout_seconds) > 0:
            self.recipient_timeout_seconds = float(recipient_timeout_seconds)

    @traced(_TRACER, "issuance.fan_out.recipient", span_arg="_span")
    async def _run_one(self, recipient: Recipient, pipeline: RecipientPipeline, *, _span: Any = None) -> BatchOutcome:
        outcome = await self._attempt(recipient, pipeline)
        if _span is not None:
            _span.set_attribute("vci.recipient.succeeded", outcome.succeeded)
            if outcome.error_detail:
                _span.set_attribute("vci.recipient.error", outcome.error_detail)
        return outcome

    async def _attempt(self, recipient: Recipient, pipeline: RecipientPipeline) -> BatchOutcome:
        try:
            if self.recipient_timeout_seconds is None:
                await pipeline(recipient)
            else:
                await asyncio.wait_for(pipeline(recipient), timeout=self.recipient_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Recipient timed out email=%s after=%.1fs",
                recipient.email_address,
                self.recipient_timeout_seconds or 0.0,
            )
            return BatchOutcome(recipient=recipient, succeeded=False, error_detail=RECIPIENT_TIMED_OUT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Recipient failed email=%s: %s", recipient.email_address, exc)
            return BatchOutcome(recipient=recipient, succeeded=False, error_detail=str(exc) or type(exc).__name__)
        return BatchOutcome(recipient=recipient, succeeded=True)

    @traced(
        _TRACER,
        "issuance.fan_out.chunk",
        attributes_getter=lambda args: {"vci.chunk.size": len(args["chunk"])},
    )
    async def run_chunk(self, chunk: Sequence[Recipient], pipeline: RecipientPipeline) -> List[BatchOutcome]:
        """Run every recipient of ``chunk`` concurrently; outcomes in completion order."""
        tasks = [
            asyncio.create_task(self._run_one(recipient, pipeline), name=f"fan_out:{idx}")
            for idx, recipient in enumerate(chunk)
        ]
        outcomes: List[BatchOutcome] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                outcomes.append(await next_done)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return outcomes

    async def fan_out(
        self,
        recipients: Sequence[Recipient],
        pipeline: RecipientPipeline,
        *,
        batch_size: Optional[int] = None,
    ) -> FanOutResult:
        size = int(batch_size) if batch_size is not None else self.batch_size
        chunks = chunk_recipients(recipients, size)
        results: List[List[BatchOutcome]] = []
        for idx, chunk in enumerate(chunks):
            outcomes = await self.run_chunk(chunk, pipeline)
            failed = sum(1 for outcome in outcomes if not outcome.succeeded)
            logger.info(
                "Fan-out chunk %s/%s done size=%s failed=%s",
                idx + 1,
                len(chunks),
                len(chunk),
                failed,
            )
            results.append(outcomes)
        return aggregate(results)
