import asyncio
from collections import Counter

import pytest

from core.errors import RecipientFailure
from core.issuance_models import BatchOutcome, Recipient
from services.issuance.fan_out import FanOutExecutor, aggregate, chunk_recipients
from services.issuance.messages import RECIPIENT_TIMED_OUT


def _recipients(count: int) -> list:
    return [Recipient(email_address=f"user{i}@example.com") for i in range(count)]


def test_chunk_recipients_keeps_order_and_sizes() -> None:
    chunks = chunk_recipients(_recipients(5), 2)

    assert [len(chunk) for chunk in chunks] == [2, 2, 1]
    assert [r.email_address for chunk in chunks for r in chunk] == [f"user{i}@example.com" for i in range(5)]
    assert chunk_recipients([], 3) == []


def test_chunk_recipients_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        chunk_recipients(_recipients(2), 0)


def test_aggregate_collects_failures_across_chunks() -> None:
    ok = BatchOutcome(recipient=Recipient(email_address="a@x"), succeeded=True)
    bad = BatchOutcome(recipient=Recipient(email_address="b@x"), succeeded=False, error_detail="nope")

    assert aggregate([[ok], [ok]]).all_succeeded is True
    result = aggregate([[ok, bad], [bad]])
    assert result.all_succeeded is False
    assert result.errors == ["nope", "nope"]
    assert aggregate([]).all_succeeded is True


@pytest.mark.asyncio
async def test_fan_out_runs_every_recipient_once() -> None:
    seen = []

    async def pipeline(recipient: Recipient) -> None:
        seen.append(recipient.email_address)

    for batch_size in (1, 3, 100):
        seen.clear()
        result = await FanOutExecutor(batch_size=batch_size).fan_out(_recipients(7), pipeline)
        assert result.all_succeeded is True
        assert result.errors == []
        assert sorted(seen) == sorted(r.email_address for r in _recipients(7))


@pytest.mark.asyncio
async def test_next_chunk_starts_only_after_previous_chunk_drains() -> None:
    events = []
    active = 0
    peak = 0

    async def pipeline(recipient: Recipient) -> None:
        nonlocal active, peak
        idx = int(recipient.email_address[4:].split("@")[0])
        events.append(("start", idx))
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01 * (3 - idx % 3))
        active -= 1
        events.append(("end", idx))

    await FanOutExecutor(batch_size=3).fan_out(_recipients(7), pipeline)

    assert peak == 3
    for chunk_no in (1, 2):
        chunk = set(range(chunk_no * 3, min(chunk_no * 3 + 3, 7)))
        previous = set(range((chunk_no - 1) * 3, chunk_no * 3))
        first_start = min(i for i, (kind, idx) in enumerate(events) if kind == "start" and idx in chunk)
        last_end = max(i for i, (kind, idx) in enumerate(events) if kind == "end" and idx in previous)
        assert last_end < first_start


@pytest.mark.asyncio
async def test_failure_is_isolated_to_its_recipient() -> None:
    calls = []

    async def pipeline(recipient: Recipient) -> None:
        calls.append(recipient.email_address)
        if recipient.email_address == "user1@example.com":
            raise RecipientFailure("Unable to send email to the user")
        if recipient.email_address == "user3@example.com":
            raise RuntimeError("agent exploded")

    result = await FanOutExecutor(batch_size=2).fan_out(_recipients(5), pipeline)

    assert len(calls) == 5
    assert result.all_succeeded is False
    assert sorted(result.errors) == ["Unable to send email to the user", "agent exploded"]


@pytest.mark.asyncio
async def test_errors_follow_completion_order_within_chunk() -> None:
    async def pipeline(recipient: Recipient) -> None:
        delay = {"user0@example.com": 0.05, "user1@example.com": 0.0}[recipient.email_address]
        await asyncio.sleep(delay)
        raise RecipientFailure(recipient.email_address)

    result = await FanOutExecutor(batch_size=2).fan_out(_recipients(2), pipeline)

    assert result.errors == ["user1@example.com", "user0@example.com"]


@pytest.mark.asyncio
async def test_slow_recipient_times_out_without_blocking_others() -> None:
    async def pipeline(recipient: Recipient) -> None:
        if recipient.email_address == "user0@example.com":
            await asyncio.sleep(5)

    executor = FanOutExecutor(batch_size=10, recipient_timeout_seconds=0.05)
    result = await executor.fan_out(_recipients(3), pipeline)

    assert result.all_succeeded is False
    assert result.errors == [RECIPIENT_TIMED_OUT]


def test_non_positive_timeout_disables_deadline() -> None:
    assert FanOutExecutor(recipient_timeout_seconds=0).recipient_timeout_seconds is None
    assert FanOutExecutor(recipient_timeout_seconds=None).recipient_timeout_seconds is None
    with pytest.raises(ValueError):
        FanOutExecutor(batch_size=0)


@pytest.mark.asyncio
async def test_two_hundred_fifty_recipients_in_chunks_of_one_hundred() -> None:
    executor = FanOutExecutor(batch_size=100)
    sizes = []
    original = executor.run_chunk

    async def recording_run_chunk(chunk, pipeline):
        sizes.append([r.email_address for r in chunk])
        return await original(chunk, pipeline)

    executor.run_chunk = recording_run_chunk

    async def pipeline(recipient: Recipient) -> None:
        return None

    recipients = _recipients(250)
    result = await executor.fan_out(recipients, pipeline)

    assert result.all_succeeded is True
    assert [len(chunk) for chunk in sizes] == [100, 100, 50]
    assert sizes[1][0] == "user100@example.com"
    assert sizes[2][-1] == "user249@example.com"


class _RecordingExecutor(FanOutExecutor):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.outcomes = []

    async def run_chunk(self, chunk, pipeline):
        outcomes = await super().run_chunk(chunk, pipeline)
        self.outcomes.extend(outcomes)
        return outcomes


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("count", "batch_size"),
    [(0, 3), (1, 1), (7, 1), (7, 7), (7, 100), (250, 100)],
)
async def test_one_outcome_per_recipient(count: int, batch_size: int) -> None:
    async def pipeline(recipient: Recipient) -> None:
        if int(recipient.email_address[4:].split("@")[0]) % 3 == 0:
            raise RecipientFailure("Unable to send email to the user")

    recipients = _recipients(count)
    executor = _RecordingExecutor(batch_size=batch_size)
    result = await executor.fan_out(recipients, pipeline)

    assert len(executor.outcomes) == count
    assert Counter(o.recipient.email_address for o in executor.outcomes) == Counter(
        r.email_address for r in recipients
    )
    assert len(result.errors) == sum(1 for o in executor.outcomes if not o.succeeded)


@pytest.mark.asyncio
async def test_rerun_with_always_succeeding_pipeline_gives_equal_result() -> None:
    async def pipeline(recipient: Recipient) -> None:
        await asyncio.sleep(0)

    executor = FanOutExecutor(batch_size=3)
    first = await executor.fan_out(_recipients(8), pipeline)
    second = await executor.fan_out(_recipients(8), pipeline)

    assert first == second
    assert first.all_succeeded is True


@pytest.mark.asyncio
async def test_rerun_with_mixed_failures_reports_same_errors() -> None:
    async def pipeline(recipient: Recipient) -> None:
        idx = int(recipient.email_address[4:].split("@")[0])
        await asyncio.sleep(0.001 * ((idx * 7) % 5))
        if idx % 2:
            raise RecipientFailure(f"failed {recipient.email_address}")

    executor = FanOutExecutor(batch_size=4)
    first = await executor.fan_out(_recipients(9), pipeline)
    second = await executor.fan_out(_recipients(9), pipeline)

    assert first.all_succeeded is second.all_succeeded is False
    assert set(first.errors) == set(second.errors)
    assert len(first.errors) == len(second.errors) == 4
