"""Tests for the bounded-concurrency enrichment pipeline."""

import asyncio
import time

import pytest
from conftest import FakeMetadataProvider

from portfolio_aggregator.core.models import TokenReference
from portfolio_aggregator.pricing.enrichment import EnrichmentStatus, MetadataEnrichmentPipeline


def _refs(count: int) -> list[TokenReference]:
    return [TokenReference(address=f"0x{i:040x}", network="ethereum") for i in range(count)]


@pytest.mark.asyncio
async def test_bulkhead_bounds_concurrency():
    """50 tokens through a width-10 bulkhead never exceed 10 in flight."""
    provider = FakeMetadataProvider(delay=0.01)
    pipeline = MetadataEnrichmentPipeline(provider, width=10)

    result = await pipeline.enrich_missing(_refs(50))

    assert 1 < provider.max_in_flight <= 10
    assert result.completed == 50
    assert result.dispatched == 50
    assert result.started == 50
    assert result.timed_out is False


@pytest.mark.asyncio
async def test_bulkhead_bounds_full_batch_of_100():
    """100 tokens in one batch all complete with at most 10 in flight."""
    provider = FakeMetadataProvider(delay=0.005)
    pipeline = MetadataEnrichmentPipeline(provider, width=10)

    result = await pipeline.enrich_missing(_refs(100))

    assert provider.max_in_flight == 10
    assert result.completed == 100
    assert len(provider.calls) == 100
    assert provider.in_flight == 0


@pytest.mark.asyncio
async def test_deadline_returns_partial_result():
    """A deadline mid-batch cancels the rest and returns promptly."""
    provider = FakeMetadataProvider(delay=0.05)
    pipeline = MetadataEnrichmentPipeline(provider, width=5)

    started = time.monotonic()
    result = await pipeline.enrich_missing(_refs(50), timeout=0.12)
    elapsed = time.monotonic() - started

    assert elapsed < 1.0
    assert result.timed_out is True
    assert 0 < result.completed < result.dispatched
    assert result.cancelled > 0
    assert result.completed + result.failed + result.cancelled == result.dispatched
    assert provider.in_flight == 0


@pytest.mark.asyncio
async def test_slots_released_after_deadline():
    """Cancelled items release their slots, so the next batch runs at full width."""
    provider = FakeMetadataProvider(delay=0.05)
    pipeline = MetadataEnrichmentPipeline(provider, width=4)

    await pipeline.enrich_missing(_refs(20), timeout=0.06)
    result = await pipeline.enrich_missing(_refs(8))

    assert result.completed == 8
    assert provider.in_flight == 0


@pytest.mark.asyncio
async def test_failures_are_isolated():
    """Every other call raising still attempts every item without deadlock."""
    provider = FakeMetadataProvider(fail_every=2)
    pipeline = MetadataEnrichmentPipeline(provider, width=3)

    result = await pipeline.enrich_missing(_refs(20))

    assert len(provider.calls) == 20
    assert result.completed == 10
    assert result.failed == 10
    assert result.cancelled == 0
    failed = [o for o in result.outcomes.values() if o.status == EnrichmentStatus.FAILED]
    assert all(o.error.startswith("boom") for o in failed)

    provider.fail_every = 0
    provider.delay = 0.02
    provider.max_in_flight = 0
    follow_up = await pipeline.enrich_missing(_refs(6))
    assert follow_up.completed == 6
    assert provider.max_in_flight == 3


@pytest.mark.asyncio
async def test_duplicates_fetched_once():
    """Duplicate references are de-duplicated before dispatch."""
    provider = FakeMetadataProvider()
    pipeline = MetadataEnrichmentPipeline(provider)
    ref = TokenReference(address="0xabc", network="ethereum")

    result = await pipeline.enrich_missing([ref, ref, TokenReference(address="0xABC", network="Ethereum")])

    assert provider.calls == ["ethereum:0xabc"]
    assert result.dispatched == 1
    assert result.get(ref).status == EnrichmentStatus.OK


@pytest.mark.asyncio
async def test_cancel_event_stops_batch():
    """Setting the caller's cancel event cuts the batch short."""
    provider = FakeMetadataProvider(delay=0.05)
    pipeline = MetadataEnrichmentPipeline(provider, width=2)
    cancel_event = asyncio.Event()

    async def cancel_soon():
        await asyncio.sleep(0.07)
        cancel_event.set()

    canceller = asyncio.create_task(cancel_soon())
    result = await pipeline.enrich_missing(_refs(20), cancel_event=cancel_event)
    await canceller

    assert result.timed_out is False
    assert result.cancelled > 0
    assert result.completed < result.dispatched
    assert provider.in_flight == 0


@pytest.mark.asyncio
async def test_task_cancellation_cancels_children():
    """Cancelling the calling task cancels every child before propagating."""
    provider = FakeMetadataProvider(delay=1.0)
    pipeline = MetadataEnrichmentPipeline(provider, width=3)

    task = asyncio.create_task(pipeline.enrich_missing(_refs(10)))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert provider.in_flight == 0

    provider.delay = 0.0
    follow_up = await pipeline.enrich_missing(_refs(6))
    assert follow_up.completed == 6


@pytest.mark.asyncio
async def test_empty_batch():
    """An empty batch dispatches nothing."""
    result = await MetadataEnrichmentPipeline(FakeMetadataProvider()).enrich_missing([])

    assert result.dispatched == 0
    assert result.outcomes == {}


def test_width_must_be_positive():
    """A bulkhead needs at least one slot."""
    with pytest.raises(ValueError, match="at least 1"):
        MetadataEnrichmentPipeline(FakeMetadataProvider(), width=0)
