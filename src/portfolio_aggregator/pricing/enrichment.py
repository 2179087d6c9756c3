"""Bounded-concurrency token metadata enrichment with a shared deadline."""

import asyncio
import logging
from collections.abc import Iterable
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel, Field

from portfolio_aggregator.core.models import EnrichmentStats, TokenMetadata, TokenReference

logger = logging.getLogger(__name__)


class MetadataProvider(Protocol):
    """Secondary provider answering one token at a time."""

    async def fetch_metadata(self, token_ref: TokenReference) -> TokenMetadata: ...


class EnrichmentStatus(StrEnum):
    """Final state of one enrichment item."""

    OK = "ok"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EnrichmentOutcome(BaseModel):
    """Result of enriching a single token."""

    status: EnrichmentStatus
    metadata: TokenMetadata | None = None
    error: str | None = None


class EnrichmentResult(BaseModel):
    """
    Per-token outcomes of one enrichment batch.

    A timed-out or cancelled batch is still a result: completed tokens carry
    metadata, the rest are marked failed or cancelled.

    Attributes
    ----------
    outcomes : dict[str, EnrichmentOutcome]
        Outcomes keyed by ``TokenReference.key``
    stats : EnrichmentStats
        Batch counters

    """

    outcomes: dict[str, EnrichmentOutcome] = Field(default_factory=dict)
    stats: EnrichmentStats = Field(default_factory=EnrichmentStats)

    def get(self, ref: TokenReference) -> EnrichmentOutcome | None:
        return self.outcomes.get(ref.key)

    def metadata(self) -> dict[str, TokenMetadata]:
        """Metadata of successfully enriched tokens, keyed by token key."""
        return {
            key: outcome.metadata
            for key, outcome in self.outcomes.items()
            if outcome.status == EnrichmentStatus.OK and outcome.metadata is not None
        }

    @property
    def dispatched(self) -> int:
        return self.stats.dispatched

    @property
    def started(self) -> int:
        return self.stats.started

    @property
    def completed(self) -> int:
        return self.stats.completed

    @property
    def failed(self) -> int:
        return self.stats.failed

    @property
    def cancelled(self) -> int:
        return self.stats.cancelled

    @property
    def timed_out(self) -> bool:
        return self.stats.timed_out


class MetadataEnrichmentPipeline:
    """
    Fetches metadata for many tokens through a bulkhead of fixed width.

    Every item holds a bulkhead slot only while its provider call runs, and the
    slot is released on success, failure and cancellation alike. The whole batch
    shares one deadline; when it passes (or the caller's cancel event fires),
    waiting and in-flight items are cancelled and a partial result is returned.

    Parameters
    ----------
    provider : MetadataProvider
        Secondary metadata/price provider
    width : int
        Maximum number of concurrent provider calls
    timeout : float
        Default batch deadline in seconds

    """

    def __init__(self, provider: MetadataProvider, width: int = 10, timeout: float = 30.0) -> None:
        if width < 1:
            msg = f"Bulkhead width must be at least 1, got {width}"
            raise ValueError(msg)
        self.provider = provider
        self.width = width
        self.timeout = timeout
        self._bulkhead = asyncio.Semaphore(width)

    async def enrich_missing(
        self,
        tokens: Iterable[TokenReference],
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> EnrichmentResult:
        """
        Enrich a batch of tokens.

        Parameters
        ----------
        tokens : Iterable[TokenReference]
            Tokens to enrich; duplicates are fetched once
        timeout : float | None
            Batch deadline in seconds. Uses the pipeline default if None.
        cancel_event : asyncio.Event | None
            Set by the caller to stop the batch early

        Returns
        -------
        EnrichmentResult
            Per-token outcomes and batch counters

        """
        refs = list(dict.fromkeys(tokens))
        stats = EnrichmentStats(dispatched=len(refs))
        outcomes: dict[str, EnrichmentOutcome] = {}
        if not refs:
            return EnrichmentResult(stats=stats)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + (self.timeout if timeout is None else timeout)

        tasks = {asyncio.ensure_future(self._enrich_one(ref, stats)): ref for ref in refs}
        pending = set(tasks)
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None

        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    stats.timed_out = True
                    break

                waiting = (pending | {cancel_waiter}) if cancel_waiter is not None else pending
                done, _ = await asyncio.wait(waiting, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)

                for task in done:
                    if task is cancel_waiter:
                        continue
                    pending.discard(task)
                    outcomes[tasks[task].key] = self._outcome(task)

                if cancel_waiter is not None and cancel_waiter.done():
                    logger.warning("Enrichment cancelled by caller with %d item(s) outstanding", len(pending))
                    break
                if not done:
                    stats.timed_out = True
                    break
        finally:
            # Runs on timeout, caller cancellation and cancellation of this task alike
            leftovers = list(pending)
            if cancel_waiter is not None:
                leftovers.append(cancel_waiter)
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)

        if stats.timed_out:
            logger.warning("Enrichment deadline reached with %d item(s) outstanding", len(pending))

        for task in pending:
            outcomes[tasks[task].key] = self._outcome(task)

        stats.completed = sum(1 for o in outcomes.values() if o.status == EnrichmentStatus.OK)
        stats.failed = sum(1 for o in outcomes.values() if o.status == EnrichmentStatus.FAILED)
        stats.cancelled = sum(1 for o in outcomes.values() if o.status == EnrichmentStatus.CANCELLED)

        logger.info(
            "Enriched %d/%d token(s): %d failed, %d cancelled",
            stats.completed,
            stats.dispatched,
            stats.failed,
            stats.cancelled,
        )
        return EnrichmentResult(outcomes=outcomes, stats=stats)

    async def _enrich_one(self, ref: TokenReference, stats: EnrichmentStats) -> TokenMetadata:
        async with self._bulkhead:
            stats.started += 1
            return await self.provider.fetch_metadata(ref)

    @staticmethod
    def _outcome(task: asyncio.Future) -> EnrichmentOutcome:
        if task.cancelled():
            return EnrichmentOutcome(status=EnrichmentStatus.CANCELLED)

        error = task.exception()
        if error is not None:
            logger.debug("Metadata fetch failed: %s", error)
            return EnrichmentOutcome(status=EnrichmentStatus.FAILED, error=str(error) or type(error).__name__)

        return EnrichmentOutcome(status=EnrichmentStatus.OK, metadata=task.result())
