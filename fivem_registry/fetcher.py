"""Rate-adaptive address resolution against the upstream lookup API."""

import asyncio
import logging

import httpx

from .config import SERVER_LOOKUP_URL
from .models import AddressResult, LookupOutcome
from .scrapers.cfx_api import lookup_server

logger = logging.getLogger(__name__)


class BackoffController:
    """Single scalar delay adjusted after every lookup batch.

    Any rate-limited outcome or a success ratio below ``failure_ratio``
    doubles the delay up to ``maximum``; a healthy batch multiplies it by
    ``decay`` down to ``minimum``.
    """

    def __init__(
        self,
        minimum: float = 5.0,
        maximum: float = 60.0,
        decay: float = 0.8,
        failure_ratio: float = 0.5,
    ):
        self.minimum = minimum
        self.maximum = maximum
        self.decay = decay
        self.failure_ratio = failure_ratio
        self.delay = minimum

    def update(self, results: list[AddressResult]) -> float:
        """Adjust the delay from a batch's outcomes and return the new value."""
        if not results:
            return self.delay

        rate_limited = any(r.outcome == LookupOutcome.RATE_LIMITED for r in results)
        success_ratio = sum(1 for r in results if r.ok) / len(results)

        if rate_limited or success_ratio < self.failure_ratio:
            self.delay = min(self.delay * 2, self.maximum)
            logger.warning(
                f"Backing off to {self.delay:.1f}s "
                f"(rate_limited={rate_limited}, success={success_ratio:.0%})"
            )
        else:
            self.delay = max(self.delay * self.decay, self.minimum)
        return self.delay

    def reset(self) -> None:
        self.delay = self.minimum


class AddressFetcher:
    """Resolves batches of server ids in concurrency-limited sub-batches."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        lookup_url: str = SERVER_LOOKUP_URL,
        timeout: float = 10.0,
        concurrency: int = 10,
        sub_batch_delay: float = 0.5,
        backoff: BackoffController | None = None,
    ):
        """Initialize the fetcher.

        Args:
            client: HTTP client used for lookups
            lookup_url: Lookup URL template with a ``{server_id}`` placeholder
            timeout: Per-lookup timeout in seconds
            concurrency: Lookups in flight per sub-batch
            sub_batch_delay: Pause between sub-batches in seconds
            backoff: Backoff controller (a default one is created if omitted)
        """
        self.client = client
        self.lookup_url = lookup_url
        self.timeout = timeout
        self.concurrency = max(concurrency, 1)
        self.sub_batch_delay = sub_batch_delay
        self.backoff = backoff or BackoffController()

    async def resolve_batch(self, server_ids: list[str]) -> list[AddressResult]:
        """Look up every id and update the backoff from the outcomes.

        Args:
            server_ids: Ids to resolve

        Returns:
            One AddressResult per id, in input order
        """
        results: list[AddressResult] = []
        for start in range(0, len(server_ids), self.concurrency):
            if start:
                await asyncio.sleep(self.sub_batch_delay)
            chunk = server_ids[start : start + self.concurrency]
            results.extend(
                await asyncio.gather(
                    *(
                        lookup_server(self.client, sid, self.lookup_url, self.timeout)
                        for sid in chunk
                    )
                )
            )

        delay = self.backoff.update(results)
        resolved = sum(1 for r in results if r.ok)
        logger.info(f"Resolved {resolved}/{len(results)} addresses (next delay {delay:.1f}s)")
        return results

    async def wait(self) -> None:
        """Sleep for the current backoff delay."""
        await asyncio.sleep(self.backoff.delay)
