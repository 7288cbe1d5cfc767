"""Stateless remote worker: claims work over HTTP, executes it, submits results.

Usage:
    fivem-worker --api http://localhost:8000 --worker-id edge-1 --prefer address
"""

import argparse
import asyncio
import logging
import os
import sys
import uuid

import httpx

from .config import Settings
from .errors import UpstreamError
from .fetcher import AddressFetcher, BackoffController
from .models import (
    AddressResult,
    QueueCounters,
    ScanResult,
    SubmitSummary,
    Task,
    TaskKind,
)
from .scanner import DirectScanner
from .tasks import PipelineWorker

logger = logging.getLogger(__name__)


class RemoteQueue:
    """Task queue client speaking to the HTTP service's queue endpoints."""

    def __init__(self, client: httpx.AsyncClient, api_base: str, worker_id: str, timeout: float = 30.0):
        self.client = client
        self.api_base = api_base.rstrip("/")
        self.worker_id = worker_id
        self.timeout = timeout

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.client.request(
                method, f"{self.api_base}{path}", timeout=self.timeout, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamError(f"{method} {path} failed: {e}") from e

    async def stats(self) -> QueueCounters:
        data = await self._request("GET", "/stats")
        return QueueCounters.model_validate(data.get("counters") or {})

    async def claim_batch(
        self,
        worker_id: str,
        preferred_kind: TaskKind = TaskKind.ADDRESS,
        max_items: int | None = None,
    ) -> list[Task]:
        params = {"worker": worker_id, "type": preferred_kind.value}
        if max_items is not None:
            params["limit"] = max_items
        data = await self._request("GET", "/work", params=params)
        return [Task.model_validate(t) for t in data.get("tasks") or []]

    async def _submit(self, kind: TaskKind, results: list) -> SubmitSummary:
        body = {
            "type": kind.value,
            "workerId": self.worker_id,
            "results": [r.model_dump(mode="json", by_alias=True) for r in results],
        }
        data = await self._request("POST", "/submit", json=body)
        return SubmitSummary.model_validate(data)

    async def submit_address_results(self, results: list[AddressResult]) -> SubmitSummary:
        return await self._submit(TaskKind.ADDRESS, results)

    async def submit_scan_results(self, results: list[ScanResult]) -> SubmitSummary:
        return await self._submit(TaskKind.SCAN, results)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remote worker for the FiveM registry queue")
    parser.add_argument(
        "--api",
        default=os.environ.get("FIVEM_API_BASE", "http://localhost:8000"),
        help="Base URL of the registry service (default: $FIVEM_API_BASE or http://localhost:8000)",
    )
    parser.add_argument(
        "--worker-id",
        default=os.environ.get("FIVEM_WORKER_ID") or f"worker-{uuid.uuid4().hex[:6]}",
        help="Worker identifier reported with every claim",
    )
    parser.add_argument(
        "--prefer",
        choices=[kind.value for kind in TaskKind],
        default=os.environ.get("FIVEM_PREFER_TYPE"),
        help="Always prefer this task kind (default: chosen from address coverage)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process a single batch and exit",
    )
    return parser.parse_args(argv)


async def run_worker(args: argparse.Namespace, settings: Settings) -> int:
    async with httpx.AsyncClient(
        headers={"User-Agent": settings.user_agent}, follow_redirects=True
    ) as client:
        queue = RemoteQueue(client, args.api, args.worker_id)
        worker = PipelineWorker(
            queue,
            AddressFetcher(
                client,
                lookup_url=settings.server_lookup_url,
                timeout=settings.lookup_timeout,
                concurrency=settings.lookup_concurrency,
                sub_batch_delay=settings.lookup_sub_batch_delay,
                backoff=BackoffController(
                    minimum=settings.backoff_min,
                    maximum=settings.backoff_max,
                    decay=settings.backoff_decay,
                ),
            ),
            DirectScanner(client, timeout=settings.probe_timeout, concurrency=settings.scan_concurrency),
            worker_id=args.worker_id,
            prefer=TaskKind(args.prefer) if args.prefer else None,
            priority_ratio=settings.address_priority_ratio,
            idle_interval=settings.idle_interval,
        )

        logger.info(f"Worker {args.worker_id} using API {args.api}")
        if args.once:
            kind, count = await worker.run_once()
            logger.info(f"Processed {count} {kind.value if kind else 'no'} tasks")
            return 0

        await worker.start()
        try:
            await asyncio.Event().wait()
        finally:
            await worker.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the remote worker."""
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        return asyncio.run(run_worker(args, settings))
    except KeyboardInterrupt:
        logger.info(f"Worker {args.worker_id} interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
