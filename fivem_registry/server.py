"""HTTP service: queue endpoints for workers plus the public read API."""

import asyncio
import json
import logging
import sys
import time
from typing import Annotated

import httpx
import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from . import __version__
from .aggregation import AggregationEngine
from .cache import ServerCache
from .config import Settings
from .errors import (
    RegistryError,
    ServerNotFoundError,
    StoreUnavailableError,
    UpstreamError,
)
from .fetcher import AddressFetcher, BackoffController
from .identity import IdentityStore
from .keys import RedisKeys
from .models import (
    InitRequest,
    QueueCounters,
    SearchQuery,
    Server,
    ServerStatus,
    Snapshot,
    StatusReport,
    SubmitRequest,
    TaskKind,
)
from .queue import TaskQueue
from .scanner import DirectScanner
from .scrapers import fetch_server_details
from .status import ThroughputMeter, build_report
from .store import KVStore, create_store
from .tasks import PipelineWorker, RefreshScheduler, choose_kind

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}
STREAM_TOP_RESOURCES = 20


class RegistryServices:
    """Wires the store, queue, engine and workers for one process."""

    def __init__(
        self,
        settings: Settings,
        store: KVStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.store = store or create_store(settings.store_backend, settings.redis_url)
        self.keys = RedisKeys(prefix=settings.key_prefix)
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
            limits=httpx.Limits(max_connections=settings.scan_concurrency + settings.lookup_concurrency),
        )

        self.meter = ThroughputMeter()
        self.identity = IdentityStore(self.store, self.keys, settings.freshness_seconds)
        self.engine = AggregationEngine(
            self.store,
            self.keys,
            top_k=settings.top_k,
            flush_batch=settings.flush_batch,
            flush_max_delay=settings.flush_max_delay,
            cache_ttl=settings.cache_ttl,
        )
        self.queue = TaskQueue(
            self.store,
            self.keys,
            self.identity,
            self.engine,
            lease_seconds=settings.lease_seconds,
            address_batch_size=settings.address_batch_size,
            scan_batch_size=settings.scan_batch_size,
            max_address_attempts=settings.max_address_attempts,
            meter=self.meter,
        )
        self.server_cache = ServerCache(self.store, self.keys, ttl=settings.cache_ttl)

        fetcher = AddressFetcher(
            self.client,
            lookup_url=settings.server_lookup_url,
            timeout=settings.lookup_timeout,
            concurrency=settings.lookup_concurrency,
            sub_batch_delay=settings.lookup_sub_batch_delay,
            backoff=BackoffController(
                minimum=settings.backoff_min,
                maximum=settings.backoff_max,
                decay=settings.backoff_decay,
            ),
        )
        scanner = DirectScanner(
            self.client, timeout=settings.probe_timeout, concurrency=settings.scan_concurrency
        )
        self.worker = PipelineWorker(
            self.queue,
            fetcher,
            scanner,
            worker_id="local",
            priority_ratio=settings.address_priority_ratio,
            idle_interval=settings.idle_interval,
        )
        self.scheduler = RefreshScheduler(
            self.queue,
            self.engine,
            self.client,
            settings.server_list_url,
            sync_interval=settings.sync_interval,
            scan_refresh_interval=settings.scan_refresh_interval,
            worker=self.worker,
            server_cache=self.server_cache,
        )

    async def report(self) -> StatusReport:
        counters = await self.queue.stats()
        return build_report(
            counters,
            address_rate=self.meter.rate_per_minute(TaskKind.ADDRESS),
            scan_rate=self.meter.rate_per_minute(TaskKind.SCAN),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
        await self.store.close()


def _error(status_code: int, error: str, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "reason": reason})


def _page(total: int, query: SearchQuery, returned: int) -> dict:
    return {
        "total": total,
        "limit": query.limit,
        "offset": query.offset,
        "hasMore": query.offset + returned < total,
    }


def _server_summary(server: Server) -> dict:
    return {
        "id": server.id,
        "name": server.name,
        "players": server.players,
        "maxPlayers": server.max_players,
        "gametype": server.gametype,
        "mapname": server.mapname,
        "resourceCount": len(server.resources),
        "tags": server.tags,
    }


def create_app(
    settings: Settings | None = None,
    store: KVStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Runtime settings (read from the environment when omitted)
        store: KV store override (built from settings when omitted)
        http_client: Upstream HTTP client override

    Returns:
        Configured FastAPI app
    """
    settings = settings or Settings()
    services = RegistryServices(settings, store=store, http_client=http_client)

    app = FastAPI(title="fivem-registry", version=__version__)
    app.state.services = services

    # ---------- lifecycle

    @app.on_event("startup")
    async def on_startup():
        logger.info(f"Starting fivem-registry {__version__} (store: {settings.store_backend})")
        try:
            await services.store.ping()
        except StoreUnavailableError as e:
            logger.warning(f"Store not reachable at startup: {e}")
        if settings.run_background:
            await services.scheduler.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        logger.info("Shutting down")
        if settings.run_background:
            await services.scheduler.stop()
        await services.close()
        logger.info("Shutdown complete")

    # ---------- error mapping

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.warning(f"{request.url.path}: {exc}")
        return _error(503, "Queue not configured: store unavailable", "store_unavailable")

    @app.exception_handler(ServerNotFoundError)
    async def not_found_handler(request: Request, exc: ServerNotFoundError):
        return _error(404, str(exc), "not_found")

    @app.exception_handler(UpstreamError)
    async def upstream_handler(request: Request, exc: UpstreamError):
        logger.warning(f"{request.url.path}: {exc}")
        return _error(502, str(exc), "upstream_unavailable")

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return _error(400, f"Invalid request: {exc.errors()[0].get('msg', 'invalid')}", "invalid_body")

    # ---------- queue

    @app.get("/work")
    async def get_work(
        worker: str = "anonymous",
        type: TaskKind | None = None,
        limit: int | None = Query(None, ge=1, le=500),
    ):
        """Claim a batch of tasks for a worker."""
        kind = type or choose_kind(await services.queue.stats(), settings.address_priority_ratio)
        tasks = await services.queue.claim_batch(worker, kind, limit)
        return {
            "tasks": [t.model_dump(mode="json", by_alias=True) for t in tasks],
            "count": len(tasks),
            "type": tasks[0].kind.value if tasks else kind.value,
            "workerId": worker,
        }

    @app.post("/submit")
    async def submit(body: SubmitRequest):
        """Apply a batch of worker results."""
        try:
            if body.type == TaskKind.ADDRESS:
                summary = await services.queue.submit_address_results(body.address_results())
            else:
                summary = await services.queue.submit_scan_results(body.scan_results())
        except ValidationError as e:
            return _error(400, f"Invalid results: {e.error_count()} errors", "invalid_body")
        return {
            "workerId": body.worker_id,
            **summary.model_dump(mode="json", by_alias=True),
        }

    @app.post("/init")
    async def init(body: InitRequest | None = None):
        """Sync from the upstream list, optionally clearing state first."""
        body = body or InitRequest()
        summary = await services.scheduler.sync(reset=body.reset, force=body.force)
        return {"success": True, **summary.model_dump(mode="json", by_alias=True)}

    # ---------- status

    @app.get("/stats")
    async def stats():
        """Queue counters, progress and ETAs."""
        try:
            report = await services.report()
        except RegistryError as e:
            logger.warning(f"Stats unavailable: {e}")
            report = build_report(QueueCounters())
        return report.model_dump(mode="json", by_alias=True)

    @app.get("/snapshot")
    async def snapshot():
        """Last materialized top-resources projection."""
        try:
            snap = await services.engine.get_snapshot()
        except RegistryError as e:
            logger.warning(f"Snapshot unavailable: {e}")
            snap = Snapshot()
        return snap.model_dump(mode="json", by_alias=True)

    @app.get("/stream")
    async def stream(request: Request):
        """Server-sent events: stats every few seconds, top resources less often."""

        async def gen():
            last_resources: float | None = None
            try:
                while True:
                    if await request.is_disconnected():
                        logger.debug("Stream client disconnected")
                        return
                    try:
                        report = await services.report()
                    except RegistryError:
                        report = build_report(QueueCounters())
                    yield f"event: stats\ndata: {report.model_dump_json(by_alias=True)}\n\n"

                    now = time.monotonic()
                    if last_resources is None or now - last_resources >= settings.stream_resources_interval:
                        try:
                            snap = await services.engine.get_snapshot()
                        except RegistryError:
                            snap = Snapshot()
                        top = [
                            r.model_dump(mode="json", by_alias=True)
                            for r in snap.top_resources[:STREAM_TOP_RESOURCES]
                        ]
                        yield f"event: resources\ndata: {json.dumps({'topResources': top})}\n\n"
                        last_resources = now

                    await asyncio.sleep(settings.stream_stats_interval)
            except asyncio.CancelledError:
                logger.debug("Stream closed by client")
                return

        return StreamingResponse(gen(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/health")
    async def health():
        store_ok = True
        try:
            await services.store.ping()
        except StoreUnavailableError:
            store_ok = False
        return {
            "status": "ok" if store_ok else "degraded",
            "store": store_ok,
            "lastSync": services.scheduler.last_sync,
            "version": __version__,
        }

    # ---------- catalog

    @app.get("/resources")
    async def list_resources(query: Annotated[SearchQuery, Query()]):
        """Search resources; substring first, fuzzy fallback."""
        try:
            page, total = await services.engine.search_resources(query.q, query.limit, query.offset)
        except RegistryError as e:
            logger.warning(f"Resource search unavailable: {e}")
            page, total = [], 0
        return {
            "resources": [r.model_dump(mode="json", by_alias=True) for r in page],
            **_page(total, query, len(page)),
        }

    @app.get("/resources/{name}")
    async def resource_detail(name: str, limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0)):
        """Servers running a resource plus related resources sharing its prefix."""
        try:
            stat = await services.engine.resource_stat(name)
            server_ids = await services.engine.servers_with_resource(name)
            related = await services.engine.related_resources(name)
            servers = []
            for sid in server_ids[offset : offset + limit]:
                server = await services.server_cache.get(sid)
                servers.append(_server_summary(server) if server else {"id": sid})
        except RegistryError as e:
            logger.warning(f"Resource detail unavailable: {e}")
            stat, server_ids, related, servers = None, [], [], []

        return {
            "name": name,
            "servers": servers,
            "totalServers": len(server_ids),
            "players": stat.players if stat else 0,
            "hasMore": offset + len(servers) < len(server_ids),
            "related": [r.model_dump(mode="json", by_alias=True) for r in related],
        }

    @app.get("/servers")
    async def list_servers(query: Annotated[SearchQuery, Query()]):
        """Search the server catalog, most players first."""
        try:
            page, total = await services.server_cache.search(query.q, query.limit, query.offset)
        except RegistryError as e:
            logger.warning(f"Server search unavailable: {e}")
            page, total = [], 0
        return {"servers": [_server_summary(s) for s in page], **_page(total, query, len(page))}

    @app.get("/servers/{server_id}")
    async def server_detail(server_id: str):
        """Catalog entry with address, status and scanned resources."""
        server = await services.server_cache.get(server_id)
        if server is None:
            server = await fetch_server_details(
                services.client, server_id, settings.server_lookup_url, settings.lookup_timeout
            )
        if server is None:
            raise ServerNotFoundError(server_id)

        mapping = await services.identity.get(server_id)
        status = await services.store.hget(services.keys.status_hash(), server_id)
        manifest = await services.engine.manifest(server_id)
        return {
            **server.model_dump(mode="json", by_alias=True),
            "address": mapping.address if mapping else None,
            "addressResolvedAt": mapping.resolved_at if mapping else None,
            "status": status or ServerStatus.UNKNOWN.value,
            "resources": manifest or server.resources,
        }

    return app


def main() -> None:
    """Main entry point for the HTTP service."""
    settings = Settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info(f"Starting fivem-registry on {settings.host}:{settings.port}")

    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
