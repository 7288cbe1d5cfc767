"""Direct resource scans against each server's own info endpoint."""

import asyncio
import logging

import httpx

from .errors import MalformedPayloadError
from .models import ScanResult, Task

logger = logging.getLogger(__name__)


def base_url(address: str) -> str:
    """Turn an ``ip:port`` or URL endpoint into an HTTP base URL."""
    if address.startswith(("http://", "https://")):
        return address.rstrip("/")
    return f"http://{address}"


def parse_info(payload) -> list:
    """Extract the raw resource list from an ``info.json`` payload."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError(f"expected an object, got {type(payload).__name__}")
    resources = payload.get("resources") or []
    if not isinstance(resources, list):
        raise MalformedPayloadError("resources is not a list")
    return resources


class DirectScanner:
    """Probes servers directly with bounded fan-out and per-request timeouts.

    A failed probe is reported as an offline result; it never raises and never
    touches the server's address mapping.
    """

    def __init__(self, client: httpx.AsyncClient, timeout: float = 4.0, concurrency: int = 150):
        self.client = client
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(concurrency)

    async def probe(self, server_id: str, address: str) -> ScanResult:
        """Fetch one server's resource manifest and player count.

        Args:
            server_id: Upstream server id
            address: Resolved ``ip:port`` or URL

        Returns:
            ScanResult (offline with an error tag on any failure)
        """
        base = base_url(address)
        async with self._semaphore:
            try:
                response = await self.client.get(f"{base}/info.json", timeout=self.timeout)
                if not response.is_success:
                    return self._offline(server_id, address, f"http_{response.status_code}")
                resources = parse_info(response.json())
            except httpx.TimeoutException:
                return self._offline(server_id, address, "timeout")
            except httpx.HTTPError as e:
                return self._offline(server_id, address, f"unreachable: {type(e).__name__}")
            except (ValueError, MalformedPayloadError) as e:
                logger.warning(f"Malformed info payload from {server_id}: {e}")
                return self._offline(server_id, address, "malformed")

            players = await self._player_count(base)

        return ScanResult(
            server_id=server_id,
            address=address,
            online=True,
            resources=resources,
            players=players,
        )

    async def _player_count(self, base: str) -> int | None:
        """Best-effort player count from ``dynamic.json``."""
        try:
            response = await self.client.get(f"{base}/dynamic.json", timeout=self.timeout)
            if not response.is_success:
                return None
            clients = response.json().get("clients")
        except (httpx.HTTPError, ValueError, AttributeError):
            return None
        return clients if isinstance(clients, int) and clients >= 0 else None

    def _offline(self, server_id: str, address: str, error: str) -> ScanResult:
        logger.debug(f"Scan of {server_id} at {address} failed: {error}")
        return ScanResult(server_id=server_id, address=address, online=False, error=error)

    async def scan_batch(self, tasks: list[Task]) -> list[ScanResult]:
        """Probe every task concurrently; one bad server never aborts the batch."""
        results = await asyncio.gather(
            *(self.probe(task.server_id, task.address) for task in tasks if task.address)
        )
        online = sum(1 for r in results if r.online)
        logger.info(f"Scanned {len(results)} servers ({online} online)")
        return list(results)
