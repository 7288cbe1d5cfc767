"""Per-server lookups against the upstream frontend API."""

import logging
import time

import httpx

from ..config import SERVER_LOOKUP_URL
from ..models import AddressResult, LookupOutcome, Server
from .server_list import strip_color_codes

logger = logging.getLogger(__name__)

DETAILS_TTL_SECONDS = 30.0
_MAX_DETAILS_CACHE = 500

# server id -> (expires at, server)
_details_cache: dict[str, tuple[float, Server]] = {}


async def lookup_server(
    client: httpx.AsyncClient,
    server_id: str,
    url_template: str = SERVER_LOOKUP_URL,
    timeout: float = 10.0,
) -> AddressResult:
    """Resolve a server id to its first advertised connect endpoint.

    Never raises; every failure is classified into the returned outcome.

    Args:
        client: HTTP client
        server_id: Upstream server id
        url_template: Lookup URL with a ``{server_id}`` placeholder
        timeout: Per-request timeout in seconds

    Returns:
        AddressResult with the outcome classification
    """
    url = url_template.format(server_id=server_id)
    try:
        response = await client.get(url, timeout=timeout)
    except httpx.TimeoutException:
        return AddressResult(server_id=server_id, outcome=LookupOutcome.TIMEOUT, error="timeout")
    except httpx.HTTPError as e:
        return AddressResult(server_id=server_id, outcome=LookupOutcome.ERROR, error=str(e) or type(e).__name__)

    if response.status_code == 429:
        return AddressResult(
            server_id=server_id,
            outcome=LookupOutcome.RATE_LIMITED,
            status_code=429,
            error="rate_limited",
        )
    if not response.is_success:
        return AddressResult(
            server_id=server_id,
            outcome=LookupOutcome.HTTP_ERROR,
            status_code=response.status_code,
            error=f"http_{response.status_code}",
        )

    try:
        data = response.json().get("Data") or {}
        endpoints = data.get("connectEndPoints") or []
    except (ValueError, AttributeError) as e:
        return AddressResult(server_id=server_id, outcome=LookupOutcome.ERROR, error=f"malformed: {e}")

    if not endpoints or not isinstance(endpoints[0], str):
        return AddressResult(server_id=server_id, outcome=LookupOutcome.ERROR, error="no_endpoint")

    return AddressResult(server_id=server_id, address=endpoints[0], outcome=LookupOutcome.SUCCESS)


def _server_from_details(server_id: str, payload: dict) -> Server:
    data = payload.get("Data") or {}
    variables = {str(k): str(v) for k, v in (data.get("vars") or {}).items()}
    name = data.get("hostname") or variables.get("sv_projectName") or server_id
    icon = data.get("icon")
    return Server(
        id=payload.get("EndPoint") or server_id,
        name=strip_color_codes(str(name))[:100],
        players=int(data.get("clients") or 0),
        max_players=int(data.get("sv_maxclients") or data.get("svMaxclients") or 32),
        gametype=data.get("gametype") or "",
        mapname=data.get("mapname") or "",
        resources=[r for r in data.get("resources") or [] if isinstance(r, str)],
        vars=variables,
        icon=icon if isinstance(icon, str) and icon.startswith("data:image") else None,
        connect_endpoint=next(iter(data.get("connectEndPoints") or []), None),
    )


async def fetch_server_details(
    client: httpx.AsyncClient,
    server_id: str,
    url_template: str = SERVER_LOOKUP_URL,
    timeout: float = 10.0,
) -> Server | None:
    """Fetch full details for one server, cached for a short TTL.

    Returns:
        Server, or None when upstream does not know the id or fails
    """
    now = time.monotonic()
    cached = _details_cache.get(server_id)
    if cached and cached[0] > now:
        return cached[1]

    try:
        response = await client.get(url_template.format(server_id=server_id), timeout=timeout)
        if not response.is_success:
            logger.debug(f"Detail lookup for {server_id} returned {response.status_code}")
            return None
        payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Detail lookup for {server_id} failed: {e}")
        return None

    if not isinstance(payload, dict) or not payload.get("Data"):
        return None

    server = _server_from_details(server_id, payload)
    _details_cache[server_id] = (now + DETAILS_TTL_SECONDS, server)
    if len(_details_cache) > _MAX_DETAILS_CACHE:
        for key in [k for k, (expires, _) in _details_cache.items() if expires <= now]:
            del _details_cache[key]
    return server


def clear_details_cache() -> None:
    _details_cache.clear()
