"""Parser and fetcher for the upstream server list stream.

The stream is a sequence of frames, each a 4-byte little-endian length
followed by one protobuf-encoded server message::

    server  { 1: endpoint id (string), 2: data (message) }
    data    { 1: max clients (varint), 2: clients (varint),
              4: hostname, 5: gametype, 6: mapname,
              12: var entry { 1: key, 2: value } (repeated),
              14: resource (repeated), 17: icon, 18: connect endpoint }
"""

import logging
import re
import struct
from collections.abc import Iterator

import httpx

from ..config import SERVER_LIST_URL
from ..errors import UpstreamError
from ..models import Server

logger = logging.getLogger(__name__)

MAX_FRAME_SIZE = 100_000
COLOR_CODE_RE = re.compile(r"\^[0-9]")

WIRE_VARINT = 0
WIRE_64BIT = 1
WIRE_LENGTH = 2
WIRE_32BIT = 5


def strip_color_codes(text: str) -> str:
    """Remove ``^0``-``^9`` color codes."""
    return COLOR_CODE_RE.sub("", text).strip()


def _read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while pos < len(buf):
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            break
    raise ValueError("truncated varint")


def _iter_fields(buf: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    """Yield ``(field number, wire type, value)`` until the buffer ends or turns malformed."""
    pos = 0
    while pos < len(buf):
        try:
            tag, pos = _read_varint(buf, pos)
            field, wire = tag >> 3, tag & 0x7
            if wire == WIRE_VARINT:
                value, pos = _read_varint(buf, pos)
                yield field, wire, value
            elif wire == WIRE_LENGTH:
                length, pos = _read_varint(buf, pos)
                if pos + length > len(buf):
                    return
                yield field, wire, buf[pos : pos + length]
                pos += length
            elif wire == WIRE_32BIT:
                pos += 4
            elif wire == WIRE_64BIT:
                pos += 8
            else:
                return
        except ValueError:
            return


def _text(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


def _parse_var_entry(buf: bytes) -> tuple[str, str] | None:
    key = value = ""
    for field, wire, data in _iter_fields(buf):
        if wire != WIRE_LENGTH:
            continue
        if field == 1:
            key = _text(data)
        elif field == 2:
            value = _text(data)
    return (key, value) if key else None


def _parse_data(buf: bytes) -> dict:
    info: dict = {
        "hostname": "",
        "clients": 0,
        "max_clients": 32,
        "gametype": "",
        "mapname": "",
        "resources": [],
        "vars": {},
        "icon": None,
        "connect_endpoint": None,
    }
    for field, wire, value in _iter_fields(buf):
        if wire == WIRE_VARINT:
            if field == 1:
                info["max_clients"] = value
            elif field == 2:
                info["clients"] = value
            continue
        if wire != WIRE_LENGTH:
            continue
        if field == 4:
            info["hostname"] = _text(value)
        elif field == 5:
            info["gametype"] = _text(value)
        elif field == 6:
            info["mapname"] = _text(value)
        elif field == 12:
            entry = _parse_var_entry(value)
            if entry:
                info["vars"][entry[0]] = entry[1]
        elif field == 14:
            info["resources"].append(_text(value))
        elif field == 17:
            icon = _text(value)
            if icon.startswith("data:image"):
                info["icon"] = icon
        elif field == 18:
            info["connect_endpoint"] = _text(value)
    return info


def parse_server_message(buf: bytes) -> Server | None:
    """Parse one server message.

    Args:
        buf: Protobuf bytes of a single frame

    Returns:
        Server, or None when the message carries neither id nor hostname
    """
    endpoint = ""
    info = _parse_data(b"")
    for field, wire, value in _iter_fields(buf):
        if wire != WIRE_LENGTH:
            continue
        if field == 1:
            endpoint = _text(value)
        elif field == 2:
            info = _parse_data(value)

    if not endpoint and not info["hostname"]:
        return None

    name = info["vars"].get("sv_projectName") or info["hostname"] or endpoint
    return Server(
        id=endpoint,
        name=strip_color_codes(name)[:100],
        players=info["clients"],
        max_players=info["max_clients"] or 32,
        gametype=info["gametype"],
        mapname=info["mapname"],
        resources=info["resources"],
        vars=info["vars"],
        icon=info["icon"],
        connect_endpoint=info["connect_endpoint"],
    )


def parse_server_list(data: bytes) -> list[Server]:
    """Parse a full length-prefixed stream.

    Entries without an id or with a display name of 2 characters or fewer
    are dropped. Parsing stops at the first malformed frame.
    """
    servers = []
    pos = 0
    while pos + 4 <= len(data):
        (length,) = struct.unpack_from("<I", data, pos)
        pos += 4
        if length <= 0 or length > MAX_FRAME_SIZE or pos + length > len(data):
            logger.warning(f"Stopping at malformed frame (offset {pos - 4}, length {length})")
            break
        server = parse_server_message(data[pos : pos + length])
        pos += length
        if server and server.id and len(server.name) > 2:
            servers.append(server)
    return servers


async def fetch_server_list(
    client: httpx.AsyncClient,
    url: str = SERVER_LIST_URL,
    timeout: float = 60.0,
) -> list[Server]:
    """Download and parse the upstream server list snapshot.

    Args:
        client: HTTP client
        url: Stream endpoint
        timeout: Request timeout in seconds

    Returns:
        Parsed servers

    Raises:
        UpstreamError: On transport failure or a non-2xx response
    """
    logger.info(f"Fetching server list from {url}")
    try:
        response = await client.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise UpstreamError(f"Server list fetch failed: {e}") from e

    servers = parse_server_list(response.content)
    logger.info(f"Parsed {len(servers)} servers ({len(response.content)} bytes)")
    return servers
