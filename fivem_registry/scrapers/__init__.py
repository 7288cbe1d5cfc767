"""Clients for the upstream server list and per-server lookup API."""

from .cfx_api import clear_details_cache, fetch_server_details, lookup_server
from .server_list import fetch_server_list, parse_server_list, strip_color_codes

__all__ = [
    "fetch_server_list",
    "parse_server_list",
    "strip_color_codes",
    "lookup_server",
    "fetch_server_details",
    "clear_details_cache",
]
