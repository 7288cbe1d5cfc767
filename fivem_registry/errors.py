"""Exception hierarchy for the registry pipeline."""


class RegistryError(Exception):
    """Base class for registry errors."""


class StoreUnavailableError(RegistryError):
    """Raised when the backing KV store cannot be reached."""


class ServerNotFoundError(RegistryError):
    """Raised when a server id is unknown to the catalog and upstream."""

    def __init__(self, server_id: str):
        super().__init__(f"Server not found: {server_id}")
        self.server_id = server_id


class UpstreamError(RegistryError):
    """Raised when the upstream server list or lookup service fails."""


class MalformedPayloadError(RegistryError):
    """Raised when an upstream or probe payload cannot be parsed."""
