"""
Exception hierarchy for the bridge.

Only unrecoverable start-up problems are raised across the adapter boundary.
Expected user-facing failures (unknown model, unsupported capability) are
returned as strings instead.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigError(BridgeError):
    """Required configuration is missing or malformed."""


class BackendError(BridgeError):
    """The agent backend could not be made available."""


class InstallError(BackendError):
    """Installing the agent CLI failed."""


class ServerStartError(BackendError):
    """The agent HTTP server did not come up in time."""


class AgentApiError(BackendError):
    """A request to the agent HTTP API failed."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class TerminalError(BridgeError):
    """A tmux command failed."""
