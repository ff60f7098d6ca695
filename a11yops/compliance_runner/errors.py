"""Exception types raised by the compliance runner."""


class ComplianceError(RuntimeError):
    """Base class for compliance runner errors."""


class ConfigurationError(ComplianceError):
    """Raised when settings or the criteria catalogue cannot be used."""


class ToolExecutionError(ComplianceError):
    """Raised by tool adapters when a scanning tool cannot produce output."""

    def __init__(self, tool: str, message: str) -> None:
        """Initialize with the failing tool name."""
        super().__init__(f"{tool}: {message}")
        self.tool = tool


class DiscoveryError(ComplianceError):
    """Raised when page discovery reports failure."""


class DiscoveryTimeoutError(DiscoveryError, TimeoutError):
    """Raised when page discovery does not complete within the wait bound."""


class TransactionAbortedError(ComplianceError):
    """Raised when the store keeps aborting a transaction after all retries."""


class StoreUnavailableError(ComplianceError):
    """Raised when the relational store cannot be reached."""


class SessionNotFoundError(ComplianceError):
    """Raised when a session id does not exist."""

    def __init__(self, session_id: str) -> None:
        """Initialize with the missing session id."""
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
