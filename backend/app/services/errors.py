"""Domain-specific exceptions for the services layer."""


class DownloaderError(Exception):
    """Base exception for media pipeline errors."""

    def __init__(self, message: str, code: str, details: str | None = None) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message
            code: Stable error code for API responses
            details: Optional diagnostic text (usually the external tool's stderr)
        """
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)


class InvalidUrlError(DownloaderError):
    """Raised when the provided URL is invalid or blocked."""

    def __init__(self, message: str = "The provided URL is invalid or blocked") -> None:
        super().__init__(message, "INVALID_URL")


class InvalidFormatError(DownloaderError):
    """Raised when a format identifier contains unsafe characters."""

    def __init__(self, message: str = "Invalid format identifier") -> None:
        super().__init__(message, "INVALID_FORMAT")


class ResolveError(DownloaderError):
    """Raised when metadata lookup fails or its output cannot be parsed.

    ``reason`` tells a failed process (``process_failed``, ``timeout``,
    ``tool_missing``) apart from bad output (``no_output``, ``unparsable``).
    """

    def __init__(
        self,
        details: str | None = None,
        reason: str = "process_failed",
        message: str = "Video fetch failed",
    ) -> None:
        self.reason = reason
        super().__init__(message, "RESOLVE_FAILED", details)


class FetchError(DownloaderError):
    """Raised when stream retrieval fails or produces no file."""

    def __init__(self, details: str | None = None, message: str = "Download failed") -> None:
        super().__init__(message, "FETCH_FAILED", details)


class AssembleError(DownloaderError):
    """Raised when muxing video and audio fails."""

    def __init__(self, details: str | None = None, message: str = "Merge failed") -> None:
        super().__init__(message, "ASSEMBLE_FAILED", details)


class DeliveryError(DownloaderError):
    """Raised when the finished file is missing or the client went away."""

    def __init__(
        self,
        details: str | None = None,
        message: str = "Delivery failed",
        client_gone: bool = False,
    ) -> None:
        self.client_gone = client_gone
        super().__init__(message, "DELIVERY_FAILED", details)


class ToolError(Exception):
    """Base exception for external tool invocation problems.

    These never reach the API layer; each pipeline stage translates them
    into its own :class:`DownloaderError`.
    """


class ToolNotFoundError(ToolError):
    """Raised when an external executable is not installed."""

    def __init__(self, binary: str) -> None:
        self.binary = binary
        super().__init__(f"Executable not found: {binary}")


class ToolTimeoutError(ToolError):
    """Raised when an external process exceeds its time budget."""

    def __init__(self, binary: str, timeout: float) -> None:
        self.binary = binary
        self.timeout = timeout
        super().__init__(f"{binary} timed out after {timeout:g}s")


class ToolOutputError(ToolError):
    """Raised when a process prints a line the reader cannot buffer."""

    def __init__(self, binary: str, reason: str) -> None:
        self.binary = binary
        super().__init__(f"{binary} produced unreadable output: {reason}")
