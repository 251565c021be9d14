"""Exception types for collector errors.

Per-query failures (selector timeouts, navigation errors, malformed result
pages) are raised inside the browser driver and converted to an
ExtractionResult at its boundary. Only session-fatal and storage-fatal
conditions escape to the pipeline.
"""

from typing import Any


class CollectorException(Exception):
    """Base class for collector errors.

    Carries a human-readable message plus a context dict that is rendered
    into the exception string to help diagnose what went wrong.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable description of the failure.
            context: Optional dict of additional context (selector, path, etc).
        """
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with context.

        Returns:
            Formatted error message string.
        """
        parts = [self.message]

        if self.context:
            parts.append("Context:")
            for key, value in self.context.items():
                parts.append(f"  {key}: {value}")

        return "\n".join(parts)


class ExtractionException(CollectorException):
    """Base class for failures of a single query against the source site.

    Attributes:
        url: The URL of the page being driven when the failure happened.
    """

    def __init__(
        self,
        message: str,
        url: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.url = url
        context = {"url": url, **(context or {})}
        super().__init__(message, context)


class SelectorTimeoutException(ExtractionException):
    """Raised when an expected page element did not appear in time.

    Attributes:
        selector: The selector that was waited on.
        timeout_ms: The wait bound in milliseconds.
    """

    def __init__(self, selector: str, timeout_ms: float, url: str) -> None:
        self.selector = selector
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Selector '{selector}' did not appear within {timeout_ms:.0f}ms",
            url,
            {"selector": selector, "timeout_ms": timeout_ms},
        )


class NavigationException(ExtractionException):
    """Raised when the source site could not be reached or navigated."""


class MalformedResultException(ExtractionException):
    """Raised when a result page was reached but lacks the required fields.

    This is not treated as an error by the walk: it maps to NotFound.
    """


class FatalInitError(CollectorException):
    """Raised when a browser session cannot be created at all.

    Aborts the whole run; the canonical dataset is never touched.
    """


class MergeIOError(CollectorException):
    """Raised when the canonical dataset cannot be read or written.

    Attributes:
        path: The dataset path involved.
    """

    def __init__(
        self,
        message: str,
        path: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.path = path
        context = {"path": path, **(context or {})}
        super().__init__(message, context)
