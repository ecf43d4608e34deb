"""Exception hierarchy for market-data feed client errors.

A base exception class with a specialised API error that carries status
code and message attributes.
"""


class FeedError(Exception):
    """Base exception for all feed client errors."""


class FeedAPIError(FeedError):
    """Error returned by a feed API call.

    Carry a human-readable message and an HTTP status code so callers
    can distinguish transient failures from client errors.

    Args:
        msg: Human-readable description of the error.
        status_code: HTTP status code from the API response.

    """

    def __init__(self, msg: str, status_code: int) -> None:
        """Initialize feed API error.

        Args:
            msg: Human-readable description of the error.
            status_code: HTTP status code from the API response.

        """
        super().__init__(f"[{status_code}] {msg}")
        self.msg = msg
        self.status_code = status_code
