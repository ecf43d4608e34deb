"""Classified error hierarchy for synchronous engine operations.

Every error surfaced to a caller of the engine (bet placement, chart
queries, manual sync triggers) is a ``LedgerError`` carrying an
``ErrorKind`` so the route layer can map it onto a response without
inspecting message text. Client-level failures (chain RPC, feed HTTP)
are translated into ``InternalError`` at the engine boundary.
"""

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Classification of an engine error."""

    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INTERNAL = "internal"


class LedgerError(Exception):
    """Base exception for all classified engine errors.

    Args:
        msg: Human-readable description of the error.

    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, msg: str) -> None:
        """Initialize the error.

        Args:
            msg: Human-readable description of the error.

        """
        super().__init__(f"[{self.kind.value}] {msg}")
        self.msg = msg

    def to_dict(self) -> dict[str, Any]:
        """Return the structured form handed to API callers.

        Returns:
            Dictionary with ``kind`` and ``message`` keys.

        """
        return {"kind": self.kind.value, "message": self.msg}


class BadRequestError(LedgerError):
    """Malformed or out-of-range input, or a market that is not tradable."""

    kind = ErrorKind.BAD_REQUEST


class NotFoundError(LedgerError):
    """No matching market, user, or bet."""

    kind = ErrorKind.NOT_FOUND


class UnauthorizedError(LedgerError):
    """Caller is not allowed to perform the operation."""

    kind = ErrorKind.UNAUTHORIZED


class InternalError(LedgerError):
    """Downstream failure: database error, chain RPC error, or failed transaction.

    Args:
        msg: Human-readable description of the error.
        tx_hash: Hash of a confirmed transaction whose database record
            could not be written, when applicable.

    """

    kind = ErrorKind.INTERNAL

    def __init__(self, msg: str, *, tx_hash: str | None = None) -> None:
        """Initialize the error.

        Args:
            msg: Human-readable description of the error.
            tx_hash: Optional hash of an already-confirmed transaction.

        """
        super().__init__(msg)
        self.tx_hash = tx_hash

    def to_dict(self) -> dict[str, Any]:
        """Return the structured form, including ``tx_hash`` when present."""
        data = super().to_dict()
        if self.tx_hash is not None:
            data["tx_hash"] = self.tx_hash
        return data
