"""Exception hierarchy for settlement-chain client errors.

Follow the same pattern as the feed client: a base exception class with
specialised errors that carry the transaction hash when one exists, so
callers can log it for out-of-band repair.
"""


class ChainError(Exception):
    """Base exception for all chain client errors.

    Args:
        msg: Human-readable description of the error.
        tx_hash: Hash of the related transaction, if one was broadcast.

    """

    def __init__(self, msg: str, tx_hash: str | None = None) -> None:
        """Initialize chain error.

        Args:
            msg: Human-readable description of the error.
            tx_hash: Hash of the related transaction, if one was broadcast.

        """
        super().__init__(f"{msg} (tx: {tx_hash})" if tx_hash else msg)
        self.msg = msg
        self.tx_hash = tx_hash


class ChainTransactionError(ChainError):
    """A transaction was rejected on submission or reverted on chain."""


class ChainIndeterminateError(ChainError):
    """A transaction was broadcast but no receipt arrived in time.

    The outcome is unknown: the transaction may still be mined. Callers
    log it and leave convergence to the next reconciliation tick.
    """
