"""Exception hierarchy for the transfer engine."""


class TransferError(Exception):
    """Base class for every failure raised by the transfer engine."""


class BindFailure(TransferError):
    """The listener port stayed unavailable after all bind attempts."""


class ConnectFailure(TransferError):
    """Could not open a connection to the peer."""


class ConnectTimeout(ConnectFailure):
    """The connection attempt did not complete in time."""


class MalformedFrame(TransferError):
    """The peer sent bytes that do not form a valid frame."""


class IncompleteTransfer(TransferError):
    """The peer closed before the declared number of bytes arrived."""

    def __init__(self, received: int, expected: int) -> None:
        super().__init__(f"received {received} of {expected} bytes")
        self.received = received
        self.expected = expected


class StorageFailure(TransferError):
    """A storage sink could not be opened or failed while writing."""


class TransferAborted(TransferError):
    """An I/O error interrupted an outgoing transfer."""


class SourceUnavailable(TransferError):
    """The file to send could not be resolved or opened."""
