"""Transfer engine failures. None of them is retried automatically."""


class TransferError(Exception):
    """Base class for terminal failures of a peer session."""


class NegotiationFailed(TransferError):
    """The direct channel could not be established."""


class ChannelClosed(TransferError):
    """The direct channel is gone or was never open."""


class ReadError(TransferError):
    """The source file could not be read to its declared size."""


class TransferProtocolError(TransferError):
    """The peer sent something the transfer protocol does not allow."""
