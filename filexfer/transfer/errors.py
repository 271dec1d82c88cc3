"""
Transfer Errors

Failures that can occur while running the transfer protocol.

Transport errors and protocol mismatches leave the byte stream in an
unknown state, so the connection that raised them must be closed.
Missing files and refused filenames only abort the current command.
"""


class TransferError(Exception):
    """Base class for all transfer failures."""


class TransportError(TransferError, ConnectionError):
    """The underlying byte stream failed."""


class ConnectionClosed(TransportError):
    """The peer ended the stream before the expected bytes arrived."""


class SendFailed(TransportError):
    """Bytes could not be handed to the transport."""


class TransferTimeout(TransportError):
    """A read or write did not complete before its deadline."""


class ProtocolMismatch(TransferError, ValueError):
    """Unrecognized command token or malformed header."""


class UnsafeFilename(TransferError, ValueError):
    """A filename that does not map to a plain entry of the storage directory."""


class LocalFileNotFound(TransferError, FileNotFoundError):
    """The local source file of an upload does not exist."""


class RemoteFileNotFound(TransferError, FileNotFoundError):
    """The server has no file with the requested name."""
