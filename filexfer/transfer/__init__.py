"""
Transfer Module - Framing, Connections and Protocol

Handles the TCP wire protocol shared by server and client.
"""

from .connection import Connection, open_connection
from .errors import (
    TransferError, TransportError, ConnectionClosed, SendFailed,
    TransferTimeout, ProtocolMismatch, UnsafeFilename,
    LocalFileNotFound, RemoteFileNotFound,
)
from .framing import Command, TransferHeader, DEFAULT_CHUNK_SIZE, NOT_FOUND, MAX_SIZE
from .protocol import TransferProtocol

__all__ = [
    'Connection',
    'open_connection',
    'TransferProtocol',
    'Command',
    'TransferHeader',
    'DEFAULT_CHUNK_SIZE',
    'NOT_FOUND',
    'MAX_SIZE',
    'TransferError',
    'TransportError',
    'ConnectionClosed',
    'SendFailed',
    'TransferTimeout',
    'ProtocolMismatch',
    'UnsafeFilename',
    'LocalFileNotFound',
    'RemoteFileNotFound',
]
