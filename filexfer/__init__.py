"""
filexfer - Minimal TCP File Transfer Service

A server stores and serves files from a flat directory; a client uploads
and downloads over one persistent connection.
"""

from .config import Config, load_config
from .server import TransferServer, TransferRecord
from .client import TransferClient, TransferProgress
from .storage import StorageDirectory

__version__ = '0.1.0'

__all__ = [
    'Config',
    'load_config',
    'TransferServer',
    'TransferRecord',
    'TransferClient',
    'TransferProgress',
    'StorageDirectory',
]
