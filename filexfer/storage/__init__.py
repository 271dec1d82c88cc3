"""
Storage Module - Server-side File Store

Flat directory of uploaded files with atomic commits.
"""

from .directory import StorageDirectory, StorageStats, UploadSink, DownloadSource

__all__ = ['StorageDirectory', 'StorageStats', 'UploadSink', 'DownloadSource']
