"""
Vector index synchronization.

Keeps each template's remote vector index in step with its file manifest,
using content hashes to skip unchanged documents.
"""

from responsekit.sync.sources import DocumentFetcher, DocumentFetchError, FetchedDocument
from responsekit.sync.synchronizer import SyncReport, VectorStoreSynchronizer

__all__ = [
    "VectorStoreSynchronizer",
    "SyncReport",
    "DocumentFetcher",
    "DocumentFetchError",
    "FetchedDocument",
]
