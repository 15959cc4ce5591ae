"""Storage layer for vcshub.

This module provides the SQLite metadata store and the S3 object storage
adapter.
"""

from vcshub.storage.blob_store import BlobStore, StorageError, plan_parts
from vcshub.storage.metadata_db import DatabaseError, MetadataDB

__all__ = [
    "BlobStore",
    "StorageError",
    "plan_parts",
    "MetadataDB",
    "DatabaseError",
]
