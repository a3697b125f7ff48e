"""
Remote sync for the session database.

The database file travels as one opaque blob plus a small JSON index;
pulls merge newer remote sessions without deleting local ones.
"""

from .engine import DB_BLOB_NAME, INDEX_BLOB_NAME, BlobSyncEngine
from .remote import DriveAppDataStore, RemoteBlobStore, build_multipart_body

__all__ = [
    "BlobSyncEngine",
    "RemoteBlobStore",
    "DriveAppDataStore",
    "build_multipart_body",
    "DB_BLOB_NAME",
    "INDEX_BLOB_NAME",
]
