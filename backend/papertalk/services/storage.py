"""
Object storage on GridFS - upload, read back, public URL issuance.
Files are served back by GET /api/files/{file_id}.
"""

import asyncio
from typing import Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from gridfs import GridFS
from gridfs.errors import NoFile

from papertalk.config import logger, PUBLIC_BASE_URL


class ObjectStore:
    """GridFS-backed file store. PyMongo's GridFS is sync, so calls run in a thread."""

    def __init__(self, fs: GridFS, public_base_url: str = PUBLIC_BASE_URL):
        self.fs = fs
        self.public_base_url = public_base_url.rstrip("/")

    def public_url(self, file_id: str) -> str:
        return f"{self.public_base_url}/api/files/{file_id}"

    async def upload(self, data: bytes, filename: str, content_type: str, **metadata) -> str:
        """Store bytes and return the file's public URL."""
        file_id = await asyncio.to_thread(
            self.fs.put, data, filename=filename, content_type=content_type, **metadata
        )
        logger.info(f"Stored {filename} ({len(data) / 1024:.1f}KB) as {file_id}")
        return self.public_url(str(file_id))

    async def get(self, file_id: str) -> Optional[Tuple[bytes, str, str]]:
        """Return (data, content_type, filename) or None if the file does not exist."""
        try:
            oid = ObjectId(file_id)
        except InvalidId:
            return None

        def _read():
            try:
                grid_out = self.fs.get(oid)
            except NoFile:
                return None
            content_type = getattr(grid_out, "content_type", None) or "application/octet-stream"
            return grid_out.read(), content_type, grid_out.filename or file_id

        return await asyncio.to_thread(_read)
