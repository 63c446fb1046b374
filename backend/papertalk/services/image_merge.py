"""
Merge captured answer-sheet pages into a single PDF for storage and AI grading.
"""

import asyncio
import io
import re
import time
from typing import List, Optional

import httpx
from PIL import Image, UnidentifiedImageError

from papertalk.config import logger
from papertalk.services.storage import ObjectStore


def images_to_pdf(page_images: List[bytes]) -> Optional[bytes]:
    """Render each decodable image as one PDF page. Returns None if nothing was usable."""
    pages = []
    for idx, data in enumerate(page_images):
        try:
            img = Image.open(io.BytesIO(data))
            pages.append(img.convert("RGB"))
        except (UnidentifiedImageError, OSError) as e:
            logger.error(f"Skipping unreadable page {idx + 1}: {e}")

    if not pages:
        return None

    buffer = io.BytesIO()
    pages[0].save(buffer, format="PDF", save_all=True, append_images=pages[1:], resolution=150.0)
    return buffer.getvalue()


class ImageMerger:
    """Downloads page images, merges them into one PDF and uploads it."""

    def __init__(self, store: ObjectStore, http_client: httpx.AsyncClient):
        self.store = store
        self.http_client = http_client

    async def merge_images(self, image_urls: List[str], test_id: str, student_email: str) -> Optional[str]:
        """Return the merged PDF's public URL, or None when merging is not possible."""
        if not image_urls:
            return None

        page_images = []
        for url in image_urls:
            try:
                response = await self.http_client.get(url)
                response.raise_for_status()
                page_images.append(response.content)
            except httpx.HTTPError as e:
                logger.error(f"Failed to fetch image {url}: {e}")

        pdf_bytes = await asyncio.to_thread(images_to_pdf, page_images)
        if pdf_bytes is None:
            return None

        safe_email = re.sub(r"[^a-zA-Z0-9]", "_", student_email)
        filename = f"merged/{test_id}/{int(time.time() * 1000)}-{safe_email}.pdf"
        try:
            return await self.store.upload(pdf_bytes, filename, "application/pdf", test_id=test_id)
        except Exception as e:
            logger.error(f"Error uploading merged PDF: {e}", exc_info=True)
            return None
