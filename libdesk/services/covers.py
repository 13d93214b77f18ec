import io
import logging
import os
from typing import Optional, Tuple

from PIL import Image, ImageFilter, UnidentifiedImageError

from libdesk.config import settings
from libdesk.services.cache_manager import CacheManager
from libdesk.services.http_client import get_http_client

logger = logging.getLogger(__name__)

DEFAULT_COVER_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="300" height="450" viewBox="0 0 300 450">'
    '<rect width="300" height="450" fill="#e5e7eb"/>'
    '<rect x="30" y="40" width="240" height="370" fill="none" stroke="#9ca3af" stroke-width="4"/>'
    '<text x="150" y="235" font-family="sans-serif" font-size="28" fill="#6b7280" text-anchor="middle">'
    'No cover</text></svg>'
)
COVER_SIZES = ("S", "M", "L")

# Covers are binary, so they stay in process memory.
_cover_cache = CacheManager(namespace="covers", use_redis=False)


def optimize_image(data: bytes, max_width: Optional[int] = None) -> bytes:
    """Convert to RGB JPEG no wider than ``max_width``; ValueError for non-images."""
    max_width = max_width or settings.cover_max_width
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError("Uploaded file is not an image.") from e
    if image.mode != "RGB":
        image = image.convert("RGB")
    if image.width > max_width:
        ratio = max_width / image.width
        image = image.resize((max_width, int(image.height * ratio)), Image.Resampling.LANCZOS)
        image = image.filter(ImageFilter.UnsharpMask(radius=2, percent=125, threshold=3))
    output = io.BytesIO()
    image.save(output, format="JPEG", quality=90, optimize=True)
    return output.getvalue()


def save_cover(library, book_id: str, data: bytes) -> str:
    """Store an uploaded cover for a book and return its public path."""
    if not data:
        raise ValueError("Empty upload.")
    if len(data) > settings.max_upload_size:
        raise ValueError(f"File is larger than {settings.max_upload_size} bytes.")
    book = library.get_book(book_id)
    if not book:
        raise LookupError(f"Book {book_id} not found.")

    content = optimize_image(data)
    os.makedirs(settings.covers_dir, exist_ok=True)
    filename = f"{book_id}.jpg"
    with open(os.path.join(settings.covers_dir, filename), "wb") as fh:
        fh.write(content)
    path = f"/covers/{filename}"
    library.update_book(book_id, cover=path)
    logger.info("Cover stored for book %s (%d bytes)", book_id, len(content))
    return path


async def fetch_cover(isbn: str, size: str = "L") -> Optional[Tuple[bytes, str]]:
    """Fetch a cover from Open Library; None when no usable image exists."""
    if size not in COVER_SIZES:
        size = "L"
    cache_key = f"{isbn}:{size}"
    hit = _cover_cache.get(cache_key)
    if hit is not None:
        return hit

    urls = [f"https://covers.openlibrary.org/b/isbn/{isbn}-{size}.jpg"]
    if size == "L":
        urls.append(f"https://covers.openlibrary.org/b/isbn/{isbn}-M.jpg")
    client = await get_http_client()
    for url in urls:
        response = await client.get_with_retry(url, retries=1, backoff=0.2)
        # Open Library answers tiny placeholder images for unknown ISBNs
        if response is not None and response.status_code == 200 and len(response.content) > 1000:
            content = response.content
            if size == "L" and len(content) > 50000:
                try:
                    content = optimize_image(content)
                except ValueError:
                    logger.warning("Cover for %s could not be optimized", isbn)
            result = (content, "image/jpeg")
            _cover_cache.set(cache_key, result, ttl_seconds=3600)
            return result
    return None
