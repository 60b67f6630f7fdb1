import io
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import pillow_heif
from PIL import Image

logger = logging.getLogger(__name__)

pillow_heif.register_heif_opener()

HEIC_MIME_TYPES = {
    'image/heic',
    'image/heif',
    'image/heic-sequence',
    'image/heif-sequence',
}

MIME_TO_EXTENSION = {
    'image/jpeg': 'jpg',
    'image/jpg': 'jpg',
    'image/png': 'png',
    'image/webp': 'webp',
    'image/gif': 'gif',
    'image/avif': 'avif',
    'image/heic': 'heic',
    'image/heif': 'heif',
}

EXTENSION_TO_MIME = {
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'webp': 'image/webp',
    'gif': 'image/gif',
    'avif': 'image/avif',
    'heic': 'image/heic',
    'heif': 'image/heif',
}


@dataclass
class NormalizedImage:
    data: bytes
    content_type: str
    extension: str
    was_heic_converted: bool = False


def extract_extension(file_name_or_url: Optional[str]) -> Optional[str]:
    if not file_name_or_url or not file_name_or_url.strip():
        return None
    path = urlparse(file_name_or_url.strip()).path or file_name_or_url
    file_name = path.rsplit('/', 1)[-1]
    if '.' not in file_name:
        return None
    return file_name.rsplit('.', 1)[-1].lower() or None


def _convert_heic_to_jpeg(data: bytes) -> bytes:
    with Image.open(io.BytesIO(data)) as image:
        output = io.BytesIO()
        image.convert('RGB').save(output, format='JPEG', quality=90)
        return output.getvalue()


def normalize_image(data: bytes, content_type: Optional[str] = None,
                    file_name_or_url: Optional[str] = None) -> NormalizedImage:
    """Convert HEIC/HEIF to JPEG and settle on a content type and extension."""
    mime_type = (content_type or '').split(';')[0].strip().lower()
    extension = extract_extension(file_name_or_url)

    if mime_type in HEIC_MIME_TYPES or extension in ('heic', 'heif'):
        logger.info(f"Converting HEIC image ({len(data)} bytes) to JPEG")
        return NormalizedImage(
            data=_convert_heic_to_jpeg(data),
            content_type='image/jpeg',
            extension='jpg',
            was_heic_converted=True,
        )

    resolved_type = mime_type or EXTENSION_TO_MIME.get(extension or '') or 'image/jpeg'
    resolved_extension = MIME_TO_EXTENSION.get(resolved_type) or extension or 'jpg'
    return NormalizedImage(data=data, content_type=resolved_type, extension=resolved_extension)
