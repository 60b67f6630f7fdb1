import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from lib.config import Settings
from lib.images import normalize_image

logger = logging.getLogger(__name__)

ImageBlock = Dict[str, Any]


def image_block(data_url: str) -> ImageBlock:
    return {'type': 'image_url', 'image_url': {'url': data_url}}


class MediaService:
    def __init__(self, settings: Settings, timeout: float = 20):
        self.settings = settings
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _download(self, session: aiohttp.ClientSession, url: str) -> Optional[tuple]:
        auth = None
        if self.settings.twilio_account_sid and self.settings.twilio_auth_token:
            auth = aiohttp.BasicAuth(
                login=self.settings.twilio_account_sid,
                password=self.settings.twilio_auth_token
            )

        async with session.get(url, auth=auth) as response:
            if response.status != 200:
                logger.error(f"Failed to download media {url}: {response.status}")
                return None
            data = await response.read()
            logger.info(f"Media downloaded: {len(data)} bytes")
            return data, response.headers.get('Content-Type', '')

    async def fetch_image(self, url: str, session: Optional[aiohttp.ClientSession] = None) -> Optional[ImageBlock]:
        """Fetch one media URL as a model-ready image block, or None."""
        if url.startswith('data:'):
            return image_block(url)

        try:
            if session is None:
                async with aiohttp.ClientSession(timeout=self.timeout) as own_session:
                    downloaded = await self._download(own_session, url)
            else:
                downloaded = await self._download(session, url)
            if not downloaded:
                return None

            data, content_type = downloaded
            image = normalize_image(data, content_type, url)
            encoded = base64.b64encode(image.data).decode('ascii')
            return image_block(f"data:{image.content_type};base64,{encoded}")
        except Exception as e:
            logger.error(f"Error processing media {url}: {str(e)}")
            return None

    async def process_media_urls(self, media_urls: Optional[List[str]]) -> List[ImageBlock]:
        if not media_urls:
            return []

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            blocks = await asyncio.gather(*(self.fetch_image(url, session) for url in media_urls))
        return [block for block in blocks if block is not None]
