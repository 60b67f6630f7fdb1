import base64
import logging
import random
import re
import time
import uuid
from typing import Any, Dict, Optional, Tuple

import requests

from lib.config import Settings
from lib.error_handler import AppError, ConfigurationError
from lib.images import normalize_image
from lib.ranks import rank_by_key

logger = logging.getLogger(__name__)

UPLOAD_TYPES = {'image/jpeg', 'image/jpg', 'image/png', 'image/webp', 'image/gif', 'image/heic', 'image/heif'}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_INPUT_IMAGE_BYTES = 20 * 1024 * 1024

PORTRAIT_TYPES = ('profile_pic', 'rank_portrait')
TASTING_TYPES = ('bottle_art', 'group_transform')
IMAGE_TYPES = PORTRAIT_TYPES + TASTING_TYPES

STYLE_PREFIX = (
    'Pixel art, cyberpunk Edo period fusion, neon glow on traditional Japanese elements, '
    'dark background with digital rain and glitch effects, 8-bit meets vaporwave, '
    'cherry blossom glitch particles, neon kanji accents, cyan and magenta color palette'
)

RANK_SCENES = {
    'murabito': 'humble rice farmer in a neon-lit village, simple clothes with faint circuit patterns, '
                'lantern glow, rain puddles reflecting neon signs',
    'ashigaru': 'foot soldier with bamboo spear and light cyber-armor, training grounds with holographic '
                'targets, green neon accents',
    'ronin': 'lone wandering swordsman in rain, tattered cloak with glowing seams, neon-tinted puddle '
             'reflections, misty cyberpunk alley',
    'samurai': 'full cyber-armored samurai warrior, holographic katana drawn, cherry blossom glitch storm, '
               'castle silhouette with neon windows',
    'daimyo': 'noble lord in ornate robes with circuit-thread embroidery, seated in grand hall with '
              'holographic maps, gold and cyan neon',
    'shogun': 'commanding warlord in mech-enhanced yoroi armor, war room with floating tactical displays, '
              'red and cyan neon, imposing presence',
    'tenno': 'divine emperor figure on golden throne, radiant with holographic divine light, floating neon '
             'kanji orbit, ultimate power, purple and gold neon',
}

TYPE_SCENES = {
    'bottle_art': 'sake bottle portrait, dramatic lighting, the bottle rendered as a glowing artifact with '
                  'neon label, circuit-pattern condensation, cyberpunk bar counter setting',
    'group_transform': 'group portrait reimagined as cyberpunk Edo warriors, each person in rank-appropriate '
                       'cyber-armor, neon dojo or izakaya setting, sake cups glowing with neon liquid, '
                       'team portrait composition',
}

VARIATIONS = (
    # weather
    'heavy rain with neon reflections',
    'light snow with pixel flakes',
    'thick fog with cyan glow bleeding through',
    'clear night with pixel stars and a glitch moon',
    'storm with lightning illuminating the scene',
    'sakura petal storm (glitched)',
    # lighting
    'single neon sign casting hard shadows',
    'dual-tone lighting (cyan left, magenta right)',
    'backlit silhouette with rim glow',
    'overhead fluorescent flicker',
    'fire/lantern light mixed with neon',
    'holographic light scatter',
    # details
    'pixel birds/cranes in the background',
    'floating kanji characters',
    'holographic wanted posters',
    'steam rising from a ramen stand',
    'a pixel cat sitting nearby',
    'sake bottles lined up on a shelf',
    'glitch artifacts at the edges',
)

DATA_URL_PATTERN = re.compile(r'^data:([^;,]+)?(?:;base64)?,(.*)$', re.DOTALL)


def build_prompt(image_type: str, rank_key: Optional[str] = None, rng: Optional[random.Random] = None) -> str:
    rng = rng or random.Random()
    if image_type in PORTRAIT_TYPES:
        scene = RANK_SCENES[rank_by_key(rank_key or 'murabito').key]
    else:
        scene = TYPE_SCENES[image_type]
    variations = ', '.join(rng.sample(VARIATIONS, 3))
    return f"{STYLE_PREFIX}, {scene}, {variations}"


def _unique_name(prefix: str, extension: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:10]}.{extension}"


class ImageService:
    def __init__(self, settings: Settings, supabase_client, twilio_client=None, timeout: float = 120):
        self.settings = settings
        self.supabase = supabase_client
        self.twilio = twilio_client
        self.timeout = timeout
        self.bucket = settings.storage_bucket

    def _store(self, path: str, data: bytes, content_type: str) -> str:
        bucket = self.supabase.storage.from_(self.bucket)
        bucket.upload(path, data, file_options={'content-type': content_type, 'cache-control': '3600'})
        return bucket.get_public_url(path)

    def upload_image(self, data: bytes, content_type: Optional[str], file_name: Optional[str],
                     tasting_id: Optional[str] = None, folder: str = 'general') -> Dict[str, Any]:
        """Normalize an uploaded image, store it and optionally attach it to a tasting."""
        mime_type = (content_type or '').split(';')[0].strip().lower()
        if mime_type not in UPLOAD_TYPES:
            raise AppError(
                'Invalid file type. Only JPEG, PNG, WEBP, GIF and HEIC are allowed', status_code=400
            )
        if len(data) > MAX_UPLOAD_BYTES:
            raise AppError('File size must be less than 10MB', status_code=400)

        image = normalize_image(data, mime_type, file_name)
        path = f"{folder}/{_unique_name('upload', image.extension)}"
        try:
            url = self._store(path, image.data, image.content_type)
        except Exception as e:
            logger.error(f"Error uploading image {path}: {str(e)}")
            raise AppError(f"Failed to upload image: {str(e)}", status_code=500) from e

        if tasting_id:
            result = self.supabase.table('tastings').select('images').eq('id', tasting_id).limit(1).execute()
            if not result.data:
                raise AppError('Tasting not found', status_code=404)
            images = list(result.data[0].get('images') or [])
            images.append(url)
            self.supabase.table('tastings').update({'images': images}).eq('id', tasting_id).execute()

        logger.info(f"Uploaded image to {path} (converted={image.was_heic_converted})")
        return {'url': url, 'path': path, 'converted': image.was_heic_converted}

    def _input_image(self, image_url: str) -> Tuple[str, str]:
        """Return (mime type, base64 data) for the image to transform."""
        match = DATA_URL_PATTERN.match(image_url)
        if match:
            return match.group(1) or 'image/jpeg', match.group(2)

        if self.twilio is not None and 'api.twilio.com' in image_url:
            data, content_type = self.twilio.download_media(image_url), ''
        else:
            try:
                response = requests.get(image_url, timeout=30)
                response.raise_for_status()
            except requests.exceptions.RequestException as e:
                raise AppError(f"Failed to fetch image from URL: {str(e)}", status_code=400) from e
            data, content_type = response.content, response.headers.get('Content-Type', '')

        if len(data) > MAX_INPUT_IMAGE_BYTES:
            raise AppError(
                f"Image too large: {len(data) / (1024 * 1024):.2f}MB. Maximum size is 20MB.", status_code=400
            )
        image = normalize_image(data, content_type, image_url)
        return image.content_type, base64.b64encode(image.data).decode('ascii')

    def _call_model(self, prompt: str, inline: Optional[Tuple[str, str]]) -> str:
        parts = [{'text': prompt}]
        if inline:
            parts.append({'inline_data': {'mime_type': inline[0], 'data': inline[1]}})

        response = requests.post(
            self.settings.image_model_endpoint,
            params={'key': self.settings.google_api_key},
            json={
                'contents': [{'parts': parts}],
                'generationConfig': {'responseModalities': ['TEXT', 'IMAGE'], 'temperature': 1.0},
            },
            timeout=self.timeout,
        )
        if response.status_code != 200:
            logger.error(f"Image model error {response.status_code}: {response.text[:500]}")
            raise AppError(f"Failed to generate image: {response.text[:200]}", status_code=502)

        payload = response.json()
        candidates = payload.get('candidates') or []
        for part in (candidates[0].get('content') or {}).get('parts', []) if candidates else []:
            inline_data = part.get('inline_data') or part.get('inlineData') or {}
            if inline_data.get('data'):
                return inline_data['data']

        logger.error(f"No image in model response: promptFeedback={payload.get('promptFeedback')}")
        raise AppError('No image generated', status_code=500)

    def generate(self, image_type: str, image_url: Optional[str] = None, tasting_id: Optional[str] = None,
                 taster_id: Optional[str] = None, rank_key: Optional[str] = None) -> Dict[str, Any]:
        if not image_type:
            raise AppError('Missing required field: type', status_code=400)
        if image_type not in IMAGE_TYPES:
            raise AppError(
                'Invalid image type. Must be bottle_art, group_transform, profile_pic, or rank_portrait',
                status_code=400,
            )
        if image_type in PORTRAIT_TYPES and not taster_id:
            raise AppError('tasterId is required for profile_pic and rank_portrait types', status_code=400)
        if image_type in TASTING_TYPES and not tasting_id:
            raise AppError('tastingId is required for bottle_art and group_transform types', status_code=400)
        if not self.settings.google_api_key:
            raise ConfigurationError('GOOGLE_API_KEY not configured')

        rank_key = rank_by_key(rank_key or 'murabito').key
        prompt = build_prompt(image_type, rank_key)
        inline = self._input_image(image_url) if image_url else None

        start = time.monotonic()
        generated = self._call_model(prompt, inline)
        logger.info(f"Generated {image_type} image in {int((time.monotonic() - start) * 1000)}ms")
        data_url = f"data:image/jpeg;base64,{generated}"

        try:
            public_url = self._store(_unique_name(image_type, 'jpg'), base64.b64decode(generated), 'image/jpeg')
        except Exception as e:
            logger.error(f"Storage upload error: {str(e)}")
            return {'generatedImageUrl': data_url, 'warning': 'Could not upload to storage, returning base64'}

        try:
            if image_type in PORTRAIT_TYPES:
                # rank_at_generation caches which tier the portrait depicts
                result = self.supabase.table('tasters').update({
                    'ai_profile_image_url': public_url,
                    'rank_at_generation': rank_key,
                }).eq('id', taster_id).execute()
                return {'generatedImageUrl': public_url, 'tasterRecord': result.data[0] if result.data else None}

            result = self.supabase.table('tasting_images').insert({
                'tasting_id': tasting_id,
                'original_image_url': image_url if image_url and not image_url.startswith('data:') else None,
                'generated_image_url': public_url,
                'image_type': image_type,
                'prompt_used': prompt,
            }).execute()
            return {'generatedImageUrl': public_url, 'imageRecord': result.data[0] if result.data else None}
        except Exception as e:
            logger.error(f"Database update after image generation failed: {str(e)}")
            return {'generatedImageUrl': public_url, 'warning': 'Image generated but not saved to database'}
