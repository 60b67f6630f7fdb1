"""Turn persisted and incoming messages into model-ready conversation turns."""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

USER = 'user'
ASSISTANT = 'assistant'

IMAGE_URL_PATTERN = re.compile(r'\.(jpg|jpeg|png|webp|gif|avif|heic|heif)(?:$|[?#])', re.IGNORECASE)

Block = Dict[str, Any]


@dataclass
class Turn:
    role: str
    content: List[Block] = field(default_factory=list)

    def to_openai(self) -> Dict[str, Any]:
        return {'role': self.role, 'content': list(self.content)}


def text_block(text: str) -> Block:
    return {'type': 'text', 'text': text}


def merge_consecutive(turns: List[Turn]) -> List[Turn]:
    """Collapse runs of same-role turns into one, keeping block order."""
    merged: List[Turn] = []
    for turn in turns:
        if merged and merged[-1].role == turn.role:
            merged[-1] = Turn(role=turn.role, content=[*merged[-1].content, *turn.content])
        else:
            merged.append(Turn(role=turn.role, content=list(turn.content)))
    return merged


def drop_leading_assistant(turns: List[Turn]) -> List[Turn]:
    if turns and turns[0].role == ASSISTANT:
        logger.warning("First turn is from the assistant, removing it")
        return turns[1:]
    return turns


def from_client_turns(messages: List[Dict[str, Any]]) -> List[Turn]:
    """Convert browser chat turns into Turns.

    Each message has a role and either a string `content` or a `parts` list
    of {"type": "text", "text"} / {"type": "file", "url", "mediaType"}.
    """
    turns: List[Turn] = []
    for message in messages:
        role = message.get('role')
        if role not in (USER, ASSISTANT):
            continue

        content: List[Block] = []
        if isinstance(message.get('content'), str) and message['content'].strip():
            content.append(text_block(message['content'].strip()))

        for part in message.get('parts') or []:
            if part.get('type') == 'text' and isinstance(part.get('text'), str) and part['text'].strip():
                content.append(text_block(part['text'].strip()))
            elif part.get('type') == 'file' and role == USER and _is_image_part(part):
                content.append({'type': 'image_url', 'image_url': {'url': part['url']}})

        if content:
            turns.append(Turn(role=role, content=content))

    return drop_leading_assistant(merge_consecutive(turns))


def _is_image_part(part: Dict[str, Any]) -> bool:
    url = part.get('url')
    if not isinstance(url, str):
        return False
    media_type = part.get('mediaType') or ''
    return (
        media_type.startswith('image/')
        or url.startswith('data:image/')
        or bool(IMAGE_URL_PATTERN.search(url))
    )


class MessageBuilder:
    def __init__(self, media_service):
        self.media = media_service

    async def _user_content(self, body: Optional[str], media_urls: Optional[List[str]], label: str) -> List[Block]:
        content: List[Block] = []
        if body:
            content.append(text_block(body))
        if media_urls:
            try:
                content.extend(await self.media.process_media_urls(media_urls))
            except Exception as e:
                logger.error(f"Failed to process media for {label}: {str(e)}")
        return content

    async def build(
        self,
        history: List[Dict[str, Any]],
        current_body: Optional[str],
        current_media_urls: Optional[List[str]],
    ) -> List[Turn]:
        turns: List[Turn] = []

        for index, record in enumerate(history):
            if record.get('direction') == 'inbound':
                content = await self._user_content(
                    record.get('body'), record.get('media_urls'), f"history message {index}"
                )
                role = USER
            else:
                content = [text_block(record['body'])] if record.get('body') else []
                role = ASSISTANT

            if content:
                turns.append(Turn(role=role, content=content))

        current = await self._user_content(current_body, current_media_urls, "current message")
        if current:
            turns.append(Turn(role=USER, content=current))

        merged = drop_leading_assistant(merge_consecutive(turns))
        logger.debug(f"Built {len(merged)} turns from {len(history)} history records")
        return merged
