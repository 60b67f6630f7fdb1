import pytest
from unittest.mock import AsyncMock, MagicMock

from api.messages import (
    ASSISTANT,
    USER,
    MessageBuilder,
    Turn,
    drop_leading_assistant,
    from_client_turns,
    merge_consecutive,
    text_block,
)

IMAGE = {'type': 'image_url', 'image_url': {'url': 'data:image/jpeg;base64,AAAA'}}


def record(direction, body=None, media_urls=None):
    return {'direction': direction, 'body': body, 'media_urls': media_urls}


@pytest.fixture
def media_service():
    service = MagicMock()
    service.process_media_urls = AsyncMock(return_value=[IMAGE])
    return service


def test_merge_consecutive_keeps_block_order():
    turns = [
        Turn(USER, [text_block('one')]),
        Turn(USER, [text_block('two')]),
        Turn(ASSISTANT, [text_block('three')]),
        Turn(USER, [text_block('four')]),
    ]
    merged = merge_consecutive(turns)
    assert [t.role for t in merged] == [USER, ASSISTANT, USER]
    assert [b['text'] for b in merged[0].content] == ['one', 'two']


def test_drop_leading_assistant():
    turns = [Turn(ASSISTANT, [text_block('hi')]), Turn(USER, [text_block('yo')])]
    assert [t.role for t in drop_leading_assistant(turns)] == [USER]
    assert drop_leading_assistant([]) == []


@pytest.mark.asyncio
async def test_build_empty_history_and_no_message(media_service):
    builder = MessageBuilder(media_service)
    assert await builder.build([], None, None) == []


@pytest.mark.asyncio
async def test_build_merges_and_drops_leading_assistant(media_service):
    builder = MessageBuilder(media_service)
    history = [
        record('outbound', 'Welcome back!'),
        record('inbound', 'first'),
        record('inbound', 'second'),
        record('outbound', 'Noted.'),
        record('outbound', ''),
    ]

    turns = await builder.build(history, 'third', None)

    assert [t.role for t in turns] == [USER, ASSISTANT, USER]
    assert [b['text'] for b in turns[0].content] == ['first', 'second']
    assert turns[-1].content == [text_block('third')]
    for earlier, later in zip(turns, turns[1:]):
        assert earlier.role != later.role


@pytest.mark.asyncio
async def test_build_embeds_media_for_user_records_only(media_service):
    builder = MessageBuilder(media_service)
    history = [
        record('inbound', 'look at this bottle', ['https://api.twilio.com/media/1']),
        record('outbound', 'Lovely label', ['https://example.com/ignored.jpg']),
    ]

    turns = await builder.build(history, None, ['https://api.twilio.com/media/2'])

    assert turns[0].content == [text_block('look at this bottle'), IMAGE]
    assert turns[1].content == [text_block('Lovely label')]
    assert turns[2].content == [IMAGE]
    assert media_service.process_media_urls.await_count == 2


@pytest.mark.asyncio
async def test_media_failure_keeps_text(media_service):
    media_service.process_media_urls = AsyncMock(side_effect=RuntimeError('download failed'))
    builder = MessageBuilder(media_service)

    turns = await builder.build([record('inbound', 'photo!', ['https://x/1.jpg'])], None, None)

    assert turns == [Turn(USER, [text_block('photo!')])]


@pytest.mark.asyncio
async def test_record_without_text_or_media_contributes_nothing(media_service):
    media_service.process_media_urls = AsyncMock(return_value=[])
    builder = MessageBuilder(media_service)

    turns = await builder.build([record('inbound', None, ['https://x/broken'])], 'hello', None)

    assert turns == [Turn(USER, [text_block('hello')])]


def test_from_client_turns_parts_and_content():
    messages = [
        {'role': 'assistant', 'parts': [{'type': 'text', 'text': 'Irasshai!'}]},
        {'role': 'user', 'parts': [
            {'type': 'text', 'text': ' what is this? '},
            {'type': 'file', 'url': 'https://cdn.test/label.HEIC?x=1', 'mediaType': ''},
            {'type': 'file', 'url': 'https://cdn.test/notes.pdf', 'mediaType': 'application/pdf'},
        ]},
        {'role': 'user', 'content': 'and this one'},
        {'role': 'system', 'content': 'ignored'},
    ]

    turns = from_client_turns(messages)

    assert len(turns) == 1
    assert turns[0].role == USER
    assert turns[0].content == [
        text_block('what is this?'),
        {'type': 'image_url', 'image_url': {'url': 'https://cdn.test/label.HEIC?x=1'}},
        text_block('and this one'),
    ]
