import pytest

from api.services.conversation import ConversationStore
from lib.error_handler import ContextPersistError

PHONE = 'whatsapp:+15550001111'
BOT = 'whatsapp:+15550000000'


@pytest.fixture
def store(fake_supabase):
    return ConversationStore(fake_supabase, history_limit=3)


def seed_message(fake_supabase, direction, body, created_at, sender=PHONE, recipient=BOT):
    return fake_supabase.seed(
        'whatsapp_messages',
        direction=direction,
        from_number=sender if direction == 'inbound' else recipient,
        to_number=recipient if direction == 'inbound' else sender,
        body=body,
        created_at=created_at,
    )


@pytest.mark.asyncio
async def test_load_history_newest_n_oldest_first(store, fake_supabase):
    for minute, (direction, body) in enumerate([
        ('inbound', 'one'), ('outbound', 'two'), ('inbound', 'three'),
        ('outbound', 'four'), ('inbound', 'five'),
    ]):
        seed_message(fake_supabase, direction, body, f"2024-01-01T00:0{minute}:00+00:00")
    seed_message(fake_supabase, 'inbound', 'someone else', '2024-01-01T00:09:00+00:00', sender='whatsapp:+1999')

    history = await store.load_history(PHONE)

    assert [m['body'] for m in history] == ['three', 'four', 'five']


@pytest.mark.asyncio
async def test_load_history_survives_backend_failure(store, fake_supabase):
    seed_message(fake_supabase, 'inbound', 'hello', '2024-01-01T00:00:00+00:00')
    fake_supabase.failing_tables.add('whatsapp_messages')

    assert await store.load_history(PHONE) == []


@pytest.mark.asyncio
async def test_context_round_trip_uses_normalized_phone(store, fake_supabase):
    await store.save_context(PHONE, {'last_sake_name': 'Dassai 23'})

    rows = fake_supabase.rows('conversation_state')
    assert rows[0]['phone_number'] == '+15550001111'
    assert await store.load_context('+1 555 000 1111') == {'last_sake_name': 'Dassai 23'}

    await store.save_context(PHONE, {'last_sake_name': 'Juyondai', 'sake_id': 's1'})
    assert len(fake_supabase.rows('conversation_state')) == 1
    assert await store.load_context(PHONE) == {'last_sake_name': 'Juyondai', 'sake_id': 's1'}


@pytest.mark.asyncio
async def test_load_context_defaults_to_empty(store, fake_supabase):
    assert await store.load_context(PHONE) == {}
    fake_supabase.failing_tables.add('conversation_state')
    assert await store.load_context(PHONE) == {}


@pytest.mark.asyncio
async def test_save_context_failure_raises(store, fake_supabase):
    fake_supabase.failing_tables.add('conversation_state')
    with pytest.raises(ContextPersistError):
        await store.save_context(PHONE, {'sake_id': 's1'})


@pytest.mark.asyncio
async def test_record_and_mark_processed(store, fake_supabase):
    await store.record_message('inbound', PHONE, BOT, 'hi', ['https://x/1.jpg'], provider_sid='SM1')
    await store.record_message('outbound', BOT, PHONE, 'hello!', provider_sid='SM2', processed=True)

    await store.mark_processed(PHONE)

    rows = fake_supabase.rows('whatsapp_messages')
    inbound = next(r for r in rows if r['direction'] == 'inbound')
    assert inbound['twilio_sid'] == 'SM1'
    assert inbound['media_urls'] == ['https://x/1.jpg']
    assert inbound['processed'] is True
    assert inbound['processed_at']
