import hashlib

import pytest

from lib.error_handler import InvalidPhoneNumber
from lib.phone import (
    ensure_phone_link,
    hash_phone_number,
    normalize_chat_phone_number,
    normalize_phone_number,
    resolve_taster_by_phone,
)


@pytest.mark.parametrize('raw, expected', [
    ('whatsapp:+1 (555) 123-4567', '+15551234567'),
    ('WhatsApp:+15551234567', '+15551234567'),
    ('  +44 20 7946 0958 ', '+442079460958'),
    ('555.123.4567', '5551234567'),
])
def test_normalize_phone_number(raw, expected):
    assert normalize_phone_number(raw) == expected


def test_normalize_is_idempotent():
    once = normalize_phone_number('whatsapp:+1 555 123 4567')
    assert normalize_phone_number(once) == once


@pytest.mark.parametrize('raw', ['', '   ', 'whatsapp:', 'not a number'])
def test_normalize_rejects_numbers_without_digits(raw):
    with pytest.raises(InvalidPhoneNumber) as exc:
        normalize_phone_number(raw)
    assert exc.value.status_code == 400


def test_hash_is_sha256_of_normalized_number():
    expected = hashlib.sha256(b'+15551234567').hexdigest()
    assert hash_phone_number('whatsapp:+1 555-123-4567') == expected
    assert hash_phone_number('+15551234567') == expected


def test_chat_phone_number_bounds():
    assert normalize_chat_phone_number('(555) 123-4567') == '+5551234567'
    assert normalize_chat_phone_number('123456') is None
    assert normalize_chat_phone_number('1' * 16) is None
    assert normalize_chat_phone_number('   ') is None


def test_resolve_prefers_direct_taster_hash(fake_supabase):
    phone_hash = hash_phone_number('+15551234567')
    direct = fake_supabase.seed('tasters', name='Aiko', phone_hash=phone_hash)
    other = fake_supabase.seed('tasters', name='Ben')
    fake_supabase.seed('taster_phone_links', taster_id=other['id'], phone_hash=phone_hash,
                       linked_at='2024-05-01T00:00:00+00:00')

    resolution = resolve_taster_by_phone(fake_supabase, 'whatsapp:+15551234567')

    assert resolution.taster_id == direct['id']
    assert resolution.normalized_phone == '+15551234567'
    assert resolution.phone_hash == phone_hash


def test_resolve_falls_back_to_most_recent_link(fake_supabase):
    phone_hash = hash_phone_number('+15551234567')
    fake_supabase.seed('taster_phone_links', taster_id='old', phone_hash=phone_hash,
                       linked_at='2024-01-01T00:00:00+00:00')
    fake_supabase.seed('taster_phone_links', taster_id='new', phone_hash=phone_hash,
                       linked_at='2024-06-01T00:00:00+00:00')

    assert resolve_taster_by_phone(fake_supabase, '+15551234567').taster_id == 'new'


def test_resolve_unknown_phone(fake_supabase):
    assert resolve_taster_by_phone(fake_supabase, '+15550000000').taster_id is None


def test_ensure_phone_link_moves_hash_to_latest_taster(fake_supabase):
    first = fake_supabase.seed('tasters', name='Aiko')
    second = fake_supabase.seed('tasters', name='Aiko S.')

    ensure_phone_link(fake_supabase, first['id'], '+15551234567')
    ensure_phone_link(fake_supabase, second['id'], 'whatsapp:+15551234567')

    links = fake_supabase.rows('taster_phone_links')
    assert len(links) == 1
    assert links[0]['taster_id'] == second['id']
    assert links[0]['phone_hash'] == hash_phone_number('+15551234567')
    tasters = {row['id']: row for row in fake_supabase.rows('tasters')}
    assert tasters[second['id']]['phone_hash'] == links[0]['phone_hash']
