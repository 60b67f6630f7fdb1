import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from lib.error_handler import InvalidPhoneNumber

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = re.compile(r'^whatsapp:', re.IGNORECASE)
NON_DIGITS = re.compile(r'\D')


@dataclass
class PhoneLinkResolution:
    normalized_phone: str
    phone_hash: str
    taster_id: Optional[str]


def normalize_phone_number(phone_number: str) -> str:
    """Strip the transport prefix and formatting, keeping a leading '+'."""
    trimmed = (phone_number or '').strip()
    if not trimmed:
        raise InvalidPhoneNumber("Phone number is required")

    without_prefix = WHATSAPP_PREFIX.sub('', trimmed).strip()
    digits = NON_DIGITS.sub('', without_prefix)
    if not digits:
        raise InvalidPhoneNumber("Phone number must contain digits")

    return f"+{digits}" if without_prefix.startswith('+') else digits


def _hash_normalized(normalized_phone: str) -> str:
    return hashlib.sha256(normalized_phone.encode('utf-8')).hexdigest()


def hash_phone_number(phone_number: str) -> str:
    return _hash_normalized(normalize_phone_number(phone_number))


def normalize_chat_phone_number(value: str) -> Optional[str]:
    """Normalize a number typed into the web chat identity form."""
    trimmed = (value or '').strip()
    if not trimmed:
        return None
    digits = NON_DIGITS.sub('', trimmed)
    if len(digits) < 7 or len(digits) > 15:
        return None
    return f"+{digits}"


def _resolve_taster_id(supabase, phone_hash: str) -> Optional[str]:
    direct = supabase.table('tasters')\
        .select('id')\
        .eq('phone_hash', phone_hash)\
        .limit(1)\
        .execute()
    if direct.data:
        return direct.data[0]['id']

    linked = supabase.table('taster_phone_links')\
        .select('taster_id')\
        .eq('phone_hash', phone_hash)\
        .order('linked_at', desc=True)\
        .limit(1)\
        .execute()
    if linked.data:
        return linked.data[0]['taster_id']
    return None


def resolve_taster_by_phone(supabase, phone_number: str) -> PhoneLinkResolution:
    normalized = normalize_phone_number(phone_number)
    phone_hash = _hash_normalized(normalized)
    return PhoneLinkResolution(
        normalized_phone=normalized,
        phone_hash=phone_hash,
        taster_id=_resolve_taster_id(supabase, phone_hash),
    )


def ensure_phone_link(supabase, taster_id: str, phone_number: str) -> PhoneLinkResolution:
    """Point a phone hash at a taster.

    The link table is upserted on phone_hash, so linking a hash that belonged
    to another taster moves it. linked_at records when that happened.
    """
    normalized = normalize_phone_number(phone_number)
    phone_hash = _hash_normalized(normalized)

    supabase.table('tasters')\
        .update({'phone_hash': phone_hash})\
        .eq('id', taster_id)\
        .execute()

    supabase.table('taster_phone_links')\
        .upsert({
            'taster_id': taster_id,
            'phone_hash': phone_hash,
            'linked_at': datetime.now(timezone.utc).isoformat(),
        }, on_conflict='phone_hash')\
        .execute()

    logger.info(f"Linked phone hash {phone_hash[:12]}... to taster {taster_id}")
    return PhoneLinkResolution(normalized_phone=normalized, phone_hash=phone_hash, taster_id=taster_id)
