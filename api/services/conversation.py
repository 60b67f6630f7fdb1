import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from lib.error_handler import ContextPersistError, InvalidPhoneNumber
from lib.phone import normalize_phone_number

logger = logging.getLogger(__name__)

# Values a conversation context may hold. Keys in use: last_sake_name,
# sake_id, tasting_id, pending_confirmations.
ContextValue = Union[str, int, float, bool, None, Mapping[str, Any]]
ConversationContext = Dict[str, ContextValue]


def _context_key(phone_number: str) -> str:
    try:
        return normalize_phone_number(phone_number)
    except InvalidPhoneNumber:
        # Channels such as the web chat use non-numeric addresses.
        return phone_number


class ConversationStore:
    def __init__(self, supabase_client, history_limit: int = 20):
        self.supabase = supabase_client
        self.history_limit = history_limit
        self.messages_table = 'whatsapp_messages'
        self.state_table = 'conversation_state'

    def _fetch_side(self, column: str, phone_number: str, limit: int) -> List[Dict[str, Any]]:
        start = time.monotonic()
        try:
            result = self.supabase.table(self.messages_table)\
                .select('*')\
                .eq(column, phone_number)\
                .order('created_at', desc=True)\
                .limit(limit)\
                .execute()
            return result.data or []
        except Exception as e:
            logger.error(
                f"Error fetching {column} messages for {phone_number} "
                f"after {int((time.monotonic() - start) * 1000)}ms: {str(e)}"
            )
            return []

    async def load_history(self, phone_number: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent messages sent by or to phone_number, oldest first."""
        limit = limit or self.history_limit
        loop = asyncio.get_running_loop()
        # Two queries instead of an OR filter: '+' and ':' in WhatsApp
        # addresses break PostgREST's or() syntax.
        sent, received = await asyncio.gather(
            loop.run_in_executor(None, self._fetch_side, 'from_number', phone_number, limit),
            loop.run_in_executor(None, self._fetch_side, 'to_number', phone_number, limit),
        )

        unique = {}
        for message in [*sent, *received]:
            unique[message['id']] = message

        newest_first = sorted(unique.values(), key=lambda m: m.get('created_at') or '', reverse=True)
        return list(reversed(newest_first[:limit]))

    async def load_context(self, phone_number: str) -> ConversationContext:
        key = _context_key(phone_number)
        try:
            result = self.supabase.table(self.state_table)\
                .select('context')\
                .eq('phone_number', key)\
                .limit(1)\
                .execute()
        except Exception as e:
            logger.error(f"Error fetching conversation context for {key}: {str(e)}")
            return {}

        if not result.data:
            logger.debug(f"No conversation context found for {key} (new conversation)")
            return {}
        context = result.data[0].get('context') or {}
        return dict(context) if isinstance(context, dict) else {}

    async def save_context(self, phone_number: str, context: ConversationContext) -> None:
        key = _context_key(phone_number)
        try:
            self.supabase.table(self.state_table)\
                .upsert({
                    'phone_number': key,
                    'context': context,
                    'updated_at': datetime.now(timezone.utc).isoformat(),
                }, on_conflict='phone_number')\
                .execute()
        except Exception as e:
            raise ContextPersistError(f"Failed to save conversation context for {key}: {str(e)}") from e

    async def record_message(
        self,
        direction: str,
        from_number: str,
        to_number: str,
        body: Optional[str],
        media_urls: Optional[List[str]] = None,
        provider_sid: Optional[str] = None,
        processed: bool = False,
    ) -> Optional[Dict[str, Any]]:
        data = {
            'direction': direction,
            'from_number': from_number,
            'to_number': to_number,
            'body': body or None,
            'media_urls': media_urls or None,
            'twilio_sid': provider_sid,
            'processed': processed,
        }
        if processed:
            data['processed_at'] = datetime.now(timezone.utc).isoformat()

        result = self.supabase.table(self.messages_table).insert(data).execute()
        return result.data[0] if result.data else None

    async def mark_processed(self, from_number: str) -> None:
        self.supabase.table(self.messages_table)\
            .update({'processed': True, 'processed_at': datetime.now(timezone.utc).isoformat()})\
            .eq('from_number', from_number)\
            .eq('processed', False)\
            .execute()
