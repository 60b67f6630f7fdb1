import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from api.messages import Turn, from_client_turns
from api.personality import EMPTY_MODEL_REPLY, EMPTY_TURNS_REPLY, WEB_PROFILE, WHATSAPP_PROFILE, Personality
from api.services.conversation import ConversationContext, ConversationStore
from api.tools import ToolContext, ToolRegistry
from lib.config import Settings
from lib.error_handler import ContextPersistError, InvalidPhoneNumber, RequestTimeoutError
from lib.openai_client import OpenAIClient, ToolCallRecord
from lib.phone import normalize_phone_number

logger = logging.getLogger(__name__)

WEB_CHAT_NUMBER = 'web-chat'

# tool name -> (argument, context key)
CONTEXT_FROM_TOOLS = {
    'identify_sake': ('name', 'last_sake_name'),
    'create_tasting': ('sake_id', 'sake_id'),
}


def context_updates(tool_calls: List[ToolCallRecord]) -> ConversationContext:
    """Context keys contributed by this turn's tool calls, later calls winning.

    A call counts even when the tool reported an error: the arguments still
    say which sake the conversation is about.
    """
    updates: ConversationContext = {}
    for call in tool_calls:
        mapping = CONTEXT_FROM_TOOLS.get(call.name)
        if mapping is None:
            continue
        argument, key = mapping
        value = call.arguments.get(argument)
        if value:
            updates[key] = value
    return updates


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class ChatService:
    def __init__(
        self,
        openai_client: OpenAIClient,
        conversation_store: ConversationStore,
        message_builder,
        personality: Personality,
        settings: Settings,
    ):
        self.llm = openai_client
        self.store = conversation_store
        self.builder = message_builder
        self.personality = personality
        self.settings = settings

    def is_admin(self, phone_number: str) -> bool:
        try:
            normalized = normalize_phone_number(phone_number)
        except InvalidPhoneNumber:
            return False
        admins = set()
        for number in self.settings.admin_numbers:
            try:
                admins.add(normalize_phone_number(number))
            except InvalidPhoneNumber:
                logger.warning(f"Ignoring invalid admin phone number {number!r}")
        return normalized in admins

    async def process_message(
        self,
        from_number: str,
        to_number: str,
        body: Optional[str],
        media_urls: Optional[List[str]] = None,
        request_id: Optional[str] = None,
        is_admin: bool = False,
        messaging=None,
        message_sid: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run one inbound message through history, the model and its tools.

        History and context load best-effort. Message building and the model
        call propagate their failures; the context write only logs them.
        """
        request_id = request_id or uuid.uuid4().hex[:8]
        start = time.monotonic()
        logger.info(
            f"[{request_id}] Processing message from {from_number}: "
            f"{len(body or '')} chars, {len(media_urls or [])} media, admin={is_admin}"
        )

        history = await self.store.load_history(from_number)
        context = await self.store.load_context(from_number)
        if message_sid:
            # The webhook stores the inbound row before processing; it is passed separately below.
            history = [record for record in history if record.get('twilio_sid') != message_sid]
        logger.info(
            f"[{request_id}] Loaded {len(history)} history messages and "
            f"{len(context)} context keys in {_elapsed_ms(start)}ms"
        )

        turns = await self.builder.build(history, body, media_urls)
        if not turns:
            logger.info(f"[{request_id}] Nothing to respond to")
            return self._result(EMPTY_TURNS_REPLY, context_updated=False, tool_calls=[])

        system_prompt = self.personality.system_prompt(WHATSAPP_PROFILE, context, is_admin=is_admin)
        registry = ToolRegistry(
            ToolContext(
                supabase=self.store.supabase,
                messaging=messaging,
                from_number=from_number,
                to_number=to_number,
                base_url=self.settings.app_base_url,
                request_id=request_id,
            ),
            is_admin=is_admin,
        )

        model_start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.llm.run_with_tools(
                    system_prompt,
                    [turn.to_openai() for turn in turns],
                    registry.definitions(),
                    registry.execute,
                    max_steps=self.settings.max_tool_steps,
                    request_id=request_id,
                ),
                timeout=self.settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"Model call exceeded {self.settings.request_timeout_seconds}s",
                user_message=EMPTY_MODEL_REPLY,
            ) from e

        logger.info(
            f"[{request_id}] Model finished in {_elapsed_ms(model_start)}ms: "
            f"{len(result.steps)} steps, {len(result.tool_calls)} tool calls, usage={result.usage}"
        )

        updates = context_updates(result.tool_calls)
        context_updated = False
        if updates:
            try:
                await self.store.save_context(from_number, {**context, **updates})
                context_updated = True
            except ContextPersistError as e:
                logger.error(f"[{request_id}] {str(e)}")

        response = result.text or EMPTY_MODEL_REPLY
        logger.info(f"[{request_id}] Completed in {_elapsed_ms(start)}ms")
        return self._result(response, context_updated=context_updated, tool_calls=result.tool_calls)

    def stream_web_reply(
        self,
        messages: List[Dict[str, Any]],
        phone_number: str,
        request_id: Optional[str] = None,
    ) -> Iterator[str]:
        """Stream a tool-less persona reply for the browser chat, then persist the exchange."""
        request_id = request_id or uuid.uuid4().hex[:8]
        start = time.monotonic()
        turns = from_client_turns(messages)
        if not turns:
            yield EMPTY_TURNS_REPLY
            return

        context = asyncio.run(self.store.load_context(phone_number))
        system_prompt = self.personality.system_prompt(WEB_PROFILE, context)

        chunks = []
        for delta in self.llm.stream_reply(system_prompt, [turn.to_openai() for turn in turns]):
            chunks.append(delta)
            yield delta

        reply = ''.join(chunks).strip()
        if not reply:
            reply = EMPTY_MODEL_REPLY
            yield reply

        logger.info(f"[{request_id}] Web chat reply streamed in {_elapsed_ms(start)}ms ({len(reply)} chars)")
        try:
            asyncio.run(self._persist_web_exchange(phone_number, _last_user_text(turns), reply, request_id))
        except Exception as e:
            logger.error(f"[{request_id}] Failed to persist web chat messages: {str(e)}")

    async def _persist_web_exchange(self, phone_number: str, user_text: str, reply: str, request_id: str) -> None:
        await self.store.record_message(
            'inbound', phone_number, WEB_CHAT_NUMBER, user_text,
            provider_sid=f"{request_id}_inbound", processed=True,
        )
        await self.store.record_message(
            'outbound', WEB_CHAT_NUMBER, phone_number, reply,
            provider_sid=f"{request_id}_outbound", processed=True,
        )

    @staticmethod
    def _result(response: str, context_updated: bool, tool_calls: List[ToolCallRecord]) -> Dict[str, Any]:
        return {
            'response': response,
            'context_updated': context_updated,
            'tool_calls': [
                {'name': call.name, 'arguments': call.arguments, 'is_error': call.is_error}
                for call in tool_calls
            ],
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }


def _last_user_text(turns: List[Turn]) -> str:
    for turn in reversed(turns):
        if turn.role == 'user':
            return '\n'.join(block['text'] for block in turn.content if block.get('type') == 'text')
    return ''
