import logging
from dataclasses import dataclass
from typing import Optional

from api.messages import MessageBuilder
from api.personality import Personality
from api.services.chat import ChatService
from api.services.conversation import ConversationStore
from api.services.images import ImageService
from api.services.media import MediaService
from lib.config import Settings, get_settings
from lib.database import Database
from lib.error_handler import AppError
from lib.openai_client import OpenAIClient
from lib.twilio_client import TwilioClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    conversation: ConversationStore
    chat: ChatService
    images: ImageService
    twilio: Optional[TwilioClient]


def build_services(settings: Optional[Settings] = None) -> Services:
    """Wire every long-lived client once at start-up."""
    settings = settings or get_settings()
    missing = settings.missing_required()
    if missing:
        logger.warning(f"Missing environment settings: {', '.join(missing)}")

    database = Database(settings)

    twilio = None
    if settings.twilio_account_sid and settings.twilio_auth_token:
        try:
            twilio = TwilioClient(settings)
            logger.info("Twilio client initialized successfully")
        except AppError as e:
            logger.error(f"Twilio unavailable: {e.message}")
    else:
        logger.warning("Twilio credentials missing; WhatsApp replies are disabled")

    conversation = ConversationStore(database.supabase, history_limit=settings.max_message_history)
    chat = ChatService(
        openai_client=OpenAIClient(settings),
        conversation_store=conversation,
        message_builder=MessageBuilder(MediaService(settings)),
        personality=Personality(settings.prompts_dir, settings.app_base_url),
        settings=settings,
    )
    images = ImageService(settings, database.supabase, twilio_client=twilio)

    logger.info("All services initialized successfully")
    return Services(
        settings=settings,
        database=database,
        conversation=conversation,
        chat=chat,
        images=images,
        twilio=twilio,
    )
