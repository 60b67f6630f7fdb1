import logging
from typing import Optional

from supabase import create_client, Client

from lib.config import Settings, get_settings
from lib.error_handler import ConfigurationError

logger = logging.getLogger(__name__)


class Database:
    """Owns the Supabase service client shared by every request."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.settings = settings or get_settings()
        if client is not None:
            self.supabase = client
            return

        if not self.settings.supabase_url or not self.settings.supabase_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY must be configured")

        logger.info("Initializing Supabase client...")
        self.supabase: Client = create_client(
            self.settings.supabase_url,
            self.settings.supabase_key
        )
        logger.info("Supabase client initialized successfully")

    def ping(self) -> str:
        """Report whether the message table answers a trivial query."""
        try:
            self.supabase.table('whatsapp_messages').select('id').limit(1).execute()
            return 'connected'
        except Exception as e:
            logger.error(f"Supabase health check failed: {str(e)}")
            return f"error: {str(e)}"
