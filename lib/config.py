from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

PROMPTS_DIR = Path(__file__).resolve().parent.parent / 'api' / 'prompts'


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    # OpenAI settings
    openai_api_key: str = ''
    openai_model: str = 'gpt-4o'
    openai_timeout: float = 30.0
    openai_max_retries: int = 2
    max_tool_steps: int = 10
    max_message_history: int = 20
    request_timeout_seconds: float = 55.0

    # Twilio settings
    twilio_account_sid: str = ''
    twilio_auth_token: str = ''
    twilio_whatsapp_number: str = ''
    twilio_validate_signature: bool = False

    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''
    storage_bucket: str = 'tasting-images'

    # App settings
    app_base_url: str = 'https://sakesatur.day'
    admin_phone_numbers: str = ''
    sake_api_key: str = ''
    prompts_dir: Path = PROMPTS_DIR
    log_level: str = 'INFO'

    # Web chat gating
    chat_ui_general_password: str = ''
    chat_ui_admin_password: str = ''
    chat_ui_session_secret: str = ''

    # Image generation
    google_api_key: str = ''
    image_model_endpoint: str = (
        'https://generativelanguage.googleapis.com/v1beta/models/'
        'gemini-3-pro-image-preview:generateContent'
    )

    @property
    def twilio_auth(self) -> tuple:
        return (self.twilio_account_sid, self.twilio_auth_token)

    @property
    def admin_numbers(self) -> List[str]:
        return [n.strip() for n in self.admin_phone_numbers.split(',') if n.strip()]

    def missing_required(self) -> List[str]:
        """Names of the settings the WhatsApp pipeline cannot run without."""
        required = {
            'OPENAI_API_KEY': self.openai_api_key,
            'TWILIO_ACCOUNT_SID': self.twilio_account_sid,
            'TWILIO_AUTH_TOKEN': self.twilio_auth_token,
            'TWILIO_WHATSAPP_NUMBER': self.twilio_whatsapp_number,
            'SUPABASE_URL': self.supabase_url,
            'SUPABASE_KEY': self.supabase_key,
        }
        return [name for name, value in required.items() if not value]


@lru_cache
def get_settings() -> Settings:
    return Settings()
