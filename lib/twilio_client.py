from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
import requests
from typing import Optional
import logging
import time
from lib.config import Settings, get_settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)


class TwilioClient:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.settings = settings or get_settings()
        try:
            self.client = client or Client(
                self.settings.twilio_account_sid,
                self.settings.twilio_auth_token
            )
            self.phone_number = self.settings.twilio_whatsapp_number
        except Exception as e:
            logger.error(f"Failed to initialize Twilio client: {str(e)}")
            raise AppError("Failed to initialize messaging service")

    def send_message(self, to_number: str, message: str, from_number: Optional[str] = None) -> str:
        """Send a WhatsApp message and return the message SID."""
        sender = from_number or self.phone_number
        try:
            sent = self.client.messages.create(
                body=message,
                from_=sender,
                to=to_number
            )
            logger.info(f"Message sent successfully to {to_number}: {sent.sid}")
            return sent.sid
        except TwilioRestException as e:
            logger.error(f"Twilio error sending message: {str(e)}")
            if e.code == 21608:  # Unverified number
                raise AppError("This phone number is not verified with our test account.")
            elif e.code == 21211:  # Invalid phone number
                raise AppError("Invalid phone number format.")
            elif e.code == 63016:  # Outside the WhatsApp session window
                raise AppError("Cannot message this number outside the 24h WhatsApp window.")
            else:
                raise AppError(f"Failed to send message: {str(e)}")
        except Exception as e:
            logger.error(f"Unexpected error sending message: {str(e)}")
            raise AppError("An unexpected error occurred while sending the message.")

    def download_media(self, media_url: str) -> bytes:
        """Download a media file from Twilio's media URL."""
        try:
            response = requests.get(media_url, auth=self.settings.twilio_auth, timeout=30)
            response.raise_for_status()
            return response.content
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to download media: {str(e)}")
            raise AppError("Failed to download media file")

    def validate_request(self, url: str, params: dict, signature: str) -> bool:
        validator = RequestValidator(self.settings.twilio_auth_token)
        return validator.validate(url, params, signature or '')


class NullMessagingClient:
    """Messaging stand-in for channels that reply over HTTP instead of Twilio."""

    def __init__(self, channel: str = 'webchat'):
        self.channel = channel
        self.sent = []

    def send_message(self, to_number: str, message: str, from_number: Optional[str] = None) -> str:
        sid = f"{self.channel}_{int(time.time() * 1000)}_{len(self.sent)}"
        self.sent.append({'to': to_number, 'from': from_number, 'body': message, 'sid': sid})
        logger.info(f"Captured {self.channel} message to {to_number} ({len(message)} chars)")
        return sid
