from typing import Optional
import logging

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, user_message: Optional[str] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)


class InvalidPhoneNumber(AppError):
    status_code = 400


class ConfigurationError(AppError):
    status_code = 500


class ToolExecutionError(AppError):
    status_code = 500


class ContextPersistError(AppError):
    status_code = 500


class RequestTimeoutError(AppError):
    status_code = 504


class ErrorHandler:
    @staticmethod
    def handle_whatsapp_error(error: Exception, request_id: str = '') -> str:
        logger.error(f"[{request_id}] WhatsApp processing error: {str(error)}", exc_info=error)
        return "The brewery is flooded for a moment. Send that again in a little while."

    @staticmethod
    def handle_chat_error(error: Exception, request_id: str = '') -> str:
        logger.error(f"[{request_id}] Chat error: {str(error)}", exc_info=error)
        return "Failed to process chat request"
