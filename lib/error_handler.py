from typing import Optional, Tuple, Dict, Any
import logging

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_user_message = "An error occurred. Please try again later."

    def __init__(self, message: str, status_code: Optional[int] = None, user_message: Optional[str] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.user_message = user_message or self.default_user_message
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_user_message = "The request was invalid."

    def __init__(self, message: str, user_message: Optional[str] = None):
        # Validation messages are written for the caller
        super().__init__(message, user_message=user_message or message)


class AuthError(AppError):
    status_code = 401
    default_user_message = "Unauthorized"


class NotFoundError(AppError):
    status_code = 404
    default_user_message = "The requested resource was not found."


class TranscriptionError(AppError):
    default_user_message = "Failed to transcribe audio."


class MalformedResponseError(AppError):
    default_user_message = "The language model returned an unexpected response."


class PersistenceError(AppError):
    default_user_message = "Failed to save your data. Please try again."


class ProviderError(AppError):
    default_user_message = "An upstream service failed. Please try again later."


class ErrorHandler:
    def __init__(self, include_details: bool = False):
        self.include_details = include_details

    def handle_app_error(self, error: AppError) -> Tuple[Dict[str, Any], int]:
        """Translate a typed pipeline error into the JSON error body and status"""
        if error.status_code >= 500:
            logger.error(f"{type(error).__name__}: {error.message}")
        else:
            logger.warning(f"{type(error).__name__}: {error.message}")

        body = {'error': error.user_message}
        if self.include_details and error.message != error.user_message:
            body['details'] = error.message
        return body, error.status_code

    def handle_unexpected_error(self, error: Exception, user_message: str) -> Tuple[Dict[str, Any], int]:
        logger.error(f"Unexpected error: {str(error)}", exc_info=error)
        body = {'error': user_message}
        if self.include_details:
            body['details'] = str(error)
        return body, 500
