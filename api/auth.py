import hmac
import logging
from functools import wraps
from typing import Optional

from flask import current_app, jsonify, request
from itsdangerous import BadSignature, URLSafeTimedSerializer

from lib.config import Settings

logger = logging.getLogger(__name__)

ACCESS_COOKIE_NAME = 'sake-chat-access'
IDENTITY_COOKIE_NAME = 'sake-chat-phone'
SESSION_MAX_AGE_SECONDS = 60 * 60 * 24 * 30
ROLES = ('general', 'admin')
MIN_SECRET_LENGTH = 16


def _matches(value: str, secret: str) -> bool:
    return hmac.compare_digest(value.encode('utf-8'), secret.encode('utf-8'))


def resolve_role_from_password(settings: Settings, password: str) -> Optional[str]:
    admin = settings.chat_ui_admin_password.strip()
    general = settings.chat_ui_general_password.strip()
    if admin and _matches(password, admin):
        return 'admin'
    if general and _matches(password, general):
        return 'general'
    return None


def _serializer(settings: Settings) -> Optional[URLSafeTimedSerializer]:
    secret = settings.chat_ui_session_secret
    if not secret or len(secret) < MIN_SECRET_LENGTH:
        return None
    return URLSafeTimedSerializer(secret, salt='sake-chat-access')


def create_session_token(settings: Settings, role: str) -> Optional[str]:
    serializer = _serializer(settings)
    if serializer is None:
        return None
    return serializer.dumps({'role': role})


def read_role_from_token(settings: Settings, token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    serializer = _serializer(settings)
    if serializer is None:
        return None
    try:
        payload = serializer.loads(token, max_age=SESSION_MAX_AGE_SECONDS)
    except BadSignature:
        # SignatureExpired is a BadSignature too
        return None
    role = payload.get('role') if isinstance(payload, dict) else None
    return role if role in ROLES else None


def current_role(settings: Settings) -> Optional[str]:
    return read_role_from_token(settings, request.cookies.get(ACCESS_COOKIE_NAME))


def require_api_key(view):
    """Accept `Authorization: Bearer <key>` or the bare key."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config['SERVICES'].settings.sake_api_key
        if not expected:
            return jsonify({'error': 'API key not configured on server'}), 500

        header = request.headers.get('Authorization')
        if not header:
            return jsonify({'error': 'Missing Authorization header'}), 401

        provided = header[7:] if header.startswith('Bearer ') else header
        if not _matches(provided, expected):
            logger.warning(f"Rejected API request to {request.path}: invalid key")
            return jsonify({'error': 'Invalid API key'}), 401
        return view(*args, **kwargs)
    return wrapper
