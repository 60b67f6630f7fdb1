import asyncio
import itertools
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from pydantic import BaseModel, Field, ValidationError
from twilio.twiml.messaging_response import MessagingResponse
from werkzeug.exceptions import HTTPException

from api.auth import (
    ACCESS_COOKIE_NAME,
    IDENTITY_COOKIE_NAME,
    SESSION_MAX_AGE_SECONDS,
    create_session_token,
    current_role,
    require_api_key,
    resolve_role_from_password,
)
from api.services import Services
from api.services.conversation import ConversationStore
from api.tools import IdentifySakeArgs, exact_ilike, find_or_create_sake, resolve_taster
from lib.error_handler import AppError, ErrorHandler
from lib.phone import normalize_chat_phone_number
from lib.twilio_client import NullMessagingClient

logger = logging.getLogger(__name__)

bp = Blueprint('api', __name__, url_prefix='/api')

TEST_PHONE = 'whatsapp:+1234567890'
SAKE_SORT_FIELDS = ('average_score', 'total_tastings', 'total_scores', 'last_tasted', 'sake_name')


class ScoreInput(BaseModel):
    tasting_id: str
    taster_id: str
    score: float = Field(ge=0, le=10, strict=True)
    notes: Optional[str] = None


def _services() -> Services:
    return current_app.config['SERVICES']


def _new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _json_body() -> Optional[dict]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else None


def dispatch_background(target, *args) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


def empty_twiml(status: int = 200) -> Response:
    return Response(str(MessagingResponse()), status=status, mimetype='text/xml')


def _set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name, value, max_age=max_age, httponly=True, secure=request.is_secure, samesite='Lax', path='/'
    )


# WhatsApp

async def _record_reply(store: ConversationStore, sender: str, recipient: str, reply: str, sid: str) -> None:
    await store.record_message('outbound', sender, recipient, reply, provider_sid=sid, processed=True)
    await store.mark_processed(recipient)


def process_and_reply(services: Services, request_id: str, from_number: str, to_number: str,
                      body: Optional[str], media_urls: List[str], message_sid: str) -> None:
    """Run the orchestrator for one inbound WhatsApp message and send the answer back."""
    start = time.monotonic()
    if services.twilio is None:
        logger.error(f"[{request_id}] Twilio is not configured; dropping message {message_sid}")
        return

    try:
        result = asyncio.run(services.chat.process_message(
            from_number,
            to_number,
            body,
            media_urls,
            request_id=request_id,
            is_admin=services.chat.is_admin(from_number),
            messaging=services.twilio,
            message_sid=message_sid,
        ))
        reply = result['response']
    except Exception as e:
        reply = ErrorHandler.handle_whatsapp_error(e, request_id)

    sender = services.settings.twilio_whatsapp_number or to_number
    try:
        reply_sid = services.twilio.send_message(from_number, reply, sender)
        asyncio.run(_record_reply(services.conversation, sender, from_number, reply, reply_sid))
        logger.info(f"[{request_id}] Replied to {from_number} in {_elapsed_ms(start)}ms")
    except Exception as e:
        logger.error(f"[{request_id}] Failed to deliver reply: {str(e)}", exc_info=True)


@bp.route('/whatsapp', methods=['POST'])
def whatsapp_webhook():
    """Acknowledge Twilio immediately; the reply goes out from a background thread."""
    request_id = _new_request_id()
    try:
        services = _services()
        form = request.form
        from_number = form.get('From')
        to_number = form.get('To')
        body = form.get('Body')
        message_sid = form.get('MessageSid')

        if not from_number or not to_number or not message_sid:
            logger.error(f"[{request_id}] Missing required fields: From={from_number} To={to_number} "
                         f"MessageSid={message_sid}")
            return empty_twiml(400)

        if services.settings.twilio_validate_signature:
            signature = request.headers.get('X-Twilio-Signature', '')
            if services.twilio is None or not services.twilio.validate_request(
                    request.url, form.to_dict(), signature):
                logger.warning(f"[{request_id}] Rejected webhook with invalid signature")
                return empty_twiml(403)

        try:
            num_media = int(form.get('NumMedia') or 0)
        except ValueError:
            num_media = 0
        media_urls = [form[f'MediaUrl{i}'] for i in range(num_media) if form.get(f'MediaUrl{i}')]
        logger.info(f"[{request_id}] Webhook from {from_number}: sid={message_sid}, media={len(media_urls)}")

        try:
            asyncio.run(services.conversation.record_message(
                'inbound', from_number, to_number, body, media_urls, provider_sid=message_sid
            ))
        except Exception as e:
            logger.error(f"[{request_id}] Error storing inbound message: {str(e)}")

        dispatch_background(
            process_and_reply, services, request_id, from_number, to_number, body, media_urls, message_sid
        )
    except Exception as e:
        logger.error(f"[{request_id}] Webhook error: {str(e)}", exc_info=True)

    return empty_twiml()


@bp.route('/whatsapp/test', methods=['GET'])
def whatsapp_status():
    services = _services()
    missing = services.settings.missing_required()
    return jsonify({
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'environment': {
            'allPresent': not missing,
            'missing': missing,
            'supabase': services.database.ping(),
        },
    })


@bp.route('/whatsapp/test', methods=['POST'])
@require_api_key
def whatsapp_test():
    request_id = f"test_{_new_request_id()}"
    services = _services()
    body = _json_body() or {}
    message = body.get('message')
    if not message:
        return jsonify({'error': 'Missing required field: message'}), 400

    missing = services.settings.missing_required()
    if missing:
        return jsonify({'error': 'Missing required environment variables', 'missing': missing}), 500

    phone = body.get('phone') or TEST_PHONE
    messaging = NullMessagingClient(channel='test')
    start = time.monotonic()
    try:
        result = asyncio.run(services.chat.process_message(
            phone,
            services.settings.twilio_whatsapp_number,
            message,
            request_id=request_id,
            is_admin=bool(body.get('admin')),
            messaging=messaging,
        ))
    except Exception as e:
        logger.error(f"[{request_id}] Test endpoint error: {str(e)}", exc_info=True)
        return jsonify({
            'success': False,
            'requestId': request_id,
            'error': {'message': str(e), 'type': type(e).__name__},
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }), 500

    return jsonify({
        'success': True,
        'requestId': request_id,
        'input': {'phone': phone, 'message': message},
        'output': {
            'response': result['response'],
            'responseLength': len(result['response']),
            'toolCalls': result['tool_calls'],
            'contextUpdated': result['context_updated'],
            'sentMessages': messaging.sent,
        },
        'timings': {'totalMs': _elapsed_ms(start)},
        'timestamp': result['timestamp'],
    })


# Web chat

@bp.route('/chat/access', methods=['GET'])
def chat_access_status():
    role = current_role(_services().settings)
    response = jsonify({'authenticated': bool(role), 'role': role})
    if not role and request.cookies.get(ACCESS_COOKIE_NAME):
        _set_cookie(response, ACCESS_COOKIE_NAME, '', 0)
    return response


@bp.route('/chat/access', methods=['POST'])
def chat_access_grant():
    settings = _services().settings
    if not settings.chat_ui_general_password.strip() or not settings.chat_ui_admin_password.strip():
        return jsonify({
            'error': 'CHAT_UI_GENERAL_PASSWORD and CHAT_UI_ADMIN_PASSWORD must both be configured.'
        }), 500

    body = _json_body()
    if body is None:
        return jsonify({'error': 'Invalid JSON request body'}), 400
    password = body.get('password')
    if not isinstance(password, str) or not password:
        return jsonify({'error': 'Password is required'}), 400

    role = resolve_role_from_password(settings, password)
    if not role:
        return jsonify({'error': 'Invalid password'}), 401

    token = create_session_token(settings, role)
    if not token:
        return jsonify({'error': 'Chat session secret is not configured. Set CHAT_UI_SESSION_SECRET.'}), 500

    response = jsonify({'authenticated': True, 'role': role})
    _set_cookie(response, ACCESS_COOKIE_NAME, token, SESSION_MAX_AGE_SECONDS)
    return response


@bp.route('/chat/access', methods=['DELETE'])
def chat_access_clear():
    response = jsonify({'authenticated': False, 'role': None})
    _set_cookie(response, ACCESS_COOKIE_NAME, '', 0)
    return response


@bp.route('/chat/identity', methods=['GET'])
def chat_identity_status():
    if not current_role(_services().settings):
        return jsonify({'identified': False, 'phoneNumber': None})

    raw = request.cookies.get(IDENTITY_COOKIE_NAME)
    phone = normalize_chat_phone_number(raw) if raw else None
    response = jsonify({'identified': bool(phone), 'phoneNumber': phone})
    if raw and not phone:
        _set_cookie(response, IDENTITY_COOKIE_NAME, '', 0)
    return response


@bp.route('/chat/identity', methods=['POST'])
def chat_identity_set():
    if not current_role(_services().settings):
        return jsonify({'error': 'Chat access password required before identity setup.'}), 401

    body = _json_body()
    if body is None:
        return jsonify({'error': 'Invalid JSON request body'}), 400
    raw = body.get('phoneNumber')
    phone = normalize_chat_phone_number(raw) if isinstance(raw, str) else None
    if not phone:
        return jsonify({'error': 'Enter a valid phone number (7-15 digits).'}), 400

    response = jsonify({'identified': True, 'phoneNumber': phone})
    _set_cookie(response, IDENTITY_COOKIE_NAME, phone, SESSION_MAX_AGE_SECONDS)
    return response


@bp.route('/chat/identity', methods=['DELETE'])
def chat_identity_clear():
    response = jsonify({'identified': False, 'phoneNumber': None})
    _set_cookie(response, IDENTITY_COOKIE_NAME, '', 0)
    return response


@bp.route('/chat', methods=['POST'])
def chat():
    request_id = _new_request_id()
    services = _services()
    if not current_role(services.settings):
        return jsonify({'error': 'Chat access password required.'}), 401

    raw_phone = request.cookies.get(IDENTITY_COOKIE_NAME)
    phone = normalize_chat_phone_number(raw_phone) if raw_phone else None
    if not phone:
        return jsonify({'error': 'Phone number required before chatting.'}), 400

    body = _json_body()
    messages = body.get('messages') if body else None
    if not isinstance(messages, list) or not messages:
        return jsonify({'error': 'messages array is required'}), 400

    try:
        stream = services.chat.stream_web_reply(messages, phone, request_id)
        # Pull the first chunk here so setup failures still get a JSON error.
        first = next(stream, '')
    except Exception as e:
        return jsonify({'error': ErrorHandler.handle_chat_error(e, request_id)}), 500

    return Response(stream_with_context(itertools.chain([first], stream)), mimetype='text/plain')


# REST

@bp.route('/sakes', methods=['POST'])
@require_api_key
def create_sake():
    body = _json_body()
    if body is None or not isinstance(body.get('name'), str) or not body['name'].strip():
        return jsonify({'error': 'Name is required'}), 400
    try:
        args = IdentifySakeArgs.model_validate(body)
    except ValidationError as e:
        return jsonify({'error': 'Invalid sake fields', 'details': e.errors(include_url=False)}), 400

    sake, created = find_or_create_sake(_services().database.supabase, args)
    return jsonify({'sake': sake, 'created': created}), 201 if created else 200


@bp.route('/sakes', methods=['GET'])
def list_sakes():
    search = request.args.get('search')
    sort = request.args.get('sort', 'average_score')
    order = request.args.get('order', 'desc')

    query = _services().database.supabase.table('sake_rankings').select('*')
    if search:
        query = query.ilike('sake_name', f"%{exact_ilike(search)}%")
    sort_field = sort if sort in SAKE_SORT_FIELDS else 'average_score'
    result = query.order(sort_field, desc=order != 'asc').execute()
    return jsonify({'sakes': result.data or []})


@bp.route('/sakes/<sake_id>', methods=['GET'])
def get_sake(sake_id):
    supabase = _services().database.supabase
    found = supabase.table('sakes').select('*').eq('id', sake_id).limit(1).execute()
    if not found.data:
        return jsonify({'error': 'Sake not found'}), 404

    tastings = supabase.table('tastings')\
        .select('*')\
        .eq('sake_id', sake_id)\
        .order('date', desc=True)\
        .execute().data or []

    scores = []
    if tastings:
        scores = supabase.table('scores')\
            .select('*, taster:tasters(id, name, profile_image_url)')\
            .in_('tasting_id', [t['id'] for t in tastings])\
            .execute().data or []

    values = [s['score'] for s in scores if s.get('score') is not None]
    return jsonify({
        'sake': found.data[0],
        'tastings': tastings,
        'scores': scores,
        'stats': {
            'average_score': sum(values) / len(values) if values else None,
            'total_tastings': len(tastings),
            'total_scores': len(scores),
        },
    })


@bp.route('/tasters', methods=['POST'])
@require_api_key
def create_taster():
    body = _json_body()
    if body is None or not isinstance(body.get('name'), str) or not body['name'].strip():
        return jsonify({'error': 'Name is required'}), 400

    phone = body.get('phone_number')
    result = resolve_taster(_services().database.supabase, body['name'].strip(), phone or None)
    return jsonify({'taster': result['taster'], 'created': result['created']}), 201 if result['created'] else 200


@bp.route('/tastings', methods=['POST'])
@require_api_key
def create_tasting():
    body = _json_body()
    sake_id = body.get('sake_id') if body else None
    if not sake_id or not isinstance(sake_id, str):
        return jsonify({'error': 'sake_id is required'}), 400

    supabase = _services().database.supabase
    if not supabase.table('sakes').select('id').eq('id', sake_id).limit(1).execute().data:
        return jsonify({'error': 'Sake not found'}), 404

    result = supabase.table('tastings').insert({
        'sake_id': sake_id,
        'date': body.get('date') or datetime.now(timezone.utc).date().isoformat(),
        'location_name': body.get('location_name'),
        'notes': body.get('notes'),
    }).execute()
    if not result.data:
        return jsonify({'error': 'Failed to create tasting'}), 500
    return jsonify({'tasting': result.data[0]}), 201


@bp.route('/scores', methods=['POST'])
@require_api_key
def upsert_scores():
    body = _json_body()
    raw_scores = body.get('scores') if body else None
    if not isinstance(raw_scores, list) or not raw_scores:
        return jsonify({'error': 'scores array is required and must not be empty'}), 400

    scores = []
    for raw in raw_scores:
        try:
            scores.append(ScoreInput.model_validate(raw))
        except ValidationError as e:
            out_of_range = any(err['type'] in ('greater_than_equal', 'less_than_equal') for err in e.errors())
            message = 'Score must be between 0 and 10' if out_of_range \
                else 'Each score must have tasting_id, taster_id, and score'
            return jsonify({'error': message}), 400

    result = _services().database.supabase.table('scores')\
        .upsert([score.model_dump() for score in scores], on_conflict='tasting_id,taster_id')\
        .execute()
    data = result.data or []
    return jsonify({'scores': data, 'count': len(data)}), 201


# Images

@bp.route('/images/upload', methods=['POST'])
@require_api_key
def upload_image():
    file = request.files.get('file')
    if file is None:
        return jsonify({'error': 'File is required'}), 400

    result = _services().images.upload_image(
        file.read(),
        file.mimetype,
        file.filename,
        tasting_id=request.form.get('tasting_id') or None,
        folder=request.form.get('folder') or 'general',
    )
    return jsonify(result), 201


@bp.route('/images/generate', methods=['POST'])
def generate_image():
    body = _json_body()
    if body is None:
        return jsonify({'error': 'Invalid JSON request body'}), 400

    result = _services().images.generate(
        body.get('type'),
        image_url=body.get('imageUrl'),
        tasting_id=body.get('tastingId'),
        taster_id=body.get('tasterId'),
        rank_key=body.get('rankKey'),
    )
    return jsonify(result)


# Errors

def handle_app_error(error: AppError):
    level = logging.ERROR if error.status_code >= 500 else logging.WARNING
    logger.log(level, f"{request.method} {request.path} failed: {error.message}")
    return jsonify({'error': error.message}), error.status_code


@bp.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, AppError):
        return handle_app_error(error)
    logger.error(f"Error in {request.method} {request.path}: {str(error)}", exc_info=True)
    return jsonify({'error': 'Internal server error'}), 500

