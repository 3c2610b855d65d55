import base64
import functools
import logging
import time
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from api.bootstrap import Services, build_services
from api.services.auth import bearer_token
from api.services.voice import MAX_VOICE_SAMPLES
from lib.config import Settings, get_settings
from lib.error_handler import AppError, ErrorHandler, NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

bp = Blueprint('echoes', __name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100
DEFAULT_QUERY_LIMIT = 5


def _services() -> Services:
    return current_app.extensions['echoes']


def _errors() -> ErrorHandler:
    return current_app.extensions['echoes_errors']


def _error_response(error: Exception, user_message: str):
    if isinstance(error, HTTPException):
        # e.g. 413 from MAX_CONTENT_LENGTH, rendered by the app error handlers
        raise error
    if isinstance(error, AppError):
        body, status = _errors().handle_app_error(error)
    else:
        body, status = _errors().handle_unexpected_error(error, user_message)
    return jsonify(body), status


def _parse_int(value: Optional[str], default: Optional[int]) -> Optional[int]:
    try:
        return int(value) if value not in (None, '') else default
    except (TypeError, ValueError):
        return default


def _json_body() -> Dict[str, Any]:
    """The request's JSON object; an absent or unparseable body is treated as empty"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def require_user(view):
    """Reject requests without a valid Supabase session; sets g.user"""
    @functools.wraps(view)
    async def wrapper(*args, **kwargs):
        token = bearer_token(request.headers.get('Authorization'))
        user = await _services().auth.get_user(token) if token else None
        if user is None:
            return jsonify({'error': 'Unauthorized'}), 401
        g.user = user
        return await view(*args, **kwargs)
    return wrapper


@bp.route('/', methods=['GET'])
def root():
    """Basic health check"""
    return jsonify({'status': 'healthy'})


@bp.route('/status', methods=['GET'])
async def status():
    """Check dependency status"""
    services = _services()
    result = {
        'storage': await services.storage.ping(),
        'vector_service': services.vector is not None,
        'pinecone_stats': None,
    }
    if services.vector:
        try:
            result['pinecone_stats'] = await services.vector.describe()
        except Exception as e:
            logger.error(f"Status check failed: {str(e)}")
    return jsonify(result), 200 if result['storage'] else 503


@bp.route('/api/reflections/upload', methods=['POST'])
@require_user
async def upload_reflection():
    try:
        audio_file = request.files.get('audio')
        if audio_file is None:
            raise ValidationError("No audio file provided")

        audio_data = audio_file.read()
        duration = _parse_int(request.form.get('duration'), None)
        logger.info(f"Upload from user {g.user.id}: {len(audio_data)} bytes, duration {duration}")

        result = await _services().ingestion.ingest(
            g.user.id,
            audio_data,
            audio_file.mimetype or 'audio/webm',
            duration,
        )
        return jsonify({
            'reflectionId': result['reflection_id'],
            'transcript': result['transcript'],
            'audioUrl': result['audio_url'],
            'message': 'Reflection uploaded successfully. Analysis in progress.',
        })
    except Exception as e:
        return _error_response(e, 'Failed to upload reflection')


@bp.route('/api/reflections/analyze', methods=['POST'])
@require_user
async def analyze_reflection():
    try:
        data = _json_body()
        reflection_id = _optional_str(data, 'reflectionId')
        if not reflection_id:
            raise ValidationError("Reflection ID required")

        analysis, cached = await _services().analysis.analyze_with_status(reflection_id, g.user.id)
        return jsonify({
            'message': 'Reflection already analyzed' if cached else 'Analysis complete',
            'analysis': analysis.summary(),
        })
    except Exception as e:
        return _error_response(e, 'Failed to analyze reflection')


@bp.route('/api/reflections/list', methods=['GET'])
@require_user
async def list_reflections():
    try:
        limit = _parse_int(request.args.get('limit'), DEFAULT_LIST_LIMIT)
        offset = _parse_int(request.args.get('offset'), 0)
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        limit = min(limit, MAX_LIST_LIMIT)

        reflections, total = await _services().storage.list_reflections(
            g.user.id,
            limit=limit,
            offset=offset,
            theme=request.args.get('theme') or None,
            emotion=request.args.get('emotion') or None,
        )
        return jsonify({
            'reflections': [reflection.to_public_dict() for reflection in reflections],
            'total': total,
            'limit': limit,
            'offset': offset,
        })
    except Exception as e:
        return _error_response(e, 'Failed to fetch reflections')


@bp.route('/api/reflections/query', methods=['POST'])
@require_user
async def query_reflections():
    try:
        data = _json_body()
        query = (_optional_str(data, 'query') or '').strip()
        if not query:
            raise ValidationError("Query required")
        limit = _parse_int(data.get('limit'), DEFAULT_QUERY_LIMIT)
        if limit < 1:
            raise ValidationError("limit must be positive")

        results = await _services().retrieval.search_by_query(g.user.id, query, min(limit, MAX_LIST_LIMIT))
        return jsonify({'results': [result.to_public_dict() for result in results]})
    except Exception as e:
        return _error_response(e, 'Failed to search reflections')


@bp.route('/api/voice/clone', methods=['POST'])
@require_user
async def clone_voice():
    try:
        samples = []
        for index in range(MAX_VOICE_SAMPLES):
            sample = request.files.get(f"sample_{index}")
            if sample is not None:
                samples.append(sample.read())

        voice_id = await _services().voice.clone_voice(g.user.id, samples, display_name=g.user.display_name)
        return jsonify({
            'voiceId': voice_id,
            'message': 'Voice profile created successfully',
        })
    except Exception as e:
        return _error_response(e, 'Failed to create voice clone')


@bp.route('/api/voice/synthesize', methods=['POST'])
@require_user
async def synthesize_voice():
    try:
        services = _services()
        data = _json_body()
        reflection_id = _optional_str(data, 'reflectionId')
        text = _optional_str(data, 'text')
        if not reflection_id and not text:
            raise ValidationError("Either reflectionId or text required")

        if reflection_id:
            reflection = await services.storage.get_reflection(reflection_id, g.user.id)
            if reflection is None:
                raise NotFoundError(f"Reflection {reflection_id} not found", user_message="Reflection not found")
            text = reflection.transcript

        profile = await services.voice.get_active_profile(g.user.id)
        voice_id = profile.voice_id if profile else None
        audio = await services.voice.synthesize(text, voice_id)

        path = f"{g.user.id}/synthesized/{int(time.time() * 1000)}.mp3"
        try:
            audio_url = await services.storage.upload_object(
                services.storage.reflections_bucket, path, audio, 'audio/mpeg'
            )
        except PersistenceError as e:
            logger.error(f"Upload error, returning audio directly: {e.message}")
            return Response(audio, mimetype='audio/mpeg', headers={'Content-Length': str(len(audio))})

        return jsonify({'audioUrl': audio_url, 'voiceId': voice_id or 'default'})
    except Exception as e:
        return _error_response(e, 'Failed to synthesize speech')


@bp.route('/api/voice/profile', methods=['GET'])
@require_user
async def get_voice_profile():
    try:
        profile = await _services().voice.get_active_profile(g.user.id)
        if profile is None:
            raise NotFoundError(f"No active voice profile for {g.user.id}", user_message="No active voice profile")
        return jsonify({'profile': profile.model_dump(mode='json')})
    except Exception as e:
        return _error_response(e, 'Failed to fetch voice profile')


@bp.route('/api/voice/profile', methods=['DELETE'])
@require_user
async def delete_voice_profile():
    try:
        profile = await _services().voice.deactivate_profile(g.user.id)
        if profile is None:
            raise NotFoundError(f"No active voice profile for {g.user.id}", user_message="No active voice profile")
        return jsonify({'voiceId': profile.voice_id, 'message': 'Voice profile deactivated'})
    except Exception as e:
        return _error_response(e, 'Failed to deactivate voice profile')


@bp.route('/api/query/audio', methods=['POST'])
@require_user
async def query_audio():
    try:
        services = _services()
        audio_file = request.files.get('audio')
        if audio_file is None:
            raise ValidationError("No audio file provided")

        query_transcript = await services.audio.transcribe(
            audio_file.read(),
            audio_file.mimetype or 'audio/webm',
            allow_empty=True,
        )
        if not query_transcript.strip():
            raise ValidationError("Failed to transcribe audio or audio was empty")

        answer = await services.retrieval.answer_from_all_reflections(g.user.id, query_transcript)

        profile = await services.voice.get_active_profile(g.user.id)
        audio = await services.voice.synthesize(answer.response_text, profile.voice_id if profile else None)

        path = f"{g.user.id}/responses/{int(time.time() * 1000)}.mp3"
        try:
            response_audio_url = await services.storage.upload_object(
                services.storage.reflections_bucket, path, audio, 'audio/mpeg'
            )
        except PersistenceError as e:
            logger.error(f"Storage upload error, returning inline audio: {e.message}")
            response_audio_url = f"data:audio/mpeg;base64,{base64.b64encode(audio).decode('ascii')}"

        return jsonify({
            'queryTranscript': query_transcript,
            'responseText': answer.response_text,
            'responseAudioUrl': response_audio_url,
            'referencedReflections': [ref.to_public_dict() for ref in answer.referenced_reflections],
        })
    except Exception as e:
        return _error_response(e, 'Failed to process audio query')


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> Flask:
    """Build the Flask app. Configuration and provider clients are validated here, at startup."""
    settings = settings or get_settings()

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = settings.max_upload_mb * 1024 * 1024
    app.extensions['echoes'] = services or build_services(settings)
    app.extensions['echoes_errors'] = ErrorHandler(include_details=settings.environment == 'development')
    app.register_blueprint(bp)

    @app.errorhandler(413)
    def too_large(_error):
        return jsonify({'error': f"Upload exceeds {settings.max_upload_mb} MB"}), 413

    return app
