"""
Bot control and status endpoints
Playback and process-control requests go through the command relay; status
endpoints read what the bot last wrote.
"""
from datetime import timedelta
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request
from pydantic import BaseModel, ConfigDict, Field
from structlog import get_logger

from .audit import emit_audit
from .auth import current_session, require_admin, require_session
from .devmode import get_dev_mode
from .errors import NotFoundError, ValidationError
from .extensions import limiter
from .models import BotStatsDocument, MusicStatusDocument, normalize_timestamp
from .relay import RelayOutcome, RelayResult, get_relay
from .security import parse_body
from .store import get_store

logger = get_logger(__name__)

bp = Blueprint('bot', __name__)


def relay_rate_limit() -> str:
    return current_app.config['RELAY_RATE_LIMIT']


class BotCommandSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, str_strip_whitespace=True)

    server_id: str = Field(alias='serverId', min_length=1)
    command: str = Field(min_length=1)
    args: Any = ''


class ProcessControlSchema(BaseModel):
    action: str


def playback_response(result: RelayResult, command: str):
    document = result.document
    if result.outcome is RelayOutcome.COMPLETED:
        completed_at = normalize_timestamp(document.get('completedAt'))
        return jsonify({
            'success': True,
            'message': document.get('response') or f"{command} executed successfully",
            'executedAt': completed_at.isoformat() if completed_at else None,
            'commandId': result.request_id,
        }), 200
    if result.outcome is RelayOutcome.FAILED:
        return jsonify({
            'success': False,
            'message': document.get('error') or 'Command failed to execute',
            'commandId': result.request_id,
        }), 400
    return jsonify({
        'success': True,
        'message': 'Command sent to bot (processing may take a moment)',
        'commandId': result.request_id,
    }), result.policy.timeout_status


def process_response(result: RelayResult):
    document = result.document
    if result.outcome is RelayOutcome.COMPLETED:
        output = document.get('result') or {}
        return jsonify({
            'success': True,
            'message': output.get('message'),
            'output': output.get('output'),
            'stderr': output.get('stderr'),
        }), 200
    if result.outcome is RelayOutcome.FAILED:
        return jsonify({
            'success': False,
            'error': document.get('error'),
            'stderr': document.get('stderr'),
        }), 500
    return jsonify({
        'success': False,
        'error': 'Command execution timed out. The bot server might be unresponsive.',
        'commandId': result.request_id,
    }), result.policy.timeout_status


@bp.route('/bot-command', methods=['POST'])
@limiter.limit(relay_rate_limit)
@require_session
def bot_command():
    body = parse_body(BotCommandSchema)
    user = current_session()
    result = get_relay().submit_playback_command(body.server_id, body.command, body.args, user)
    return playback_response(result, body.command)


@bp.route('/command/<command_id>')
@require_session
def command_status(command_id):
    command = get_relay().command_status(command_id, current_session())
    return jsonify({
        'status': command.status or 'unknown',
        'response': command.response,
        'error': command.error,
        'completedAt': command.completed_at.isoformat() if command.completed_at else None,
    })


@bp.route('/admin/process-control', methods=['POST'])
@limiter.limit(relay_rate_limit)
@require_admin
def process_control():
    body = parse_body(ProcessControlSchema)
    admin = current_session()
    try:
        result = get_relay().submit_process_action(body.action, admin)
    except ValidationError:
        emit_audit('bot.process_control', admin.id, resource_type='bot_process', resource_id=body.action,
                   success=False)
        raise
    emit_audit('bot.process_control', admin.id, resource_type='bot_process', resource_id=body.action,
               new_values={'requestId': result.request_id, 'outcome': result.outcome.value},
               success=result.outcome is RelayOutcome.COMPLETED)
    return process_response(result)


@bp.route('/bot-status')
def bot_status():
    store = get_store()
    snapshot = store.get('botStats', 'global')
    if snapshot is None:
        raise NotFoundError("Bot stats not found")
    stats = BotStatsDocument.from_snapshot(snapshot)
    dev_mode = get_dev_mode(store).enabled

    heartbeat = stats.last_updated.isoformat() if stats.last_updated else None
    status_update = stats.last_status_update.isoformat() if stats.last_status_update else heartbeat
    return jsonify({
        'status': stats.status,
        'maintenanceMode': stats.maintenance_mode or dev_mode,
        'devMode': stats.dev_mode or dev_mode,
        'lastStatusUpdate': status_update,
        'uptime': stats.uptime,
        'totalGuilds': stats.total_guilds,
        'totalUsers': stats.total_users,
        'lastHeartbeat': heartbeat,
    })


def idle_player(volume: int = 50, last_updated: Optional[str] = None) -> Dict[str, Any]:
    return {
        'currentSong': None,
        'queue': [],
        'isPlaying': False,
        'volume': volume,
        'position': 0,
        'lastUpdated': last_updated,
    }


@bp.route('/music-status')
def music_status():
    server_id = request.args.get('serverId')
    if not server_id:
        raise ValidationError("Server ID required")

    store = get_store()
    snapshot = store.get('musicStatus', server_id)
    if snapshot is None:
        return jsonify(idle_player())

    status = MusicStatusDocument.from_snapshot(snapshot)
    last_updated = status.last_updated.isoformat() if status.last_updated else None
    freshness = timedelta(seconds=current_app.config['MUSIC_STATUS_FRESHNESS_SECONDS'])
    if status.last_updated is None or store.clock() - status.last_updated >= freshness:
        logger.debug("Music status is stale", server_id=server_id, last_updated=last_updated)
        return jsonify(idle_player(status.volume or 50, last_updated))

    return jsonify({
        'currentSong': status.current_song,
        'queue': status.queue,
        'isPlaying': status.is_playing,
        'volume': status.volume or 50,
        'position': status.position,
        'lastUpdated': last_updated,
    })
