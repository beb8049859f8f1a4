"""
Per-server bot settings
Anyone signed in can read a server's settings; only its owner or an admin
can change them.
"""
from typing import Any, Dict, List, Optional

from flask import Blueprint, jsonify, request
from pydantic import BaseModel, ConfigDict, Field, StrictBool
from pydantic.alias_generators import to_camel
from structlog import get_logger

from .audit import emit_audit
from .auth import current_session, require_session
from .errors import ForbiddenError, ValidationError
from .models import SessionUser
from .security import json_body, parse_body
from .store import DocumentStore, get_store

logger = get_logger(__name__)

bp = Blueprint('server_settings', __name__)

COLLECTION = 'serverSettings'

DEFAULT_SETTINGS: Dict[str, Any] = {
    'defaultVolume': 50,
    'maxQueueSize': 100,
    'autoLeave': True,
    'autoLeaveTimeout': 5,
    'allowedChannels': [],
    'blockedChannels': [],
    'welcomeMessages': True,
    'nowPlayingMessages': True,
    'deleteCommands': False,
}


class ServerSettingsSchema(BaseModel):
    """A partial settings update; fields left out keep their stored value"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='forbid')

    default_volume: Optional[int] = Field(None, ge=0, le=100)
    max_queue_size: Optional[int] = Field(None, ge=10, le=1000)
    auto_leave: Optional[StrictBool] = None
    # Minutes
    auto_leave_timeout: Optional[int] = Field(None, ge=1, le=30)
    allowed_channels: Optional[List[str]] = None
    blocked_channels: Optional[List[str]] = None
    welcome_messages: Optional[StrictBool] = None
    now_playing_messages: Optional[StrictBool] = None
    delete_commands: Optional[StrictBool] = None


class SettingsUpdateSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    server_id: Optional[str] = Field(None, alias='serverId')
    settings: ServerSettingsSchema


def read_settings(store: DocumentStore, server_id: str) -> Dict[str, Any]:
    """Stored settings of a server laid over the defaults"""
    settings = dict(DEFAULT_SETTINGS)
    snapshot = store.get(COLLECTION, server_id)
    if snapshot is not None:
        settings.update(snapshot.data)
    return settings


def can_manage(store: DocumentStore, server_id: str, user: SessionUser) -> bool:
    if user.is_admin:
        return True
    guild = store.get('guilds', server_id)
    return guild is not None and guild.get('ownerId') == user.id


def update_settings(store: DocumentStore, server_id: str, changes: Dict[str, Any],
                    user: SessionUser) -> Dict[str, Any]:
    if not can_manage(store, server_id, user):
        logger.info("Settings change refused", server_id=server_id, uid=user.id)
        raise ForbiddenError("Only server owners can modify settings")
    if changes:
        store.set(COLLECTION, server_id, changes, merge=True)
    logger.info("Server settings updated", server_id=server_id, uid=user.id, fields=sorted(changes))
    return read_settings(store, server_id)


@bp.route('/server-settings', methods=['GET'])
@require_session
def get_server_settings():
    server_id = request.args.get('serverId')
    if not server_id:
        raise ValidationError("Server ID required")
    return jsonify({'settings': read_settings(get_store(), server_id)})


@bp.route('/server-settings', methods=['POST'])
@require_session
def post_server_settings():
    if json_body().get('settings') is None:
        raise ValidationError("Settings required")
    body = parse_body(SettingsUpdateSchema)
    server_id = request.args.get('serverId') or body.server_id
    if not server_id:
        raise ValidationError("Server ID required")

    user = current_session()
    changes = body.settings.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    settings = update_settings(get_store(), server_id, changes, user)
    emit_audit('server_settings.update', user.id, resource_type='server_settings', resource_id=server_id,
               new_values=changes)
    return jsonify({'success': True, 'settings': settings})
