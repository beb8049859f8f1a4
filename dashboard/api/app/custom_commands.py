"""
Custom playlist commands
Users bind a command name to a fixed playlist the bot plays when invoked.
Standard users get a small allowance; premium users are uncapped.
"""
import re
from typing import Any, Dict, List, Optional

from flask import Blueprint, current_app, jsonify
from pydantic import BaseModel, ConfigDict, Field
from structlog import get_logger

from .audit import emit_audit
from .auth import current_session, require_session
from .errors import ForbiddenError, LimitExceededError, NotFoundError, ValidationError
from .models import CustomCommandDocument
from .premium import PremiumService
from .security import parse_body, sanitize_input
from .store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, get_store

logger = get_logger(__name__)

bp = Blueprint('custom_commands', __name__)

COLLECTION = 'customCommands'

COMMAND_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_]+$')

# Built-in bot commands a custom command may not shadow
RESERVED_COMMANDS = frozenset({
    'play', 'pause', 'resume', 'stop', 'skip', 'queue', 'volume', 'nowplaying',
    'shuffle', 'devmode', 'help', 'stats', 'serverinfo', 'clear',
})


def clean_playlist(playlist: List[str]) -> List[str]:
    return [track.strip() for track in playlist if track and track.strip()]


class CustomCommandService:
    """
    Owner-scoped CRUD over custom commands with standard-tier limits

    All validation runs before the first write, so a rejected request
    leaves the store untouched.
    """

    def __init__(self, store: DocumentStore, premium: PremiumService,
                 max_commands: int = 1, max_tracks: int = 8):
        self.store = store
        self.premium = premium
        self.max_commands = max_commands
        self.max_tracks = max_tracks

    def list_for_user(self, user_id: str) -> List[CustomCommandDocument]:
        snapshots = self.store.query(COLLECTION, [('userId', '==', user_id), ('isActive', '==', True)],
                                     order_by='createdAt')
        return [CustomCommandDocument.from_snapshot(s) for s in snapshots]

    def get(self, command_id: str, user_id: str) -> CustomCommandDocument:
        return CustomCommandDocument.from_snapshot(self._owned(command_id, user_id))

    def create(self, user_id: str, command_name: str, playlist: List[str],
               description: str = '') -> CustomCommandDocument:
        name = self._validate_name(command_name)
        tracks = self._validate_playlist(playlist)

        if not self.premium.is_premium(user_id):
            active = self.store.count(COLLECTION, [('userId', '==', user_id), ('isActive', '==', True)])
            if active >= self.max_commands:
                raise LimitExceededError(
                    f"Standard users can only create {self.max_commands} custom command. "
                    "Upgrade to premium for unlimited commands."
                )
            self._check_track_limit(tracks)
        self._check_unique(user_id, name)

        command_id = self.store.add(COLLECTION, {
            'userId': user_id,
            'commandName': name.lower(),
            'displayName': name,
            'playlist': tracks,
            'description': description or '',
            'createdAt': SERVER_TIMESTAMP,
            'isActive': True,
            'usageCount': 0,
            'lastUsed': None,
        })
        logger.info("Custom command created", uid=user_id, command_id=command_id, command=name.lower())
        return CustomCommandDocument.from_snapshot(self.store.get(COLLECTION, command_id))

    def update(self, command_id: str, user_id: str, command_name: str, playlist: List[str],
               description: str = '') -> CustomCommandDocument:
        self._owned(command_id, user_id)
        name = self._validate_name(command_name)
        tracks = self._validate_playlist(playlist)
        self._check_unique(user_id, name, exclude_id=command_id)
        if not self.premium.is_premium(user_id):
            self._check_track_limit(tracks)

        self.store.update(COLLECTION, command_id, {
            'commandName': name.lower(),
            'displayName': name,
            'playlist': tracks,
            'description': description or '',
            'lastUpdated': SERVER_TIMESTAMP,
        })
        logger.info("Custom command updated", uid=user_id, command_id=command_id)
        return CustomCommandDocument.from_snapshot(self.store.get(COLLECTION, command_id))

    def delete(self, command_id: str, user_id: str) -> CustomCommandDocument:
        """Soft delete: the document stays, inactive, with a deletion time"""
        command = CustomCommandDocument.from_snapshot(self._owned(command_id, user_id))
        self.store.update(COLLECTION, command_id, {'isActive': False, 'deletedAt': SERVER_TIMESTAMP})
        logger.info("Custom command deleted", uid=user_id, command_id=command_id)
        return command

    # Validation
    def _owned(self, command_id: str, user_id: str) -> DocumentSnapshot:
        snapshot = self.store.get(COLLECTION, command_id)
        if snapshot is None or snapshot.get('deletedAt') is not None:
            raise NotFoundError("Command not found")
        if snapshot.get('userId') != user_id:
            raise ForbiddenError("Access denied")
        return snapshot

    @staticmethod
    def _validate_name(command_name: Optional[str]) -> str:
        name = (command_name or '').strip()
        if not name:
            raise ValidationError("Command name and playlist are required")
        if not COMMAND_NAME_PATTERN.match(name):
            raise ValidationError("Command name can only contain letters, numbers, and underscores")
        if name.lower() in RESERVED_COMMANDS:
            raise ValidationError("Command name conflicts with existing bot commands")
        return name

    @staticmethod
    def _validate_playlist(playlist: List[str]) -> List[str]:
        tracks = clean_playlist(playlist or [])
        if not tracks:
            raise ValidationError("Command name and playlist are required")
        return tracks

    def _check_track_limit(self, tracks: List[str]):
        if len(tracks) > self.max_tracks:
            raise LimitExceededError(
                f"Standard users can have a maximum of {self.max_tracks} songs in their custom "
                "command playlist. Upgrade to premium for unlimited songs."
            )

    def _check_unique(self, user_id: str, name: str, exclude_id: Optional[str] = None):
        for snapshot in self.store.query(COLLECTION, [('userId', '==', user_id)]):
            if snapshot.id == exclude_id or snapshot.get('deletedAt') is not None:
                continue
            existing = snapshot.get('commandName') or snapshot.get('displayName') or ''
            if existing.lower() == name.lower():
                raise ValidationError("You already have a command with this name")


def get_command_service() -> CustomCommandService:
    config = current_app.config
    store = get_store()
    return CustomCommandService(
        store,
        PremiumService(store, monthly_days=config['PREMIUM_MONTHLY_DAYS']),
        max_commands=config['STANDARD_MAX_COMMANDS'],
        max_tracks=config['STANDARD_MAX_TRACKS'],
    )


class CustomCommandSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    command_name: str = Field(alias='commandName')
    playlist: List[str]
    description: Optional[str] = ''


def _command_fields(body: CustomCommandSchema) -> Dict[str, Any]:
    return {
        'command_name': body.command_name,
        'playlist': body.playlist,
        'description': sanitize_input(body.description) or '',
    }


@bp.route('', methods=['GET'])
@require_session
def list_commands():
    user = current_session()
    commands = get_command_service().list_for_user(user.id)
    return jsonify({'success': True, 'commands': [c.to_dict() for c in commands]})


@bp.route('', methods=['POST'])
@require_session
def create_command():
    body = parse_body(CustomCommandSchema)
    user = current_session()
    command = get_command_service().create(user.id, **_command_fields(body))
    emit_audit('custom_command.create', user.id, resource_type='custom_command', resource_id=command.id)
    return jsonify({
        'success': True,
        'message': f"Custom command !{command.display_name} created successfully!",
        'commandId': command.id,
        'command': command.to_dict(),
    }), 201


@bp.route('/<command_id>', methods=['GET'])
@require_session
def get_command(command_id):
    user = current_session()
    command = get_command_service().get(command_id, user.id)
    return jsonify({'success': True, 'command': command.to_dict()})


@bp.route('/<command_id>', methods=['PUT'])
@require_session
def update_command(command_id):
    body = parse_body(CustomCommandSchema)
    user = current_session()
    command = get_command_service().update(command_id, user.id, **_command_fields(body))
    emit_audit('custom_command.update', user.id, resource_type='custom_command', resource_id=command_id)
    return jsonify({
        'success': True,
        'message': f"Custom command !{command.display_name} updated successfully!",
        'command': command.to_dict(),
    })


@bp.route('/<command_id>', methods=['DELETE'])
@require_session
def delete_command(command_id):
    user = current_session()
    command = get_command_service().delete(command_id, user.id)
    emit_audit('custom_command.delete', user.id, resource_type='custom_command', resource_id=command_id)
    return jsonify({
        'success': True,
        'message': f"Custom command !{command.display_name or command.command_name} deleted successfully!",
    })
