"""
Database Models for Flask API
The document table backing every collection, and Pydantic schemas that give
the loosely-typed bot documents one canonical shape at the read boundary.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint, func
from typing_extensions import Annotated

from .extensions import db


# Database Models
class Document(db.Model):
    """One document of one collection, stored as a JSON blob"""
    __tablename__ = 'documents'

    id = Column(Integer, primary_key=True)
    collection = Column(String(64), nullable=False, index=True)
    key = Column(String(128), nullable=False)
    data = Column(JSON, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('collection', 'key', name='uq_documents_collection_key'),
    )

    def __repr__(self):
        return f'<Document {self.collection}/{self.key}>'


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """
    Coerce the timestamp shapes found in bot-written documents to an aware UTC datetime

    Accepts datetimes, ISO-8601 strings, epoch seconds or milliseconds, and
    exported Firestore-style maps ({"_seconds": .., "_nanoseconds": ..}).
    Unrecognised shapes read as None.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return normalize_timestamp(datetime.fromisoformat(value.replace('Z', '+00:00')))
        except ValueError:
            return None
    if isinstance(value, dict):
        seconds = value.get('_seconds', value.get('seconds'))
        if seconds is None:
            return None
        nanos = value.get('_nanoseconds', value.get('nanoseconds', 0)) or 0
        return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
    return None


Timestamp = Annotated[Optional[datetime], BeforeValidator(normalize_timestamp)]


# Pydantic schemas for bot documents
class DocumentModel(BaseModel):
    """Base schema: camelCase on the wire, snake_case in Python, unknown fields kept"""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra='allow', coerce_numbers_to_str=True,
    )

    id: str

    @classmethod
    def from_snapshot(cls, snapshot) -> 'DocumentModel':
        # Explicit nulls fall back to field defaults
        data = {key: value for key, value in snapshot.data.items() if value is not None}
        data['id'] = snapshot.id
        return cls.model_validate(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dictionary for API responses"""
        return self.model_dump(mode='json', by_alias=True)


class GuildDocument(DocumentModel):
    name: str = 'Unknown'
    member_count: int = 0
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None
    bot_present: bool = False
    commands_used: int = 0
    songs_played: int = 0
    bot_joined_at: Timestamp = None
    joined_at: Timestamp = None
    left_at: Timestamp = None
    created_at: Timestamp = None
    last_active: Timestamp = None
    last_updated: Timestamp = None


class UserDocument(DocumentModel):
    username: Optional[str] = None
    avatar: Optional[str] = None
    email: Optional[str] = None
    last_login: Timestamp = None


class RenewalReminders(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    seven_days: bool = False
    three_days: bool = False
    one_day: bool = False


class PremiumUserDocument(DocumentModel):
    user_id: Optional[str] = None
    username: Optional[str] = None
    added_by: Optional[str] = None
    added_by_username: Optional[str] = None
    added_at: Timestamp = None
    is_active: bool = False
    subscription_type: Literal['permanent', 'monthly'] = 'permanent'
    expires_at: Timestamp = None
    tier: str = 'premium'
    benefits: List[str] = Field(default_factory=list)
    renewal_reminders: RenewalReminders = Field(default_factory=RenewalReminders)
    needs_welcome_message: bool = False
    welcome_message_sent: bool = False
    removed_at: Timestamp = None
    renewed_at: Timestamp = None
    renewed_by: Optional[str] = None
    renewed_by_username: Optional[str] = None
    warnings_sent: List[Any] = Field(default_factory=list)
    expired_at: Timestamp = None
    status: Optional[str] = None


class CustomCommandDocument(DocumentModel):
    user_id: str
    command_name: str
    display_name: Optional[str] = None
    playlist: List[str] = Field(default_factory=list)
    description: str = ''
    is_active: bool = True
    usage_count: int = 0
    last_used: Timestamp = None
    created_at: Timestamp = None
    last_updated: Timestamp = None
    deactivated_at: Timestamp = None
    deactivation_reason: Optional[str] = None
    reactivated_at: Timestamp = None
    deleted_at: Timestamp = None


class CommandRequestDocument(DocumentModel):
    server_id: str
    user_id: str
    username: Optional[str] = None
    command: str
    args: Any = ''
    status: str = 'pending'
    source: Optional[str] = None
    timestamp: Timestamp = None
    response: Any = None
    error: Any = None
    completed_at: Timestamp = None


class ProcessCommandDocument(DocumentModel):
    action: str
    status: str = 'pending'
    requested_by: Optional[str] = None
    requested_by_name: Optional[str] = None
    timestamp: Timestamp = None
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Any = None
    stderr: Any = None


class CommandLogDocument(DocumentModel):
    guild_id: Optional[str] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    command: str = 'unknown'
    args: Any = None
    timestamp: Timestamp = None


class BotStatsDocument(DocumentModel):
    status: str = 'unknown'
    total_guilds: int = 0
    total_active_guilds: int = 0
    total_users: int = 0
    total_songs: int = 0
    commands_used: int = 0
    uptime: float = 0
    maintenance_mode: bool = False
    dev_mode: bool = False
    last_updated: Timestamp = None
    last_status_update: Timestamp = None


class DevModeDocument(DocumentModel):
    enabled: bool = False
    last_toggled: Timestamp = None
    toggled_by: Optional[str] = None
    toggled_by_user_id: Optional[str] = None
    toggled_from: Optional[str] = None
    needs_notification: bool = False
    notification_sent: bool = True


class MusicStatusDocument(DocumentModel):
    current_song: Any = None
    queue: List[Any] = Field(default_factory=list)
    is_playing: bool = False
    volume: int = 50
    position: float = 0
    last_updated: Timestamp = None


class ErrorLogDocument(DocumentModel):
    error: Any = None
    timestamp: Timestamp = None
    user_id: Optional[str] = None
    guild_id: Optional[str] = None
    severity: Optional[str] = None


@dataclass(frozen=True)
class SessionUser:
    """The authenticated caller of a request"""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None
    is_admin: bool = False

    @property
    def display_name(self) -> str:
        return self.name or f'User-{self.id}'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'image': self.image,
            'isAdmin': self.is_admin,
        }
