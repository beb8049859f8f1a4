"""
Favorite songs of the signed-in user
"""
from typing import Any, Dict, List, Optional

from flask import Blueprint, jsonify
from pydantic import BaseModel, ConfigDict, Field
from structlog import get_logger

from .auth import current_session, require_session
from .errors import ValidationError
from .security import parse_body, sanitize_input
from .store import DocumentStore, get_store

logger = get_logger(__name__)

bp = Blueprint('favorites', __name__)

COLLECTION = 'userFavorites'


class FavoriteSchema(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=300)
    url: str = Field(min_length=1, max_length=2048)
    artist: Optional[str] = Field(None, max_length=300)
    thumbnail: Optional[str] = Field(None, max_length=2048)


class RemoveFavoriteSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    song_id: str = Field(alias='songId', min_length=1)


class FavoritesService:
    """One ``userFavorites`` document per user holding an ordered ``songs`` list"""

    def __init__(self, store: DocumentStore):
        self.store = store

    def songs(self, user_id: str) -> List[Dict[str, Any]]:
        snapshot = self.store.get(COLLECTION, user_id)
        if snapshot is None:
            return []
        return list(snapshot.get('songs') or [])

    def add(self, user_id: str, song: FavoriteSchema) -> Dict[str, Any]:
        songs = self.songs(user_id)
        if any(existing.get('url') == song.url for existing in songs):
            raise ValidationError("Song is already in favorites")

        favorite = {
            'id': f"fav_{self.store.new_id()}",
            'title': sanitize_input(song.title),
            'artist': sanitize_input(song.artist),
            'thumbnail': song.thumbnail,
            'url': song.url,
            'addedAt': self.store.clock().isoformat(),
        }
        self.store.set(COLLECTION, user_id, {'songs': songs + [favorite]}, merge=True)
        logger.info("Favorite added", uid=user_id, favorite_id=favorite['id'])
        return favorite

    def remove(self, user_id: str, song_id: str) -> bool:
        """Drop one favorite; removing an unknown id is not an error"""
        songs = self.songs(user_id)
        remaining = [song for song in songs if song.get('id') != song_id]
        if len(remaining) == len(songs):
            return False
        self.store.update(COLLECTION, user_id, {'songs': remaining})
        logger.info("Favorite removed", uid=user_id, favorite_id=song_id)
        return True


@bp.route('', methods=['GET'])
@require_session
def list_favorites():
    favorites = FavoritesService(get_store()).songs(current_session().id)
    return jsonify({'favorites': favorites})


@bp.route('', methods=['POST'])
@require_session
def add_favorite():
    body = parse_body(FavoriteSchema)
    favorite = FavoritesService(get_store()).add(current_session().id, body)
    return jsonify({'success': True, 'favorite': favorite})


@bp.route('', methods=['DELETE'])
@require_session
def remove_favorite():
    body = parse_body(RemoveFavoriteSchema)
    removed = FavoritesService(get_store()).remove(current_session().id, body.song_id)
    return jsonify({'success': True, 'removed': removed})
