"""
Guild listings for the dashboard server pickers
"""
from datetime import datetime, timezone
from typing import List, Optional

from flask import Blueprint, jsonify

from .auth import current_session, require_admin, require_session
from .models import GuildDocument
from .store import DocumentStore, Filter, get_store

bp = Blueprint('guilds', __name__)

COLLECTION = 'guilds'

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def list_guilds(store: DocumentStore, owner_id: Optional[str] = None) -> List[GuildDocument]:
    """Guild documents, most recently active first, optionally only those owned by ``owner_id``"""
    filters: List[Filter] = []
    if owner_id is not None:
        filters.append(('ownerId', '==', owner_id))
    guilds = [GuildDocument.from_snapshot(s) for s in store.query(COLLECTION, filters)]
    guilds.sort(key=lambda g: g.last_active or _EPOCH, reverse=True)
    return guilds


@bp.route('/admin')
@require_admin
def admin_guilds():
    guilds = list_guilds(get_store())
    return jsonify({'success': True, 'guilds': [g.to_dict() for g in guilds], 'total': len(guilds)})


@bp.route('/user')
@require_session
def user_guilds():
    user = current_session()
    guilds = list_guilds(get_store(), owner_id=user.id)
    return jsonify({'success': True, 'guilds': [g.to_dict() for g in guilds], 'total': len(guilds)})
