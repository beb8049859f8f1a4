"""
Listening statistics built from the bot's command log
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

from flask import Blueprint, jsonify, request
from structlog import get_logger

from .auth import current_session, require_session
from .errors import NotFoundError, StoreUnavailableError, ValidationError
from .models import CommandLogDocument
from .store import DocumentStore, Filter, get_store

logger = get_logger(__name__)

bp = Blueprint('music_stats', __name__)

COLLECTION = 'commandLogs'

STATS_RANGES = {'7d': 7, '30d': 30, 'all': None}
SONG_COMMANDS = ('play', 'resume')
# Estimated length of one played song, in seconds
SECONDS_PER_SONG = 180
TOP_USERS_LIMIT = 10
ACTIVITY_LIMIT = 20

ACTIVITY_TYPES = {'play': 'requested', 'skip': 'skipped'}


class MusicStatsReader:
    """Aggregates over ``commandLogs`` documents written by the bot"""

    def __init__(self, store: DocumentStore):
        self.store = store

    def _logs(self, filters: List[Filter]) -> List[CommandLogDocument]:
        """Matching log entries with a readable timestamp, oldest first"""
        try:
            snapshots = self.store.query(COLLECTION, filters)
        except StoreUnavailableError:
            return []
        logs = [CommandLogDocument.from_snapshot(s) for s in snapshots]
        logs = [log for log in logs if log.timestamp is not None]
        logs.sort(key=lambda log: log.timestamp)
        return logs

    def server_stats(self, server_id: str, days: Optional[int]) -> Dict[str, Any]:
        """Totals, top users and per-day activity of one server over the last ``days`` days (all time when None)"""
        if self.store.get('guilds', server_id) is None:
            raise NotFoundError("Server not found")

        now = self.store.clock()
        start = now - timedelta(days=days) if days is not None else None
        logs = [log for log in self._logs([('guildId', '==', server_id)])
                if log.timestamp <= now and (start is None or log.timestamp >= start)]

        total_songs = 0
        users: Dict[str, Dict[str, Any]] = {}
        daily: Dict[str, Dict[str, Any]] = {}
        for log in logs:
            user = users.setdefault(log.user_id or 'unknown', {
                'userId': log.user_id, 'username': log.username, 'songsPlayed': 0,
            })
            date_key = log.timestamp.date().isoformat()
            day = daily.setdefault(date_key, {'date': date_key, 'songs': 0, 'commands': 0})
            day['commands'] += 1
            if log.command in SONG_COMMANDS:
                total_songs += 1
                user['songsPlayed'] += 1
                day['songs'] += 1

        top_users = sorted(users.values(), key=lambda u: u['songsPlayed'], reverse=True)
        return {
            'totalSongs': total_songs,
            'totalPlaytime': total_songs * SECONDS_PER_SONG,
            'totalCommands': len(logs),
            'activeUsers': len(users),
            'topUsers': top_users[:TOP_USERS_LIMIT],
            'dailyActivity': list(daily.values()),
        }

    def user_activity(self, user_id: str, limit: int = ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
        """The user's most recent logged commands, newest first"""
        logs = self._logs([('userId', '==', user_id)])[::-1][:limit]
        names: Dict[str, str] = {}
        activity = []
        for log in logs:
            if log.guild_id and log.guild_id not in names:
                guild = self.store.get('guilds', log.guild_id)
                names[log.guild_id] = guild.get('name', 'Unknown') if guild else 'Unknown'
            activity.append({
                'id': log.id,
                'type': ACTIVITY_TYPES.get(log.command, log.command),
                'command': log.command,
                'args': log.args,
                'serverId': log.guild_id,
                'serverName': names.get(log.guild_id, 'Unknown'),
                'timestamp': log.timestamp.isoformat(),
            })
        return activity


@bp.route('/server-music-stats')
@require_session
def server_music_stats():
    server_id = request.args.get('serverId')
    if not server_id:
        raise ValidationError("Server ID required")
    period = request.args.get('range', '7d')
    days = STATS_RANGES.get(period, 7)
    stats = MusicStatsReader(get_store()).server_stats(server_id, days)
    logger.info("Server music stats read", server_id=server_id, range=period, commands=stats['totalCommands'])
    return jsonify(stats)


@bp.route('/user-music-activity')
@require_session
def user_music_activity():
    activity = MusicStatsReader(get_store()).user_activity(current_session().id)
    return jsonify({'activity': activity})
