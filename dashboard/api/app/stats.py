"""
Dashboard statistics
Public counters fall back from the bot's stats snapshot to a live aggregation
over guild documents to configured defaults, so they always answer.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

from flask import Blueprint, current_app, jsonify, request
from pydantic import ValidationError as SchemaError
from structlog import get_logger

from .auth import require_admin
from .errors import StoreUnavailableError
from .extensions import cache
from .guilds import list_guilds
from .models import BotStatsDocument, ErrorLogDocument, GuildDocument
from .store import DocumentStore, get_store

logger = get_logger(__name__)

bp = Blueprint('stats', __name__)

STATS_CACHE_KEY = 'dashboard_stats'

ACTIVITY_PERIODS = {'7d': 7, '30d': 30, '90d': 90}
ACTIVITY_LIMIT = 50
RECENT_ERRORS_LIMIT = 50


class StatsReader:
    """
    Reads the dashboard counters

    Args:
        store: Document store
        stale_after: Age in seconds past which the stats snapshot is ignored
        fallback_servers: Server count reported when nothing can be read
        fallback_users: User count reported when nothing can be read
    """

    def __init__(self, store: DocumentStore, stale_after: int = 900,
                 fallback_servers: int = 80, fallback_users: int = 4000):
        self.store = store
        self.stale_after = stale_after
        self.fallback_servers = fallback_servers
        self.fallback_users = fallback_users

    def dashboard_stats(self) -> Dict[str, Any]:
        for source, reader in (('snapshot', self._from_snapshot), ('live', self._from_guilds)):
            try:
                stats = reader()
            except (StoreUnavailableError, SchemaError) as e:
                logger.warning("Stats source unreadable", source=source, error=str(e))
                continue
            if stats is not None:
                stats['source'] = source
                return stats
        return self.defaults()

    def defaults(self) -> Dict[str, Any]:
        return {
            'totalServers': self.fallback_servers,
            'totalUsers': self.fallback_users,
            'totalCommands': 0,
            'totalSongs': 0,
            'uptime': 0,
            'status': 'online',
            'lastUpdated': None,
            'source': 'default',
        }

    def _from_snapshot(self) -> Optional[Dict[str, Any]]:
        snapshot = self.store.get('botStats', 'global')
        if snapshot is None:
            return None
        stats = BotStatsDocument.from_snapshot(snapshot)
        # A snapshot without lastUpdated is trusted as written
        if stats.last_updated is not None:
            age = (self.store.clock() - stats.last_updated).total_seconds()
            if age > self.stale_after:
                logger.info("Stats snapshot is stale", age_seconds=int(age))
                return None
        return {
            'totalServers': stats.total_active_guilds or stats.total_guilds,
            'totalUsers': stats.total_users,
            'totalCommands': stats.commands_used,
            'totalSongs': stats.total_songs,
            'uptime': stats.uptime,
            'status': stats.status if stats.status != 'unknown' else 'online',
            'lastUpdated': stats.last_updated.isoformat() if stats.last_updated else None,
        }

    def _from_guilds(self) -> Optional[Dict[str, Any]]:
        guilds = [GuildDocument.from_snapshot(s) for s in self.store.query('guilds')]
        if not guilds:
            return None
        present = [g for g in guilds if g.bot_present]
        return {
            'totalServers': len(present),
            'totalUsers': sum(g.member_count for g in present),
            'totalCommands': sum(g.commands_used for g in guilds),
            'totalSongs': sum(g.songs_played for g in guilds),
            'uptime': 0,
            'status': 'online',
            'lastUpdated': self.store.clock().isoformat(),
        }

    def server_activity(self, days: int) -> Dict[str, List[Dict[str, Any]]]:
        """Servers the bot joined and left within the last ``days`` days, newest first"""
        start = self.store.clock() - timedelta(days=days)
        try:
            guilds = [GuildDocument.from_snapshot(s) for s in self.store.query('guilds')]
        except StoreUnavailableError:
            return {'recentlyAdded': [], 'recentlyLeft': []}

        added = [g for g in guilds if g.bot_present and g.bot_joined_at and g.bot_joined_at >= start]
        left = [g for g in guilds if not g.bot_present and g.left_at and g.left_at >= start]
        added.sort(key=lambda g: g.bot_joined_at, reverse=True)
        left.sort(key=lambda g: g.left_at, reverse=True)
        return {
            'recentlyAdded': [g.to_dict() for g in added[:ACTIVITY_LIMIT]],
            'recentlyLeft': [g.to_dict() for g in left[:ACTIVITY_LIMIT]],
        }

    def recent_errors(self, limit: int = RECENT_ERRORS_LIMIT) -> List[ErrorLogDocument]:
        snapshots = self.store.query('errors', order_by='timestamp', descending=True, limit=limit)
        return [ErrorLogDocument.from_snapshot(s) for s in snapshots]


def get_stats_reader() -> StatsReader:
    config = current_app.config
    return StatsReader(
        get_store(),
        stale_after=config['STATS_STALE_AFTER_SECONDS'],
        fallback_servers=config['STATS_FALLBACK_SERVERS'],
        fallback_users=config['STATS_FALLBACK_USERS'],
    )


def _guild_summary(guild: GuildDocument) -> Dict[str, Any]:
    return {
        'id': guild.id,
        'name': guild.name,
        'ownerId': guild.owner_id or 'Unknown',
        'ownerName': guild.owner_name or 'Unknown',
        'memberCount': guild.member_count,
        'commandsUsed': guild.commands_used,
        'songsPlayed': guild.songs_played,
        'lastActive': guild.last_active.isoformat() if guild.last_active else None,
    }


@bp.route('/stats')
def dashboard_stats():
    stats = cache.get(STATS_CACHE_KEY)
    if stats is None:
        stats = get_stats_reader().dashboard_stats()
        cache.set(STATS_CACHE_KEY, stats, timeout=current_app.config['STATS_CACHE_TIMEOUT'])
    return jsonify(stats)


@bp.route('/admin/stats')
@require_admin
def admin_stats():
    reader = get_stats_reader()
    stats = reader.dashboard_stats()
    guilds = list_guilds(reader.store)
    errors = reader.recent_errors()
    stats.update({
        'recentErrors': len(errors),
        'sensitiveData': {
            'guilds': [_guild_summary(g) for g in guilds],
            'errors': [e.to_dict() for e in errors],
        },
    })
    return jsonify(stats)


@bp.route('/server-activity')
@require_admin
def server_activity():
    period = request.args.get('period', '7d')
    days = ACTIVITY_PERIODS.get(period, 7)
    activity = get_stats_reader().server_activity(days)
    logger.info("Server activity read", period=period, joined=len(activity['recentlyAdded']),
                left=len(activity['recentlyLeft']))
    return jsonify(activity)
