"""
Command relay between the dashboard and the bot process

The web tier writes a pending request document and re-reads it until the bot
writes a terminal status or the wait budget of the endpoint's policy runs out.
"""
import enum
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, Optional

import redis
from flask import Flask, current_app
from structlog import get_logger

from .errors import ForbiddenError, NotFoundError, ValidationError
from .models import CommandRequestDocument, SessionUser
from .store import SERVER_TIMESTAMP, DocumentStore

logger = get_logger(__name__)

PROCESS_ACTIONS = ('restart', 'stop', 'start', 'status', 'logs')
TERMINAL_STATUSES = ('completed', 'failed')

Waiter = Callable[[float], None]


@dataclass(frozen=True)
class WaitPolicy:
    """How long one relay endpoint waits for the bot, and what a timeout means"""
    name: str
    collection: str
    interval: float
    timeout: float
    timeout_status: int

    @property
    def max_polls(self) -> int:
        return max(1, int(round(self.timeout / self.interval)))


# Playback commands fall back to "accepted, still processing" with the request id
PLAYBACK_POLICY = WaitPolicy('playback', 'commandQueue', interval=0.5, timeout=5.0, timeout_status=202)
# Process control reports a hard timeout
PROCESS_CONTROL_POLICY = WaitPolicy('process_control', 'pm2Commands', interval=1.0, timeout=30.0, timeout_status=408)


class RelayOutcome(enum.Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'
    PENDING = 'pending'


@dataclass
class RelayResult:
    request_id: str
    outcome: RelayOutcome
    policy: WaitPolicy
    document: Dict[str, Any] = field(default_factory=dict)
    polls: int = 0

    @property
    def timed_out(self) -> bool:
        return self.outcome is RelayOutcome.PENDING


class StatusWatcher:
    """Decides how the relay waits between two reads of a request document"""

    @contextmanager
    def watch(self, collection: str, key: str) -> Iterator[Waiter]:
        raise NotImplementedError


class PollingWatcher(StatusWatcher):
    """Fixed-interval sleep between reads"""

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    @contextmanager
    def watch(self, collection: str, key: str) -> Iterator[Waiter]:
        yield self._sleep


class RedisNotifyWatcher(StatusWatcher):
    """
    Wakes early when the bot publishes on ``{prefix}:{collection}:{id}``

    The subscription is opened before the request document is written, so a
    fast bot cannot publish unseen. A notification only ends the current
    wait; the relay still re-reads the document and keeps its poll budget.
    """

    def __init__(self, client: redis.Redis, prefix: str = 'relay', clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.prefix = prefix
        self._clock = clock

    def channel(self, collection: str, key: str) -> str:
        return f"{self.prefix}:{collection}:{key}"

    @contextmanager
    def watch(self, collection: str, key: str) -> Iterator[Waiter]:
        channel = self.channel(collection, key)
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(channel)
        except redis.RedisError as e:
            logger.warning("Relay subscription failed, polling instead", channel=channel, error=str(e))
            pubsub.close()
            yield time.sleep
            return

        def wait(interval: float):
            deadline = self._clock() + interval
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return
                message = pubsub.get_message(timeout=remaining)
                if message is not None and message.get('type') == 'message':
                    return

        try:
            yield wait
        finally:
            try:
                pubsub.unsubscribe(channel)
            except redis.RedisError as e:
                logger.debug("Relay unsubscribe failed", channel=channel, error=str(e))
            pubsub.close()


class CommandRelay:
    """
    Submits requests to the bot and waits for their terminal status

    Args:
        store: Document store shared with the bot
        watcher: Strategy for waiting between reads; polling by default
        playback_policy: Wait policy of playback commands
        process_policy: Wait policy of process-control actions
    """

    def __init__(self, store: DocumentStore, watcher: Optional[StatusWatcher] = None,
                 playback_policy: WaitPolicy = PLAYBACK_POLICY,
                 process_policy: WaitPolicy = PROCESS_CONTROL_POLICY):
        self.store = store
        self.watcher = watcher or PollingWatcher()
        self.playback_policy = playback_policy
        self.process_policy = process_policy

    def submit_playback_command(self, server_id: str, command: str, args: Any,
                                caller: SessionUser) -> RelayResult:
        if not caller.is_admin:
            guild = self.store.get('guilds', server_id)
            if guild is None or not guild.get('botPresent'):
                logger.warning("Command rejected, bot not present", server_id=server_id, uid=caller.id)
                raise ForbiddenError("Bot not present in this server")

        fields = {
            'serverId': server_id,
            'userId': caller.id,
            'username': caller.display_name,
            'command': command,
            'args': args if args is not None else '',
            'status': 'pending',
            'source': 'web',
            'timestamp': SERVER_TIMESTAMP,
        }
        return self._submit(self.playback_policy, fields)

    def submit_process_action(self, action: str, caller: SessionUser) -> RelayResult:
        if not caller.is_admin:
            raise ForbiddenError("Admin access required")
        if action not in PROCESS_ACTIONS:
            raise ValidationError("Invalid action", errors={'action': f"must be one of {', '.join(PROCESS_ACTIONS)}"})

        fields = {
            'action': action,
            'status': 'pending',
            'requestedBy': caller.id,
            'requestedByName': caller.display_name,
            'timestamp': SERVER_TIMESTAMP,
            'createdAt': SERVER_TIMESTAMP,
        }
        return self._submit(self.process_policy, fields)

    def command_status(self, request_id: str, caller: SessionUser) -> CommandRequestDocument:
        snapshot = self.store.get(self.playback_policy.collection, request_id)
        if snapshot is None:
            raise NotFoundError("Command not found")
        if snapshot.get('userId') != caller.id:
            raise ForbiddenError("Unauthorized")
        return CommandRequestDocument.from_snapshot(snapshot)

    def _submit(self, policy: WaitPolicy, fields: Dict[str, Any]) -> RelayResult:
        request_id = self.store.new_id()
        with self.watcher.watch(policy.collection, request_id) as wait:
            self.store.set(policy.collection, request_id, fields)
            logger.info("Relay request queued", policy=policy.name, request_id=request_id,
                        command=fields.get('command') or fields.get('action'))
            return self.await_terminal(policy, request_id, wait)

    def await_terminal(self, policy: WaitPolicy, request_id: str, wait: Waiter) -> RelayResult:
        """Re-read the request until a terminal status appears or the poll budget is spent"""
        document: Dict[str, Any] = {}
        for poll in range(1, policy.max_polls + 1):
            wait(policy.interval)
            snapshot = self.store.get(policy.collection, request_id)
            if snapshot is None:
                continue
            document = snapshot.data
            status = snapshot.get('status')
            if status in TERMINAL_STATUSES:
                logger.info("Relay request finished", policy=policy.name, request_id=request_id,
                            status=status, polls=poll)
                return RelayResult(request_id, RelayOutcome(status), policy, document, poll)

        logger.warning("Relay wait exhausted", policy=policy.name, request_id=request_id,
                       polls=policy.max_polls, timeout=policy.timeout)
        return RelayResult(request_id, RelayOutcome.PENDING, policy, document, policy.max_polls)


def build_relay(app: Flask, store: DocumentStore, watcher: Optional[StatusWatcher] = None) -> CommandRelay:
    """Command relay with the wait policies and watcher configured for ``app``"""
    config = app.config
    playback = replace(PLAYBACK_POLICY, interval=config['RELAY_PLAYBACK_INTERVAL'],
                       timeout=config['RELAY_PLAYBACK_TIMEOUT'])
    process = replace(PROCESS_CONTROL_POLICY, interval=config['RELAY_PROCESS_INTERVAL'],
                      timeout=config['RELAY_PROCESS_TIMEOUT'])

    if watcher is None:
        if config.get('RELAY_PUSH_ENABLED') and config.get('REDIS_URL'):
            watcher = RedisNotifyWatcher(redis.Redis.from_url(config['REDIS_URL']),
                                         prefix=config['RELAY_CHANNEL_PREFIX'])
        else:
            watcher = PollingWatcher()
    logger.info("Command relay configured", watcher=type(watcher).__name__,
                playback_timeout=playback.timeout, process_timeout=process.timeout)
    return CommandRelay(store, watcher, playback, process)


def get_relay() -> CommandRelay:
    return current_app.extensions['command_relay']
