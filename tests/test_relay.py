"""
Tests for the command relay and the bot control endpoints
"""
import pytest
import redis

from dashboard.api.app import bot
from dashboard.api.app.errors import ForbiddenError, NotFoundError, ValidationError
from dashboard.api.app.models import SessionUser
from dashboard.api.app.relay import (
    PLAYBACK_POLICY, PROCESS_CONTROL_POLICY, CommandRelay, PollingWatcher, RedisNotifyWatcher,
    RelayOutcome, WaitPolicy,
)

from conftest import ADMIN_ID, USER_ID, bot_after, bot_completes

ADMIN = SessionUser(id=ADMIN_ID, name='Admin', is_admin=True)
LISTENER = SessionUser(id=USER_ID, name='Listener')


@pytest.fixture
def relay(app):
    return app.extensions['command_relay']


@pytest.fixture
def guild(store):
    store.set('guilds', 'g1', {'name': 'Lounge', 'botPresent': True, 'memberCount': 5})
    return 'g1'


@pytest.mark.unit
class TestWaitPolicy:
    """Poll budgets derived from timeout and interval."""

    def test_default_budgets(self):
        assert PLAYBACK_POLICY.max_polls == 10
        assert PROCESS_CONTROL_POLICY.max_polls == 30

    def test_budget_is_at_least_one(self):
        assert WaitPolicy('x', 'c', interval=10, timeout=1, timeout_status=202).max_polls == 1

    def test_configured_policies(self, relay):
        assert relay.playback_policy.collection == 'commandQueue'
        assert relay.playback_policy.timeout_status == 202
        assert relay.process_policy.collection == 'pm2Commands'
        assert relay.process_policy.timeout_status == 408


@pytest.mark.unit
class TestPlaybackRelay:
    """Playback commands written to the command queue."""

    def test_completed_on_first_poll(self, relay, store, watcher, guild):
        watcher.bot = bot_completes(store, response='Skipped')
        result = relay.submit_playback_command(guild, 'skip', '', LISTENER)

        assert result.outcome is RelayOutcome.COMPLETED
        assert result.polls == 1
        assert result.document['response'] == 'Skipped'
        assert watcher.watched == [('commandQueue', result.request_id)]

    def test_request_document_fields(self, relay, store, guild):
        result = relay.submit_playback_command(guild, 'play', 'lofi beats', LISTENER)
        doc = store.get('commandQueue', result.request_id).data

        assert doc['serverId'] == guild
        assert doc['userId'] == USER_ID
        assert doc['username'] == 'Listener'
        assert doc['command'] == 'play'
        assert doc['args'] == 'lofi beats'
        assert doc['source'] == 'web'
        assert doc['status'] == 'pending'
        assert doc['timestamp'] is not None

    def test_exactly_one_document_per_call(self, relay, store, guild):
        relay.submit_playback_command(guild, 'pause', '', LISTENER)
        relay.submit_playback_command(guild, 'resume', '', LISTENER)
        assert store.count('commandQueue') == 2

    def test_timeout_leaves_pending_document(self, relay, store, watcher, guild):
        result = relay.submit_playback_command(guild, 'skip', '', LISTENER)

        assert result.timed_out
        assert result.polls == relay.playback_policy.max_polls
        assert len(watcher.waits) == relay.playback_policy.max_polls
        assert store.get('commandQueue', result.request_id).get('status') == 'pending'

    def test_completion_on_last_poll_counts(self, relay, store, watcher, guild):
        watcher.bot = bot_after(store, relay.playback_policy.max_polls)
        result = relay.submit_playback_command(guild, 'skip', '', LISTENER)
        assert result.outcome is RelayOutcome.COMPLETED
        assert result.polls == relay.playback_policy.max_polls

    def test_failed_status(self, relay, store, watcher, guild):
        watcher.bot = bot_completes(store, status='failed', error='Nothing playing')
        result = relay.submit_playback_command(guild, 'skip', '', LISTENER)
        assert result.outcome is RelayOutcome.FAILED
        assert result.document['error'] == 'Nothing playing'

    def test_terminal_state_is_not_rewritten(self, relay, store, watcher, guild):
        watcher.bot = bot_completes(store, response='ok')
        result = relay.submit_playback_command(guild, 'skip', '', LISTENER)
        doc = store.get('commandQueue', result.request_id).data
        assert doc['status'] == 'completed'
        assert doc['response'] == 'ok'

    def test_non_admin_needs_bot_present(self, relay, store):
        store.set('guilds', 'g2', {'name': 'Empty', 'botPresent': False})
        with pytest.raises(ForbiddenError):
            relay.submit_playback_command('g2', 'play', 'x', LISTENER)
        with pytest.raises(ForbiddenError):
            relay.submit_playback_command('unknown', 'play', 'x', LISTENER)
        assert store.count('commandQueue') == 0

    def test_admin_skips_presence_check(self, relay, store):
        result = relay.submit_playback_command('unknown', 'play', 'x', ADMIN)
        assert store.get('commandQueue', result.request_id) is not None


@pytest.mark.unit
class TestProcessRelay:
    """Process-control actions."""

    def test_non_admin_rejected_without_write(self, relay, store):
        with pytest.raises(ForbiddenError):
            relay.submit_process_action('restart', LISTENER)
        assert store.count('pm2Commands') == 0

    def test_invalid_action(self, relay, store):
        with pytest.raises(ValidationError):
            relay.submit_process_action('format-disk', ADMIN)
        assert store.count('pm2Commands') == 0

    def test_completed(self, relay, store, watcher):
        watcher.bot = bot_completes(store, result={'message': 'restarted', 'output': 'ok'})
        result = relay.submit_process_action('restart', ADMIN)
        doc = store.get('pm2Commands', result.request_id).data
        assert result.outcome is RelayOutcome.COMPLETED
        assert doc['requestedBy'] == ADMIN_ID
        assert doc['requestedByName'] == 'Admin'

    def test_timeout(self, relay):
        result = relay.submit_process_action('status', ADMIN)
        assert result.timed_out
        assert result.polls == relay.process_policy.max_polls


@pytest.mark.unit
class TestCommandStatus:
    """Reading back a queued command."""

    def test_owner_reads_status(self, relay, store, watcher, guild):
        watcher.bot = bot_completes(store, response='done')
        result = relay.submit_playback_command(guild, 'skip', '', LISTENER)
        command = relay.command_status(result.request_id, LISTENER)
        assert command.status == 'completed'
        assert command.response == 'done'

    def test_other_user_forbidden(self, relay, guild):
        result = relay.submit_playback_command(guild, 'skip', '', LISTENER)
        with pytest.raises(ForbiddenError):
            relay.command_status(result.request_id, ADMIN)

    def test_missing(self, relay):
        with pytest.raises(NotFoundError):
            relay.command_status('nope', LISTENER)


class _FakePubSub:
    def __init__(self, messages=None, fail_subscribe=False):
        self.messages = list(messages or [])
        self.fail_subscribe = fail_subscribe
        self.subscribed = []
        self.closed = False

    def subscribe(self, channel):
        if self.fail_subscribe:
            raise redis.ConnectionError('down')
        self.subscribed.append(channel)

    def get_message(self, timeout=0):
        if self.messages:
            return self.messages.pop(0)
        return None

    def unsubscribe(self, channel):
        self.subscribed.remove(channel)

    def close(self):
        self.closed = True


class _FakeRedis:
    def __init__(self, pubsub):
        self._pubsub = pubsub

    def pubsub(self, ignore_subscribe_messages=False):
        return self._pubsub


class _StepClock:
    """Monotonic clock advancing a fixed step per reading"""

    def __init__(self, step):
        self.value = 0.0
        self.step = step

    def __call__(self):
        self.value += self.step
        return self.value


@pytest.mark.unit
class TestRedisNotifyWatcher:
    """Push wake-ups shorten waits without replacing the poll."""

    def test_message_ends_wait(self):
        pubsub = _FakePubSub(messages=[{'type': 'message', 'data': 'done'}])
        watcher = RedisNotifyWatcher(_FakeRedis(pubsub), clock=_StepClock(0.01))
        with watcher.watch('commandQueue', 'abc') as wait:
            assert pubsub.subscribed == ['relay:commandQueue:abc']
            wait(5.0)
        assert pubsub.subscribed == []
        assert pubsub.closed

    def test_wait_returns_at_deadline_without_message(self):
        pubsub = _FakePubSub()
        clock = _StepClock(0.2)
        watcher = RedisNotifyWatcher(_FakeRedis(pubsub), clock=clock)
        with watcher.watch('commandQueue', 'abc') as wait:
            wait(1.0)
        assert clock.value >= 1.0

    def test_subscribe_failure_falls_back_to_sleep(self, monkeypatch):
        import time
        slept = []
        monkeypatch.setattr(time, 'sleep', slept.append)
        pubsub = _FakePubSub(fail_subscribe=True)
        watcher = RedisNotifyWatcher(_FakeRedis(pubsub))
        with watcher.watch('commandQueue', 'abc') as wait:
            wait(0.5)
        assert slept == [0.5]
        assert pubsub.closed

    def test_relay_still_reads_document_after_wake(self, store):
        pubsub = _FakePubSub(messages=[{'type': 'message', 'data': 'x'}] * 3)
        relay = CommandRelay(store, RedisNotifyWatcher(_FakeRedis(pubsub), clock=_StepClock(0.01)),
                             playback_policy=WaitPolicy('playback', 'commandQueue', 0.5, 1.5, 202))
        result = relay.submit_playback_command('g', 'skip', '', ADMIN)
        assert result.timed_out
        assert result.polls == 3


@pytest.mark.unit
def test_polling_watcher_sleeps_interval():
    slept = []
    watcher = PollingWatcher(sleep=slept.append)
    with watcher.watch('commandQueue', 'abc') as wait:
        wait(0.5)
        wait(0.5)
    assert slept == [0.5, 0.5]


@pytest.mark.integration
class TestBotCommandEndpoint:
    """POST /api/bot-command."""

    def test_requires_session(self, client):
        response = client.post('/api/bot-command', json={'serverId': 'g1', 'command': 'skip'})
        assert response.status_code == 401

    def test_completed(self, client, store, watcher, user_headers, guild):
        watcher.bot = bot_completes(store, response='Skipped to next track')
        response = client.post('/api/bot-command', headers=user_headers,
                               json={'serverId': guild, 'command': 'skip'})
        data = response.get_json()
        assert response.status_code == 200
        assert data['success'] is True
        assert data['message'] == 'Skipped to next track'
        assert data['commandId']

    def test_completed_default_message(self, client, store, watcher, user_headers, guild):
        watcher.bot = bot_completes(store)
        response = client.post('/api/bot-command', headers=user_headers,
                               json={'serverId': guild, 'command': 'pause'})
        assert response.get_json()['message'] == 'pause executed successfully'

    def test_failed_is_400(self, client, store, watcher, user_headers, guild):
        watcher.bot = bot_completes(store, status='failed', error='Not in a voice channel')
        response = client.post('/api/bot-command', headers=user_headers,
                               json={'serverId': guild, 'command': 'play', 'args': 'x'})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Not in a voice channel'

    def test_timeout_is_202_with_id(self, client, store, user_headers, guild):
        response = client.post('/api/bot-command', headers=user_headers,
                               json={'serverId': guild, 'command': 'skip'})
        data = response.get_json()
        assert response.status_code == 202
        assert data['success'] is True
        assert store.get('commandQueue', data['commandId']).get('status') == 'pending'

    def test_bot_absent_is_403_without_write(self, client, store, user_headers):
        response = client.post('/api/bot-command', headers=user_headers,
                               json={'serverId': 'elsewhere', 'command': 'skip'})
        assert response.status_code == 403
        assert store.count('commandQueue') == 0

    def test_missing_fields_is_400(self, client, user_headers):
        response = client.post('/api/bot-command', headers=user_headers, json={'command': 'skip'})
        assert response.status_code == 400

    def test_command_status_roundtrip(self, client, store, user_headers, other_user_headers, guild):
        command_id = client.post('/api/bot-command', headers=user_headers,
                                 json={'serverId': guild, 'command': 'skip'}).get_json()['commandId']
        store.update('commandQueue', command_id, {'status': 'completed', 'response': 'ok'})

        response = client.get(f'/api/command/{command_id}', headers=user_headers)
        assert response.status_code == 200
        assert response.get_json()['status'] == 'completed'

        assert client.get(f'/api/command/{command_id}', headers=other_user_headers).status_code == 403
        assert client.get('/api/command/unknown', headers=user_headers).status_code == 404


@pytest.mark.integration
class TestProcessControlEndpoint:
    """POST /api/admin/process-control."""

    def test_non_admin_is_403(self, client, store, user_headers):
        response = client.post('/api/admin/process-control', headers=user_headers, json={'action': 'restart'})
        assert response.status_code == 403
        assert store.count('pm2Commands') == 0

    def test_invalid_action_is_400(self, client, admin_headers):
        response = client.post('/api/admin/process-control', headers=admin_headers, json={'action': 'reboot'})
        assert response.status_code == 400

    def test_audit_records_outcome(self, client, store, watcher, admin_headers, monkeypatch):
        events = []
        monkeypatch.setattr(bot, 'emit_audit', lambda action, uid, **kwargs: events.append((action, kwargs)))

        client.post('/api/admin/process-control', headers=admin_headers, json={'action': 'reboot'})
        watcher.bot = bot_completes(store, result={'message': 'ok'})
        client.post('/api/admin/process-control', headers=admin_headers, json={'action': 'restart'})

        assert [(kwargs['resource_id'], kwargs['success']) for _, kwargs in events] == [
            ('reboot', False), ('restart', True),
        ]
        assert events[1][1]['new_values']['outcome'] == 'completed'
        assert store.count('pm2Commands') == 1

    def test_completed(self, client, store, watcher, admin_headers):
        watcher.bot = bot_completes(store, result={'message': 'Bot restarted', 'output': 'online'})
        response = client.post('/api/admin/process-control', headers=admin_headers, json={'action': 'restart'})
        data = response.get_json()
        assert response.status_code == 200
        assert data['message'] == 'Bot restarted'
        assert data['output'] == 'online'

    def test_failed_is_500(self, client, store, watcher, admin_headers):
        watcher.bot = bot_completes(store, status='failed', error='pm2 not found')
        response = client.post('/api/admin/process-control', headers=admin_headers, json={'action': 'stop'})
        assert response.status_code == 500
        assert response.get_json()['error'] == 'pm2 not found'

    def test_timeout_is_408(self, client, admin_headers):
        response = client.post('/api/admin/process-control', headers=admin_headers, json={'action': 'logs'})
        assert response.status_code == 408
        assert response.get_json()['success'] is False
