"""
Premium subscriptions
Grant, revoke and renew premium access, with the custom-command cascade kept
in the same write batch, plus the expiry sweep and renewal reminder queries
run from the Flask CLI.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

import click
from flask import Blueprint, current_app, jsonify
from flask.cli import AppGroup
from pydantic import BaseModel, ConfigDict, Field
from structlog import get_logger

from .audit import emit_audit
from .auth import current_session, require_admin, require_session
from .errors import NotFoundError, ValidationError
from .models import PremiumUserDocument, SessionUser
from .security import parse_body
from .store import DELETE_FIELD, SERVER_TIMESTAMP, DocumentStore, get_store

logger = get_logger(__name__)

bp = Blueprint('premium', __name__)
premium_cli = AppGroup('premium', help='Premium subscription maintenance.')

PREMIUM_COLLECTION = 'premiumUsers'
COMMANDS_COLLECTION = 'customCommands'

BENEFITS = [
    'Priority support',
    'Premium badge',
    'Early access to features',
    'Higher command rate limits',
    'Custom playlist commands',
]

REASON_REMOVED = 'Premium status removed'
REASON_EXPIRED = 'Premium subscription expired'

# Reminder flag, its schema attribute, and how many days ahead of expiry it fires
REMINDER_WINDOWS = (
    ('sevenDays', 'seven_days', 7),
    ('threeDays', 'three_days', 3),
    ('oneDay', 'one_day', 1),
)
REMINDER_KEYS = {key: attr for key, attr, _ in REMINDER_WINDOWS}


def _fresh_reminders() -> Dict[str, bool]:
    return {key: False for key in REMINDER_KEYS}


class PremiumService:
    """
    Premium status of users and its effect on their custom commands

    Args:
        store: Document store
        monthly_days: Length of one monthly subscription period
    """

    def __init__(self, store: DocumentStore, monthly_days: int = 30):
        self.store = store
        self.monthly_days = monthly_days

    def now(self) -> datetime:
        return self.store.clock()

    # Reads
    def status(self, user_id: str) -> Optional[PremiumUserDocument]:
        snapshot = self.store.get(PREMIUM_COLLECTION, user_id)
        if snapshot is None:
            return None
        return PremiumUserDocument.from_snapshot(snapshot)

    def is_premium(self, user_id: str) -> bool:
        record = self.status(user_id)
        return bool(record and record.is_active)

    def list_active(self) -> List[PremiumUserDocument]:
        """Active premium users, most recently added first"""
        records = [PremiumUserDocument.from_snapshot(s)
                   for s in self.store.query(PREMIUM_COLLECTION, [('isActive', '==', True)])]
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        records.sort(key=lambda r: r.added_at or oldest, reverse=True)
        return records

    def _commands(self, user_id: str, *filters) -> List[Any]:
        return self.store.query(COMMANDS_COLLECTION, [('userId', '==', user_id), *filters])

    def _reactivatable(self, user_id: str, reasons) -> List[Any]:
        return [s for s in self._commands(user_id, ('deactivationReason', 'in', list(reasons)))
                if s.get('deletedAt') is None]

    @staticmethod
    def _reactivate(batch, commands):
        for command in commands:
            batch.update(COMMANDS_COLLECTION, command.id, {
                'isActive': True,
                'reactivatedAt': SERVER_TIMESTAMP,
                'deactivationReason': DELETE_FIELD,
            })

    @staticmethod
    def _deactivate(batch, commands, reason: str):
        for command in commands:
            batch.update(COMMANDS_COLLECTION, command.id, {
                'isActive': False,
                'deactivatedAt': SERVER_TIMESTAMP,
                'deactivationReason': reason,
            })

    # Mutations
    def grant(self, user_id: str, subscription_type: str, granted_by: SessionUser,
              username: str = 'User') -> Dict[str, Any]:
        """Write the premium record and restore commands removed with the previous revoke"""
        if subscription_type not in ('monthly', 'permanent'):
            raise ValidationError("Invalid subscription type")

        expires_at = None
        if subscription_type == 'monthly':
            expires_at = self.now() + timedelta(days=self.monthly_days)

        record = {
            'userId': user_id,
            'username': username,
            'addedBy': granted_by.id,
            'addedByUsername': granted_by.display_name,
            'addedAt': SERVER_TIMESTAMP,
            'isActive': True,
            'subscriptionType': subscription_type,
            'expiresAt': expires_at,
            'tier': 'premium',
            'benefits': list(BENEFITS),
            'warningsSent': [],
            'renewalReminders': _fresh_reminders(),
            # Consumed by the bot, which sends the welcome DM
            'needsWelcomeMessage': True,
            'welcomeMessageSent': False,
        }
        restored = self._reactivatable(user_id, [REASON_REMOVED])

        with self.store.batch() as batch:
            batch.set(PREMIUM_COLLECTION, user_id, record)
            self._reactivate(batch, restored)

        logger.info("Premium granted", uid=user_id, subscription_type=subscription_type,
                    commands_reactivated=len(restored))
        return PremiumUserDocument.from_snapshot(self.store.get(PREMIUM_COLLECTION, user_id)).to_dict()

    def revoke(self, user_id: str) -> int:
        """Deactivate premium and every active command of the user in one batch"""
        if self.store.get(PREMIUM_COLLECTION, user_id) is None:
            raise NotFoundError("User not found in premium users")

        active = self._commands(user_id, ('isActive', '==', True))
        with self.store.batch() as batch:
            batch.update(PREMIUM_COLLECTION, user_id, {'isActive': False, 'removedAt': SERVER_TIMESTAMP})
            self._deactivate(batch, active, REASON_REMOVED)

        logger.info("Premium revoked", uid=user_id, commands_deactivated=len(active))
        return len(active)

    def renew(self, user_id: str, renewed_by: SessionUser) -> Dict[str, Any]:
        if self.store.get(PREMIUM_COLLECTION, user_id) is None:
            raise NotFoundError("User not found in premium users")

        expires_at = self.now() + timedelta(days=self.monthly_days)
        restored = self._reactivatable(user_id, [REASON_REMOVED, REASON_EXPIRED])

        with self.store.batch() as batch:
            batch.update(PREMIUM_COLLECTION, user_id, {
                'isActive': True,
                'expiresAt': expires_at,
                'renewedAt': SERVER_TIMESTAMP,
                'renewedBy': renewed_by.id,
                'renewedByUsername': renewed_by.display_name,
                'status': DELETE_FIELD,
                'renewalReminders': _fresh_reminders(),
            })
            self._reactivate(batch, restored)

        logger.info("Premium renewed", uid=user_id, expires_at=expires_at.isoformat(),
                    commands_reactivated=len(restored))
        return {'newExpirationDate': expires_at.isoformat(), 'commandsReactivated': len(restored)}

    def sweep_expired(self) -> List[Dict[str, Any]]:
        """Expire monthly subscriptions past their end date, cascading to their commands"""
        now = self.now()
        expired = []
        for record in self._active_monthly():
            if record.expires_at is not None and record.expires_at <= now:
                expired.append(record)
        if not expired:
            return []

        with self.store.batch() as batch:
            for record in expired:
                batch.update(PREMIUM_COLLECTION, record.id, {
                    'isActive': False,
                    'expiredAt': SERVER_TIMESTAMP,
                    'status': 'expired',
                })
                self._deactivate(batch, self._commands(record.id, ('isActive', '==', True)), REASON_EXPIRED)

        logger.info("Expired premium subscriptions", count=len(expired))
        return [{'userId': r.id, 'username': r.username, 'expiresAt': r.expires_at.isoformat()}
                for r in expired]

    def expiring_reminders(self) -> List[Dict[str, Any]]:
        """Monthly users whose expiry falls on the day 7, 3 or 1 days from now and not yet reminded"""
        now = self.now()
        records = self._active_monthly()
        due = []
        for key, attr, days in REMINDER_WINDOWS:
            target = now + timedelta(days=days)
            start = datetime(target.year, target.month, target.day, tzinfo=timezone.utc)
            end = start + timedelta(days=1)
            for record in records:
                if record.expires_at is None or not start <= record.expires_at < end:
                    continue
                if getattr(record.renewal_reminders, attr):
                    continue
                due.append({
                    'userId': record.id,
                    'username': record.username,
                    'expiresAt': record.expires_at.isoformat(),
                    'daysRemaining': days,
                    'warningType': key,
                })
        return due

    def mark_reminder_sent(self, user_id: str, warning_type: str):
        if warning_type not in REMINDER_KEYS:
            raise ValidationError(f"Unknown reminder: {warning_type}")
        snapshot = self.store.get(PREMIUM_COLLECTION, user_id)
        if snapshot is None:
            raise NotFoundError("User not found in premium users")
        sent = list(snapshot.get('warningsSent') or [])
        sent.append({'type': warning_type, 'sentAt': self.now()})
        self.store.update(PREMIUM_COLLECTION, user_id, {
            f'renewalReminders.{warning_type}': True,
            'warningsSent': sent,
        })

    def _active_monthly(self) -> List[PremiumUserDocument]:
        snapshots = self.store.query(PREMIUM_COLLECTION, [
            ('subscriptionType', '==', 'monthly'),
            ('isActive', '==', True),
        ])
        return [PremiumUserDocument.from_snapshot(s) for s in snapshots]


def get_premium_service() -> PremiumService:
    return PremiumService(get_store(), monthly_days=current_app.config['PREMIUM_MONTHLY_DAYS'])


# Request schemas
class PremiumTargetSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, str_strip_whitespace=True)

    user_id: str = Field(alias='userId', min_length=1)


class PremiumGrantSchema(PremiumTargetSchema):
    subscription_type: Literal['monthly', 'permanent'] = Field('permanent', alias='subscriptionType')
    username: str = 'User'


@bp.route('/premium/status')
@require_session
def premium_status():
    user = current_session()
    record = get_premium_service().status(user.id)
    return jsonify({
        'success': True,
        'isPremium': bool(record and record.is_active),
        'premium': record.to_dict() if record else None,
    })


@bp.route('/admin/premium/list')
@require_admin
def list_premium_users():
    users = get_premium_service().list_active()
    return jsonify({'success': True, 'data': [u.to_dict() for u in users], 'total': len(users)})


@bp.route('/admin/premium/add', methods=['POST'])
@require_admin
def add_premium_user():
    body = parse_body(PremiumGrantSchema)
    admin = current_session()
    data = get_premium_service().grant(body.user_id, body.subscription_type, admin, username=body.username)
    emit_audit('premium.grant', admin.id, resource_type='premium_user', resource_id=body.user_id,
               new_values={'subscriptionType': body.subscription_type})
    return jsonify({'success': True, 'message': 'Premium access granted successfully', 'data': data})


@bp.route('/admin/premium/remove', methods=['POST'])
@require_admin
def remove_premium_user():
    body = parse_body(PremiumTargetSchema)
    admin = current_session()
    deactivated = get_premium_service().revoke(body.user_id)
    emit_audit('premium.revoke', admin.id, resource_type='premium_user', resource_id=body.user_id,
               new_values={'commandsDeactivated': deactivated})
    return jsonify({
        'success': True,
        'message': 'Premium access removed successfully',
        'commandsDeactivated': deactivated,
    })


@bp.route('/admin/premium/renew', methods=['POST'])
@require_admin
def renew_premium_user():
    body = parse_body(PremiumTargetSchema)
    admin = current_session()
    result = get_premium_service().renew(body.user_id, admin)
    emit_audit('premium.renew', admin.id, resource_type='premium_user', resource_id=body.user_id,
               new_values=result)
    return jsonify({'success': True, 'message': 'Premium subscription renewed', **result})


@premium_cli.command('sweep-expired')
def sweep_expired_command():
    """Deactivate monthly subscriptions whose expiry has passed."""
    expired = get_premium_service().sweep_expired()
    for user in expired:
        click.echo(f"expired {user['userId']} ({user['username'] or 'unknown'}) at {user['expiresAt']}")
    click.echo(f"{len(expired)} subscription(s) expired")


@premium_cli.command('expiring')
@click.option('--mark', is_flag=True, help='Flag each listed reminder as sent.')
def expiring_command(mark):
    """List renewal reminders due 7, 3 and 1 days before expiry."""
    service = get_premium_service()
    due = service.expiring_reminders()
    for reminder in due:
        click.echo(f"{reminder['userId']} expires {reminder['expiresAt']} "
                   f"({reminder['daysRemaining']} day(s), {reminder['warningType']})")
        if mark:
            service.mark_reminder_sent(reminder['userId'], reminder['warningType'])
    click.echo(f"{len(due)} reminder(s) due")
