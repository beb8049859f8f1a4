"""
Dev mode and maintenance mode toggles
The bot watches both singletons; a dev-mode change made here also raises
``needsNotification`` so the bot announces it.
"""
from typing import Any, Dict

from flask import Blueprint, jsonify
from pydantic import BaseModel, ConfigDict, Field, StrictBool
from structlog import get_logger

from .audit import emit_audit
from .auth import current_session, require_admin
from .errors import StoreUnavailableError
from .models import DevModeDocument, SessionUser
from .security import parse_body
from .store import SERVER_TIMESTAMP, DocumentStore, get_store

logger = get_logger(__name__)

bp = Blueprint('devmode', __name__)

SETTINGS_COLLECTION = 'botSettings'
DEV_MODE_KEY = 'devMode'
STATS_COLLECTION = 'botStats'
STATS_KEY = 'global'


def set_dev_mode(store: DocumentStore, enabled: bool, user: SessionUser):
    store.set(SETTINGS_COLLECTION, DEV_MODE_KEY, {
        'enabled': enabled,
        'lastToggled': SERVER_TIMESTAMP,
        'toggledBy': user.display_name,
        'toggledByUserId': user.id,
        'toggledFrom': 'website',
        'needsNotification': True,
        'notificationSent': False,
    }, merge=True)
    logger.info("Dev mode toggled", enabled=enabled, uid=user.id)


def get_dev_mode(store: DocumentStore) -> DevModeDocument:
    """Current dev-mode flag; a missing document reads as disabled"""
    snapshot = store.get(SETTINGS_COLLECTION, DEV_MODE_KEY)
    if snapshot is None:
        return DevModeDocument(id=DEV_MODE_KEY)
    return DevModeDocument.from_snapshot(snapshot)


def set_maintenance_mode(store: DocumentStore, enabled: bool, user: SessionUser):
    store.set(STATS_COLLECTION, STATS_KEY, {
        'maintenanceMode': enabled,
        'devMode': enabled,
        'lastStatusUpdate': SERVER_TIMESTAMP,
        'lastUpdated': SERVER_TIMESTAMP,
        'maintenanceToggledBy': user.id,
    }, merge=True)
    logger.info("Maintenance mode toggled", enabled=enabled, uid=user.id)


class DevModeSchema(BaseModel):
    enabled: StrictBool


class MaintenanceSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    maintenance_mode: StrictBool = Field(alias='maintenanceMode')


@bp.route('/admin/devmode', methods=['POST'])
@require_admin
def toggle_dev_mode():
    body = parse_body(DevModeSchema)
    admin = current_session()
    set_dev_mode(get_store(), body.enabled, admin)
    emit_audit('devmode.toggle', admin.id, resource_type='bot_settings', resource_id=DEV_MODE_KEY,
               new_values={'enabled': body.enabled})
    return jsonify({
        'success': True,
        'enabled': body.enabled,
        'message': f"Dev mode {'enabled' if body.enabled else 'disabled'} successfully",
    })


@bp.route('/admin/devmode-status')
@require_admin
def dev_mode_status():
    payload: Dict[str, Any] = {'success': True}
    try:
        flag = get_dev_mode(get_store())
    except StoreUnavailableError:
        # Display endpoint: report disabled rather than failing
        payload.update(devMode=False, details=None)
        return jsonify(payload)
    payload.update(devMode=flag.enabled, details=flag.to_dict())
    return jsonify(payload)


@bp.route('/admin/maintenance', methods=['POST'])
@require_admin
def toggle_maintenance_mode():
    body = parse_body(MaintenanceSchema)
    admin = current_session()
    set_maintenance_mode(get_store(), body.maintenance_mode, admin)
    emit_audit('maintenance.toggle', admin.id, resource_type='bot_stats', resource_id=STATS_KEY,
               new_values={'maintenanceMode': body.maintenance_mode})
    return jsonify({
        'success': True,
        'maintenanceMode': body.maintenance_mode,
        'message': f"Maintenance mode {'enabled' if body.maintenance_mode else 'disabled'}",
    })
