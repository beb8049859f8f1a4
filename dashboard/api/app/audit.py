"""
Structured audit event emission for admin and owner mutations.
"""
from typing import Any, Dict, Optional
from flask import request, g, has_request_context
from structlog import get_logger

logger = get_logger('dashboard.audit')


def emit_audit(action: str, user_id: Optional[str], resource_type: Optional[str] = None,
               resource_id: Optional[str] = None, new_values: Optional[Dict[str, Any]] = None,
               success: bool = True):
    event = {
        'action': action,
        'uid': user_id,
        'resource_type': resource_type,
        'resource_id': resource_id,
        'success': success,
    }
    if new_values:
        event['new_values'] = new_values
    if has_request_context():
        event['ip'] = request.headers.get('X-Forwarded-For', request.remote_addr)
        event['rid'] = getattr(g, 'request_id', None)
    # Minimal data only (no tokens, no emails)
    logger.info("audit_event", **event)
    return event
