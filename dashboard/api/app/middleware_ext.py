"""
Extended middleware: request ID injection, request logging and header redaction
"""
from typing import List
from flask import Flask, request, g
from structlog import get_logger
from structlog.contextvars import bind_contextvars, clear_contextvars
import uuid

logger = get_logger(__name__)

# Responses under these prefixes carry session or admin data
SENSITIVE_PREFIXES = ('/api/auth', '/api/admin', '/api/premium', '/api/custom-commands', '/api/user-')


def init_request_id(app: Flask, header_name: str = 'X-Request-ID'):
    @app.before_request
    def _inject_request_id():
        rid = request.headers.get(header_name) or str(uuid.uuid4())
        g.request_id = rid
        clear_contextvars()
        bind_contextvars(request_id=rid)

    @app.after_request
    def _propagate_request_id(resp):
        if hasattr(g, 'request_id'):
            resp.headers[header_name] = g.request_id
        return resp


def _redact(headers: dict, fields: List[str]) -> dict:
    redacted = {}
    for k, v in headers.items():
        if k.lower() in fields:
            redacted[k] = 'REDACTED'
        else:
            redacted[k] = v
    return redacted


def init_request_logging(app: Flask, redact_fields: List[str]):
    fields = [f.lower() for f in redact_fields]

    @app.before_request
    def _log_request():
        logger.debug(
            "request_received",
            method=request.method,
            path=request.path,
            remote_addr=request.remote_addr,
            headers=_redact(dict(request.headers), fields),
        )

    @app.after_request
    def _log_response(resp):
        # Prevent caching of sensitive endpoints
        if request.path.startswith(SENSITIVE_PREFIXES):
            resp.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, private'
            resp.headers['Pragma'] = 'no-cache'
            resp.headers['Vary'] = 'Authorization, Cookie'

        logger.info(
            "response_sent",
            method=request.method,
            path=request.path,
            status=resp.status_code,
            content_length=resp.content_length,
        )
        return resp
