"""
Authentication Blueprint for Flask API
Implements Discord OAuth2 login and JWT sessions carrying an admin flag
"""
import secrets
import time
from functools import wraps
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import redis
import requests
from flask import Blueprint, current_app, jsonify, redirect, request, session
from flask_jwt_extended import (
    create_access_token, create_refresh_token, get_jwt, get_jwt_identity, jwt_required,
    set_access_cookies, set_refresh_cookies, unset_jwt_cookies, verify_jwt_in_request,
)
from structlog import get_logger

from .audit import emit_audit
from .errors import ForbiddenError, StoreUnavailableError, UnauthorizedError, ValidationError
from .extensions import limiter
from .models import SessionUser
from .store import SERVER_TIMESTAMP, get_store

logger = get_logger(__name__)

bp = Blueprint('auth', __name__)

# Discord OAuth2 configuration
DISCORD_OAUTH_URL = 'https://discord.com/api/oauth2/authorize'
DISCORD_TOKEN_URL = 'https://discord.com/api/oauth2/token'
DISCORD_CDN_URL = 'https://cdn.discordapp.com'


class DiscordOAuthClient:
    """Discord OAuth2 authorization-code client"""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str,
                 api_base_url: str = 'https://discord.com/api/v10', timeout: int = 10):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.api_base_url = api_base_url.rstrip('/')
        self.timeout = timeout

    def generate_auth_url(self, state: str, scopes: Optional[list] = None) -> str:
        """Generate Discord OAuth2 authorization URL"""
        if not scopes:
            scopes = current_app.config['OAUTH2_SCOPES']
        params = {
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'response_type': 'code',
            'scope': ' '.join(scopes),
            'state': state,
            'prompt': 'none',
        }
        return f"{DISCORD_OAUTH_URL}?{urlencode(params)}"

    def exchange_code_for_token(self, code: str) -> Dict[str, Any]:
        """Exchange authorization code for access token"""
        data = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
        }
        try:
            response = requests.post(DISCORD_TOKEN_URL, data=data, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.error("Token exchange failed", error=str(e))
            raise UnauthorizedError("Failed to exchange authorization code")

    def get_user_info(self, access_token: str) -> Dict[str, Any]:
        """Get user information from Discord API"""
        headers = {'Authorization': f'Bearer {access_token}'}
        try:
            response = requests.get(f"{self.api_base_url}/users/@me", headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.error("Profile fetch failed", error=str(e))
            raise UnauthorizedError("Failed to fetch Discord profile")


def get_oauth_client() -> DiscordOAuthClient:
    """Get Discord OAuth client instance"""
    return DiscordOAuthClient(
        client_id=current_app.config['DISCORD_CLIENT_ID'],
        client_secret=current_app.config['DISCORD_CLIENT_SECRET'],
        redirect_uri=current_app.config['DISCORD_REDIRECT_URI'],
        api_base_url=current_app.config['DISCORD_API_BASE_URL'],
    )


def avatar_url(user_id: str, avatar: Optional[str]) -> Optional[str]:
    if not avatar:
        return None
    return f"{DISCORD_CDN_URL}/avatars/{user_id}/{avatar}.png"


def is_admin_user(user_id: Optional[str]) -> bool:
    """Membership test against the configured admin allow-list"""
    if not user_id:
        return False
    return str(user_id) in {str(uid) for uid in current_app.config.get('ADMIN_USER_IDS', [])}


def session_claims(user: SessionUser) -> Dict[str, Any]:
    # No isAdmin claim: the flag is recomputed per request
    return {'name': user.name, 'email': user.email, 'image': user.image}


def issue_tokens(user: SessionUser) -> Dict[str, str]:
    claims = session_claims(user)
    return {
        'access_token': create_access_token(identity=user.id, additional_claims=claims),
        'refresh_token': create_refresh_token(identity=user.id, additional_claims=claims),
    }


def upsert_user_profile(profile: Dict[str, Any]):
    """Record the latest Discord profile; a store failure never blocks login"""
    user_id = str(profile['id'])
    try:
        get_store().set('users', user_id, {
            'id': user_id,
            'username': profile.get('username'),
            'avatar': profile.get('avatar'),
            'email': profile.get('email'),
            'lastLogin': SERVER_TIMESTAMP,
        }, merge=True)
    except StoreUnavailableError as e:
        logger.warning("User profile upsert failed", uid=user_id, error=e.message)


def current_session() -> SessionUser:
    """Session of the verified JWT on this request, with a fresh admin flag"""
    user_id = str(get_jwt_identity())
    claims = get_jwt()
    return SessionUser(
        id=user_id,
        name=claims.get('name'),
        email=claims.get('email'),
        image=claims.get('image'),
        is_admin=is_admin_user(user_id),
    )


def require_session(fn):
    """Reject requests without a valid access token (401)"""
    @wraps(fn)
    def decorated_function(*args, **kwargs):
        verify_jwt_in_request()
        return fn(*args, **kwargs)
    return decorated_function


def require_admin(fn):
    """Reject anonymous requests (401) and non-admin sessions (403)"""
    @wraps(fn)
    def decorated_function(*args, **kwargs):
        verify_jwt_in_request()
        user = current_session()
        if not user.is_admin:
            emit_audit('auth.admin_check_failed', user.id, resource_type='endpoint',
                       resource_id=request.path, success=False)
            raise ForbiddenError("Admin access required")
        return fn(*args, **kwargs)
    return decorated_function


@bp.route('/login')
@limiter.limit("10 per minute")
def login():
    """Initiate Discord OAuth2 login flow"""
    state = secrets.token_urlsafe(32)
    session['oauth_state'] = state
    auth_url = get_oauth_client().generate_auth_url(state)
    logger.info("Login initiated")
    return redirect(auth_url)


@bp.route('/callback')
@limiter.limit("10 per minute")
def oauth_callback():
    """Handle Discord OAuth2 callback"""
    code = request.args.get('code')
    state = request.args.get('state')
    error = request.args.get('error')

    if error:
        logger.warning("OAuth error", error=error)
        raise ValidationError(f"OAuth error: {error}")
    if not code or not state:
        raise ValidationError("Missing authorization code or state")
    expected = session.pop('oauth_state', None)
    if not expected or not secrets.compare_digest(expected, state):
        raise ValidationError("Invalid state parameter")

    oauth_client = get_oauth_client()
    token_data = oauth_client.exchange_code_for_token(code)
    profile = oauth_client.get_user_info(token_data['access_token'])

    upsert_user_profile(profile)

    user_id = str(profile['id'])
    user = SessionUser(
        id=user_id,
        name=profile.get('global_name') or profile.get('username'),
        email=profile.get('email'),
        image=avatar_url(user_id, profile.get('avatar')),
        is_admin=is_admin_user(user_id),
    )
    tokens = issue_tokens(user)
    emit_audit('auth.login_success', user.id, resource_type='user', resource_id=user.id)

    response = redirect(current_app.config['FRONTEND_URL'])
    set_access_cookies(response, tokens['access_token'])
    set_refresh_cookies(response, tokens['refresh_token'])
    return response


@bp.route('/session')
@require_session
def get_session():
    """Current session with the admin flag re-derived from configuration"""
    user = current_session()
    payload = user.to_dict()
    payload['expires'] = get_jwt().get('exp')
    return jsonify(payload)


@bp.route('/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh_token():
    """Issue a new access token from a refresh token"""
    user = current_session()
    access_token = create_access_token(identity=user.id, additional_claims=session_claims(user))
    response = jsonify({
        'access_token': access_token,
        'expires_in': current_app.config['JWT_ACCESS_TOKEN_EXPIRES'],
        'user': user.to_dict(),
    })
    set_access_cookies(response, access_token)
    return response


@bp.route('/logout', methods=['POST'])
@jwt_required()
def logout():
    """Logout and invalidate the current access token"""
    user_id = get_jwt_identity()
    claims = get_jwt()
    jti = claims.get('jti')
    exp = claims.get('exp')  # epoch seconds
    ttl = max(int(exp - time.time()), 0) if exp else 0

    store = current_app.extensions.get('token_store')
    if store and jti:
        try:
            # Blocklist the token until it would have expired
            store.setex(f"jwt:blocklist:{jti}", ttl or 1, '1')
        except redis.RedisError as e:
            logger.warning("Failed to revoke access token", error=str(e))

    emit_audit('auth.logout', user_id, resource_type='user', resource_id=user_id)
    response = jsonify({'success': True, 'message': 'Logged out successfully'})
    unset_jwt_cookies(response)
    return response
