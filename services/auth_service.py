"""
Request authentication: session users and bearer-token agents.
"""
import logging
from functools import wraps

from flask import current_app, g, request, session

from models import db, User
from services.agent_service import AgentService
from services.errors import Forbidden, Unauthorized
from services.token_service import TokenService

logger = logging.getLogger('relay')


def get_token_service() -> TokenService:
    return TokenService(
        default_ttl_days=current_app.config.get('TOKEN_DEFAULT_TTL_DAYS', 30),
        max_ttl_days=current_app.config.get('TOKEN_MAX_TTL_DAYS', 365),
    )


def _bearer_token():
    """Raw bearer value, '' for a malformed header, None when the header is absent."""
    auth_header = request.headers.get('Authorization')
    if auth_header is None:
        return None
    if not auth_header.startswith('Bearer '):
        return ''
    return auth_header[7:].strip()  # strip "Bearer "


def _session_user_id():
    user_id = session.get('user_id')
    if not user_id or db.session.get(User, user_id) is None:
        return None
    return user_id


def require_user(f):
    """Decorator: require a signed-in user.

    A bearer header, when present, takes precedence and must verify; otherwise
    the session cookie is used. Sets g.current_user_id on success.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        raw = _bearer_token()
        if raw is not None:
            if not raw:
                raise Unauthorized("Missing or invalid authorization header")
            token = get_token_service().verify(raw)
            g.current_user_id = token.user_id
        else:
            user_id = _session_user_id()
            if not user_id:
                raise Unauthorized("Unauthorized")
            g.current_user_id = user_id
        return f(*args, **kwargs)
    return decorated


def require_agent(f):
    """Decorator: require a bearer token whose user has claimed an agent.

    Sets g.current_user_id and g.current_agent_id on success.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        raw = _bearer_token()
        if not raw:
            raise Unauthorized("Missing or invalid authorization header")
        token = get_token_service().verify(raw)

        agent = AgentService.agent_for_user(token.user_id)
        if not agent:
            logger.warning("Token %s has no agent linked to user %s", token.id, token.user_id)
            raise Forbidden("Agent not found for this token")

        g.current_user_id = token.user_id
        g.current_agent_id = agent.id
        return f(*args, **kwargs)
    return decorated
