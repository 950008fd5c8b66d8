"""
AgentJobs Relay: HTTP server
Flask application exposing the offer ledger, agent directory, access tokens
and the job lifecycle.

Job statuses:  created -> funded -> started -> delivered -> completed | cancelled
"""

from flask import Flask, request, jsonify, g, session
from werkzeug.exceptions import HTTPException
from models import db, User
from config import Config
from sqlalchemy.exc import SQLAlchemyError
from services.auth_service import require_user, require_agent, get_token_service
from services.agent_service import AgentService
from services.errors import RelayError, InvalidInput, NotFound
from services.job_service import JobService, parse_job_id
from services.offer_service import OfferService
from services.profile_service import get_profile_service
from services.rate_limiter import rate_limit

import json
import logging
import os
import uuid

# ---------------------------------------------------------------------------
# Structured logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Produce valid JSON log lines even when message contains quotes/newlines."""
    def format(self, record):
        from flask import has_request_context
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            rid = getattr(g, 'request_id', None)
            if rid:
                entry["request_id"] = rid
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


_log_handler = logging.StreamHandler()
_log_handler.setFormatter(_JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[_log_handler])
logger = logging.getLogger('relay')

# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)

# Enable WAL mode for SQLite concurrent access (test process + running server)
from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine

@sa_event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    import sqlite3
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

# ---------------------------------------------------------------------------
# Database bootstrap
# ---------------------------------------------------------------------------

logger.info("Starting AgentJobs Relay")
if 'sqlite' in Config.SQLALCHEMY_DATABASE_URI:
    logger.warning("SQLite detected. Use PostgreSQL for production deployments.")

# Startup guard: reject unsafe defaults in production
Config.validate_production()

if not Config.VERIFIER_USER_ID:
    logger.warning("VERIFICATION_AGENT not set. fund/complete will be refused.")
if not Config.TWITTER_BEARER_TOKEN:
    logger.warning("TWITTER_BEARER_TOKEN not set. Agent profile lookups will fail.")

with app.app_context():
    try:
        db.create_all()
        logger.info("Database tables created / verified")
    except SQLAlchemyError as e:
        logger.critical("Database init failed: %s", e)

# Correlation ID: attach unique request ID to every request
@app.before_request
def _attach_request_id():
    rid = request.headers.get('X-Request-ID') or str(uuid.uuid4())
    g.request_id = rid

@app.after_request
def _add_request_id_header(response):
    rid = getattr(g, 'request_id', None)
    if rid:
        response.headers['X-Request-ID'] = rid
    return response

# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


@app.errorhandler(RelayError)
def _handle_relay_error(e):
    if e.status_code >= 500:
        logger.error("%s on %s %s: %s", type(e).__name__, request.method, request.path, e.message)
    return jsonify({"error": e.message}), e.status_code


@app.errorhandler(HTTPException)
def _handle_http_error(e):
    return jsonify({"error": e.description}), e.code


@app.errorhandler(Exception)
def _handle_unexpected(e):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    db.session.rollback()
    return jsonify({"error": "Internal server error"}), 500

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInput("Invalid request body")
    return data


def _int_arg(name, default):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidInput("Invalid query parameters")


def _bool_arg(name):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return None
    if raw.lower() in ('true', '1'):
        return True
    if raw.lower() in ('false', '0'):
        return False
    raise InvalidInput("Invalid query parameters")


def _agent_service() -> AgentService:
    return AgentService(get_profile_service())


def _job_service() -> JobService:
    # Verifier identity injected from configuration, never read inside a transition
    return JobService(verifier_user_id=app.config.get('VERIFIER_USER_ID'))


# ===================================================================
# 1. GET /health
# ===================================================================


@app.route('/health', methods=['GET'])
def health():
    result = {"status": "healthy", "service": "agentjobs-relay"}
    return jsonify(result), 200


# ===================================================================
# 2. Session: dev login / logout
# ===================================================================


@app.route('/auth/dev-login', methods=['POST'])
def dev_login():
    """DEV_MODE only: upsert a user by username and sign the session in."""
    if not app.config.get('DEV_MODE'):
        raise NotFound("Not found")

    data = _json_body()
    username = data.get('username')
    if not isinstance(username, str) or not 1 <= len(username.strip()) <= 100:
        raise InvalidInput("username must be 1-100 characters")
    twitter_handle = data.get('twitter_handle')
    if twitter_handle is not None and not isinstance(twitter_handle, str):
        raise InvalidInput("twitter_handle must be a string")

    user = User.query.filter_by(username=username.strip()).first()
    if not user:
        user = User(username=username.strip())
        db.session.add(user)
    if twitter_handle:
        user.twitter_handle = twitter_handle.strip().lstrip('@').lower()
    db.session.commit()

    session['user_id'] = user.id
    logger.info("Dev login for user %s", user.id)
    return jsonify(user.to_dict()), 200


@app.route('/auth/logout', methods=['POST'])
def logout():
    session.pop('user_id', None)
    return jsonify({"success": True}), 200


@app.route('/account', methods=['PUT'])
@require_user
def sync_account():
    user = _agent_service().sync_account(g.current_user_id)
    return jsonify(user.to_dict()), 200


# ===================================================================
# 3. /tokens: issue | list | revoke
# ===================================================================


@app.route('/tokens', methods=['POST'])
@require_user
@rate_limit()
def issue_token():
    data = _json_body()
    ttl_days = data.get('expires_in', data.get('expiresIn'))
    result = get_token_service().issue(g.current_user_id, data.get('name'), ttl_days)
    return jsonify({
        "id": result["id"],
        "token": result["token"],
        "name": result["name"],
        "expires_at": result["expires_at"],
    }), 200


@app.route('/tokens', methods=['GET'])
@require_user
def list_tokens():
    return jsonify(get_token_service().list_tokens(g.current_user_id)), 200


@app.route('/tokens/<token_id>/revoke', methods=['POST'])
@require_user
def revoke_token(token_id):
    try:
        token_id = parse_job_id(token_id, kind='token')
    except InvalidInput:
        # Malformed ids are indistinguishable from someone else's token
        raise NotFound("Token not found or already revoked")
    get_token_service().revoke(token_id, g.current_user_id)
    return jsonify({"success": True}), 200


# ===================================================================
# 4. /agents: directory
# ===================================================================


@app.route('/agents', methods=['POST'])
@require_user
@rate_limit()
def create_agent():
    data = _json_body()
    agent = _agent_service().create(data.get('handle'), actor_id=g.current_user_id)
    return jsonify(agent.to_dict()), 200


@app.route('/agents', methods=['GET'])
def list_agents():
    limit = _int_arg('limit', 50)
    offset = _int_arg('offset', 0)
    if not 1 <= limit <= 100 or offset < 0:
        raise InvalidInput("Invalid query parameters")

    agents, total = AgentService.list_agents(
        search=request.args.get('search'),
        claimed=_bool_arg('claimed'),
        limit=limit, offset=offset,
    )
    return jsonify({
        "agents": [a.to_dict() for a in agents],
        "total": total,
        "limit": limit,
        "offset": offset,
    }), 200


@app.route('/agents/claim', methods=['POST'])
@require_user
def claim_agent():
    # Body is optional; when present it must be an object
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    elif not isinstance(data, dict):
        raise InvalidInput("Invalid request body")
    agent = _agent_service().claim(g.current_user_id, data.get('handle'))
    return jsonify(agent.to_dict()), 200


@app.route('/agents/<handle>', methods=['GET'])
def get_agent(handle):
    return jsonify(AgentService.get(handle).to_dict()), 200


@app.route('/agents/<handle>', methods=['PATCH'])
@require_user
def update_agent(handle):
    agent = _agent_service().update(handle, g.current_user_id, _json_body())
    return jsonify(agent.to_dict()), 200


@app.route('/agents/<handle>', methods=['DELETE'])
@require_user
def delete_agent(handle):
    _agent_service().delete(handle, g.current_user_id)
    return jsonify({"success": True}), 200


# ===================================================================
# 5. Offers
# ===================================================================


@app.route('/agents/<handle>/offers', methods=['POST'])
@require_user
@rate_limit()
def create_offer(handle):
    data = _json_body()
    result = OfferService(_agent_service()).create_offer(
        g.current_user_id, handle,
        amount=data.get('amount'),
        currency=data.get('currency'),
        description=data.get('description'),
    )
    return jsonify(result), 200


@app.route('/offers', methods=['GET'])
@require_user
def list_offers():
    result = OfferService.list_offers(
        g.current_user_id,
        status=request.args.get('status') or None,
        seller_id=request.args.get('seller_id') or None,
        buyer_id=request.args.get('buyer_id') or None,
        sort_by=request.args.get('sort_by', 'created_at'),
        sort_order=request.args.get('sort_order', 'desc'),
        page=_int_arg('page', 1),
        limit=_int_arg('limit', 10),
        show_all=bool(_bool_arg('show_all')),
    )
    return jsonify(result), 200


@app.route('/offers/<offer_id>', methods=['GET'])
@require_user
def get_offer(offer_id):
    offer_id = parse_job_id(offer_id, kind='offer')
    return jsonify(OfferService.get_offer(offer_id, g.current_user_id)), 200


# ===================================================================
# 6. Jobs: reads
# ===================================================================


@app.route('/jobs', methods=['GET'])
def list_jobs():
    result = JobService.list_jobs(
        status=request.args.get('status') or None,
        seller_id=request.args.get('seller_id') or None,
        buyer_id=request.args.get('buyer_id') or None,
        sort_by=request.args.get('sort_by', 'created_at'),
        sort_order=request.args.get('sort_order', 'desc'),
        page=_int_arg('page', 1),
        limit=_int_arg('limit', 10),
    )
    return jsonify(result), 200


@app.route('/jobs/<job_id>', methods=['GET'])
def get_job(job_id):
    job = JobService.get_job(parse_job_id(job_id))
    return jsonify(JobService.to_dict(job)), 200


# ===================================================================
# 7. Jobs: lifecycle transitions
# ===================================================================


@app.route('/jobs/<job_id>/fund', methods=['PUT'])
@require_user
def fund_job(job_id):
    job = _job_service().fund(parse_job_id(job_id), g.current_user_id)
    return jsonify(JobService.to_dict(job)), 200


@app.route('/jobs/<job_id>/start', methods=['PUT'])
@require_agent
def start_job(job_id):
    job = _job_service().start(parse_job_id(job_id), g.current_agent_id)
    return jsonify(JobService.to_dict(job)), 200


@app.route('/jobs/<job_id>/deliver', methods=['PUT'])
@require_agent
def deliver_job(job_id):
    job_id = parse_job_id(job_id)
    data = _json_body()
    job = _job_service().deliver(job_id, g.current_agent_id, data.get('delivered_url'))
    return jsonify({"message": "Job delivered successfully", "job": JobService.to_dict(job)}), 200


@app.route('/jobs/<job_id>/complete', methods=['PUT'])
@require_user
def complete_job(job_id):
    job = _job_service().complete(parse_job_id(job_id), g.current_user_id)
    return jsonify(JobService.to_dict(job)), 200


@app.route('/jobs/<job_id>/cancel', methods=['PUT'])
@require_user
def cancel_job(job_id):
    job = _job_service().cancel(parse_job_id(job_id), g.current_user_id)
    return jsonify(JobService.to_dict(job)), 200


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    app.run(port=5005, debug=os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1'))
