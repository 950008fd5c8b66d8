"""
Access token store: issuance, verification and revocation of bearer credentials.

Only the SHA-256 of a raw token is persisted. The raw value is handed back once,
at issuance, and is never stored or logged.
"""
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from models import db, AccessToken
from services.errors import (
    InvalidInput, InvalidToken, NotFound, PersistenceFailure, TokenExpired, TokenRevoked,
)

logger = logging.getLogger('relay.tokens')

MAX_NAME_LENGTH = 50


def generate_token() -> tuple:
    """Generate a new bearer token. Returns (raw_token, token_hash)."""
    raw_token = secrets.token_hex(32)  # 256 bits
    return raw_token, hash_token(raw_token)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode('utf-8')).hexdigest()


def _as_utc(value):
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TokenService:
    def __init__(self, default_ttl_days: int = 30, max_ttl_days: int = 365):
        self.default_ttl_days = default_ttl_days
        self.max_ttl_days = max_ttl_days

    def issue(self, user_id: str, name, ttl_days=None) -> dict:
        """Create a token for user_id. Returns {id, token, name, expires_at}; token is raw."""
        if not isinstance(name, str) or not name.strip() or len(name) > MAX_NAME_LENGTH:
            raise InvalidInput(f"name must be 1-{MAX_NAME_LENGTH} characters")
        if ttl_days is None:
            ttl_days = self.default_ttl_days
        # JSON clients may send 30.0 for 30
        if isinstance(ttl_days, float) and ttl_days.is_integer():
            ttl_days = int(ttl_days)
        if isinstance(ttl_days, bool) or not isinstance(ttl_days, int) \
                or ttl_days < 1 or ttl_days > self.max_ttl_days:
            raise InvalidInput(f"expires_in must be an integer between 1 and {self.max_ttl_days}")

        raw_token, token_hash = generate_token()
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(days=ttl_days)
        token = AccessToken(
            user_id=user_id,
            name=name.strip(),
            token_hash=token_hash,
            created_at=now,
            expires_at=expires_at,
        )
        db.session.add(token)
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to store access token for user %s: %s", user_id, e)
            raise PersistenceFailure("Failed to create token")

        logger.info("Issued access token %s for user %s", token.id, user_id)
        return {
            "id": token.id,
            "token": raw_token,
            "name": token.name,
            "expires_at": expires_at.isoformat(),
        }

    def verify(self, raw_token: str) -> AccessToken:
        """Resolve a raw token to its live AccessToken row.

        Unknown tokens raise InvalidToken. Expired and revoked tokens raise
        TokenExpired / TokenRevoked, which is safe to report since both imply
        the caller already held a real token.
        """
        if not raw_token:
            raise InvalidToken()
        token = AccessToken.query.filter_by(token_hash=hash_token(raw_token)).first()
        if token is None:
            raise InvalidToken()
        if token.revoked_at is not None:
            raise TokenRevoked()
        if _as_utc(token.expires_at) <= datetime.now(timezone.utc):
            raise TokenExpired()
        return token

    def revoke(self, token_id: str, owner_id: str) -> None:
        """Revoke a token owned by owner_id.

        Tokens that do not exist, belong to another user, or are already revoked
        all surface as the same NotFound.
        """
        updated = AccessToken.query.filter_by(
            id=token_id, user_id=owner_id, revoked_at=None,
        ).update({'revoked_at': datetime.now(timezone.utc)}, synchronize_session='fetch')
        if not updated:
            db.session.rollback()
            raise NotFound("Token not found or already revoked")
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to revoke token %s: %s", token_id, e)
            raise PersistenceFailure("Failed to revoke token")
        logger.info("Revoked access token %s for user %s", token_id, owner_id)

    def list_tokens(self, user_id: str) -> list:
        """Active (non-revoked) tokens for a user, newest first."""
        tokens = AccessToken.query.filter_by(user_id=user_id, revoked_at=None).order_by(
            AccessToken.created_at.desc()
        ).all()
        return [t.to_dict() for t in tokens]
