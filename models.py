from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
from decimal import Decimal
import uuid

db = SQLAlchemy()

# Job / offer statuses, in lifecycle order. 'cancelled' is the absorbing escape hatch.
JOB_STATUSES = ('created', 'funded', 'started', 'delivered', 'completed', 'cancelled')
TERMINAL_STATUSES = ('completed', 'cancelled')


def _uuid():
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


def _iso(value):
    if not value:
        return None
    # SQLite hands back naive datetimes; every stored value is UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _decimal_str(value):
    # Exact string form without the column's trailing zeros: 100.000000000 -> "100"
    if value is None:
        return None
    return format(Decimal(value).normalize(), 'f')


class User(db.Model):
    """Account identity (buyers, agent owners, the verifier). Created by the auth layer."""
    __tablename__ = 'users'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    username = db.Column(db.String(100), nullable=False, unique=True)
    # Externally linked handle captured at authentication time
    twitter_handle = db.Column(db.String(50), nullable=True)
    display_name = db.Column(db.String(100))
    avatar_url = db.Column(db.Text)
    bio = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "twitter_handle": self.twitter_handle,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "bio": self.bio,
            "created_at": _iso(self.created_at),
        }


class Agent(db.Model):
    __tablename__ = 'agents'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    handle = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(100), nullable=False)
    bio = db.Column(db.Text, default='')
    avatar_url = db.Column(db.Text, default='')
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    # Ownership link, set once a user whose own handle matches claims the profile
    linked_user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=True, index=True)
    external_profile_id = db.Column(db.String(64), nullable=True)
    created_by = db.Column(db.String(36), nullable=True)
    last_profile_sync = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def owner_id(self):
        """Claimed agents belong to the linked user, unclaimed ones to their creator."""
        return self.linked_user_id or self.created_by

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "handle": self.handle,
            "name": self.name,
            "bio": self.bio,
            "avatar_url": self.avatar_url,
            "is_verified": bool(self.is_verified),
            "linked_user_id": self.linked_user_id,
            "external_profile_id": self.external_profile_id,
            "created_by": self.created_by,
            "last_profile_sync": _iso(self.last_profile_sync),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def summary(self) -> dict:
        return {
            "id": self.id,
            "handle": self.handle,
            "name": self.name,
            "avatar_url": self.avatar_url,
        }


class Offer(db.Model):
    __tablename__ = 'offers'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    seller_id = db.Column(db.String(36), db.ForeignKey('agents.id'), nullable=False, index=True)
    buyer_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(20, 9), nullable=False)
    currency = db.Column(db.String(32), nullable=False)
    description = db.Column(db.Text, nullable=False)
    escrow_address = db.Column(db.String(128), nullable=True)
    # Mirrors the paired job's status
    status = db.Column(db.String(20), nullable=False, default='created')
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    seller = db.relationship('Agent')
    job = db.relationship('Job', back_populates='offer', uselist=False)

    __table_args__ = (
        db.CheckConstraint('amount > 0', name='ck_offers_amount_positive'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "buyer_id": self.buyer_id,
            "amount": _decimal_str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "escrow_address": self.escrow_address,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def summary(self) -> dict:
        return {
            "id": self.id,
            "amount": _decimal_str(self.amount),
            "currency": self.currency,
            "description": self.description,
        }


class Job(db.Model):
    __tablename__ = 'jobs'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    offer_id = db.Column(db.String(36), db.ForeignKey('offers.id'), nullable=False, unique=True)
    seller_id = db.Column(db.String(36), db.ForeignKey('agents.id'), nullable=False)
    buyer_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='created', index=True)
    # Lifecycle stamps: each written only by the transition that reaches it
    funded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_url = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    offer = db.relationship('Offer', back_populates='job')
    seller = db.relationship('Agent')

    __table_args__ = (
        db.Index('ix_jobs_seller_id', 'seller_id'),
        db.Index('ix_jobs_buyer_id', 'buyer_id'),
        db.Index('ix_jobs_status_created', 'status', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "seller_id": self.seller_id,
            "buyer_id": self.buyer_id,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "funded_at": _iso(self.funded_at),
            "started_at": _iso(self.started_at),
            "delivered_at": _iso(self.delivered_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "delivered_url": self.delivered_url,
            "updated_at": _iso(self.updated_at),
        }


class AccessToken(db.Model):
    """Bearer credential. Only the SHA-256 of the raw value is stored."""
    __tablename__ = 'access_tokens'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    name = db.Column(db.String(50), nullable=False)
    token_hash = db.Column(db.String(64), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "revoked_at": _iso(self.revoked_at),
        }
