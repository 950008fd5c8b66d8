import logging
import re as _re
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db, Agent, Offer, User
from services.errors import (
    AlreadyClaimed, Conflict, Forbidden, InvalidInput, NotFound, PersistenceFailure,
    ProfileLookupFailed, ProfileNotFound,
)

logger = logging.getLogger('relay.agents')

_HANDLE_RE = _re.compile(r'^[A-Za-z0-9_]{1,15}$')
_URL_RE = _re.compile(r'^https?://\S+$')


def normalize_handle(handle) -> str:
    """Canonical form of an external handle: no '@', lower-case, Twitter charset."""
    if not isinstance(handle, str):
        raise InvalidInput("handle is required")
    clean = handle.strip().lstrip('@').lower()
    if not _HANDLE_RE.match(clean):
        raise InvalidInput("handle must be 1-15 letters, digits or underscores")
    return clean


class AgentService:
    def __init__(self, profiles):
        self.profiles = profiles

    # ------------------------------------------------------------------
    # Resolution / creation
    # ------------------------------------------------------------------

    def resolve(self, handle: str, actor_id: str) -> Agent:
        """Return the agent for handle, creating it from the external profile if unknown."""
        handle = normalize_handle(handle)
        agent = Agent.query.filter_by(handle=handle).first()
        if agent:
            return agent
        return self._create_from_profile(handle, actor_id, existing_ok=True)

    def create(self, handle: str, actor_id: str) -> Agent:
        """Explicit creation. Fails with Conflict if the handle is already taken."""
        handle = normalize_handle(handle)
        if Agent.query.filter_by(handle=handle).first():
            raise Conflict("Agent already exists")
        return self._create_from_profile(handle, actor_id, existing_ok=False)

    def _create_from_profile(self, handle, actor_id, existing_ok) -> Agent:
        profile = self._fetch_profile(handle)
        now = datetime.now(timezone.utc)
        agent = Agent(
            handle=handle,
            name=profile.display_name or handle,
            bio=profile.bio,
            avatar_url=profile.avatar_url,
            external_profile_id=profile.external_id or None,
            is_verified=False,
            linked_user_id=None,
            created_by=actor_id,
            last_profile_sync=now,
        )
        db.session.add(agent)
        try:
            db.session.commit()
        except IntegrityError:
            # Lost a race on the unique handle: the other insert wins
            db.session.rollback()
            existing = Agent.query.filter_by(handle=handle).first()
            if existing is None:
                logger.error("Agent insert for %s failed without a conflicting row", handle)
                raise PersistenceFailure("Failed to create agent")
            if not existing_ok:
                raise Conflict("Agent already exists")
            logger.info("Agent %s created concurrently, reusing %s", handle, existing.id)
            return existing
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to create agent %s: %s", handle, e)
            raise PersistenceFailure("Failed to create agent")

        logger.info("Created agent %s (%s) for actor %s", agent.id, handle, actor_id)
        return agent

    def _fetch_profile(self, handle):
        result = self.profiles.lookup_by_handle(handle)
        if result.is_found:
            return result.profile
        if result.is_not_found:
            raise ProfileNotFound()
        logger.warning("Profile lookup for %s failed: %s", handle, result.reason)
        raise ProfileLookupFailed()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def get(handle: str) -> Agent:
        agent = Agent.query.filter_by(handle=normalize_handle(handle)).first()
        if not agent:
            raise NotFound("Agent not found")
        return agent

    @staticmethod
    def agent_for_user(user_id: str):
        """The agent a user has claimed, or None."""
        return Agent.query.filter_by(linked_user_id=user_id).first()

    @staticmethod
    def list_agents(search=None, claimed=None, limit=50, offset=0):
        query = Agent.query
        if search:
            pattern = f"%{search.strip().lstrip('@')}%"
            query = query.filter(or_(Agent.name.ilike(pattern), Agent.handle.ilike(pattern)))
        if claimed is True:
            query = query.filter(Agent.linked_user_id.isnot(None))
        elif claimed is False:
            query = query.filter(Agent.linked_user_id.is_(None))
        total = query.count()
        agents = query.order_by(Agent.created_at.desc()).offset(offset).limit(limit).all()
        return agents, total

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def claim(self, user_id: str, handle: str = None) -> Agent:
        """Link the agent matching the user's own external handle to the user."""
        user = db.session.get(User, user_id)
        if not user or not user.twitter_handle:
            raise InvalidInput("Twitter handle not found for this account")
        own_handle = normalize_handle(user.twitter_handle)
        if handle is not None and normalize_handle(handle) != own_handle:
            raise InvalidInput("Handle does not match your linked account")

        agent = Agent.query.filter_by(handle=own_handle).first()
        if not agent:
            raise NotFound("Agent profile not found")
        if agent.linked_user_id == user_id:
            return agent
        if agent.linked_user_id is not None:
            raise AlreadyClaimed()

        profile = self._fetch_profile(own_handle)
        now = datetime.now(timezone.utc)
        # Conditional update so two claimants cannot both win
        updated = Agent.query.filter_by(id=agent.id, linked_user_id=None).update({
            'linked_user_id': user_id,
            'name': profile.display_name or agent.name,
            'bio': profile.bio,
            'avatar_url': profile.avatar_url,
            'external_profile_id': profile.external_id or agent.external_profile_id,
            'last_profile_sync': now,
            'updated_at': now,
        }, synchronize_session='fetch')
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to claim agent %s: %s", agent.id, e)
            raise PersistenceFailure("Failed to update agent")

        db.session.refresh(agent)
        if not updated and agent.linked_user_id != user_id:
            raise AlreadyClaimed()
        logger.info("Agent %s claimed by user %s", agent.id, user_id)
        return agent

    def update(self, handle: str, actor_id: str, data: dict) -> Agent:
        agent = self.get(handle)
        if agent.owner_id() != actor_id:
            raise Forbidden("Cannot update another user's agent")

        if 'name' in data:
            name = data['name']
            if not isinstance(name, str) or not 1 <= len(name.strip()) <= 50:
                raise InvalidInput("name must be 1-50 characters")
            agent.name = name.strip()
        if 'bio' in data:
            bio = data['bio']
            if not isinstance(bio, str) or not 1 <= len(bio) <= 500:
                raise InvalidInput("bio must be 1-500 characters")
            agent.bio = bio
        if 'avatar_url' in data:
            url = data['avatar_url']
            if not isinstance(url, str) or not _URL_RE.match(url):
                raise InvalidInput("avatar_url must be an http(s) URL")
            agent.avatar_url = url

        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to update agent %s: %s", agent.id, e)
            raise PersistenceFailure("Failed to update agent")
        return agent

    def delete(self, handle: str, actor_id: str) -> None:
        agent = self.get(handle)
        if agent.owner_id() != actor_id:
            raise Forbidden("Cannot delete another user's agent")
        if Offer.query.filter_by(seller_id=agent.id).first():
            raise Conflict("Agent has offers and cannot be deleted")

        db.session.delete(agent)
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to delete agent %s: %s", agent.id, e)
            raise PersistenceFailure("Failed to delete agent")
        logger.info("Agent %s deleted by user %s", agent.id, actor_id)

    # ------------------------------------------------------------------
    # Account profile sync
    # ------------------------------------------------------------------

    def sync_account(self, user_id: str) -> User:
        """Refresh a user's display fields from their external profile."""
        user = db.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        raw_handle = user.twitter_handle or user.username
        if not raw_handle:
            raise InvalidInput("Twitter handle not found. Please sign in with Twitter again.")
        handle = normalize_handle(raw_handle)

        profile = self._fetch_profile(handle)
        user.twitter_handle = handle
        user.display_name = profile.display_name
        user.bio = profile.bio
        user.avatar_url = profile.avatar_url
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to sync account %s: %s", user_id, e)
            raise PersistenceFailure("Failed to update profile")
        return user
