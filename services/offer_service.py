"""
Offer ledger: creates an Offer and its paired Job as one unit.
"""
import logging
import math
from decimal import Decimal, InvalidOperation

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from models import db, Agent, Job, Offer
from services.errors import Forbidden, InvalidInput, NotFound, PersistenceFailure

logger = logging.getLogger('relay.offers')

MAX_CURRENCY_LENGTH = 32
MAX_DESCRIPTION_LENGTH = 5000
OFFER_STATUSES = ('created', 'funded', 'started', 'delivered', 'completed', 'cancelled')
_SORT_FIELDS = {'created_at': Offer.created_at, 'amount': Offer.amount}


def parse_amount(raw) -> Decimal:
    # Booleans are ints in Python; reject them explicitly
    if raw is None or isinstance(raw, bool):
        raise InvalidInput("amount must be a positive number")
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidInput("amount must be a positive number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidInput("amount must be a positive number")
    return amount


class OfferService:
    def __init__(self, agents):
        self.agents = agents

    def create_offer(self, buyer_id: str, handle: str, amount, currency, description) -> dict:
        """Resolve the seller agent, then insert Offer + Job atomically.

        Returns {agent_id, offer_id, job_id}.
        """
        amount = parse_amount(amount)
        if not isinstance(currency, str) or not currency.strip() \
                or len(currency.strip()) > MAX_CURRENCY_LENGTH:
            raise InvalidInput(f"currency must be 1-{MAX_CURRENCY_LENGTH} characters")
        if not isinstance(description, str) or not description.strip() \
                or len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvalidInput(f"description must be 1-{MAX_DESCRIPTION_LENGTH} characters")

        agent = self.agents.resolve(handle, actor_id=buyer_id)
        agent_id = agent.id

        try:
            offer = Offer(
                seller_id=agent_id,
                buyer_id=buyer_id,
                amount=amount,
                currency=currency.strip(),
                description=description,
                status='created',
            )
            db.session.add(offer)
            db.session.flush()

            job = Job(
                offer_id=offer.id,
                seller_id=agent_id,
                buyer_id=buyer_id,
                status='created',
            )
            db.session.add(job)
            db.session.commit()
        except SQLAlchemyError as e:
            logger.error("Offer/job creation failed for buyer %s, agent %s: %s", buyer_id, agent_id, e)
            self._rollback()
            raise PersistenceFailure("Failed to create offer and job")

        logger.info("Created offer %s and job %s (buyer=%s, agent=%s)",
                    offer.id, job.id, buyer_id, agent_id)
        return {"agent_id": agent_id, "offer_id": offer.id, "job_id": job.id}

    @staticmethod
    def _rollback():
        # A failed rollback is logged but never replaces the original error
        try:
            db.session.rollback()
        except SQLAlchemyError as e:
            logger.error("Rollback after failed offer creation also failed: %s", e)

    @staticmethod
    def get_offer(offer_id: str, user_id: str) -> dict:
        offer = db.session.get(Offer, offer_id)
        if not offer:
            raise NotFound("Offer not found")
        seller = offer.seller
        if offer.buyer_id != user_id and (seller is None or seller.linked_user_id != user_id):
            raise Forbidden("Forbidden")

        result = offer.to_dict()
        result["seller"] = dict(seller.summary(), bio=seller.bio) if seller else None
        result["job"] = None
        if offer.job:
            job = offer.job.to_dict()
            result["job"] = {k: job[k] for k in (
                "id", "status", "funded_at", "started_at", "delivered_at", "completed_at", "cancelled_at",
            )}
        return result

    @staticmethod
    def list_offers(user_id: str, status=None, seller_id=None, buyer_id=None,
                    sort_by='created_at', sort_order='desc', page=1, limit=10,
                    show_all=False) -> dict:
        if status is not None and status not in OFFER_STATUSES:
            raise InvalidInput("Invalid query parameters")
        if sort_by not in _SORT_FIELDS or sort_order not in ('asc', 'desc'):
            raise InvalidInput("Invalid query parameters")
        if page < 1 or not 1 <= limit <= 100:
            raise InvalidInput("Invalid query parameters")

        query = Offer.query
        if status:
            query = query.filter(Offer.status == status)
        if seller_id:
            query = query.filter(Offer.seller_id == seller_id)
        if buyer_id:
            query = query.filter(Offer.buyer_id == buyer_id)
        if not show_all:
            owned_agent_ids = select(Agent.id).where(Agent.linked_user_id == user_id)
            query = query.filter(or_(Offer.buyer_id == user_id, Offer.seller_id.in_(owned_agent_ids)))

        total = query.count()
        column = _SORT_FIELDS[sort_by]
        query = query.order_by(column.asc() if sort_order == 'asc' else column.desc())
        offers = query.offset((page - 1) * limit).limit(limit).all()

        items = []
        for offer in offers:
            item = offer.to_dict()
            item["job"] = {"id": offer.job.id, "status": offer.job.status} if offer.job else None
            items.append(item)
        return {
            "offers": items,
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "total_pages": math.ceil(total / limit),
            },
        }
