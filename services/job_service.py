"""
Job lifecycle state machine.

    created -> funded -> started -> delivered -> completed
    any non-terminal state -> cancelled

fund and complete are attested by the privileged verifier, start and deliver by
the seller agent. Every transition is a compare-and-swap UPDATE on the job's
current status, so of two racing callers exactly one wins; the loser sees
InvalidState. The paired offer's status is updated in the same commit.
"""
import logging
import math
import uuid
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from models import db, Job, Offer, JOB_STATUSES, TERMINAL_STATUSES
from services.errors import (
    Forbidden, InvalidInput, InvalidState, NotConfigured, NotFound, PersistenceFailure,
)

logger = logging.getLogger('relay.jobs')

MAX_URL_LENGTH = 2048
_CANCELLABLE = ('created', 'funded', 'started', 'delivered')
_SORT_FIELDS = ('created_at', 'funded_at', 'started_at', 'delivered_at', 'completed_at')


def parse_job_id(raw, kind='job') -> str:
    """Canonical UUID string for a path id, or InvalidInput."""
    try:
        return str(uuid.UUID(str(raw)))
    except (ValueError, TypeError, AttributeError):
        raise InvalidInput(f"Invalid {kind} ID")


class JobService:
    def __init__(self, verifier_user_id: str = None):
        self.verifier_user_id = verifier_user_id or None

    def __repr__(self):
        return f"JobService(verifier_configured={self.verifier_user_id is not None})"

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def fund(self, job_id: str, user_id: str) -> Job:
        """Record that the buyer's payment reached escrow."""
        self._require_verifier(user_id)
        return self._transition(job_id, 'created', 'funded', 'funded_at', actor=user_id)

    def start(self, job_id: str, agent_id: str) -> Job:
        return self._transition(job_id, 'funded', 'started', 'started_at',
                                actor=agent_id, seller_id=agent_id)

    def deliver(self, job_id: str, agent_id: str, delivered_url) -> Job:
        if not isinstance(delivered_url, str) or not delivered_url.strip():
            raise InvalidInput("delivered_url is required")
        delivered_url = delivered_url.strip()
        if len(delivered_url) > MAX_URL_LENGTH:
            raise InvalidInput(f"delivered_url must be at most {MAX_URL_LENGTH} characters")
        return self._transition(job_id, 'started', 'delivered', 'delivered_at',
                                actor=agent_id, seller_id=agent_id,
                                extra={'delivered_url': delivered_url})

    def complete(self, job_id: str, user_id: str) -> Job:
        self._require_verifier(user_id)
        return self._transition(job_id, 'delivered', 'completed', 'completed_at', actor=user_id)

    def cancel(self, job_id: str, user_id: str) -> Job:
        """Cancel a job.

        The verifier may cancel from any non-terminal state. The buyer may cancel
        only while the job is still 'created', i.e. before any funds moved.
        """
        job = db.session.get(Job, job_id)
        if job is None:
            raise NotFound("Job not found")

        if self.verifier_user_id is not None and user_id == self.verifier_user_id:
            allowed = _CANCELLABLE
        elif user_id == job.buyer_id:
            allowed = ('created',)
        else:
            logger.warning("Cancel of job %s refused for user %s", job_id, user_id)
            raise Forbidden("Forbidden")

        if job.status in TERMINAL_STATUSES:
            raise InvalidState(f"Job is already {job.status}.")
        if job.status not in allowed:
            raise InvalidState("Job is not in created state.")

        return self._transition(job_id, allowed, 'cancelled', 'cancelled_at', actor=user_id)

    def _require_verifier(self, user_id):
        if self.verifier_user_id is None:
            logger.error("Verifier principal not configured (VERIFICATION_AGENT unset)")
            raise NotConfigured("Verification agent not configured")
        if user_id != self.verifier_user_id:
            logger.warning("User %s attempted a verifier-only transition", user_id)
            raise Forbidden("Forbidden")

    def _transition(self, job_id, expected, new_status, stamp, actor, seller_id=None, extra=None) -> Job:
        expected = (expected,) if isinstance(expected, str) else tuple(expected)
        now = datetime.now(timezone.utc)
        values = {'status': new_status, stamp: now, 'updated_at': now}
        if extra:
            values.update(extra)

        query = Job.query.filter(Job.id == job_id, Job.status.in_(expected))
        if seller_id is not None:
            query = query.filter(Job.seller_id == seller_id)

        try:
            updated = query.update(values, synchronize_session='fetch')
            if updated:
                job = db.session.get(Job, job_id)
                Offer.query.filter_by(id=job.offer_id).update(
                    {'status': new_status, 'updated_at': now}, synchronize_session='fetch')
                db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to move job %s to %s: %s", job_id, new_status, e)
            raise PersistenceFailure("Failed to update job status")

        if not updated:
            db.session.rollback()
            self._classify_failure(job_id, expected, seller_id)

        logger.info("job %s %s -> %s by %s", job_id, '|'.join(expected), new_status, actor)
        return job

    @staticmethod
    def _classify_failure(job_id, expected, seller_id):
        job = db.session.get(Job, job_id)
        if job is None:
            raise NotFound("Job not found")
        if job.status not in expected:
            logger.info("Job %s transition refused: status is %s, expected %s",
                        job_id, job.status, '|'.join(expected))
            raise InvalidState(f"Job is not in {expected[0]} state.")
        if seller_id is not None and job.seller_id != seller_id:
            logger.warning("Agent %s is not the seller of job %s", seller_id, job_id)
            raise Forbidden("Agent is not assigned to this job")
        # Matched every predicate on re-read; the row changed between the two statements
        raise InvalidState(f"Job is not in {expected[0]} state.")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def get_job(job_id: str) -> Job:
        job = db.session.get(Job, job_id)
        if not job:
            raise NotFound("Job not found")
        return job

    @staticmethod
    def list_jobs(status=None, seller_id=None, buyer_id=None,
                  sort_by='created_at', sort_order='desc', page=1, limit=10) -> dict:
        if status is not None and status not in JOB_STATUSES:
            raise InvalidInput("Invalid query parameters")
        if sort_by not in _SORT_FIELDS or sort_order not in ('asc', 'desc'):
            raise InvalidInput("Invalid query parameters")
        if page < 1 or not 1 <= limit <= 100:
            raise InvalidInput("Invalid query parameters")

        query = Job.query
        if status:
            query = query.filter(Job.status == status)
        if seller_id:
            query = query.filter(Job.seller_id == seller_id)
        if buyer_id:
            query = query.filter(Job.buyer_id == buyer_id)

        total = query.count()
        column = getattr(Job, sort_by)
        query = query.order_by(column.asc() if sort_order == 'asc' else column.desc(), Job.id)
        jobs = query.offset((page - 1) * limit).limit(limit).all()
        return {
            "jobs": [JobService.to_dict(j) for j in jobs],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "total_pages": math.ceil(total / limit),
            },
        }

    @staticmethod
    def to_dict(job: Job) -> dict:
        """Job with embedded seller and offer summaries."""
        data = job.to_dict()
        data["seller"] = job.seller.summary() if job.seller else None
        data["offer"] = job.offer.summary() if job.offer else None
        return data
