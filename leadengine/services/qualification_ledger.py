"""
Qualified Lead Ledger

Records billable "lead qualified" events at most once per (user, lead).
An in-process cache and per-key lock avoid repeated work inside a worker;
the (user_id, lead_id) unique constraint is the authoritative
create-if-absent check across processes.
"""
import logging
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadengine.core.errors import InvalidArgumentError, NotFoundError
from leadengine.core.locks import KeyedLocks
from leadengine.core.metrics import QUALIFICATION_EVENTS, record_side_channel_failure
from leadengine.db.models import (
    BillingEvent,
    BillingStatus,
    Conversation,
    Lead,
    LinkClickEvent,
    QualificationType,
    QualifiedLeadEvent,
)
from leadengine.services.billing_cycle_service import BillingCycleService

logger = logging.getLogger(__name__)


class InterestExpressedMetadata(BaseModel):
    qualification_type: Literal["interest_expressed"] = "interest_expressed"
    conversation_id: str
    lead_name: Optional[str] = None
    platform: str = "reddit"


class TargetMatchMetadata(BaseModel):
    qualification_type: Literal["target_match"] = "target_match"
    qualification_score: float = Field(ge=0)
    lead_name: Optional[str] = None
    platform: str = "reddit"
    post_title: Optional[str] = None
    subreddit: Optional[str] = None


class LinkClickedMetadata(BaseModel):
    qualification_type: Literal["link_clicked"] = "link_clicked"
    link_url: str
    lead_name: Optional[str] = None
    platform: str = "reddit"


QualificationMetadata = Annotated[
    Union[InterestExpressedMetadata, TargetMatchMetadata, LinkClickedMetadata],
    Field(discriminator="qualification_type"),
]

_metadata_adapter = TypeAdapter(QualificationMetadata)


def parse_metadata(qualification_type: QualificationType, metadata: Union[BaseModel, Dict]) -> BaseModel:
    """
    Validate metadata against the variant for ``qualification_type``.

    Raises:
        InvalidArgumentError: Wrong variant or invalid fields
    """
    if isinstance(metadata, BaseModel):
        metadata = metadata.model_dump()
    payload = dict(metadata or {})
    payload.setdefault("qualification_type", qualification_type.value)
    if payload["qualification_type"] != qualification_type.value:
        raise InvalidArgumentError(
            f"Metadata for {payload['qualification_type']} passed to a {qualification_type.value} qualification"
        )
    try:
        return _metadata_adapter.validate_python(payload)
    except ValidationError as e:
        raise InvalidArgumentError(f"Invalid qualification metadata: {e}", {"errors": e.errors()})


# (user_id, lead_id) -> event id
_qualified_cache: Dict[Tuple[str, str], str] = {}
_qualification_locks = KeyedLocks()


def clear_qualification_cache() -> None:
    _qualified_cache.clear()


class QualificationLedger:
    """
    Idempotent qualification tracking for billing

    Args:
        db: Database session
        billing: Billing cycle collaborator
    """

    def __init__(self, db: Session, billing: Optional[BillingCycleService] = None):
        self.db = db
        self.billing = billing or BillingCycleService(db)

    def _existing(self, user_id: str, lead_id: str) -> Optional[QualifiedLeadEvent]:
        return self.db.query(QualifiedLeadEvent).filter(
            QualifiedLeadEvent.user_id == user_id,
            QualifiedLeadEvent.lead_id == lead_id
        ).first()

    async def track_qualification(
        self,
        user_id: str,
        lead_id: str,
        agent_id: Optional[str],
        qualification_type: QualificationType,
        metadata: Union[BaseModel, Dict]
    ) -> QualifiedLeadEvent:
        """
        Record that a lead qualified for billing.

        Args:
            user_id: Customer being billed
            lead_id: Qualified lead
            agent_id: Agent that engaged the lead
            qualification_type: Why the lead qualified
            metadata: Variant matching ``qualification_type``

        Returns:
            The new event, or the event already recorded for this lead

        Raises:
            InvalidArgumentError: Metadata does not match the qualification type
        """
        event, _ = await self._track(user_id, lead_id, agent_id, QualificationType(qualification_type), metadata)
        return event

    async def _track(
        self,
        user_id: str,
        lead_id: str,
        agent_id: Optional[str],
        qualification_type: QualificationType,
        metadata: Union[BaseModel, Dict]
    ) -> Tuple[QualifiedLeadEvent, bool]:
        parsed = parse_metadata(qualification_type, metadata)
        key = (user_id, lead_id)

        async with _qualification_locks.get(key):
            cached_id = _qualified_cache.get(key)
            if cached_id:
                cached = self.db.get(QualifiedLeadEvent, cached_id)
                if cached is not None:
                    QUALIFICATION_EVENTS.labels(qualification_type=qualification_type.value, outcome="duplicate").inc()
                    logger.info(f"Lead {lead_id} already tracked for billing", extra={"lead_id": lead_id})
                    return cached, False

            existing = self._existing(user_id, lead_id)
            if existing:
                _qualified_cache[key] = existing.id
                QUALIFICATION_EVENTS.labels(qualification_type=qualification_type.value, outcome="duplicate").inc()
                logger.info(f"Lead {lead_id} already qualified as {existing.qualification_type}", extra={"lead_id": lead_id})
                return existing, False

            cycle = self.billing.get_or_create_active_cycle(user_id)
            event = QualifiedLeadEvent(
                user_id=user_id,
                lead_id=lead_id,
                agent_id=agent_id,
                qualification_type=qualification_type.value,
                billing_status=BillingStatus.UNBILLED.value,
                billing_cycle_id=cycle.id,
                details=parsed.model_dump(),
            )
            self.db.add(event)
            self.billing.increment_counters(cycle, qualification_type)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                existing = self._existing(user_id, lead_id)
                if existing is None:
                    raise
                _qualified_cache[key] = existing.id
                QUALIFICATION_EVENTS.labels(qualification_type=qualification_type.value, outcome="duplicate").inc()
                logger.info(f"Lead {lead_id} qualified concurrently by another worker", extra={"lead_id": lead_id})
                return existing, False

            _qualified_cache[key] = event.id
            QUALIFICATION_EVENTS.labels(qualification_type=qualification_type.value, outcome="created").inc()
            logger.info(
                f"Lead {lead_id} qualified for billing: {qualification_type.value}",
                extra={"lead_id": lead_id, "user_id": user_id}
            )

            self._record_billing_event(event, cycle.id)
            return event, True

    def _record_billing_event(self, event: QualifiedLeadEvent, cycle_id: str) -> None:
        """Audit row; a failure here never fails the qualification"""
        try:
            self.db.add(BillingEvent(
                user_id=event.user_id,
                billing_cycle_id=cycle_id,
                qualified_lead_event_id=event.id,
                lead_id=event.lead_id,
                event_type="lead_qualified",
                amount_cents=self.billing.price_per_lead_cents,
                details={"qualification_type": event.qualification_type},
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            record_side_channel_failure("billing_event", e)

    async def mark_lead_as_expressed_interest(
        self,
        user_id: str,
        lead_id: str,
        agent_id: Optional[str],
        conversation_id: str
    ) -> Optional[QualifiedLeadEvent]:
        """Qualify a lead that has replied at least once in ``conversation_id``"""
        lead = self.db.get(Lead, lead_id)
        if lead is None:
            logger.warning(f"Lead {lead_id} not found")
            return None

        conversation = self.db.get(Conversation, conversation_id)
        if conversation is None or not conversation.has_inbound:
            logger.info(f"Lead {lead_id} has not responded yet")
            return None

        return await self.track_qualification(
            user_id, lead_id, agent_id, QualificationType.INTEREST_EXPRESSED,
            InterestExpressedMetadata(conversation_id=conversation_id, lead_name=lead.username, platform=lead.platform),
        )

    async def mark_lead_as_target_match(
        self,
        user_id: str,
        lead_id: str,
        agent_id: Optional[str],
        qualification_score: float,
        post_title: Optional[str] = None,
        subreddit: Optional[str] = None
    ) -> Optional[QualifiedLeadEvent]:
        lead = self.db.get(Lead, lead_id)
        if lead is None:
            logger.warning(f"Lead {lead_id} not found")
            return None

        return await self.track_qualification(
            user_id, lead_id, agent_id, QualificationType.TARGET_MATCH,
            TargetMatchMetadata(
                qualification_score=qualification_score,
                lead_name=lead.username,
                platform=lead.platform,
                post_title=post_title,
                subreddit=subreddit,
            ),
        )

    async def track_link_click(
        self,
        lead_id: str,
        url: str,
        tracking_url: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        referrer: Optional[str] = None
    ) -> LinkClickEvent:
        """
        Record a tracked link click and qualify the lead on its first click.

        Every click is stored; only the click that created the qualification
        is marked ``tracked``.

        Raises:
            NotFoundError: Unknown lead
        """
        lead = self.db.get(Lead, lead_id)
        if lead is None:
            raise NotFoundError(f"Lead {lead_id} not found")

        click = LinkClickEvent(
            lead_id=lead_id,
            user_id=lead.user_id,
            url=url,
            tracking_url=tracking_url,
            ip_address=ip_address,
            user_agent=user_agent,
            referrer=referrer,
            tracked=False,
        )
        self.db.add(click)
        self.db.commit()

        if self._existing(lead.user_id, lead_id) is None:
            event, created = await self._track(
                lead.user_id, lead_id, lead.agent_id, QualificationType.LINK_CLICKED,
                LinkClickedMetadata(link_url=url, lead_name=lead.username, platform=lead.platform),
            )
            if created:
                click.tracked = True
                click.qualification_event_id = event.id
                self.db.commit()

        logger.info(f"Link click tracked for lead {lead_id}", extra={"lead_id": lead_id})
        return click

    def get_qualified_leads_for_cycle(self, user_id: str, billing_cycle_id: str) -> List[QualifiedLeadEvent]:
        """Unbilled events of a billing cycle, oldest first"""
        return self.db.query(QualifiedLeadEvent).filter(
            QualifiedLeadEvent.user_id == user_id,
            QualifiedLeadEvent.billing_cycle_id == billing_cycle_id,
            QualifiedLeadEvent.billing_status == BillingStatus.UNBILLED.value
        ).order_by(QualifiedLeadEvent.qualified_at.asc()).all()

    def has_unbilled_leads(self, user_id: str) -> bool:
        return self.db.query(QualifiedLeadEvent.id).filter(
            QualifiedLeadEvent.user_id == user_id,
            QualifiedLeadEvent.billing_status == BillingStatus.UNBILLED.value
        ).first() is not None

    def mark_leads_as_invoiced(self, event_ids: List[str], invoice_id: str) -> int:
        """
        Move unbilled or billed events to invoiced.

        Returns:
            Number of events updated; events already invoiced or paid are left alone
        """
        if not event_ids:
            return 0
        updated = self.db.query(QualifiedLeadEvent).filter(
            QualifiedLeadEvent.id.in_(event_ids),
            QualifiedLeadEvent.billing_status.in_([BillingStatus.UNBILLED.value, BillingStatus.BILLED.value])
        ).update(
            {
                QualifiedLeadEvent.billing_status: BillingStatus.INVOICED.value,
                QualifiedLeadEvent.invoice_id: invoice_id,
            },
            synchronize_session=False
        )
        self.db.commit()
        logger.info(f"Marked {updated} qualified leads as invoiced ({invoice_id})")
        return updated
