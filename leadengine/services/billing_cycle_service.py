"""
Billing cycle service

Resolves the open calendar-month (UTC) billing cycle for a user and keeps its
qualified-lead counters and amount current.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadengine.core.config import get_settings
from leadengine.db.models import BillingCycle, QualificationType

logger = logging.getLogger(__name__)

TYPE_COUNTERS = {
    QualificationType.INTEREST_EXPRESSED: "interest_expressed_count",
    QualificationType.TARGET_MATCH: "target_match_count",
    QualificationType.LINK_CLICKED: "link_clicked_count",
}


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """First instant of the month containing ``now`` and of the following month"""
    start = now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class BillingCycleService:

    def __init__(self, db: Session):
        self.db = db
        self.price_per_lead_cents = get_settings().price_per_lead_cents

    def get_or_create_active_cycle(self, user_id: str, now: Optional[datetime] = None) -> BillingCycle:
        """
        Get the billing cycle covering ``now``, creating it if needed.

        A concurrent creator is resolved through the (user_id, period_start)
        unique constraint.
        """
        period_start, period_end = month_bounds(now or datetime.now(timezone.utc))

        cycle = self._find(user_id, period_start)
        if cycle:
            return cycle

        cycle = BillingCycle(user_id=user_id, period_start=period_start, period_end=period_end, status="active")
        try:
            with self.db.begin_nested():
                self.db.add(cycle)
        except IntegrityError:
            logger.info(f"Billing cycle for user {user_id} created concurrently, reusing it")
            return self._find(user_id, period_start)

        logger.info(f"Opened billing cycle {cycle.id} for user {user_id} starting {period_start.date()}")
        return cycle

    def _find(self, user_id: str, period_start: datetime) -> Optional[BillingCycle]:
        return self.db.query(BillingCycle).filter(
            BillingCycle.user_id == user_id,
            BillingCycle.period_start == period_start
        ).first()

    def increment_counters(self, cycle: BillingCycle, qualification_type: QualificationType) -> None:
        """
        Add one qualified lead of ``qualification_type`` to the cycle.

        The increments are SQL expressions evaluated by the database on the
        next flush, so workers updating the same cycle never overwrite each
        other. The new values are readable after commit.
        """
        counter = TYPE_COUNTERS[qualification_type]
        setattr(cycle, counter, getattr(BillingCycle, counter) + 1)
        cycle.qualified_lead_count = BillingCycle.qualified_lead_count + 1
        cycle.amount_cents = BillingCycle.amount_cents + self.price_per_lead_cents
