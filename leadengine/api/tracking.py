"""
Tracked link redirects

Public endpoint behind the links sent to leads: records the click, qualifies
the lead on its first click and redirects to the destination.
"""
import logging
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from leadengine.core.config import get_settings
from leadengine.core.errors import NotFoundError
from leadengine.db.database import get_db
from leadengine.services.qualification_ledger import QualificationLedger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/track", tags=["Tracking"])


def get_ledger(db: Session = Depends(get_db)) -> QualificationLedger:
    return QualificationLedger(db)


def _is_http_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@router.get("/{lead_id}")
async def track_link(
    request: Request,
    lead_id: str = Path(..., description="Lead ID"),
    url: Optional[str] = Query(None, description="Destination URL"),
    ledger: QualificationLedger = Depends(get_ledger)
):
    """Record a link click and redirect to the destination"""
    destination = url if _is_http_url(url) else get_settings().tracking_redirect_fallback_url

    if _is_http_url(url):
        try:
            await ledger.track_link_click(
                lead_id,
                url,
                tracking_url=str(request.url),
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
                referrer=request.headers.get("referer"),
            )
        except NotFoundError:
            logger.warning(f"Click for unknown lead {lead_id}", extra={"lead_id": lead_id})
    else:
        logger.warning(f"Tracked link for lead {lead_id} without a valid destination", extra={"lead_id": lead_id})

    return RedirectResponse(destination, status_code=302)
