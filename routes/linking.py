"""
Shipment linking API routes.

Realtime processing of single messages, batch and backfill jobs,
cross-link repair, thread authority inspection and suggestion review.
"""

from typing import Optional

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse
import structlog

from config import settings
from models.base import BatchRequest
from models.link import LinkResponse, SuggestionResponse
from models.linking import BackfillResult, BatchSummary, LinkingResult, UnlinkedMessage
from models.shipment import ShipmentFieldUpdate
from models.thread import ThreadSummary
from services.backfill_service import get_backfill_service
from services.linking_service import get_linking_service
from services.thread_authority_service import get_thread_authority_resolver
from exceptions import AppError, NotFoundError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/linking", tags=["Linking"])


def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


def _batch_args(request: Optional[BatchRequest]) -> dict:
    """Fill unset batch parameters from settings."""
    request = request or BatchRequest()
    return {
        "batch_size": request.batch_size or settings.linking_batch_size,
        "max_items": request.max_items or settings.linking_max_messages,
        "concurrency": request.concurrency or settings.linking_concurrency,
        "timeout_seconds": request.timeout_seconds or settings.linking_timeout_seconds,
    }


# ===================
# MESSAGES
# ===================

@router.post("/messages/{message_id}", response_model=LinkingResult)
def process_message(message_id: str):
    """
    Link one message to its shipment.

    Orphans, low-confidence matches and conflicts are normal results
    (200); only a missing message or a store failure is an error.
    """
    try:
        return get_linking_service().process_message(message_id)
    except Exception as e:
        return handle_error(e)


@router.post("/process-unlinked", response_model=BatchSummary)
def process_unlinked(request: Optional[BatchRequest] = Body(None)):
    """Run linking over messages that have identifiers but no link."""
    try:
        args = _batch_args(request)
        result = get_linking_service().process_unlinked_messages(
            batch_size=args["batch_size"],
            max_messages=args["max_items"],
            concurrency=args["concurrency"],
            timeout_seconds=args["timeout_seconds"],
        )
        return BatchSummary.from_batch(result)
    except Exception as e:
        return handle_error(e)


# ===================
# SHIPMENTS
# ===================

@router.post("/shipments/{shipment_id}/backfill", response_model=BackfillResult)
def backfill_shipment(shipment_id: str):
    """Link previously unlinked messages that name this shipment."""
    try:
        return get_backfill_service().link_related_messages(shipment_id)
    except Exception as e:
        return handle_error(e)


@router.get("/shipments/{shipment_id}/unlinked", response_model=list[UnlinkedMessage])
def preview_unlinked(shipment_id: str):
    """Messages a backfill of this shipment would consider. Read only."""
    try:
        return get_backfill_service().find_unlinked_messages(shipment_id)
    except Exception as e:
        return handle_error(e)


@router.post("/shipments/{shipment_id}/resync", response_model=ShipmentFieldUpdate)
def resync_shipment(shipment_id: str):
    """Refill empty shipment fields from every linked message."""
    try:
        return get_linking_service().resync_shipment(shipment_id)
    except Exception as e:
        return handle_error(e)


@router.post("/backfill-all", response_model=BatchSummary)
def backfill_all(request: Optional[BatchRequest] = Body(None)):
    """Backfill every shipment that has an identifier."""
    try:
        result = get_backfill_service().backfill_all(**_batch_args(request))
        return BatchSummary.from_backfill(result)
    except Exception as e:
        return handle_error(e)


@router.post("/repair-cross-links")
def repair_cross_links(
    request: Optional[BatchRequest] = Body(None),
    start_offset: int = 0,
):
    """
    Find replies linked against their thread's authority.

    Dry run unless `dry_run` is explicitly false in the body. Resume a
    partial scan by passing the returned `next_offset` as `start_offset`.
    """
    try:
        args = _batch_args(request)
        dry_run = request is None or request.dry_run is None or request.dry_run
        result = get_backfill_service().repair_cross_links(
            dry_run=dry_run,
            limit=args["max_items"],
            batch_size=args["batch_size"],
            start_offset=start_offset,
        )
        return {
            **BatchSummary.from_repair(result).model_dump(),
            "dry_run": result.dry_run,
            "cross_links": [c.model_dump() for c in result.cross_links],
        }
    except Exception as e:
        return handle_error(e)


# ===================
# THREADS
# ===================

@router.get("/threads/{thread_id}/authority", response_model=ThreadSummary)
def get_thread_authority(thread_id: str):
    """Authority, message counts and identifiers of a thread."""
    try:
        summary = get_thread_authority_resolver().get_thread_summary(thread_id)
        if summary is None:
            raise NotFoundError("Thread", thread_id)
        return summary
    except Exception as e:
        return handle_error(e)


@router.delete("/threads/{thread_id}/authority")
async def invalidate_thread_authority(thread_id: str):
    """Drop a cached thread authority so the next message recomputes it."""
    try:
        removed = get_thread_authority_resolver().cache.invalidate(thread_id)
        return {"thread_id": thread_id, "invalidated": removed}
    except Exception as e:
        return handle_error(e)


# ===================
# CONFLICTS
# ===================

@router.get("/conflicts")
def list_conflicts(limit: int = 100):
    """Unresolved linking conflicts, newest first."""
    try:
        return get_linking_service().conflict_service.list_open(limit=limit)
    except Exception as e:
        return handle_error(e)


# ===================
# SUGGESTIONS
# ===================

@router.post("/suggestions/{suggestion_id}/confirm", response_model=LinkResponse)
def confirm_suggestion(suggestion_id: str):
    """Turn a suggestion into a manual link."""
    try:
        return get_linking_service().confirm_suggestion(suggestion_id)
    except Exception as e:
        return handle_error(e)


@router.post("/suggestions/{suggestion_id}/reject", response_model=SuggestionResponse)
def reject_suggestion(suggestion_id: str):
    """Reject a suggestion; it will not be offered again."""
    try:
        return get_linking_service().reject_suggestion(suggestion_id)
    except Exception as e:
        return handle_error(e)
