"""
Linking orchestrator.

Drives one message through identifier resolution, shipment matching,
conflict resolution and confidence scoring, then writes a link, a
suggestion, or nothing. Expected outcomes (orphan, low confidence,
conflict) come back as a LinkingResult; only persistence and
programming errors raise.
"""

import threading
from datetime import date, datetime, timezone
from typing import Iterator, Optional
import structlog

from config.linking import LinkingConfig, get_linking_config
from models.audit import AuditEntry, AuditOperation
from models.confidence import ConfidenceInput, ConfidenceResult, LinkDecision
from models.conflict import ConflictRecord, ConflictType
from models.identifiers import AncillaryFields, IdentifierSource, IdentifierType
from models.link import LinkCreate, LinkResponse, LinkSource, SuggestionCreate, SuggestionResponse
from models.linking import BatchResult, LinkingResult, LinkOutcome
from models.message import EmailAuthority, MessageMetadata
from models.pending_document import PendingDocumentCreate
from models.shipment import (
    PROPAGATED_FIELDS,
    STATUS_ORDER,
    ShipmentFieldUpdate,
    ShipmentResponse,
    ShipmentStatus,
    is_status_upgrade,
)
from models.thread import IdentifierOrigin, ResolvedIdentifiers
from services import confidence_service
from services.audit_service import AuditService, get_audit_service
from services.conflict_service import ConflictService, get_conflict_service
from services.entity_service import EntityService, get_entity_service
from services.identifier_service import IdentifierService, get_identifier_service
from services.link_service import LinkService, get_link_service
from services.message_service import MessageService, get_message_service
from services.pending_document_service import PendingDocumentService, get_pending_document_service
from services.shipment_matcher_service import (
    ConflictResolver,
    Resolution,
    ResolutionStatus,
    ShipmentMatcher,
    get_shipment_matcher,
)
from services.shipment_service import ShipmentService, get_shipment_service
from services.thread_authority_service import ThreadAuthorityResolver, get_thread_authority_resolver
from exceptions import ConflictError, DatabaseError
from utils.keyed_lock import KeyedLock
from utils.worker_pool import run_bounded

logger = structlog.get_logger(__name__)


# =============================================================================
# STATUS INFERENCE
# =============================================================================

DELIVERED_DOCUMENT_TYPES = {"proof_of_delivery", "pod_confirmation"}
ARRIVAL_DOCUMENT_TYPES = {"delivery_order", "arrival_notice", "container_release"}
DEPARTURE_DOCUMENT_TYPES = {"bill_of_lading", "cargo_manifest"}
BOOKING_DOCUMENT_TYPES = {
    "booking_confirmation",
    "booking_amendment",
    "shipping_instruction",
    "rate_confirmation",
}


def infer_status(
    document_type: Optional[str],
    etd: Optional[date] = None,
    eta: Optional[date] = None,
    today: Optional[date] = None,
) -> Optional[ShipmentStatus]:
    """
    Status a message implies for its shipment.

    Document type decides first. Arrival documents are only trusted once
    the ETA has passed (or no ETA is known), so a misclassified document
    cannot mark a vessel still at sea as arrived. Without a telling
    document type, passed dates decide.

    Returns:
        Implied status, or None if the message implies nothing
    """
    today = today or datetime.now(timezone.utc).date()
    doc = (document_type or "").lower()

    if doc in DELIVERED_DOCUMENT_TYPES:
        return ShipmentStatus.DELIVERED
    if doc in ARRIVAL_DOCUMENT_TYPES:
        if eta is None or eta < today:
            return ShipmentStatus.ARRIVED
        return ShipmentStatus.IN_TRANSIT
    if doc in DEPARTURE_DOCUMENT_TYPES:
        if etd is not None and etd < today:
            return ShipmentStatus.IN_TRANSIT
        return ShipmentStatus.BOOKED
    if doc in BOOKING_DOCUMENT_TYPES:
        return ShipmentStatus.BOOKED

    if eta is not None and eta < today:
        return ShipmentStatus.ARRIVED
    if etd is not None and etd < today:
        return ShipmentStatus.IN_TRANSIT
    return None


class LinkingService:
    """
    Message -> shipment linking.

    Handles:
    - Single message processing (realtime)
    - Batch processing of unlinked messages over a bounded pool
    - Non-destructive shipment field propagation and status advance
    - Suggestion review
    - Shipment resync from all linked messages
    """

    def __init__(
        self,
        message_service: MessageService,
        identifier_service: IdentifierService,
        thread_resolver: ThreadAuthorityResolver,
        matcher: ShipmentMatcher,
        shipment_service: ShipmentService,
        link_service: LinkService,
        audit_service: AuditService,
        conflict_service: ConflictService,
        pending_document_service: PendingDocumentService,
        entity_service: EntityService,
        config: Optional[LinkingConfig] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.message_service = message_service
        self.identifier_service = identifier_service
        self.thread_resolver = thread_resolver
        self.matcher = matcher
        self.shipment_service = shipment_service
        self.link_service = link_service
        self.audit_service = audit_service
        self.conflict_service = conflict_service
        self.pending_document_service = pending_document_service
        self.entity_service = entity_service
        self.config = config or LinkingConfig()
        self.conflict_resolver = ConflictResolver(self.config.conflict_policy)
        self.locks = locks if locks is not None else thread_resolver.locks

    # ===================
    # SINGLE MESSAGE
    # ===================

    def process_message(self, message_id: str) -> LinkingResult:
        """
        Link one message to its shipment if the evidence is strong enough.

        Args:
            message_id: raw_emails id

        Returns:
            LinkingResult with outcome, matched flag and reasoning

        Raises:
            MessageNotFoundError: If the message doesn't exist
            DatabaseError: If a store read or write fails
        """
        logger.info("processing_message", message_id=message_id)

        message = self.message_service.get_metadata(message_id)
        resolved = self.thread_resolver.get_identifiers_for_linking(message)

        if resolved.identifiers.is_empty():
            return self._result(
                message, resolved, LinkOutcome.ORPHAN,
                reasoning="No shipment identifiers found"
            )

        match = self.matcher.match(resolved.identifiers)
        if match.failed:
            raise DatabaseError("select", "; ".join(match.errors), {"message_id": message_id})

        resolution = self.conflict_resolver.resolve(message_id, match)

        if resolution.conflict is not None:
            self.record_conflict(resolution.conflict)

        if resolution.status == ResolutionStatus.ORPHAN:
            self._queue_orphan(message, resolved)
            return self._result(
                message, resolved, LinkOutcome.ORPHAN,
                reasoning=f"No shipment matches {resolved.identifiers.describe()}"
            )

        if not resolution.should_link:
            return self._result(
                message, resolved, LinkOutcome.CONFLICTED,
                conflict=resolution.conflict,
                reasoning=(
                    f"Identifiers match {len(resolution.conflict.shipment_ids)} shipments; "
                    f"policy {self.config.conflict_policy.value} links none"
                )
            )

        shipment = resolution.shipment

        existing = self._linked_elsewhere(message_id, shipment.id)
        if existing is not None:
            return self._already_linked(message, resolved, resolution, existing)

        authority = self.classify_authority(message)
        confidence = self.score(message, resolution, shipment, authority)

        if confidence.decision == LinkDecision.AUTO_LINK:
            return self._auto_link(message, resolved, resolution, confidence, authority)

        if confidence.decision == LinkDecision.SUGGEST:
            return self._suggest(message, resolved, resolution, confidence, authority)

        logger.info(
            "message_below_threshold",
            message_id=message_id,
            shipment_id=shipment.id,
            score=confidence.score
        )
        return self._result(
            message, resolved,
            LinkOutcome.CONFLICTED if resolution.conflict else LinkOutcome.NO_ACTION,
            shipment=shipment,
            resolution=resolution,
            confidence=confidence,
            email_authority=authority,
            conflict=resolution.conflict,
            reasoning=f"Confidence too low: {confidence.reasoning}"
        )

    def classify_authority(self, message: MessageMetadata) -> EmailAuthority:
        return confidence_service.classify_authority(
            message.sender_email,
            message.true_sender_email,
            self.config.internal_domains
        )

    def score(
        self,
        message: MessageMetadata,
        resolution: Resolution,
        shipment: ShipmentResponse,
        authority: EmailAuthority,
    ) -> ConfidenceResult:
        sender_category = message.sender_category or confidence_service.classify_sender_category(
            message.effective_sender,
            self.config.internal_domains
        )
        return confidence_service.calculate(
            ConfidenceInput(
                identifier_type=resolution.identifier.type,
                email_authority=authority,
                document_type=message.document_type,
                message_type=message.message_type,
                sender_category=sender_category,
                message_date=message.received_at,
                shipment_created_at=shipment.created_at,
            ),
            self.config
        )

    def _auto_link(
        self,
        message: MessageMetadata,
        resolved: ResolvedIdentifiers,
        resolution: Resolution,
        confidence: ConfidenceResult,
        authority: EmailAuthority,
    ) -> LinkingResult:
        shipment = resolution.shipment

        # Backfill may link the same message concurrently
        with self.locks.hold(("message", message.id)):
            existing = self._linked_elsewhere(message.id, shipment.id)
            if existing is not None:
                return self._already_linked(message, resolved, resolution, existing)

            link, created = self.link_service.upsert(LinkCreate(
                message_id=message.id,
                shipment_id=shipment.id,
                identifier_type=resolution.identifier.type,
                identifier_value=resolution.identifier.value,
                confidence_score=confidence.score,
                email_authority=authority,
                source=LinkSource.REALTIME,
                document_type=message.document_type,
                authority_message_id=resolved.authority_message_id,
                thread_id=message.thread_id,
                is_reply=message.is_reply,
            ))

        if resolved.origin == IdentifierOrigin.THREAD_AUTHORITY:
            self.thread_resolver.cache.set_shipment(message.thread_id, shipment.id)

        extracted = self.identifier_service.extract(message.id)
        identifier_fields = {}
        if resolution.status == ResolutionStatus.MATCHED and resolved.origin == IdentifierOrigin.DIRECT_EXTRACTION:
            bl_numbers = extracted.identifiers.values(IdentifierType.BL_NUMBER)
            if len(bl_numbers) == 1:
                identifier_fields["bl_number"] = bl_numbers[0]

        update = self.apply_shipment_updates(
            shipment.id,
            extracted.ancillary,
            [message.document_type],
            extra_fields=identifier_fields,
        )

        if created:
            self.audit_service.record(AuditEntry(
                message_id=message.id,
                shipment_id=shipment.id,
                operation=AuditOperation.LINK,
                source=LinkSource.REALTIME,
                identifier_type=resolution.identifier.type,
                identifier_value=resolution.identifier.value,
                confidence_score=confidence.score,
                confidence_breakdown=confidence.breakdown.model_dump(),
                email_authority=authority,
                notes=f"{resolved.origin.value}: {confidence.reasoning}",
            ))

        logger.info(
            "message_auto_linked",
            message_id=message.id,
            shipment_id=shipment.id,
            link_id=link.id,
            created=created,
            score=confidence.score,
            identifier_origin=resolved.origin.value
        )

        return self._result(
            message, resolved,
            LinkOutcome.CONFLICTED if resolution.conflict else LinkOutcome.AUTO_LINKED,
            matched=True,
            shipment=shipment,
            resolution=resolution,
            confidence=confidence,
            email_authority=authority,
            conflict=resolution.conflict,
            update=update,
            reasoning=f"Linked via {resolution.identifier.label()}: {confidence.reasoning}"
        )

    def _suggest(
        self,
        message: MessageMetadata,
        resolved: ResolvedIdentifiers,
        resolution: Resolution,
        confidence: ConfidenceResult,
        authority: EmailAuthority,
    ) -> LinkingResult:
        shipment = resolution.shipment

        suggestion, created = self.link_service.upsert_suggestion(SuggestionCreate(
            message_id=message.id,
            shipment_id=shipment.id,
            identifier_type=resolution.identifier.type,
            identifier_value=resolution.identifier.value,
            confidence_score=confidence.score,
            match_reasoning=confidence.reasoning,
        ))

        if created:
            self.audit_service.record(AuditEntry(
                message_id=message.id,
                shipment_id=shipment.id,
                operation=AuditOperation.SUGGEST,
                source=LinkSource.REALTIME,
                identifier_type=resolution.identifier.type,
                identifier_value=resolution.identifier.value,
                confidence_score=confidence.score,
                confidence_breakdown=confidence.breakdown.model_dump(),
                email_authority=authority,
            ))

        logger.info(
            "link_suggested",
            message_id=message.id,
            shipment_id=shipment.id,
            suggestion_id=suggestion.id,
            score=confidence.score
        )

        return self._result(
            message, resolved,
            LinkOutcome.CONFLICTED if resolution.conflict else LinkOutcome.SUGGESTED,
            shipment=shipment,
            resolution=resolution,
            confidence=confidence,
            email_authority=authority,
            conflict=resolution.conflict,
            reasoning=f"Suggested for review: {confidence.reasoning}"
        )

    def _linked_elsewhere(self, message_id: str, shipment_id: str) -> Optional[LinkResponse]:
        for link in self.link_service.find_by_message_id(message_id):
            if link.shipment_id != shipment_id:
                return link
        return None

    def _already_linked(
        self,
        message: MessageMetadata,
        resolved: ResolvedIdentifiers,
        resolution: Resolution,
        existing: LinkResponse,
    ) -> LinkingResult:
        conflict = ConflictRecord(
            type=ConflictType.ALREADY_LINKED,
            message_id=message.id,
            shipment_ids=[existing.shipment_id, resolution.shipment.id],
            identifier_type=resolution.identifier.type,
            identifier_value=resolution.identifier.value,
            chosen_shipment_id=existing.shipment_id,
        )
        self.record_conflict(conflict)
        return self._result(
            message, resolved, LinkOutcome.CONFLICTED,
            shipment=resolution.shipment,
            resolution=resolution,
            conflict=conflict,
            reasoning=f"Already linked to shipment {existing.shipment_id}"
        )

    def record_conflict(self, conflict: ConflictRecord) -> None:
        """Persist a conflict; audited only the first time it is seen."""
        _, created = self.conflict_service.record(conflict)
        if not created:
            return
        self.audit_service.record(AuditEntry(
            message_id=conflict.message_id,
            shipment_id=conflict.chosen_shipment_id,
            operation=AuditOperation.CONFLICT,
            identifier_type=conflict.identifier_type,
            identifier_value=conflict.identifier_value,
            notes=f"{conflict.type.value}: {', '.join(conflict.shipment_ids)}",
        ))

    def _queue_orphan(self, message: MessageMetadata, resolved: ResolvedIdentifiers) -> None:
        """Park document-borne identifiers until their shipment appears."""
        if resolved.origin != IdentifierOrigin.DIRECT_EXTRACTION:
            return

        for identifier in resolved.identifiers:
            if identifier.source != IdentifierSource.DOCUMENT:
                continue
            if identifier.type == IdentifierType.REFERENCE_NUMBER:
                continue
            self.pending_document_service.create(PendingDocumentCreate(
                message_id=message.id,
                document_type=message.document_type,
                identifier_type=identifier.type,
                identifier_value=identifier.value,
                email_subject=message.subject,
                email_from=message.sender_email,
            ))

    def _result(
        self,
        message: MessageMetadata,
        resolved: ResolvedIdentifiers,
        outcome: LinkOutcome,
        reasoning: str,
        matched: bool = False,
        shipment: Optional[ShipmentResponse] = None,
        resolution: Optional[Resolution] = None,
        confidence: Optional[ConfidenceResult] = None,
        email_authority: Optional[EmailAuthority] = None,
        conflict: Optional[ConflictRecord] = None,
        update: Optional[ShipmentFieldUpdate] = None,
    ) -> LinkingResult:
        identifier = resolution.identifier if resolution else None
        return LinkingResult(
            message_id=message.id,
            outcome=outcome,
            matched=matched,
            shipment_id=shipment.id if shipment else None,
            identifier_type=identifier.type if identifier else None,
            identifier_value=identifier.value if identifier else None,
            confidence=confidence,
            email_authority=email_authority,
            identifier_origin=resolved.origin,
            conflict=conflict,
            status_updated_to=update.status if update else None,
            fields_updated=list(update.fields.keys()) if update else [],
            reasoning=reasoning,
        )

    # ===================
    # SHIPMENT UPDATES
    # ===================

    def apply_shipment_updates(
        self,
        shipment_id: str,
        ancillary: AncillaryFields,
        document_types: list[Optional[str]],
        extra_fields: Optional[dict] = None,
    ) -> ShipmentFieldUpdate:
        """
        Fill empty shipment fields and advance status.

        Runs under the shipment's lock so two messages linking at once
        cannot both see a field as empty. Populated fields are never
        overwritten and status never moves backwards.
        """
        with self.locks.hold(("shipment", shipment_id)):
            shipment = self.shipment_service.get_by_id(shipment_id)

            candidates = dict(ancillary.populated())
            candidates.update(extra_fields or {})
            fields = {
                name: value for name, value in candidates.items()
                if name in PROPAGATED_FIELDS and shipment.is_empty_field(name)
            }

            etd = shipment.etd or fields.get("etd")
            eta = shipment.eta or fields.get("eta")
            inferred = [infer_status(doc, etd, eta) for doc in document_types or [None]]
            inferred = [s for s in inferred if s is not None]
            new_status = max(inferred, key=lambda s: STATUS_ORDER[s]) if inferred else None

            update = ShipmentFieldUpdate(
                shipment_id=shipment_id,
                fields=fields,
                previous_status=shipment.status,
            )
            if new_status and is_status_upgrade(shipment.status, new_status):
                update.status = new_status

            if update.is_empty:
                return update

            to_write = dict(fields)
            if update.status:
                to_write["status"] = update.status
            self.shipment_service.update(shipment_id, to_write)

            logger.info(
                "shipment_enriched",
                shipment_id=shipment_id,
                fields=list(fields.keys()),
                status_from=shipment.status.value,
                status_to=update.status.value if update.status else None
            )
            return update

    def resync_shipment(self, shipment_id: str) -> ShipmentFieldUpdate:
        """
        Refill empty shipment fields from every linked message.

        Messages are applied oldest link first, so the earliest value for
        a field wins, as it would have in realtime.
        """
        links = sorted(
            self.link_service.find_by_shipment_id(shipment_id),
            key=lambda link: (link.linked_at or link.created_at or datetime.min.replace(tzinfo=timezone.utc), link.id)
        )
        message_ids = [link.message_id for link in links]
        if not message_ids:
            return ShipmentFieldUpdate(shipment_id=shipment_id)

        extractions = self.identifier_service.extract_many(message_ids)
        messages = self.message_service.get_many(message_ids)

        merged: dict = {}
        for message_id in message_ids:
            for name, value in extractions[message_id].ancillary.populated().items():
                merged.setdefault(name, value)

        update = self.apply_shipment_updates(
            shipment_id,
            AncillaryFields(**merged),
            [messages[mid].document_type for mid in message_ids if mid in messages],
        )

        logger.info(
            "shipment_resynced",
            shipment_id=shipment_id,
            linked_messages=len(message_ids),
            fields=list(update.fields.keys())
        )
        return update

    # ===================
    # SUGGESTION REVIEW
    # ===================

    def confirm_suggestion(self, suggestion_id: str) -> LinkResponse:
        """
        Turn a reviewed suggestion into a manual link.

        Raises:
            LinkNotFoundError: If the suggestion doesn't exist
            ConflictError: If it was rejected or the message is linked elsewhere
        """
        suggestion = self.link_service.get_suggestion(suggestion_id)
        if suggestion.is_rejected:
            raise ConflictError("Suggestion was already rejected", code="SUGGESTION_REJECTED")

        with self.locks.hold(("message", suggestion.message_id)):
            existing = self._linked_elsewhere(suggestion.message_id, suggestion.shipment_id)
            if existing is not None:
                raise ConflictError(
                    "Message is already linked to another shipment",
                    code="MESSAGE_ALREADY_LINKED",
                    details={"message_id": suggestion.message_id, "shipment_id": existing.shipment_id}
                )

            suggestion = self.link_service.confirm_suggestion(suggestion_id)
            message = self.message_service.find_metadata(suggestion.message_id)
            authority = self.classify_authority(message) if message else EmailAuthority.THIRD_PARTY

            link, created = self.link_service.upsert(LinkCreate(
                message_id=suggestion.message_id,
                shipment_id=suggestion.shipment_id,
                identifier_type=suggestion.identifier_type,
                identifier_value=suggestion.identifier_value,
                confidence_score=suggestion.confidence_score,
                email_authority=authority,
                source=LinkSource.MANUAL,
                document_type=message.document_type if message else None,
                thread_id=message.thread_id if message else None,
                is_reply=message.is_reply if message else False,
            ))

        if created:
            self.audit_service.record(AuditEntry(
                message_id=suggestion.message_id,
                shipment_id=suggestion.shipment_id,
                operation=AuditOperation.LINK,
                source=LinkSource.MANUAL,
                identifier_type=suggestion.identifier_type,
                identifier_value=suggestion.identifier_value,
                confidence_score=suggestion.confidence_score,
                email_authority=authority,
                notes=f"Suggestion {suggestion_id} confirmed",
            ))

        logger.info(
            "suggestion_confirmed",
            suggestion_id=suggestion_id,
            message_id=suggestion.message_id,
            shipment_id=suggestion.shipment_id
        )
        return link

    def reject_suggestion(self, suggestion_id: str) -> SuggestionResponse:
        return self.link_service.reject_suggestion(suggestion_id)

    # ===================
    # BATCH
    # ===================

    def iter_unlinked_message_ids(self, batch_size: int, max_messages: int) -> Iterator[str]:
        """
        Lazily page through messages that have identifiers but no link.

        Link state is checked page by page as the pool consumes them.
        """
        offset = 0
        yielded = 0
        seen: set[str] = set()

        while yielded < max_messages:
            message_ids, scanned = self.entity_service.find_message_ids_with_identifiers(
                limit=batch_size,
                offset=offset
            )
            if scanned == 0:
                return
            offset += scanned

            fresh = [mid for mid in message_ids if mid not in seen]
            seen.update(fresh)
            linked = self.link_service.linked_message_ids(fresh)

            for message_id in fresh:
                if message_id in linked:
                    continue
                yield message_id
                yielded += 1
                if yielded >= max_messages:
                    return

    def process_unlinked_messages(
        self,
        batch_size: int = 50,
        max_messages: int = 5000,
        concurrency: int = 4,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        """
        Run process_message over every unlinked message.

        A failing message is logged and counted; it never aborts the run.
        Cancellation or timeout stops new work and returns partial counts.
        """
        logger.info(
            "batch_linking_started",
            batch_size=batch_size,
            max_messages=max_messages,
            concurrency=concurrency
        )

        pool = run_bounded(
            self.iter_unlinked_message_ids(batch_size, max_messages),
            self.process_message,
            concurrency=concurrency,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
        )

        batch = BatchResult(cancelled=pool.cancelled or pool.timed_out)
        for outcome in pool.outcomes:
            if outcome.ok:
                batch.record(outcome.result)
                continue
            batch.processed += 1
            batch.failed += 1
            batch.errors.append(f"{outcome.item}: {outcome.error}")
            logger.error(
                "message_linking_failed",
                message_id=outcome.item,
                error=str(outcome.error),
                error_type=type(outcome.error).__name__
            )

        if pool.source_error is not None:
            batch.errors.append(f"paging failed: {pool.source_error}")

        logger.info(
            "batch_linking_completed",
            processed=batch.processed,
            linked=batch.linked,
            auto_linked=batch.auto_linked,
            suggested=batch.suggested,
            conflicted=batch.conflicted,
            failed=batch.failed,
            cancelled=batch.cancelled
        )
        return batch


# Singleton instance
_linking_service: Optional[LinkingService] = None


def get_linking_service() -> LinkingService:
    """Get or create LinkingService instance."""
    global _linking_service
    if _linking_service is None:
        _linking_service = LinkingService(
            message_service=get_message_service(),
            identifier_service=get_identifier_service(),
            thread_resolver=get_thread_authority_resolver(),
            matcher=get_shipment_matcher(),
            shipment_service=get_shipment_service(),
            link_service=get_link_service(),
            audit_service=get_audit_service(),
            conflict_service=get_conflict_service(),
            pending_document_service=get_pending_document_service(),
            entity_service=get_entity_service(),
            config=get_linking_config(),
        )
    return _linking_service
