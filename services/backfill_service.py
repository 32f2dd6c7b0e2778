"""
Backfill and reconciliation.

Runs linking in the reverse direction: given a shipment, find messages
that name its identifiers but were never linked (typically because they
arrived before the shipment existed) and link them. Also finds replies
whose link disagrees with their thread's authority and moves them.

Backfill never creates suggestions; it links above the auto-link
threshold or leaves the message alone.
"""

import threading
from typing import Iterator, Optional
import structlog

from models.audit import AuditEntry, AuditOperation
from models.conflict import ConflictRecord, ConflictType
from models.identifiers import Identifier, IdentifierSet
from models.link import LinkCreate, LinkResponse, LinkSource
from models.linking import BackfillResult, CrossLink, RepairResult, UnlinkedMessage
from models.message import EmailAuthority
from models.pending_document import PendingDocumentResponse
from models.shipment import ShipmentResponse
from models.thread import ThreadAuthority
from services.linking_service import LinkingService, get_linking_service
from services.shipment_matcher_service import Resolution, ResolutionStatus
from exceptions import AppError, DatabaseError
from utils.worker_pool import run_bounded

logger = structlog.get_logger(__name__)


class BackfillService:
    """
    Shipment -> messages linking and cross-link repair.

    Reuses the orchestrator's collaborators, scoring and shipment update
    path so both directions apply identical rules.
    """

    def __init__(self, linking_service: LinkingService):
        self.linking = linking_service
        self.config = linking_service.config
        self.locks = linking_service.locks
        self.shipment_service = linking_service.shipment_service
        self.link_service = linking_service.link_service
        self.message_service = linking_service.message_service
        self.entity_service = linking_service.entity_service
        self.identifier_service = linking_service.identifier_service
        self.thread_resolver = linking_service.thread_resolver
        self.matcher = linking_service.matcher
        self.audit_service = linking_service.audit_service
        self.pending_document_service = linking_service.pending_document_service

    # ===================
    # SINGLE SHIPMENT
    # ===================

    def link_related_messages(self, shipment_id: str) -> BackfillResult:
        """
        Link every unlinked message that names this shipment.

        Pending orphan documents are resolved first, then the entity store
        is searched for the remaining messages. Each identifier key is
        handled under its own lock, so two backfills touching the same
        booking number never interleave. Each link is written under the
        message lock realtime linking also takes.

        Args:
            shipment_id: Shipment to backfill

        Returns:
            BackfillResult with link and conflict counts

        Raises:
            ShipmentNotFoundError: If the shipment doesn't exist
        """
        shipment = self.shipment_service.get_by_id(shipment_id)
        result = BackfillResult(shipment_id=shipment_id)

        identifiers = shipment.identifier_set()
        if identifiers.is_empty():
            logger.info("backfill_skipped_no_identifiers", shipment_id=shipment_id)
            return result

        linked_here = {link.message_id for link in self.link_service.find_by_shipment_id(shipment_id)}
        seen = set(linked_here)

        for identifier in identifiers:
            with self.locks.hold(("identifier", identifier.type.value, identifier.value)):
                for pending in self.pending_document_service.find_pending_by_identifier(
                    identifier.type, identifier.value
                ):
                    try:
                        self._link_orphan(shipment, identifier, pending, linked_here, result)
                        seen.add(pending.message_id)
                    except AppError as e:
                        self._record_error(result, pending.message_id, e)

                for candidate in self._find_candidates(identifier, seen):
                    seen.add(candidate.message_id)
                    try:
                        if self._attempt_link(shipment, candidate, result):
                            linked_here.add(candidate.message_id)
                    except AppError as e:
                        self._record_error(result, candidate.message_id, e)

        logger.info(
            "backfill_completed",
            shipment_id=shipment_id,
            messages_linked=result.messages_linked,
            orphans_linked=result.orphans_linked,
            conflicts=result.conflicts,
            errors=len(result.errors)
        )
        return result

    def find_unlinked_messages(self, shipment_id: str) -> list[UnlinkedMessage]:
        """
        Preview what link_related_messages would consider. Writes nothing.

        Raises:
            ShipmentNotFoundError: If the shipment doesn't exist
        """
        shipment = self.shipment_service.get_by_id(shipment_id)
        handled = {link.message_id for link in self.link_service.find_by_shipment_id(shipment_id)}

        candidates: list[UnlinkedMessage] = []
        for identifier in shipment.identifier_set():
            for candidate in self._find_candidates(identifier, handled):
                handled.add(candidate.message_id)
                candidates.append(candidate)

        linked = self.link_service.linked_message_ids([c.message_id for c in candidates])
        for candidate in candidates:
            if candidate.message_id in linked:
                links = self.link_service.find_by_message_id(candidate.message_id)
                candidate.linked_shipment_id = links[0].shipment_id if links else None

        return candidates

    def _find_candidates(self, identifier: Identifier, exclude: set[str]) -> list[UnlinkedMessage]:
        """Messages whose extractions contain the identifier, minus `exclude`."""
        records = self.entity_service.find_by_type_and_value(identifier.type, identifier.value)

        best: dict[str, float] = {}
        for record in records:
            if record.message_id in exclude:
                continue
            best[record.message_id] = max(best.get(record.message_id, 0), record.confidence)

        if not best:
            return []

        messages = self.message_service.get_many(list(best.keys()))
        return [
            UnlinkedMessage(
                message_id=message_id,
                identifier_type=identifier.type,
                identifier_value=identifier.value,
                entity_confidence=confidence,
                subject=messages[message_id].subject if message_id in messages else None,
                sender_email=messages[message_id].sender_email if message_id in messages else None,
                received_at=messages[message_id].received_at if message_id in messages else None,
                document_type=messages[message_id].document_type if message_id in messages else None,
            )
            for message_id, confidence in best.items()
        ]

    def _link_orphan(
        self,
        shipment: ShipmentResponse,
        identifier: Identifier,
        pending: PendingDocumentResponse,
        linked_here: set[str],
        result: BackfillResult,
    ) -> None:
        """Resolve a parked orphan at the fixed backfill confidence."""
        if pending.message_id in linked_here:
            self.pending_document_service.mark_linked(pending.id, shipment.id)
            return

        with self.locks.hold(("message", pending.message_id)):
            elsewhere = self._linked_elsewhere(pending.message_id, shipment.id)
            if elsewhere is not None:
                self._already_linked_conflict(pending.message_id, shipment, identifier, elsewhere, result)
                return

            message = self.message_service.find_metadata(pending.message_id)
            authority = self.linking.classify_authority(message) if message else EmailAuthority.THIRD_PARTY
            score = self.config.backfill_orphan_confidence

            link, created = self.link_service.upsert(LinkCreate(
                message_id=pending.message_id,
                shipment_id=shipment.id,
                attachment_id=pending.attachment_id,
                identifier_type=identifier.type,
                identifier_value=identifier.value,
                confidence_score=score,
                source=LinkSource.BACKFILL,
                document_type=pending.document_type,
                thread_id=message.thread_id if message else None,
                is_reply=message.is_reply if message else False,
                email_authority=authority,
            ))
            self.pending_document_service.mark_linked(pending.id, shipment.id)
        linked_here.add(pending.message_id)

        if created:
            result.orphans_linked += 1
            self.audit_service.record(AuditEntry(
                message_id=pending.message_id,
                shipment_id=shipment.id,
                operation=AuditOperation.LINK_ORPHAN,
                source=LinkSource.BACKFILL,
                identifier_type=identifier.type,
                identifier_value=identifier.value,
                confidence_score=score,
                email_authority=authority,
                notes="Orphan document linked on shipment backfill",
            ))

        logger.info(
            "orphan_document_linked",
            pending_id=pending.id,
            message_id=pending.message_id,
            shipment_id=shipment.id,
            link_id=link.id,
            created=created
        )

    def _attempt_link(
        self,
        shipment: ShipmentResponse,
        candidate: UnlinkedMessage,
        result: BackfillResult,
    ) -> bool:
        """
        Run one candidate through the same matching and scoring as realtime.

        The candidate is matched on its own resolved identifiers (thread
        authority included), so a reply that merely quotes this
        shipment's booking is not pulled onto it.
        """
        message = self.message_service.find_metadata(candidate.message_id)
        if message is None:
            return False

        elsewhere = self._linked_elsewhere(message.id, shipment.id)
        if elsewhere is not None:
            identifier = Identifier(type=candidate.identifier_type, value=candidate.identifier_value)
            self._already_linked_conflict(message.id, shipment, identifier, elsewhere, result)
            return False

        resolved = self.thread_resolver.get_identifiers_for_linking(message)
        if resolved.identifiers.is_empty():
            return False

        match = self.matcher.match(resolved.identifiers)
        if match.failed:
            raise DatabaseError("select", "; ".join(match.errors), {"message_id": message.id})

        if shipment.id not in match.shipment_ids:
            logger.debug(
                "backfill_candidate_points_elsewhere",
                message_id=message.id,
                shipment_id=shipment.id,
                matched=match.shipment_ids,
                identifier_origin=resolved.origin.value
            )
            return False

        if len(match.shipment_ids) > 1:
            conflict = self.linking.conflict_resolver.resolve(message.id, match).conflict
            self.linking.record_conflict(conflict)
            result.conflicts += 1
            return False

        identifier = match.primary_identifier(shipment.id)
        resolution = Resolution(
            status=ResolutionStatus.MATCHED,
            shipment=shipment,
            identifier=identifier,
        )
        authority = self.linking.classify_authority(message)
        confidence = self.linking.score(message, resolution, shipment, authority)

        if not confidence.should_auto_link:
            logger.debug(
                "backfill_candidate_below_threshold",
                message_id=message.id,
                shipment_id=shipment.id,
                score=confidence.score
            )
            return False

        # Realtime may have linked the message since the check above
        with self.locks.hold(("message", message.id)):
            elsewhere = self._linked_elsewhere(message.id, shipment.id)
            if elsewhere is not None:
                self._already_linked_conflict(message.id, shipment, identifier, elsewhere, result)
                return False

            link, created = self.link_service.upsert(LinkCreate(
                message_id=message.id,
                shipment_id=shipment.id,
                identifier_type=identifier.type,
                identifier_value=identifier.value,
                confidence_score=confidence.score,
                email_authority=authority,
                source=LinkSource.BACKFILL,
                document_type=message.document_type,
                authority_message_id=resolved.authority_message_id,
                thread_id=message.thread_id,
                is_reply=message.is_reply,
            ))

        extracted = self.identifier_service.extract(message.id)
        self.linking.apply_shipment_updates(shipment.id, extracted.ancillary, [message.document_type])

        if created:
            result.messages_linked += 1
            self.audit_service.record(AuditEntry(
                message_id=message.id,
                shipment_id=shipment.id,
                operation=AuditOperation.LINK,
                source=LinkSource.BACKFILL,
                identifier_type=identifier.type,
                identifier_value=identifier.value,
                confidence_score=confidence.score,
                confidence_breakdown=confidence.breakdown.model_dump(),
                email_authority=authority,
                notes=confidence.reasoning,
            ))

        logger.info(
            "backfill_message_linked",
            message_id=message.id,
            shipment_id=shipment.id,
            link_id=link.id,
            created=created,
            score=confidence.score
        )
        return True

    def _linked_elsewhere(self, message_id: str, shipment_id: str) -> Optional[LinkResponse]:
        for link in self.link_service.find_by_message_id(message_id):
            if link.shipment_id != shipment_id:
                return link
        return None

    def _already_linked_conflict(
        self,
        message_id: str,
        shipment: ShipmentResponse,
        identifier: Identifier,
        existing: LinkResponse,
        result: BackfillResult,
    ) -> None:
        conflict = ConflictRecord(
            type=ConflictType.ALREADY_LINKED,
            message_id=message_id,
            shipment_ids=[existing.shipment_id, shipment.id],
            identifier_type=identifier.type,
            identifier_value=identifier.value,
            chosen_shipment_id=existing.shipment_id,
        )
        self.linking.record_conflict(conflict)
        result.conflicts += 1

    def _record_error(self, result: BackfillResult, message_id: str, error: AppError) -> None:
        result.errors.append(f"{message_id}: {error.message}")
        logger.error(
            "backfill_message_failed",
            shipment_id=result.shipment_id,
            message_id=message_id,
            error=error.message,
            error_code=error.code
        )

    # ===================
    # ALL SHIPMENTS
    # ===================

    def iter_shipment_ids(self, batch_size: int, max_items: int) -> Iterator[str]:
        offset = 0
        yielded = 0

        while yielded < max_items:
            shipments, scanned = self.shipment_service.get_page(limit=batch_size, offset=offset)
            if scanned == 0:
                return
            offset += scanned

            for shipment in shipments:
                yield shipment.id
                yielded += 1
                if yielded >= max_items:
                    return

    def backfill_all(
        self,
        batch_size: int = 50,
        max_items: int = 5000,
        concurrency: int = 4,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BackfillResult:
        """
        Backfill every shipment that has an identifier.

        One failing shipment is logged and recorded; it never aborts the
        run.
        """
        logger.info(
            "backfill_all_started",
            batch_size=batch_size,
            max_items=max_items,
            concurrency=concurrency
        )

        pool = run_bounded(
            self.iter_shipment_ids(batch_size, max_items),
            self.link_related_messages,
            concurrency=concurrency,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
        )

        total = BackfillResult(cancelled=pool.cancelled or pool.timed_out)
        for outcome in pool.outcomes:
            if outcome.ok:
                total.merge(outcome.result)
                continue
            total.errors.append(f"{outcome.item}: {outcome.error}")
            logger.error(
                "shipment_backfill_failed",
                shipment_id=outcome.item,
                error=str(outcome.error),
                error_type=type(outcome.error).__name__
            )

        if pool.source_error is not None:
            total.errors.append(f"paging failed: {pool.source_error}")

        logger.info(
            "backfill_all_completed",
            shipments_processed=total.shipments_processed,
            messages_linked=total.messages_linked,
            orphans_linked=total.orphans_linked,
            conflicts=total.conflicts,
            errors=len(total.errors),
            cancelled=total.cancelled
        )
        return total

    # ===================
    # CROSS-LINK REPAIR
    # ===================

    def repair_cross_links(
        self,
        dry_run: bool = True,
        limit: int = 500,
        batch_size: int = 100,
        start_offset: int = 0,
    ) -> RepairResult:
        """
        Find and fix replies linked against their thread's authority.

        Scans at most `limit` reply links starting at `start_offset`.
        Pass the returned `next_offset` back in to resume; it is None once
        the end is reached. Manually confirmed links are never moved.

        Args:
            dry_run: Report cross-links without changing anything
            limit: Maximum links to scan in this call
            batch_size: Links fetched per page
            start_offset: Where to resume scanning
        """
        result = RepairResult(dry_run=dry_run)
        targets: dict[str, Optional[tuple[ThreadAuthority, Optional[ShipmentResponse]]]] = {}
        offset = start_offset
        exhausted = False

        logger.info("cross_link_repair_started", dry_run=dry_run, limit=limit, start_offset=start_offset)

        while result.scanned < limit:
            page_size = min(batch_size, limit - result.scanned)
            links = self.link_service.get_reply_links_page(limit=page_size, offset=offset)
            if not links:
                exhausted = True
                break

            moved = 0
            for link in links:
                result.scanned += 1
                try:
                    cross = self._check_link(link, targets)
                    if cross is None:
                        continue
                    result.cross_links_found += 1
                    if not dry_run and cross.correct_shipment_id:
                        self._repair(link, cross, targets[cross.thread_id])
                        cross.repaired = True
                        result.repaired += 1
                        moved += 1
                    result.cross_links.append(cross)
                except AppError as e:
                    result.errors.append(f"{link.message_id}: {e.message}")
                    logger.error(
                        "cross_link_check_failed",
                        link_id=link.id,
                        message_id=link.message_id,
                        error=e.message
                    )

            # Repaired links are re-created at the end of the ordering
            offset += len(links) - moved
            if len(links) < page_size:
                exhausted = True
                break

        result.next_offset = None if exhausted else offset

        logger.info(
            "cross_link_repair_completed",
            dry_run=dry_run,
            scanned=result.scanned,
            cross_links_found=result.cross_links_found,
            repaired=result.repaired,
            next_offset=result.next_offset
        )
        return result

    def _check_link(
        self,
        link: LinkResponse,
        targets: dict,
    ) -> Optional[CrossLink]:
        if link.source == LinkSource.MANUAL:
            return None

        thread_id = link.thread_id
        if not thread_id:
            message = self.message_service.find_metadata(link.message_id)
            thread_id = message.thread_id if message else None
        if not thread_id:
            return None

        if thread_id not in targets:
            targets[thread_id] = self._thread_target(thread_id)
        target = targets[thread_id]
        if target is None:
            return None

        authority, correct = target
        if authority.authority_message_id == link.message_id:
            return None
        if correct is not None and correct.id == link.shipment_id:
            return None

        cross = CrossLink(
            message_id=link.message_id,
            thread_id=thread_id,
            current_shipment_id=link.shipment_id,
            correct_shipment_id=correct.id if correct else None,
            authority_message_id=authority.authority_message_id,
            authority_identifier=f"{authority.identifier_type.value}:{authority.identifier_value}",
        )
        logger.warning(
            "cross_link_detected",
            message_id=link.message_id,
            thread_id=thread_id,
            current_shipment_id=link.shipment_id,
            correct_shipment_id=cross.correct_shipment_id
        )
        return cross

    def _thread_target(self, thread_id: str) -> Optional[tuple[ThreadAuthority, Optional[ShipmentResponse]]]:
        """Freshly computed authority and the shipment it maps to."""
        authority = self.thread_resolver.compute_authority(thread_id)
        if authority is None:
            return None

        identifier = Identifier(
            type=authority.identifier_type,
            value=authority.identifier_value,
            confidence=authority.confidence_score,
            message_id=authority.authority_message_id,
        )
        match = self.matcher.match(IdentifierSet.single(identifier))
        if match.failed:
            raise DatabaseError("select", "; ".join(match.errors), {"thread_id": thread_id})

        shipment_ids = match.shipment_ids
        return authority, match.shipments[shipment_ids[0]] if shipment_ids else None

    def _repair(
        self,
        link: LinkResponse,
        cross: CrossLink,
        target: tuple[ThreadAuthority, ShipmentResponse],
    ) -> None:
        """Create the correct link first, then drop the wrong one."""
        authority, shipment = target
        message = self.message_service.get_metadata(link.message_id)
        identifier = Identifier(
            type=authority.identifier_type,
            value=authority.identifier_value,
            confidence=authority.confidence_score,
        )
        email_authority = self.linking.classify_authority(message)
        confidence = self.linking.score(
            message,
            Resolution(status=ResolutionStatus.MATCHED, shipment=shipment, identifier=identifier),
            shipment,
            email_authority,
        )

        with self.locks.hold(("message", link.message_id)):
            self.link_service.upsert(LinkCreate(
                message_id=link.message_id,
                shipment_id=shipment.id,
                attachment_id=link.attachment_id,
                identifier_type=identifier.type,
                identifier_value=identifier.value,
                confidence_score=confidence.score,
                email_authority=email_authority,
                source=LinkSource.MIGRATION,
                document_type=message.document_type,
                authority_message_id=authority.authority_message_id,
                thread_id=cross.thread_id,
                is_reply=True,
            ))
            self.link_service.delete(link.id)
        self.thread_resolver.cache.put(authority.model_copy(update={"shipment_id": shipment.id}))

        self.audit_service.record(AuditEntry(
            message_id=link.message_id,
            shipment_id=shipment.id,
            operation=AuditOperation.REPAIR_CROSS_LINK,
            source=LinkSource.MIGRATION,
            identifier_type=identifier.type,
            identifier_value=identifier.value,
            confidence_score=confidence.score,
            email_authority=email_authority,
            notes=(
                f"Moved from shipment {link.shipment_id}: thread authority "
                f"{authority.authority_message_id} names {cross.authority_identifier}"
            ),
        ))

        logger.info(
            "cross_link_repaired",
            message_id=link.message_id,
            from_shipment_id=link.shipment_id,
            to_shipment_id=shipment.id
        )


# Singleton instance
_backfill_service: Optional[BackfillService] = None


def get_backfill_service() -> BackfillService:
    """Get or create BackfillService instance."""
    global _backfill_service
    if _backfill_service is None:
        _backfill_service = BackfillService(get_linking_service())
    return _backfill_service
