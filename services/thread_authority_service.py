"""
Thread authority resolution.

Replies and forwards quote content from other shipments. To keep them on
the right shipment, each thread gets one authority: the first original
message carrying an identifier. Replies match on the authority's
identifier instead of whatever they quote.

The authority cache has no expiry. Callers must invalidate a thread when
its messages or extractions change.
"""

import threading
from datetime import datetime, timezone
from typing import Optional
import structlog

from config.linking import IDENTIFIER_PRIORITY
from models.identifiers import Identifier, IdentifierSet
from models.message import MessageMetadata
from models.thread import (
    IdentifierOrigin,
    ResolvedIdentifiers,
    ThreadAuthority,
    ThreadIdentifier,
    ThreadSummary,
)
from services.identifier_service import IdentifierService, get_identifier_service
from services.message_service import MessageService, get_message_service
from utils.keyed_lock import KeyedLock

logger = structlog.get_logger(__name__)

# Sorts messages without a timestamp after all dated ones
_LATEST = datetime.max.replace(tzinfo=timezone.utc)


class ThreadAuthorityCache:
    """
    Thread id -> ThreadAuthority, safe for concurrent use.

    Owned by whoever constructs the resolver; there is no global instance
    beyond the one the service factory wires up.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, ThreadAuthority] = {}

    def get(self, thread_id: str) -> Optional[ThreadAuthority]:
        with self._lock:
            return self._entries.get(thread_id)

    def put(self, authority: ThreadAuthority) -> None:
        with self._lock:
            self._entries[authority.thread_id] = authority

    def invalidate(self, thread_id: str) -> bool:
        """Drop one thread. Returns True if it was cached."""
        with self._lock:
            removed = self._entries.pop(thread_id, None) is not None
        if removed:
            logger.info("thread_authority_invalidated", thread_id=thread_id)
        return removed

    def invalidate_all(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("thread_authority_cache_cleared", count=count)
        return count

    def set_shipment(self, thread_id: str, shipment_id: str) -> None:
        """Record the shipment the thread's authority resolved to."""
        with self._lock:
            authority = self._entries.get(thread_id)
            if authority is not None and authority.shipment_id != shipment_id:
                self._entries[thread_id] = authority.model_copy(update={"shipment_id": shipment_id})

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def best_identifier(identifiers: IdentifierSet) -> Optional[Identifier]:
    """
    Highest-priority identifier of a set.

    booking > BL > container > reference; ties go to higher extraction
    confidence, then to the lexically smaller value.
    """
    candidates = list(identifiers)
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda i: (-IDENTIFIER_PRIORITY.get(i.type, 0), -i.confidence, i.value)
    )


def authority_order(messages: list[MessageMetadata]) -> list[MessageMetadata]:
    """Originals before replies, each group oldest first, ties by id."""
    def key(message: MessageMetadata):
        received = message.received_at or _LATEST
        if received.tzinfo is None:
            received = received.replace(tzinfo=timezone.utc)
        return (message.is_reply, received, message.id)

    return sorted(messages, key=key)


class ThreadAuthorityResolver:
    """
    Computes, caches and applies thread authorities.

    Computation for a thread runs under a per-thread lock so concurrent
    workers never compute the same thread twice.
    """

    def __init__(
        self,
        message_service: MessageService,
        identifier_service: IdentifierService,
        cache: Optional[ThreadAuthorityCache] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.message_service = message_service
        self.identifier_service = identifier_service
        self.cache = cache if cache is not None else ThreadAuthorityCache()
        self.locks = locks if locks is not None else KeyedLock()

    def get_authority(self, thread_id: str) -> Optional[ThreadAuthority]:
        """
        Cached authority for a thread, computed on first use.

        Threads without any identifier are not cached, so a later message
        carrying one is picked up.
        """
        cached = self.cache.get(thread_id)
        if cached is not None:
            return cached

        with self.locks.hold(("thread", thread_id)):
            cached = self.cache.get(thread_id)
            if cached is not None:
                return cached

            authority = self.compute_authority(thread_id)
            if authority is not None:
                self.cache.put(authority)
            return authority

    def compute_authority(self, thread_id: str) -> Optional[ThreadAuthority]:
        """Compute the authority from the store, bypassing the cache."""
        messages = self.message_service.get_thread_messages(thread_id)
        if not messages:
            return None

        extractions = self.identifier_service.extract_many([m.id for m in messages])

        for message in authority_order(messages):
            extracted = extractions.get(message.id)
            if extracted is None:
                continue

            identifier = best_identifier(extracted.identifiers)
            if identifier is None:
                continue

            authority = ThreadAuthority(
                thread_id=thread_id,
                authority_message_id=message.id,
                identifier_type=identifier.type,
                identifier_value=identifier.value,
                confidence_score=identifier.confidence,
                received_at=message.received_at,
                subject=message.subject,
                computed_at=datetime.now(timezone.utc),
            )

            logger.info(
                "thread_authority_computed",
                thread_id=thread_id,
                authority_message_id=message.id,
                identifier_type=identifier.type.value,
                identifier_value=identifier.value,
                message_count=len(messages)
            )
            return authority

        logger.debug("thread_has_no_identifiers", thread_id=thread_id, message_count=len(messages))
        return None

    def get_identifiers_for_linking(self, message: MessageMetadata) -> ResolvedIdentifiers:
        """
        Identifiers to match a message on.

        A reply in a thread with an authority uses the authority's
        identifier. Anything else uses its own extraction.
        """
        if message.in_thread and message.is_reply:
            authority = self.get_authority(message.thread_id)
            if authority is not None:
                identifier = Identifier(
                    type=authority.identifier_type,
                    value=authority.identifier_value,
                    confidence=authority.confidence_score,
                    message_id=authority.authority_message_id,
                )
                return ResolvedIdentifiers(
                    message_id=message.id,
                    identifiers=IdentifierSet.single(identifier),
                    origin=IdentifierOrigin.THREAD_AUTHORITY,
                    authority=authority,
                )

        extracted = self.identifier_service.extract(message.id)
        if extracted.identifiers.is_empty():
            return ResolvedIdentifiers(message_id=message.id)

        return ResolvedIdentifiers(
            message_id=message.id,
            identifiers=extracted.identifiers,
            origin=IdentifierOrigin.DIRECT_EXTRACTION,
        )

    def get_thread_summary(self, thread_id: str) -> Optional[ThreadSummary]:
        """Message counts, authority and all distinct identifiers of a thread."""
        messages = self.message_service.get_thread_messages(thread_id)
        if not messages:
            return None

        authority = self.get_authority(thread_id)
        authority_id = authority.authority_message_id if authority else None
        extractions = self.identifier_service.extract_many([m.id for m in messages])

        identifiers: list[ThreadIdentifier] = []
        seen = set()
        for message in authority_order(messages):
            extracted = extractions.get(message.id)
            if extracted is None:
                continue
            for identifier in extracted.identifiers:
                if identifier.key in seen:
                    continue
                seen.add(identifier.key)
                identifiers.append(ThreadIdentifier(
                    message_id=message.id,
                    identifier_type=identifier.type,
                    identifier_value=identifier.value,
                    confidence_score=identifier.confidence,
                    is_from_authority=message.id == authority_id,
                    source=identifier.source,
                ))

        dated = sorted(m.received_at for m in messages if m.received_at)
        originals = [m for m in messages if not m.is_reply]

        return ThreadSummary(
            thread_id=thread_id,
            message_count=len(messages),
            original_message_count=len(originals),
            reply_message_count=len(messages) - len(originals),
            authority=authority,
            identifiers=identifiers,
            first_message_at=dated[0] if dated else None,
            last_message_at=dated[-1] if dated else None,
        )


# Singleton instance
_thread_authority_resolver: Optional[ThreadAuthorityResolver] = None


def get_thread_authority_resolver() -> ThreadAuthorityResolver:
    """Get or create ThreadAuthorityResolver instance."""
    global _thread_authority_resolver
    if _thread_authority_resolver is None:
        _thread_authority_resolver = ThreadAuthorityResolver(
            get_message_service(),
            get_identifier_service(),
        )
    return _thread_authority_resolver
