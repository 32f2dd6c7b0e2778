"""
Results of linking operations and batch jobs.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import Field

from models.base import BaseSchema
from models.confidence import ConfidenceResult
from models.conflict import ConflictRecord
from models.identifiers import IdentifierType
from models.message import EmailAuthority
from models.shipment import ShipmentStatus
from models.thread import IdentifierOrigin

T = TypeVar("T")


@dataclass
class Lookup(Generic[T]):
    """
    Result of a store lookup.

    Keeps "no such row" apart from "the store failed", so a failing
    lookup is never taken for an orphan.
    """
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.value is not None

    @property
    def not_found(self) -> bool:
        return self.value is None and self.error is None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def hit(cls, value: T) -> "Lookup[T]":
        return cls(value=value)

    @classmethod
    def miss(cls) -> "Lookup[T]":
        return cls()

    @classmethod
    def failure(cls, error: str) -> "Lookup[T]":
        return cls(error=error)


class LinkOutcome(str, Enum):
    """What process_message did with a message."""
    AUTO_LINKED = "auto_linked"
    SUGGESTED = "suggested"
    ORPHAN = "orphan"
    CONFLICTED = "conflicted"
    NO_ACTION = "no_action"


class LinkingResult(BaseSchema):
    """Outcome of processing one message."""
    message_id: str
    outcome: LinkOutcome
    matched: bool = False
    shipment_id: Optional[str] = None
    identifier_type: Optional[IdentifierType] = None
    identifier_value: Optional[str] = None
    confidence: Optional[ConfidenceResult] = None
    email_authority: Optional[EmailAuthority] = None
    identifier_origin: IdentifierOrigin = IdentifierOrigin.NONE
    conflict: Optional[ConflictRecord] = None
    status_updated_to: Optional[ShipmentStatus] = None
    fields_updated: list[str] = Field(default_factory=list)
    reasoning: str = ""

    @property
    def confidence_score(self) -> Optional[int]:
        return self.confidence.score if self.confidence else None


class BatchResult(BaseSchema):
    """Summary of a batch run over many messages."""
    processed: int = 0
    # Every message that ended up linked, conflicted ones included
    linked: int = 0
    auto_linked: int = 0
    suggested: int = 0
    orphaned: int = 0
    conflicted: int = 0
    no_action: int = 0
    failed: int = 0
    cancelled: bool = False
    errors: list[str] = Field(default_factory=list)

    def record(self, result: LinkingResult) -> None:
        self.processed += 1
        if result.matched:
            self.linked += 1
        if result.outcome == LinkOutcome.AUTO_LINKED:
            self.auto_linked += 1
        elif result.outcome == LinkOutcome.SUGGESTED:
            self.suggested += 1
        elif result.outcome == LinkOutcome.ORPHAN:
            self.orphaned += 1
        elif result.outcome == LinkOutcome.CONFLICTED:
            self.conflicted += 1
        else:
            self.no_action += 1


class BackfillResult(BaseSchema):
    """Summary of backfilling one shipment (or all of them)."""
    shipment_id: Optional[str] = None
    shipments_processed: int = 0
    messages_linked: int = 0
    orphans_linked: int = 0
    conflicts: int = 0
    cancelled: bool = False
    errors: list[str] = Field(default_factory=list)

    @property
    def total_linked(self) -> int:
        return self.messages_linked + self.orphans_linked

    def merge(self, other: "BackfillResult") -> None:
        self.shipments_processed += 1
        self.messages_linked += other.messages_linked
        self.orphans_linked += other.orphans_linked
        self.conflicts += other.conflicts
        self.errors.extend(other.errors)


class UnlinkedMessage(BaseSchema):
    """A message that names one of a shipment's identifiers but is not linked to it."""
    message_id: str
    identifier_type: IdentifierType
    identifier_value: str
    entity_confidence: float = 0
    subject: Optional[str] = None
    sender_email: Optional[str] = None
    received_at: Optional[datetime] = None
    document_type: Optional[str] = None
    linked_shipment_id: Optional[str] = None


class CrossLink(BaseSchema):
    """A reply linked to a different shipment than its thread authority names."""
    message_id: str
    thread_id: str
    current_shipment_id: str
    correct_shipment_id: Optional[str] = None
    authority_message_id: Optional[str] = None
    authority_identifier: Optional[str] = None
    repaired: bool = False


class RepairResult(BaseSchema):
    """Summary of one cross-link repair pass."""
    dry_run: bool = False
    scanned: int = 0
    cross_links_found: int = 0
    repaired: int = 0
    cross_links: list[CrossLink] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    next_offset: Optional[int] = None


class BatchSummary(BaseSchema):
    """Count summary returned by every batch entrypoint (API and CLI)."""
    processed: int = 0
    linked: int = 0
    suggested: int = 0
    conflicts: int = 0
    errors: int = 0
    cancelled: bool = False
    error_messages: list[str] = Field(default_factory=list)
    next_offset: Optional[int] = None

    @classmethod
    def from_batch(cls, result: BatchResult) -> "BatchSummary":
        return cls(
            processed=result.processed,
            linked=result.linked,
            suggested=result.suggested,
            conflicts=result.conflicted,
            errors=result.failed,
            cancelled=result.cancelled,
            error_messages=result.errors,
        )

    @classmethod
    def from_backfill(cls, result: BackfillResult) -> "BatchSummary":
        return cls(
            processed=result.shipments_processed,
            linked=result.total_linked,
            conflicts=result.conflicts,
            errors=len(result.errors),
            cancelled=result.cancelled,
            error_messages=result.errors,
        )

    @classmethod
    def from_repair(cls, result: RepairResult) -> "BatchSummary":
        return cls(
            processed=result.scanned,
            linked=result.repaired,
            conflicts=result.cross_links_found,
            errors=len(result.errors),
            error_messages=result.errors,
            next_offset=result.next_offset,
        )
