"""
Pydantic models for validation and serialization.
"""

from models.base import (
    BaseSchema,
    TimestampMixin,
    BatchRequest,
)
from models.identifiers import (
    IdentifierType,
    IdentifierSource,
    Identifier,
    IdentifierSet,
    AncillaryFields,
    ExtractedIdentifiers,
)
from models.entity import (
    EntityType,
    EntityRecord,
)
from models.message import (
    EmailAuthority,
    SenderCategory,
    MessageMetadata,
)
from models.shipment import (
    ShipmentStatus,
    STATUS_ORDER,
    PROPAGATED_FIELDS,
    is_status_upgrade,
    ShipmentResponse,
    ShipmentFieldUpdate,
)
from models.link import (
    LinkSource,
    LinkCreate,
    LinkResponse,
    SuggestionCreate,
    SuggestionResponse,
)
from models.thread import (
    IdentifierOrigin,
    ThreadAuthority,
    ThreadIdentifier,
    ThreadSummary,
    ResolvedIdentifiers,
)
from models.conflict import (
    ConflictType,
    ConflictPolicy,
    ConflictRecord,
)
from models.audit import (
    AuditOperation,
    AuditEntry,
)
from models.confidence import (
    LinkDecision,
    ConfidenceInput,
    ConfidenceBreakdown,
    ConfidenceResult,
)
from models.pending_document import (
    PendingStatus,
    PendingDocumentCreate,
    PendingDocumentResponse,
)
from models.linking import (
    Lookup,
    LinkOutcome,
    LinkingResult,
    BatchResult,
    BackfillResult,
    UnlinkedMessage,
    CrossLink,
    RepairResult,
    BatchSummary,
)

__all__ = [
    # Base
    "BaseSchema",
    "TimestampMixin",
    "BatchRequest",
    # Identifiers
    "IdentifierType",
    "IdentifierSource",
    "Identifier",
    "IdentifierSet",
    "AncillaryFields",
    "ExtractedIdentifiers",
    # Entities
    "EntityType",
    "EntityRecord",
    # Messages
    "EmailAuthority",
    "SenderCategory",
    "MessageMetadata",
    # Shipments
    "ShipmentStatus",
    "STATUS_ORDER",
    "PROPAGATED_FIELDS",
    "is_status_upgrade",
    "ShipmentResponse",
    "ShipmentFieldUpdate",
    # Links
    "LinkSource",
    "LinkCreate",
    "LinkResponse",
    "SuggestionCreate",
    "SuggestionResponse",
    # Threads
    "IdentifierOrigin",
    "ThreadAuthority",
    "ThreadIdentifier",
    "ThreadSummary",
    "ResolvedIdentifiers",
    # Conflicts
    "ConflictType",
    "ConflictPolicy",
    "ConflictRecord",
    # Audit
    "AuditOperation",
    "AuditEntry",
    # Confidence
    "LinkDecision",
    "ConfidenceInput",
    "ConfidenceBreakdown",
    "ConfidenceResult",
    # Pending documents
    "PendingStatus",
    "PendingDocumentCreate",
    "PendingDocumentResponse",
    # Results
    "Lookup",
    "LinkOutcome",
    "LinkingResult",
    "BatchResult",
    "BackfillResult",
    "UnlinkedMessage",
    "CrossLink",
    "RepairResult",
    "BatchSummary",
]
