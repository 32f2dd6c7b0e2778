"""
Business logic services.

Store services wrap one Supabase table each. The linking, backfill,
thread authority and matcher services hold the linking rules and are
wired together by their get_x_service() factories.
"""

from services.entity_service import EntityService, get_entity_service
from services.message_service import MessageService, get_message_service
from services.shipment_service import ShipmentService, get_shipment_service
from services.link_service import LinkService, get_link_service
from services.audit_service import AuditService, get_audit_service
from services.conflict_service import ConflictService, get_conflict_service
from services.pending_document_service import PendingDocumentService, get_pending_document_service
from services.identifier_service import IdentifierService, get_identifier_service
from services.thread_authority_service import (
    ThreadAuthorityCache,
    ThreadAuthorityResolver,
    get_thread_authority_resolver,
)
from services.shipment_matcher_service import ShipmentMatcher, ConflictResolver, get_shipment_matcher
from services.linking_service import LinkingService, get_linking_service, infer_status
from services.backfill_service import BackfillService, get_backfill_service

__all__ = [
    "EntityService",
    "get_entity_service",
    "MessageService",
    "get_message_service",
    "ShipmentService",
    "get_shipment_service",
    "LinkService",
    "get_link_service",
    "AuditService",
    "get_audit_service",
    "ConflictService",
    "get_conflict_service",
    "PendingDocumentService",
    "get_pending_document_service",
    "IdentifierService",
    "get_identifier_service",
    "ThreadAuthorityCache",
    "ThreadAuthorityResolver",
    "get_thread_authority_resolver",
    "ShipmentMatcher",
    "ConflictResolver",
    "get_shipment_matcher",
    "LinkingService",
    "get_linking_service",
    "infer_status",
    "BackfillService",
    "get_backfill_service",
]
