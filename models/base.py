"""
Base schemas and mixins for all models.
"""

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Optional


class BaseSchema(BaseModel):
    """
    Base for all schemas.

    Features:
        - Auto-trim whitespace from strings
        - Validate on attribute assignment
        - Allow ORM objects (from_attributes)
    """
    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        validate_assignment=True
    )


class TimestampMixin(BaseModel):
    """Add timestamps to response models."""
    created_at: datetime
    updated_at: Optional[datetime] = None


class BatchRequest(BaseSchema):
    """Common parameters of the batch job entrypoints."""
    batch_size: Optional[int] = None
    max_items: Optional[int] = None
    dry_run: Optional[bool] = None
    concurrency: Optional[int] = None
    timeout_seconds: Optional[float] = None
