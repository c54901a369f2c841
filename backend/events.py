"""
Task audit trail.

Events are written in the caller's transaction. Callers that group several
writes into one atomic unit (the ordering engine, task updates) pass
`commit=False` and commit once at the end.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


def create_task_event(
    db: Session,
    task_id: int,
    event_type: models.TaskEventType,
    field_name: Optional[str] = None,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    metadata: Optional[dict] = None,
    commit: bool = True
) -> models.TaskEvent:
    """
    Create a task event for the audit trail.

    Args:
        db: Database session
        task_id: ID of the task
        event_type: Type of event (from TaskEventType enum)
        field_name: Name of the field that changed
        old_value: Previous value (optional)
        new_value: New value (optional)
        metadata: Additional context stored as JSON (optional)
        commit: Whether to commit immediately (set False inside larger transactions)

    Returns:
        Created TaskEvent instance
    """
    logger.debug(f"Creating event: type={event_type}, task_id={task_id}, field={field_name}")

    event = models.TaskEvent(
        task_id=task_id,
        event_type=event_type.value if hasattr(event_type, "value") else event_type,
        field_name=field_name,
        old_value=old_value,
        new_value=new_value,
        event_metadata=metadata
    )

    db.add(event)
    db.flush()

    if commit:
        db.commit()
        db.refresh(event)

    logger.debug(f"Event created: id={event.id}, type={event_type}")
    return event


def stringify(value) -> Optional[str]:
    """Render a field value the way events store it."""
    if value is None:
        return None
    if hasattr(value, "value"):
        return value.value
    return str(value)
