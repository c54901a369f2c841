"""
Task ordering engine for the Kanban board.

Every task has a 0-based `position` inside its bucket, the set of tasks that
share one `(project_id, board_column)` pair. For N tasks in a bucket the
positions are exactly 0..N-1. The operations here are the only code that
writes `position`:

- `append_task`: new task goes to the end of its bucket
- `move_task`: relocate a task inside its column or into another column
- `remove_task`: delete a task and close the gap it leaves
- `rebalance_board`: renumber buckets that lost density before these rules applied

Each operation runs as one transaction. The project row is locked with
SELECT ... FOR UPDATE first, so concurrent moves on the same project are
serialized, and the range shift, the moved row and the audit events are
committed or rolled back together. Nothing here retries on failure.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from errors import ConflictError, DashboardError, InternalError, InvalidArgumentError, NotFoundError
from events import create_task_event
from time_utils import utc_now

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATEs: serialization failure, deadlock, lock not available
LOCK_CONFLICT_CODES = {"40001", "40P01", "55P03"}


@dataclass
class MoveResult:
    task: models.Task
    changed: bool
    from_column: models.TaskColumn
    from_position: int


class Bucket:
    """The tasks of one project that sit in one board column."""

    def __init__(self, db: Session, project_id: int, column: models.TaskColumn):
        self.db = db
        self.project_id = project_id
        self.column = column

    def __repr__(self) -> str:
        return f"Bucket(project_id={self.project_id}, column={self.column.value})"

    def query(self):
        return self.db.query(models.Task).filter(
            models.Task.project_id == self.project_id,
            models.Task.board_column == self.column
        )

    def size(self) -> int:
        return self.query().count()

    def next_position(self) -> int:
        max_position = (
            self.db.query(func.max(models.Task.position))
            .filter(
                models.Task.project_id == self.project_id,
                models.Task.board_column == self.column
            )
            .scalar()
        )
        return 0 if max_position is None else max_position + 1

    def tasks(self) -> List[models.Task]:
        return (
            self.query()
            .order_by(models.Task.position.asc(), models.Task.created_at.asc(), models.Task.id.asc())
            .all()
        )

    def shift(self, delta: int, lower: Optional[int] = None, upper: Optional[int] = None) -> int:
        """
        Add `delta` to every position in [lower, upper].

        Either bound may be None for an open range. Runs as a single UPDATE
        statement and returns the number of rows touched. Only `position`
        changes: `updated_at` is written back as-is so its onupdate does not fire.
        """
        query = self.query()
        if lower is not None:
            query = query.filter(models.Task.position >= lower)
        if upper is not None:
            query = query.filter(models.Task.position <= upper)
        count = query.update(
            {
                models.Task.position: models.Task.position + delta,
                models.Task.updated_at: models.Task.updated_at,
            },
            synchronize_session="fetch"
        )
        logger.debug(f"{self}: shifted {count} task(s) by {delta} in range [{lower}, {upper}]")
        return count


@contextmanager
def ordering_transaction(db: Session, commit: bool = True):
    """
    Run a block of ordering writes as one unit.

    On success the session is committed (or only flushed when the caller owns
    the transaction). On any failure the session is rolled back, so a bucket
    is never left half shifted.
    """
    try:
        yield
        if commit:
            db.commit()
        else:
            db.flush()
    except DashboardError:
        db.rollback()
        raise
    except OperationalError as e:
        db.rollback()
        if getattr(e.orig, "pgcode", None) in LOCK_CONFLICT_CODES:
            logger.warning(f"Ordering transaction lost a lock race: {e}")
            raise ConflictError("Task board was changed concurrently. Reload the board and retry.") from e
        logger.error(f"Ordering transaction rolled back: {e}")
        raise InternalError("Failed to update task position") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Ordering transaction rolled back: {e}")
        raise InternalError("Failed to update task position") from e


def parse_column(value) -> models.TaskColumn:
    """Coerce a client supplied column name to a TaskColumn."""
    if isinstance(value, models.TaskColumn):
        return value
    if value is None or value == "":
        raise InvalidArgumentError("Missing required field: newColumn")
    try:
        return models.TaskColumn(getattr(value, "value", value))
    except ValueError:
        valid = ", ".join(c.value for c in models.TaskColumn)
        raise InvalidArgumentError(f"Unknown column '{value}'. Valid values: {valid}")


def parse_int(name: str, value) -> int:
    """Coerce a client supplied id or index. Integral floats and digit strings are accepted."""
    if isinstance(value, bool):
        raise InvalidArgumentError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise InvalidArgumentError(f"{name} must be an integer, got {value!r}")


def clamp_position(position: int, bucket_size: int) -> int:
    """Clamp a destination index to [0, bucket_size - 1]."""
    return max(0, min(position, bucket_size - 1))


def lock_project(db: Session, project_id: int) -> models.Project:
    """Take the per-project ordering lock. Raises NotFoundError for unknown projects."""
    project = (
        db.query(models.Project)
        .filter(models.Project.id == project_id)
        .with_for_update()
        .first()
    )
    if project is None:
        raise NotFoundError("Project not found")
    return project


def _load_task(db: Session, task_id: int, project_id: int) -> models.Task:
    # populate_existing: positions read before the lock may be stale
    task = (
        db.query(models.Task)
        .filter(models.Task.id == task_id, models.Task.project_id == project_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if task is None:
        raise NotFoundError("Task not found")
    return task


def _set_column(task: models.Task, column: models.TaskColumn) -> None:
    task.board_column = column
    task.status = column
    if column == models.TaskColumn.done:
        task.completed_at = task.completed_at or utc_now()
    else:
        task.completed_at = None


def append_task(db: Session, task: models.Task, commit: bool = True) -> models.Task:
    """
    Insert a new task at the end of its bucket.

    The task's column defaults to `todo`; its status is set to match.
    """
    column = parse_column(task.board_column or models.TaskColumn.todo)

    with ordering_transaction(db, commit):
        lock_project(db, task.project_id)
        _set_column(task, column)
        task.position = Bucket(db, task.project_id, column).next_position()
        db.add(task)
        db.flush()

    logger.info(f"Task {task.id} appended to {column.value} at position {task.position}")
    return task


def _move(
    db: Session,
    task_id: int,
    project_id: int,
    column: models.TaskColumn,
    new_position: Optional[int],
) -> MoveResult:
    task = _load_task(db, task_id, project_id)
    old_column, old_position = task.board_column, task.position
    source = Bucket(db, project_id, old_column)

    if column == old_column:
        size_after = source.size()
    else:
        size_after = Bucket(db, project_id, column).size() + 1

    # None means "end of the destination column"
    requested = size_after - 1 if new_position is None else new_position
    dest_position = clamp_position(requested, size_after)
    if dest_position != requested:
        logger.warning(
            f"Clamped position {requested} to {dest_position} for task {task_id} "
            f"in {column.value} (bucket size after move: {size_after})"
        )

    if column == old_column:
        if dest_position == old_position:
            logger.debug(f"Task {task_id} already at {column.value}@{old_position}, nothing to do")
            return MoveResult(task=task, changed=False, from_column=old_column, from_position=old_position)

        if old_position < dest_position:
            source.shift(-1, lower=old_position + 1, upper=dest_position)
        else:
            source.shift(1, lower=dest_position, upper=old_position - 1)
        task.position = dest_position
    else:
        source.shift(-1, lower=old_position + 1)
        Bucket(db, project_id, column).shift(1, lower=dest_position)
        _set_column(task, column)
        task.position = dest_position
    db.flush()

    if column != old_column:
        create_task_event(
            db=db,
            task_id=task.id,
            event_type=models.TaskEventType.status_change,
            field_name="status",
            old_value=old_column.value,
            new_value=column.value,
            commit=False
        )
    create_task_event(
        db=db,
        task_id=task.id,
        event_type=models.TaskEventType.position_change,
        field_name="position",
        old_value=str(old_position),
        new_value=str(dest_position),
        metadata={
            "from_column": old_column.value,
            "from_position": old_position,
            "to_column": column.value,
            "to_position": dest_position,
        },
        commit=False
    )

    logger.info(
        f"Task {task_id} moved {old_column.value}@{old_position} -> {column.value}@{dest_position}"
    )
    return MoveResult(task=task, changed=True, from_column=old_column, from_position=old_position)


def move_task(
    db: Session,
    task_id: int,
    new_column,
    new_position: int,
    project_id: int,
    commit: bool = True,
) -> MoveResult:
    """
    Move a task to `new_position` of `new_column` within its project.

    `new_position` is the index the task occupies after the move. Values
    outside the valid range are clamped rather than rejected, since the
    client's view of the board may be stale by the time the request lands.

    Raises:
        InvalidArgumentError: missing or non-integer field, or unknown column
        NotFoundError: task does not exist in `project_id`
        ConflictError: lost a lock race against another writer
        InternalError: any other persistence failure (already rolled back)
    """
    missing = [
        name for name, value in (
            ("taskId", task_id), ("newColumn", new_column),
            ("newPosition", new_position), ("projectId", project_id),
        )
        if value is None
    ]
    if missing:
        raise InvalidArgumentError(f"Missing required fields: {', '.join(missing)}")
    task_id = parse_int("taskId", task_id)
    new_position = parse_int("newPosition", new_position)
    project_id = parse_int("projectId", project_id)
    column = parse_column(new_column)

    with ordering_transaction(db, commit):
        lock_project(db, project_id)
        result = _move(db, task_id, project_id, column, new_position)
    return result


def move_task_to_end(
    db: Session,
    task_id: int,
    new_column,
    project_id: int,
    commit: bool = True,
) -> MoveResult:
    """Move a task to the last slot of `new_column`. Used by column-changing edits."""
    column = parse_column(new_column)

    with ordering_transaction(db, commit):
        lock_project(db, project_id)
        result = _move(db, task_id, project_id, column, None)
    return result


def remove_task(db: Session, task: models.Task, commit: bool = True) -> int:
    """
    Delete a task and close the gap in its bucket.

    Returns the position the task held.
    """
    task_id, project_id = task.id, task.project_id

    with ordering_transaction(db, commit):
        lock_project(db, project_id)
        task = _load_task(db, task_id, project_id)
        column, position = task.board_column, task.position
        db.delete(task)
        db.flush()
        Bucket(db, project_id, column).shift(-1, lower=position + 1)

    logger.info(f"Task {task_id} removed from {column.value}@{position}")
    return position


def rebalance_board(
    db: Session,
    project_id: int,
    column: Optional[models.TaskColumn] = None,
    commit: bool = True,
) -> int:
    """
    Renumber one bucket (or every bucket of the project) densely from 0.

    Relative order is kept: by current position, then creation time, then id.
    Returns the number of tasks whose position changed.
    """
    columns = [parse_column(column)] if column is not None else list(models.TaskColumn)
    updated = 0

    with ordering_transaction(db, commit):
        lock_project(db, project_id)
        for col in columns:
            for index, task in enumerate(Bucket(db, project_id, col).tasks()):
                if task.position != index:
                    task.position = index
                    updated += 1
        db.flush()

    logger.info(f"Rebalanced project {project_id} ({len(columns)} column(s)): {updated} task(s) renumbered")
    return updated


def get_board(db: Session, project_id: int) -> Dict[models.TaskColumn, List[models.Task]]:
    """Return every column of the project's board with its tasks in rank order."""
    project = db.query(models.Project).filter(models.Project.id == project_id).first()
    if project is None:
        raise NotFoundError("Project not found")
    return {column: Bucket(db, project_id, column).tasks() for column in models.TaskColumn}
