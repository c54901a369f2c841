from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import or_
from typing import List, Optional
import logging
import os

from database import get_db, engine, Base
import models
import schemas
import ordering
from errors import DashboardError
from events import create_task_event, stringify
from time_utils import is_overdue

# Configure logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

DATABASE_AUTO_CREATE = os.getenv("DATABASE_AUTO_CREATE", "true").lower() == "true"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

app = FastAPI(
    title="Business Dashboard API",
    description="Projects, tasks, users and a Kanban task board",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DashboardError)
async def dashboard_error_handler(request: Request, exc: DashboardError):
    """Render domain errors the same way FastAPI renders HTTPException."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.on_event("startup")
async def create_tables():
    """Create tables on startup unless DATABASE_AUTO_CREATE=false (migrations own the schema)."""
    if not DATABASE_AUTO_CREATE:
        logger.debug("DATABASE_AUTO_CREATE disabled, skipping table creation")
        return
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Users ==============

@app.get("/api/users", response_model=List[schemas.User])
def list_users(db: Session = Depends(get_db)):
    """List all users."""
    logger.debug("Listing all users")
    return db.query(models.User).order_by(models.User.name.asc()).all()


@app.post("/api/users", response_model=schemas.User, status_code=201)
def create_user(user_data: schemas.UserCreate, db: Session = Depends(get_db)):
    """Create a new user."""
    logger.debug(f"Creating user: {user_data.email}")

    existing = db.query(models.User).filter(models.User.email == user_data.email).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user_dict = user_data.model_dump()
    user_dict["name"] = user_dict["name"].strip()
    if not user_dict["name"]:
        raise HTTPException(status_code=400, detail="User name is required")
    user_dict["role"] = user_data.role.value

    db_user = models.User(**user_dict)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)

    logger.info(f"User created: {db_user.email} (ID: {db_user.id})")
    return db_user


@app.get("/api/users/{user_id}", response_model=schemas.User)
def get_user(user_id: int, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.put("/api/users/{user_id}", response_model=schemas.User)
def update_user(user_id: int, user_update: schemas.UserUpdate, db: Session = Depends(get_db)):
    """Update a user. Only the fields present in the body change."""
    logger.debug(f"Updating user {user_id}")

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    update_data = user_update.model_dump(exclude_unset=True)

    # Role column is non-nullable
    if "role" in update_data:
        if update_data["role"] is None:
            raise HTTPException(
                status_code=400,
                detail="Role cannot be null. Valid values: admin, editor, viewer"
            )
        update_data["role"] = update_data["role"].value

    if "email" in update_data and update_data["email"] != user.email:
        existing_user = db.query(models.User).filter(
            models.User.email == update_data["email"],
            models.User.id != user_id
        ).first()
        if existing_user:
            raise HTTPException(
                status_code=400,
                detail=f"Email '{update_data['email']}' is already in use"
            )

    for key, value in update_data.items():
        setattr(user, key, value)

    db.commit()
    db.refresh(user)

    logger.info(f"User updated: {user.email} (ID: {user.id})")
    return user


@app.delete("/api/users/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db)):
    """Delete a user. Tasks and projects referencing them keep existing, unassigned."""
    logger.debug(f"Deleting user {user_id}")

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    db.query(models.Task).filter(models.Task.assignee_id == user_id).update(
        {models.Task.assignee_id: None}, synchronize_session="fetch"
    )
    db.query(models.Task).filter(models.Task.reporter_id == user_id).update(
        {models.Task.reporter_id: None}, synchronize_session="fetch"
    )
    db.query(models.Project).filter(models.Project.owner_id == user_id).update(
        {models.Project.owner_id: None}, synchronize_session="fetch"
    )
    db.delete(user)
    db.commit()

    logger.info(f"User deleted: {user.email} (ID: {user_id})")
    return {"message": "User deleted"}


# ============== Projects ==============

def get_project_or_404(db: Session, project_id: int) -> models.Project:
    project = db.query(models.Project).filter(models.Project.id == project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def validate_user_reference(db: Session, user_id: Optional[int], label: str) -> None:
    if user_id is None:
        return
    if not db.query(models.User).filter(models.User.id == user_id).first():
        raise HTTPException(status_code=404, detail=f"{label} with ID {user_id} not found")


@app.get("/api/projects", response_model=schemas.ProjectPage)
def list_projects(
    status: Optional[schemas.ProjectStatus] = Query(None),
    priority: Optional[schemas.ProjectPriority] = Query(None),
    search: Optional[str] = Query(None, description="Case-insensitive match on name or description"),
    archived: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """List projects, newest first."""
    logger.debug(f"Listing projects: status={status}, priority={priority}, search={search}, archived={archived}")

    query = db.query(models.Project).filter(models.Project.is_archived == archived)
    if status:
        query = query.filter(models.Project.status == status)
    if priority:
        query = query.filter(models.Project.priority == priority)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            models.Project.name.ilike(pattern),
            models.Project.description.ilike(pattern)
        ))

    total = query.count()
    projects = (
        query.options(joinedload(models.Project.owner))
        .order_by(models.Project.created_at.desc(), models.Project.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )

    return schemas.ProjectPage(
        data=projects,
        total=total,
        page=page,
        page_size=page_size,
        has_more=total > page * page_size
    )


@app.post("/api/projects", response_model=schemas.Project, status_code=201)
def create_project(project: schemas.ProjectCreate, db: Session = Depends(get_db)):
    """Create a new project."""
    logger.debug(f"Creating project: {project.name}")

    if not project.name.strip():
        raise HTTPException(status_code=400, detail="Project name is required")
    validate_user_reference(db, project.owner_id, "Owner")

    project_data = project.model_dump()
    project_data["name"] = project.name.strip()

    db_project = models.Project(**project_data)
    db.add(db_project)
    db.commit()
    db.refresh(db_project)

    logger.info(f"Project created: {db_project.name} (ID: {db_project.id})")
    return db_project


@app.get("/api/projects/{project_id}", response_model=schemas.ProjectWithTasks)
def get_project(project_id: int, db: Session = Depends(get_db)):
    """Get a project with its tasks in board order."""
    logger.debug(f"Requesting project {project_id}")

    project = (
        db.query(models.Project)
        .options(joinedload(models.Project.owner))
        .filter(models.Project.id == project_id)
        .first()
    )
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    column_order = list(models.TaskColumn)
    tasks = sorted(project.tasks, key=lambda t: (column_order.index(t.board_column), t.position))

    result = schemas.ProjectWithTasks.model_validate(project, from_attributes=True)
    result.tasks = [schemas.Task.model_validate(task, from_attributes=True) for task in tasks]
    return result


@app.put("/api/projects/{project_id}", response_model=schemas.Project)
def update_project(project_id: int, project_update: schemas.ProjectUpdate, db: Session = Depends(get_db)):
    logger.debug(f"Updating project {project_id}")

    project = get_project_or_404(db, project_id)

    update_data = project_update.model_dump(exclude_unset=True)
    if "name" in update_data:
        if update_data["name"] is None or not update_data["name"].strip():
            raise HTTPException(status_code=400, detail="Project name cannot be empty")
        update_data["name"] = update_data["name"].strip()
    if "owner_id" in update_data:
        validate_user_reference(db, update_data["owner_id"], "Owner")

    for key, value in update_data.items():
        setattr(project, key, value)

    db.commit()
    db.refresh(project)

    logger.info(f"Project updated: {project.name} (ID: {project_id})")
    return project


@app.delete("/api/projects/{project_id}")
def delete_project(project_id: int, db: Session = Depends(get_db)):
    """Delete a project and all of its tasks."""
    logger.debug(f"Deleting project {project_id}")

    project = get_project_or_404(db, project_id)
    db.delete(project)
    db.commit()

    logger.info(f"Project {project_id} deleted")
    return {"message": "Project deleted"}


@app.get("/api/projects/{project_id}/stats", response_model=schemas.ProjectStats)
def get_project_stats(project_id: int, db: Session = Depends(get_db)):
    """Task counts per column, overdue count and completion percentage."""
    logger.debug(f"Requesting stats for project {project_id}")

    project = get_project_or_404(db, project_id)
    tasks = db.query(models.Task).filter(models.Task.project_id == project_id).all()

    total = len(tasks)
    done = sum(1 for t in tasks if t.status == models.TaskStatus.done)

    return schemas.ProjectStats(
        id=project.id,
        name=project.name,
        total_tasks=total,
        todo_tasks=sum(1 for t in tasks if t.status == models.TaskStatus.todo),
        in_progress_tasks=sum(1 for t in tasks if t.status == models.TaskStatus.in_progress),
        review_tasks=sum(1 for t in tasks if t.status == models.TaskStatus.review),
        done_tasks=done,
        overdue_tasks=sum(1 for t in tasks if is_overdue(t.due_date, t.status)),
        progress_percentage=round((done / total * 100) if total > 0 else 0, 1)
    )


# ============== Board ==============

@app.get("/api/projects/{project_id}/board", response_model=schemas.Board)
def get_board(project_id: int, db: Session = Depends(get_db)):
    """Kanban board: every column with its tasks in rank order."""
    logger.debug(f"Requesting board for project {project_id}")

    board = ordering.get_board(db, project_id)
    return schemas.Board(
        project_id=project_id,
        columns=[
            schemas.BoardColumn(
                column=column.value,
                tasks=[schemas.Task.model_validate(task, from_attributes=True) for task in tasks]
            )
            for column, tasks in board.items()
        ]
    )


@app.post("/api/projects/{project_id}/board/rebalance", response_model=schemas.RebalanceResult)
def rebalance_board(
    project_id: int,
    column: Optional[schemas.TaskColumn] = Query(None, description="Only renumber this column"),
    db: Session = Depends(get_db)
):
    """Renumber board positions densely from 0, keeping relative order."""
    logger.info(f"Rebalancing board for project {project_id} (column={column})")

    updated = ordering.rebalance_board(db, project_id, column)
    return schemas.RebalanceResult(project_id=project_id, column=column, updated_count=updated)


# ============== Tasks ==============

def load_task(db: Session, task_id: int) -> Optional[models.Task]:
    return (
        db.query(models.Task)
        .options(
            joinedload(models.Task.assignee),
            joinedload(models.Task.reporter)
        )
        .filter(models.Task.id == task_id)
        .first()
    )


@app.get("/api/tasks", response_model=schemas.TaskPage)
def list_tasks(
    project_id: Optional[int] = Query(None),
    status: Optional[schemas.TaskStatus] = Query(None),
    priority: Optional[schemas.TaskPriority] = Query(None),
    assignee_id: Optional[int] = Query(None),
    search: Optional[str] = Query(None, description="Case-insensitive match on title or description"),
    labels: Optional[str] = Query(None, description="Comma-separated labels, matches any"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """List tasks in board order."""
    logger.debug(f"Listing tasks: project={project_id}, status={status}, priority={priority}, assignee={assignee_id}, search={search}, labels={labels}")

    query = db.query(models.Task)
    if project_id:
        query = query.filter(models.Task.project_id == project_id)
    if status:
        query = query.filter(models.Task.status == status)
    if priority:
        query = query.filter(models.Task.priority == priority)
    if assignee_id:
        query = query.filter(models.Task.assignee_id == assignee_id)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            models.Task.title.ilike(pattern),
            models.Task.description.ilike(pattern)
        ))

    query = query.order_by(models.Task.position.asc(), models.Task.created_at.desc(), models.Task.id.desc())

    wanted_labels = [label.strip() for label in labels.split(",") if label.strip()] if labels else []
    if wanted_labels:
        # JSON array containment differs per backend, filter in Python
        matching = [t for t in query.all() if set(t.labels or []) & set(wanted_labels)]
        total = len(matching)
        tasks = matching[(page - 1) * page_size:page * page_size]
    else:
        total = query.count()
        tasks = query.offset((page - 1) * page_size).limit(page_size).all()

    return schemas.TaskPage(
        data=tasks,
        total=total,
        page=page,
        page_size=page_size,
        has_more=total > page * page_size
    )


@app.post("/api/tasks", response_model=schemas.Task, status_code=201)
def create_task(task: schemas.TaskCreate, db: Session = Depends(get_db)):
    """Create a new task at the end of its board column."""
    logger.info(f"Creating task: {task.title} in project {task.project_id}")

    if not task.title.strip():
        raise HTTPException(status_code=400, detail="Task title is required")

    get_project_or_404(db, task.project_id)
    validate_user_reference(db, task.assignee_id, "Assignee")
    validate_user_reference(db, task.reporter_id, "Reporter")

    task_data = task.model_dump()
    task_data["title"] = task.title.strip()
    if task_data.get("description") is not None:
        task_data["description"] = task_data["description"].strip()

    db_task = models.Task(**task_data)
    ordering.append_task(db, db_task, commit=False)

    create_task_event(
        db=db,
        task_id=db_task.id,
        event_type=models.TaskEventType.task_created,
        metadata={
            "title": db_task.title,
            "status": db_task.status.value,
            "position": db_task.position,
            "priority": db_task.priority.value
        },
        commit=False
    )
    db.commit()

    logger.info(f"Task created successfully: id={db_task.id}")
    return load_task(db, db_task.id)


@app.post("/api/tasks/reorder", response_model=schemas.TaskReorderResult)
def reorder_task(body: schemas.TaskReorder, db: Session = Depends(get_db)):
    """Move a task within its column or into another column (drag-and-drop)."""
    logger.info(
        f"Reordering task {body.task_id} in project {body.project_id} "
        f"to {body.new_column}@{body.new_position}"
    )

    result = ordering.move_task(
        db,
        task_id=body.task_id,
        new_column=body.new_column,
        new_position=body.new_position,
        project_id=body.project_id,
    )

    return schemas.TaskReorderResult(
        data=load_task(db, result.task.id),
        message="Task reordered successfully" if result.changed else "No change needed",
        changed=result.changed
    )


@app.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(task_id: int, db: Session = Depends(get_db)):
    task = load_task(db, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.put("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(task_id: int, task_update: schemas.TaskUpdate, db: Session = Depends(get_db)):
    """
    Update a task.

    Changes to status, board_column or position go through the ordering
    engine so the board stays densely ranked. A column change without a
    position puts the task at the end of the new column. Field changes and
    the move are committed together.
    """
    logger.info(f"Updating task {task_id}")

    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    update_data = task_update.model_dump(exclude_unset=True)

    new_status = update_data.pop("status", None)
    new_column = update_data.pop("board_column", None)
    new_position = update_data.pop("position", None)
    if new_status is not None and new_column is not None and new_status != new_column:
        raise HTTPException(
            status_code=400,
            detail="status and board_column must match when both are given"
        )
    target_column = new_column if new_column is not None else new_status
    moving = target_column is not None or new_position is not None

    if moving:
        # Same lock order as the reorder path: project row first, then the task
        ordering.lock_project(db, task.project_id)
        db.refresh(task)

    if "title" in update_data:
        if update_data["title"] is None or not update_data["title"].strip():
            raise HTTPException(status_code=400, detail="Task title cannot be empty")
        update_data["title"] = update_data["title"].strip()
    if "assignee_id" in update_data:
        validate_user_reference(db, update_data["assignee_id"], "Assignee")

    old_values = {key: getattr(task, key) for key in update_data.keys()}
    for key, value in update_data.items():
        setattr(task, key, value)
    # The ordering engine re-reads the row under lock
    db.flush()

    for field_name, new_value in update_data.items():
        old_str = stringify(old_values[field_name])
        new_str = stringify(new_value)
        if old_str != new_str:
            create_task_event(
                db=db,
                task_id=task_id,
                event_type=models.TaskEventType.field_update,
                field_name=field_name,
                old_value=old_str,
                new_value=new_str,
                commit=False
            )

    if moving:
        column = target_column if target_column is not None else task.board_column
        if new_position is not None:
            ordering.move_task(db, task_id, column, new_position, task.project_id, commit=False)
        elif ordering.parse_column(column) != task.board_column:
            ordering.move_task_to_end(db, task_id, column, task.project_id, commit=False)

    db.commit()

    logger.info(f"Task {task_id} updated successfully")
    return load_task(db, task_id)


@app.delete("/api/tasks/{task_id}")
def delete_task(task_id: int, db: Session = Depends(get_db)):
    """Delete a task and close the gap it leaves in its column."""
    logger.debug(f"Deleting task {task_id}")

    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    position = ordering.remove_task(db, task)

    logger.info(f"Task {task_id} deleted (was at position {position})")
    return {"message": "Task deleted"}


@app.get("/api/tasks/{task_id}/events", response_model=schemas.TaskEventsList)
def get_task_events(
    task_id: int,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Audit trail of a task, newest first."""
    if not db.query(models.Task).filter(models.Task.id == task_id).first():
        raise HTTPException(status_code=404, detail="Task not found")

    query = db.query(models.TaskEvent).filter(models.TaskEvent.task_id == task_id)
    total_count = query.count()
    events = (
        query.order_by(models.TaskEvent.created_at.desc(), models.TaskEvent.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return schemas.TaskEventsList(events=events, total_count=total_count)


# ============== Stats ==============

@app.get("/api/stats", response_model=schemas.DashboardStats)
def get_overall_stats(db: Session = Depends(get_db)):
    """Dashboard-wide counts."""
    logger.debug("Requesting overall stats")

    def tasks_in(column: models.TaskColumn) -> int:
        return db.query(models.Task).filter(models.Task.status == column).count()

    return schemas.DashboardStats(
        total_users=db.query(models.User).count(),
        total_projects=db.query(models.Project).count(),
        active_projects=db.query(models.Project).filter(
            models.Project.status == models.ProjectStatus.active
        ).count(),
        total_tasks=db.query(models.Task).count(),
        todo_tasks=tasks_in(models.TaskColumn.todo),
        in_progress_tasks=tasks_in(models.TaskColumn.in_progress),
        review_tasks=tasks_in(models.TaskColumn.review),
        done_tasks=tasks_in(models.TaskColumn.done),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
