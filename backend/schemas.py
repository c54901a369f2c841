from pydantic import AliasChoices, BaseModel, EmailStr, Field
from datetime import datetime
from typing import Any, Optional, List
from enum import Enum


class TaskColumn(str, Enum):
    todo = "todo"
    in_progress = "in_progress"
    review = "review"
    done = "done"


TaskStatus = TaskColumn


class TaskPriority(str, Enum):
    lowest = "lowest"
    low = "low"
    medium = "medium"
    high = "high"
    highest = "highest"


class ProjectStatus(str, Enum):
    planning = "planning"
    active = "active"
    on_hold = "on_hold"
    completed = "completed"
    cancelled = "cancelled"


class ProjectPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class UserRole(str, Enum):
    admin = "admin"
    editor = "editor"
    viewer = "viewer"


# User schemas
class UserBase(BaseModel):
    name: str
    email: EmailStr
    role: UserRole = UserRole.viewer
    is_active: bool = True


class UserCreate(UserBase):
    pass


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class User(UserBase):
    id: int
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserSummary(BaseModel):
    id: int
    name: str
    email: str

    class Config:
        from_attributes = True


# Task Event schemas
class TaskEvent(BaseModel):
    id: int
    task_id: int
    event_type: str
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    metadata: Optional[dict] = Field(None, validation_alias="event_metadata")
    created_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True


class TaskEventsList(BaseModel):
    events: List[TaskEvent] = []
    total_count: int


# Task schemas
class TaskBase(BaseModel):
    title: str
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.medium
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0, description="Estimated hours (must be >= 0)")
    story_points: Optional[int] = Field(None, ge=0)
    labels: List[str] = Field(default_factory=list)


class TaskCreate(TaskBase):
    project_id: int
    board_column: TaskColumn = TaskColumn.todo
    assignee_id: Optional[int] = None
    reporter_id: Optional[int] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    board_column: Optional[TaskColumn] = None
    position: Optional[int] = None
    priority: Optional[TaskPriority] = None
    assignee_id: Optional[int] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0, description="Estimated hours (must be >= 0)")
    actual_hours: Optional[float] = Field(None, ge=0, description="Actual hours spent (must be >= 0)")
    story_points: Optional[int] = Field(None, ge=0)
    labels: Optional[List[str]] = None


class Task(TaskBase):
    id: int
    project_id: int
    status: TaskStatus
    board_column: TaskColumn
    position: int
    assignee_id: Optional[int] = None
    assignee: Optional[UserSummary] = None
    reporter_id: Optional[int] = None
    reporter: Optional[UserSummary] = None
    actual_hours: Optional[float] = None
    completed_at: Optional[datetime] = None
    labels: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskPage(BaseModel):
    data: List[Task] = []
    total: int
    page: int
    page_size: int
    has_more: bool


class TaskReorder(BaseModel):
    """
    Drag-and-drop move request.

    Fields are taken as sent so that missing, malformed and unknown values
    are reported by the ordering engine as invalid arguments.
    """
    task_id: Optional[Any] = Field(None, validation_alias=AliasChoices("taskId", "task_id"))
    new_column: Optional[Any] = Field(None, validation_alias=AliasChoices("newColumn", "new_column"))
    new_position: Optional[Any] = Field(None, validation_alias=AliasChoices("newPosition", "new_position"))
    project_id: Optional[Any] = Field(None, validation_alias=AliasChoices("projectId", "project_id"))

    class Config:
        populate_by_name = True


class TaskReorderResult(BaseModel):
    data: Task
    message: str
    changed: bool


# Project schemas
class ProjectBase(BaseModel):
    name: str
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.planning
    priority: ProjectPriority = ProjectPriority.medium
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    budget: Optional[float] = Field(None, ge=0)
    color: str = "#3b82f6"
    icon: str = "folder"


class ProjectCreate(ProjectBase):
    owner_id: Optional[int] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    priority: Optional[ProjectPriority] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    budget: Optional[float] = Field(None, ge=0)
    owner_id: Optional[int] = None
    is_archived: Optional[bool] = None
    color: Optional[str] = None
    icon: Optional[str] = None


class Project(ProjectBase):
    id: int
    owner_id: Optional[int] = None
    owner: Optional[UserSummary] = None
    is_archived: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProjectWithTasks(Project):
    tasks: List[Task] = []


class ProjectPage(BaseModel):
    data: List[Project] = []
    total: int
    page: int
    page_size: int
    has_more: bool


class ProjectStats(BaseModel):
    id: int
    name: str
    total_tasks: int
    todo_tasks: int
    in_progress_tasks: int
    review_tasks: int
    done_tasks: int
    overdue_tasks: int
    progress_percentage: float


# Board schemas
class BoardColumn(BaseModel):
    column: TaskColumn
    tasks: List[Task] = []


class Board(BaseModel):
    project_id: int
    columns: List[BoardColumn]


class RebalanceResult(BaseModel):
    project_id: int
    column: Optional[TaskColumn] = None
    updated_count: int


class DashboardStats(BaseModel):
    total_users: int
    total_projects: int
    active_projects: int
    total_tasks: int
    todo_tasks: int
    in_progress_tasks: int
    review_tasks: int
    done_tasks: int
