"""
Tests for the task CRUD surface and how it keeps the board ranked.

- Creating a task appends it to the end of its column
- Editing status/board_column/position moves the task through the ordering engine
- Deleting a task closes the gap in its column
"""

import logging
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import main
import models
from time_utils import utc_now
from tests.conftest import assert_dense, bucket_titles, make_bucket

logger = logging.getLogger(__name__)


def create_task(client: TestClient, project_id: int, title: str, **fields):
    response = client.post("/api/tasks", json={"project_id": project_id, "title": title, **fields})
    assert response.status_code == 201, response.json()
    return response.json()


# ============== Create ==============


def test_create_task_appends_to_column(client: TestClient, test_db: Session, project: models.Project):
    """todo = [A@0, C@1]; creating D gives D@2."""
    make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "C")

    task = create_task(client, project.id, "D")

    assert task["position"] == 2
    assert task["board_column"] == "todo"
    assert task["status"] == "todo"
    assert bucket_titles(test_db, project.id, models.TaskColumn.todo) == ["A", "C", "D"]


def test_create_tasks_in_several_columns(client: TestClient, test_db: Session, project: models.Project):
    first = create_task(client, project.id, "First")
    review = create_task(client, project.id, "Needs review", board_column="review")
    second = create_task(client, project.id, "Second")

    assert first["position"] == 0
    assert review["position"] == 0
    assert review["status"] == "review"
    assert second["position"] == 1
    assert_dense(test_db, project.id)


def test_create_task_fields(client: TestClient, project: models.Project, regular_user: models.User):
    task = create_task(
        client,
        project.id,
        "  Write report  ",
        description="Quarterly numbers",
        priority="high",
        assignee_id=regular_user.id,
        estimated_hours=3.5,
        story_points=5,
        labels=["finance", "q3"],
    )

    assert task["title"] == "Write report"
    assert task["priority"] == "high"
    assert task["assignee"]["email"] == regular_user.email
    assert task["estimated_hours"] == 3.5
    assert task["labels"] == ["finance", "q3"]


def test_create_task_writes_created_event(client: TestClient, project: models.Project):
    task = create_task(client, project.id, "Audited")

    events = client.get(f"/api/tasks/{task['id']}/events").json()["events"]

    assert [e["event_type"] for e in events] == ["task_created"]
    assert events[0]["metadata"]["position"] == 0


def test_create_task_blank_title_rejected(client: TestClient, project: models.Project):
    response = client.post("/api/tasks", json={"project_id": project.id, "title": "   "})
    assert response.status_code == 400


def test_create_task_unknown_project(client: TestClient):
    response = client.post("/api/tasks", json={"project_id": 404, "title": "Lost"})
    assert response.status_code == 404


def test_create_task_unknown_assignee(client: TestClient, project: models.Project):
    response = client.post("/api/tasks", json={"project_id": project.id, "title": "T", "assignee_id": 999})
    assert response.status_code == 404


def test_create_task_and_created_event_commit_together(
    client: TestClient,
    test_db: Session,
    project: models.Project,
    monkeypatch: pytest.MonkeyPatch
):
    """A failed audit write leaves no task behind."""
    def failing_event(*args, **kwargs):
        raise SQLAlchemyError("could not write task_events")

    monkeypatch.setattr(main, "create_task_event", failing_event)

    with pytest.raises(SQLAlchemyError):
        client.post("/api/tasks", json={"project_id": project.id, "title": "Orphan"})

    test_db.rollback()
    assert test_db.query(models.Task).filter(models.Task.project_id == project.id).count() == 0


# ============== Read ==============


def test_get_task(client: TestClient, project: models.Project):
    task = create_task(client, project.id, "Readable")

    response = client.get(f"/api/tasks/{task['id']}")

    assert response.status_code == 200
    assert response.json()["title"] == "Readable"


def test_get_missing_task(client: TestClient):
    assert client.get("/api/tasks/12345").status_code == 404


def test_list_tasks_in_board_order(client: TestClient, test_db: Session, project: models.Project):
    make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B", "C")

    response = client.get("/api/tasks", params={"project_id": project.id})

    assert response.status_code == 200
    body = response.json()
    assert [t["title"] for t in body["data"]] == ["A", "B", "C"]
    assert body["total"] == 3
    assert body["has_more"] is False


def test_list_tasks_filters(
    client: TestClient,
    project: models.Project,
    other_project: models.Project,
    regular_user: models.User
):
    create_task(client, project.id, "Fix login bug", priority="highest", labels=["bug"])
    create_task(client, project.id, "Plan offsite", board_column="in_progress", assignee_id=regular_user.id)
    create_task(client, other_project.id, "Other project task", labels=["bug"])

    def titles(**params):
        return sorted(t["title"] for t in client.get("/api/tasks", params=params).json()["data"])

    assert titles(project_id=project.id, status="in_progress") == ["Plan offsite"]
    assert titles(priority="highest") == ["Fix login bug"]
    assert titles(assignee_id=regular_user.id) == ["Plan offsite"]
    assert titles(search="LOGIN") == ["Fix login bug"]
    assert titles(labels="bug,chore") == ["Fix login bug", "Other project task"]


def test_list_tasks_pagination(client: TestClient, test_db: Session, project: models.Project):
    make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B", "C")

    body = client.get("/api/tasks", params={"page": 1, "page_size": 2}).json()

    assert len(body["data"]) == 2
    assert body["total"] == 3
    assert body["has_more"] is True


# ============== Update ==============


def test_update_plain_fields_keeps_position(client: TestClient, test_db: Session, project: models.Project):
    tasks = make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B")

    response = client.put(f"/api/tasks/{tasks['B'].id}", json={"title": "B renamed", "priority": "low"})

    assert response.status_code == 200, response.json()
    assert response.json()["title"] == "B renamed"
    assert response.json()["position"] == 1
    events = client.get(f"/api/tasks/{tasks['B'].id}/events").json()["events"]
    assert {e["field_name"] for e in events} == {"title", "priority"}


def test_update_status_moves_task_to_end_of_new_column(
    client: TestClient,
    test_db: Session,
    project: models.Project
):
    todo = make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B", "C")
    make_bucket(test_db, project.id, models.TaskColumn.done, "D", "E")

    response = client.put(f"/api/tasks/{todo['A'].id}", json={"status": "done"})

    assert response.status_code == 200, response.json()
    assert response.json()["board_column"] == "done"
    assert response.json()["position"] == 2
    assert bucket_titles(test_db, project.id, models.TaskColumn.todo) == ["B", "C"]
    assert bucket_titles(test_db, project.id, models.TaskColumn.done) == ["D", "E", "A"]
    assert_dense(test_db, project.id)


def test_update_board_column_and_position(client: TestClient, test_db: Session, project: models.Project):
    todo = make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B")
    make_bucket(test_db, project.id, models.TaskColumn.review, "R1", "R2")

    response = client.put(f"/api/tasks/{todo['B'].id}", json={"board_column": "review", "position": 0})

    assert response.status_code == 200, response.json()
    assert response.json()["status"] == "review"
    assert bucket_titles(test_db, project.id, models.TaskColumn.review) == ["B", "R1", "R2"]
    assert_dense(test_db, project.id)


def test_update_position_only_reorders_within_column(
    client: TestClient,
    test_db: Session,
    project: models.Project
):
    tasks = make_bucket(test_db, project.id, models.TaskColumn.in_progress, "A", "B", "C")

    response = client.put(f"/api/tasks/{tasks['C'].id}", json={"position": 0})

    assert response.status_code == 200, response.json()
    assert bucket_titles(test_db, project.id, models.TaskColumn.in_progress) == ["C", "A", "B"]


def test_update_same_status_is_not_a_move(client: TestClient, test_db: Session, project: models.Project):
    tasks = make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B")

    response = client.put(f"/api/tasks/{tasks['A'].id}", json={"status": "todo"})

    assert response.status_code == 200
    assert bucket_titles(test_db, project.id, models.TaskColumn.todo) == ["A", "B"]


def test_update_conflicting_status_and_column(client: TestClient, test_db: Session, project: models.Project):
    tasks = make_bucket(test_db, project.id, models.TaskColumn.todo, "A")

    response = client.put(f"/api/tasks/{tasks['A'].id}", json={"status": "done", "board_column": "review"})

    assert response.status_code == 400
    assert bucket_titles(test_db, project.id, models.TaskColumn.todo) == ["A"]


def test_update_field_change_and_move_commit_together(
    client: TestClient,
    test_db: Session,
    project: models.Project
):
    tasks = make_bucket(test_db, project.id, models.TaskColumn.todo, "A")

    response = client.put(f"/api/tasks/{tasks['A'].id}", json={"title": "Shipped", "status": "done"})

    assert response.status_code == 200, response.json()
    test_db.expire_all()
    task = test_db.get(models.Task, tasks["A"].id)
    assert task.title == "Shipped"
    assert task.status == models.TaskStatus.done
    assert task.board_column == models.TaskColumn.done
    assert task.completed_at is not None


def test_update_with_move_locks_project_before_writing_task(
    client: TestClient,
    test_db: Session,
    project: models.Project
):
    """The project row is locked before any task row is written, as in the reorder path."""
    tasks = make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B", "C")
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement.lstrip().upper())

    engine = test_db.get_bind()
    event.listen(engine, "before_cursor_execute", capture)
    try:
        response = client.put(f"/api/tasks/{tasks['A'].id}", json={"title": "A2", "position": 2})
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    assert response.status_code == 200, response.json()
    project_lock = next(i for i, s in enumerate(statements) if s.startswith("SELECT") and "FROM PROJECTS" in s)
    first_task_update = next(i for i, s in enumerate(statements) if s.startswith("UPDATE TASKS"))
    assert project_lock < first_task_update
    assert bucket_titles(test_db, project.id, models.TaskColumn.todo) == ["B", "C", "A2"]


def test_update_empty_title_rejected(client: TestClient, test_db: Session, project: models.Project):
    tasks = make_bucket(test_db, project.id, models.TaskColumn.todo, "A")

    response = client.put(f"/api/tasks/{tasks['A'].id}", json={"title": ""})

    assert response.status_code == 400


def test_update_missing_task(client: TestClient):
    assert client.put("/api/tasks/999", json={"title": "x"}).status_code == 404


# ============== Delete ==============


def test_delete_task_closes_gap(client: TestClient, test_db: Session, project: models.Project):
    """Deleting B@1 from [A@0, B@1, C@2] gives [A@0, C@1]."""
    tasks = make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B", "C")

    response = client.delete(f"/api/tasks/{tasks['B'].id}")

    assert response.status_code == 200
    assert bucket_titles(test_db, project.id, models.TaskColumn.todo) == ["A", "C"]
    assert_dense(test_db, project.id)


def test_delete_then_create_reuses_end_slot(client: TestClient, test_db: Session, project: models.Project):
    tasks = make_bucket(test_db, project.id, models.TaskColumn.todo, "A", "B", "C")
    client.delete(f"/api/tasks/{tasks['A'].id}")

    task = create_task(client, project.id, "D")

    assert task["position"] == 2
    assert bucket_titles(test_db, project.id, models.TaskColumn.todo) == ["B", "C", "D"]


def test_delete_missing_task(client: TestClient):
    assert client.delete("/api/tasks/31337").status_code == 404


# ============== Stats ==============


def test_project_stats_counts_overdue_and_progress(
    client: TestClient,
    test_db: Session,
    project: models.Project
):
    yesterday = (utc_now() - timedelta(days=1)).isoformat()
    create_task(client, project.id, "Late", due_date=yesterday)
    create_task(client, project.id, "Finished", board_column="done", due_date=yesterday)
    create_task(client, project.id, "Reviewing", board_column="review")
    create_task(client, project.id, "Later")

    response = client.get(f"/api/projects/{project.id}/stats")

    assert response.status_code == 200
    stats = response.json()
    assert stats["total_tasks"] == 4
    assert stats["todo_tasks"] == 2
    assert stats["review_tasks"] == 1
    assert stats["done_tasks"] == 1
    assert stats["overdue_tasks"] == 1
    assert stats["progress_percentage"] == 25.0
