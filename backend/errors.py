"""
Error taxonomy for the dashboard backend.

Each error carries the HTTP status code it maps to and a `detail` string
that is safe to return to clients. `main.py` registers a single exception
handler that renders any `DashboardError` the same way FastAPI renders an
`HTTPException`.
"""


class DashboardError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFoundError(DashboardError):
    """A referenced task, project or user does not exist."""
    status_code = 404
    default_detail = "Not found"


class InvalidArgumentError(DashboardError):
    """Missing required field or value outside its enumeration."""
    status_code = 400
    default_detail = "Invalid argument"


class ConflictError(DashboardError):
    status_code = 409
    default_detail = "Conflicting update"


class InternalError(DashboardError):
    """Persistence failure. The detail never includes database internals."""
    status_code = 500
    default_detail = "Internal server error"
