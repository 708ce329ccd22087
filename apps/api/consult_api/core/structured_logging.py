"""Structured logging helpers (PHI-safe)."""

from typing import Any


def build_log_context(
    *,
    session_id: str | None = None,
    session_type: str | None = None,
    job_id: str | None = None,
    job_type: str | None = None,
    appointment_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict."""
    context: dict[str, Any] = {}
    if session_id:
        context["session_id"] = str(session_id)
    if session_type:
        context["session_type"] = session_type
    if job_id:
        context["job_id"] = str(job_id)
    if job_type:
        context["job_type"] = job_type
    if appointment_id:
        context["appointment_id"] = str(appointment_id)
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
