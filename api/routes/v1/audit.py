"""
api/routes/v1/audit.py -- Read access to the audit trail.

Gated on the reports:read token, held by administrators and managers in the
default grants. The check is snapshot-only and never queries the role store
beyond what authentication already loaded for this request.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse
from auth.dependencies import authorize
from auth.models import Identity

router = APIRouter()


@router.get("/audit-logs", response_model=list[AuditEntryResponse])
def list_audit_logs(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    user_id: Optional[int] = Query(default=None),
    identity: Identity = Depends(authorize("reports:read")),
) -> list[AuditEntryResponse]:
    """Newest entries first, optionally filtered to one acting user."""
    entries = request.app.state.audit.list_recent(limit=limit, user_id=user_id)
    return [AuditEntryResponse.model_validate(e) for e in entries]
