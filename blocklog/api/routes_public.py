"""
Public API Routes

Read-only endpoints for the audit log viewer and integrity status.
"""

from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core import AuditLedger
from ..core.ledger import DEFAULT_LIST_LIMIT, clamp_limit
from ..schemas import EntryFilter


router = APIRouter(prefix="/api", tags=["Public API"])


# Integrity changes with every append; keep caches short
CACHE_CONTROL_PUBLIC = "public, max-age=5"


# ============================================================
# Response Models
# ============================================================

class LogEntryItem(BaseModel):
    """One ledger entry as shown in the viewer."""
    id: int
    block_hash: str
    prev_hash: str
    action: str
    actor_name: Optional[str] = None
    target_type: Optional[str] = None
    target_name: Optional[str] = None
    details: Optional[str] = None
    timestamp: str
    created_at: Optional[str] = None


class LogsPage(BaseModel):
    logs: list[LogEntryItem]
    total: int
    limit: int
    offset: int
    verification: Optional[dict[str, Any]] = None


class LogsResponse(BaseModel):
    success: bool = True
    data: LogsPage


class IntegrityStatus(BaseModel):
    """
    Ledger integrity status.

    This is the integrity of the ENTIRE chain, from genesis to the head
    observed when the walk started.
    """
    valid: bool
    total_checked: int
    first_invalid_id: Optional[int] = None
    violation: Optional[str] = None
    head_id: Optional[int] = None
    head_hash: Optional[str] = None


# ============================================================
# Helper Functions
# ============================================================

def get_ledger(request: Request) -> AuditLedger:
    """Get ledger from app state."""
    return request.app.state.ledger


# ============================================================
# Endpoints
# ============================================================

@router.get("/logs", response_model=LogsResponse)
def list_logs(
    request: Request,
    action: Optional[str] = None,
    actor_name: Optional[str] = None,
    target_type: Optional[str] = None,
    limit: int = DEFAULT_LIST_LIMIT,
    offset: int = Query(default=0, ge=0),
    verify: bool = False,
):
    """
    Newest-first page of audit entries.

    limit is clamped to 1..100. With verify=true the whole chain is
    verified and the report is included.
    """
    ledger = get_ledger(request)

    filters = EntryFilter(action=action, actor_name=actor_name, target_type=target_type)
    page_limit = clamp_limit(limit)
    entries, total = ledger.list_events(filters=filters, limit=page_limit, offset=offset)

    verification = ledger.verify_chain().to_dict() if verify else None

    result = LogsResponse(
        data=LogsPage(
            logs=[LogEntryItem(**e.to_public_dict()) for e in entries],
            total=total,
            limit=page_limit,
            offset=offset,
            verification=verification,
        )
    )
    return JSONResponse(content=result.model_dump())


@router.get("/integrity", response_model=IntegrityStatus)
def get_integrity(request: Request):
    """Verify the whole chain and report the result."""
    ledger = get_ledger(request)

    report = ledger.verify_chain()

    status = IntegrityStatus(
        valid=report.valid,
        total_checked=report.total_checked,
        first_invalid_id=report.first_invalid_id,
        violation=report.violation,
        head_id=report.head_id,
        head_hash=report.head_hash,
    )
    return JSONResponse(
        content=status.model_dump(),
        headers={"Cache-Control": CACHE_CONTROL_PUBLIC},
    )
