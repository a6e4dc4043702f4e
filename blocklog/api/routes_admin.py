"""
Admin API Routes

Operator-only endpoints for chain verification and repair.

ACCESS:
Every request must carry X-Admin-Token equal to BLOCKLOG_ADMIN_TOKEN.
With no token configured the admin surface is disabled (403 for everyone).
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core import AuditLedger, RepairAbortedError, RepairPreconditionError
from ..observability import get_logger

logger = get_logger(__name__)


router = APIRouter(prefix="/api/admin", tags=["Admin API"])


# ============================================================
# Request Models
# ============================================================

class VerifyRequest(BaseModel):
    start_id: Optional[int] = Field(default=None, ge=1)
    expected_prev_hash: Optional[str] = None


class RepairRequest(BaseModel):
    start_id: int = Field(..., description="First entry to repair; entry start_id - 1 is the anchor")
    dry_run: bool = True
    operator: Optional[str] = None


# ============================================================
# Auth
# ============================================================

def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    configured = getattr(request.app.state, "admin_token", None)
    if not configured:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode("utf-8"), configured.encode("utf-8")
    ):
        logger.warning(
            "Rejected admin request",
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )
        raise HTTPException(status_code=403, detail="Invalid admin token")


def get_ledger(request: Request) -> AuditLedger:
    return request.app.state.ledger


# ============================================================
# Endpoints
# ============================================================

@router.post("/verify-chain", dependencies=[Depends(require_admin)])
def verify_chain(request: Request, body: Optional[VerifyRequest] = None):
    """Verify the chain (or a segment from start_id)."""
    body = body or VerifyRequest()
    ledger = get_ledger(request)

    try:
        report = ledger.verify_chain(
            start_id=body.start_id,
            expected_prev_hash=body.expected_prev_hash,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "data": report.to_dict()}


@router.post("/repair-chain", dependencies=[Depends(require_admin)])
def repair_chain(request: Request, body: RepairRequest):
    """
    Recompute hash fields from start_id onward.

    dry_run defaults to true: the response shows what would change. An apply
    run that stops part way returns 500 naming failed_id; rerun it from the
    same start_id.
    """
    ledger = get_ledger(request)

    try:
        report = ledger.repair_chain(
            body.start_id,
            dry_run=body.dry_run,
            operator=body.operator,
        )
    except RepairPreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RepairAbortedError as e:
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": str(e),
                "failed_id": e.failed_id,
                "applied_count": e.applied_count,
            },
        )

    logger.info(
        "Repair requested via admin API",
        start_id=body.start_id,
        dry_run=body.dry_run,
        blocks_changed=len(report.blocks_changed),
        operator=body.operator,
    )

    message = (
        f"Dry run: {len(report.blocks_changed)} block(s) would be changed"
        if body.dry_run
        else f"Repaired {report.applied_count} block(s)"
    )
    return {"success": True, "message": message, "data": report.to_dict()}
