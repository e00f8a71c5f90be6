from typing import Optional

from fastapi import APIRouter

from . import ledger, metrics

router = APIRouter()


@router.get("/metrics/snapshot")
def metrics_snapshot() -> dict:
    return metrics.snapshot()


@router.get("/metrics/decisions")
def decision_counts(org_id: Optional[str] = None) -> dict:
    """Decision totals per status, read from the ledger rather than process memory."""
    return {"org_id": org_id, "by_status": ledger.status_counts(org_id=org_id)}
