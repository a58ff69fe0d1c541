"""
Public API Routes

Read-only endpoints over the ElectionClient held in app state.
Writes are not exposed over HTTP; they need a signer and go through
the client directly.

Ledger read failures map to 503; malformed input maps to 400.
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core import ElectionClient, LedgerReadError, ValidationError
from ..schemas import (
    AuditExport,
    Candidate,
    ElectionInfo,
    ElectionStatistics,
    IntegrityReport,
    PendingTransaction,
    TransactionHistoryEntry,
    Voter,
    WinnerInfo,
)

router = APIRouter(prefix="/api", tags=["Election API"])

# Ledger reads are cached client-side for the same window
CACHE_CONTROL_PUBLIC = "public, max-age=30"


# ============================================================
# Response Models
# ============================================================

class PhaseResponse(BaseModel):
    phase: str
    time: dict[str, Any] = {}


class VoterResponse(BaseModel):
    voter: Voter
    role: str
    role_active: bool


class PermissionsResponse(BaseModel):
    address: str
    permissions: dict[str, Any]


# ============================================================
# Helper Functions
# ============================================================

def get_client(request: Request) -> ElectionClient:
    """Get the election client from app state."""
    return request.app.state.client


async def _read(coro):
    try:
        return await coro
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"field": e.field, "message": str(e)})
    except LedgerReadError as e:
        raise HTTPException(status_code=503, detail=f"Ledger unavailable: {e.key}")


def _cached(model: BaseModel) -> JSONResponse:
    return JSONResponse(
        content=model.model_dump(mode="json"),
        headers={"Cache-Control": CACHE_CONTROL_PUBLIC},
    )


# ============================================================
# Endpoints
# ============================================================

@router.get("/election", response_model=Optional[ElectionInfo])
async def get_election(request: Request):
    """The election record, or null before one is created."""
    info = await _read(get_client(request).get_election_info())
    if info is None:
        return None
    return _cached(info)


@router.get("/election/phase", response_model=PhaseResponse)
async def get_phase(request: Request):
    client = get_client(request)
    phase = await _read(client.get_phase())
    time_info = await _read(client.get_time_info())
    return PhaseResponse(phase=phase.label, time=time_info)


@router.get("/candidates", response_model=list[Candidate])
async def list_candidates(request: Request, active_only: bool = False):
    candidates = await _read(get_client(request).get_candidates())
    if active_only:
        candidates = [c for c in candidates if c.is_active]
    return candidates


@router.get("/statistics", response_model=ElectionStatistics)
async def get_statistics(request: Request):
    return _cached(await _read(get_client(request).get_statistics()))


@router.get("/winner", response_model=WinnerInfo)
async def get_winner(request: Request):
    return await _read(get_client(request).get_winner())


@router.get("/voters/{address}", response_model=VoterResponse)
async def get_voter(request: Request, address: str):
    client = get_client(request)
    voter = await _read(client.get_voter(address))
    role = await _read(client.get_user_role(address))
    return VoterResponse(voter=voter, role=role.role.name, role_active=role.is_active)


@router.get("/voters/{address}/permissions", response_model=PermissionsResponse)
async def get_permissions(request: Request, address: str):
    """
    What the UI should offer this address right now.

    These mirror the contract's checks; the ledger still decides.
    """
    permissions = await _read(get_client(request).get_permissions(address))
    return PermissionsResponse(address=address, permissions=permissions.to_dict())


@router.get("/integrity", response_model=IntegrityReport)
async def get_integrity(request: Request):
    """Fresh consistency audit of the ledger's reported numbers."""
    return await _read(get_client(request).validate_integrity())


@router.get("/audit/export", response_model=AuditExport)
async def export_audit(request: Request):
    """Fingerprinted snapshot plus event history for independent verification."""
    return await _read(get_client(request).export_audit(exported_by="api"))


@router.get("/transactions", response_model=list[TransactionHistoryEntry])
async def list_transactions(request: Request, limit: int = 10):
    if limit < 1 or limit > 100:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 100")
    return get_client(request).get_transaction_history(limit)


@router.get("/transactions/{tx_id}", response_model=PendingTransaction)
async def get_transaction(request: Request, tx_id: str):
    tx = get_client(request).get_transaction(tx_id)
    if tx is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return tx
