"""
Public Verification Routes

Read-only endpoints anyone can call with a document hash or a
certificate id. Every positive answer is a live dual-ledger check.
"""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ..schemas import ProofBundle, VerificationHistory
from .routes_documents import get_services

router = APIRouter(prefix="/api/verify", tags=["Public Verification"])

# Stored artifacts never change once written
CACHE_CONTROL_ARTIFACT = "public, max-age=3600, immutable"


# ============================================================
# Request/Response Models
# ============================================================

class VerifyHashRequest(BaseModel):
    document_hash: str


class VerifyCertificateRequest(BaseModel):
    certificate_id: str


class BulkVerifyRequest(BaseModel):
    document_hashes: list[str] = Field(default_factory=list)


class BulkVerifyResponse(BaseModel):
    count: int
    verified_count: int
    results: list[ProofBundle]


# ============================================================
# Endpoints
# ============================================================

@router.post("", response_model=ProofBundle)
def verify_by_hash(request: Request, body: VerifyHashRequest):
    """Is this document hash verified on both ledgers?"""
    return get_services(request).verifier.verify_by_hash(body.document_hash)


@router.post("/certificate", response_model=ProofBundle)
def verify_by_certificate(request: Request, body: VerifyCertificateRequest):
    """Verify by certificate id (CERT-YYYYMMDD-XXXXXX)."""
    return get_services(request).verifier.verify_by_certificate_id(body.certificate_id)


@router.post("/bulk", response_model=BulkVerifyResponse)
def verify_bulk(request: Request, body: BulkVerifyRequest):
    """Verify up to 100 hashes in one call."""
    results = get_services(request).verifier.verify_many(body.document_hashes)
    return BulkVerifyResponse(
        count=len(results),
        verified_count=sum(1 for r in results if r.verified),
        results=results,
    )


@router.get("/history/{document_hash}", response_model=VerificationHistory)
def verification_history(request: Request, document_hash: str):
    """Ledger events, certificate versions and verification attempts for a document."""
    return get_services(request).verifier.get_verification_history(document_hash)


@router.get("/download/{certificate_id}")
def download_artifact(request: Request, certificate_id: str):
    """The stored document behind a certificate."""
    artifact = get_services(request).verifier.download_artifact(certificate_id)
    headers: dict[str, Any] = {
        "Content-Disposition": f'attachment; filename="{artifact.certificate_id}"',
        "X-Document-Hash": artifact.document_hash,
        "Cache-Control": CACHE_CONTROL_ARTIFACT,
    }
    return Response(
        content=artifact.content,
        media_type="application/octet-stream",
        headers=headers,
    )
