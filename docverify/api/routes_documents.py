"""
Document API Routes

Write endpoints: third-party document submission and organization
issuance from a template.

Handlers are plain `def`: ledger calls block, so FastAPI runs them in
its thread pool.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, File, Form, Request, UploadFile
from pydantic import BaseModel, Field

from ..core.errors import ValidationError
from ..observability import organization_id_var
from ..schemas import SubmissionResult
from ..wiring import Services

router = APIRouter(prefix="/api", tags=["Documents"])


# ============================================================
# Request/Response Models
# ============================================================

class IssueRequest(BaseModel):
    template_id: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TemplateItem(BaseModel):
    template_id: str
    title: str
    required_fields: list[str]
    optional_fields: list[str]


# ============================================================
# Helper Functions
# ============================================================

def get_services(request: Request) -> Services:
    """Get the wired services from app state."""
    return request.app.state.services


def _parse_metadata(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("metadata must be a JSON object")
    if not isinstance(value, dict):
        raise ValidationError("metadata must be a JSON object")
    return value


# ============================================================
# Endpoints
# ============================================================

@router.post("/documents", response_model=SubmissionResult)
def submit_document(
    request: Request,
    file: UploadFile = File(...),
    organization_id: str = Form(...),
    metadata: Optional[str] = Form(None),
):
    """
    Verify an uploaded document against the organization's ledger and anchor the outcome.

    Returns 200 with verified true/false, 202 if confirmation is still pending.
    """
    content = file.file.read()
    extra = _parse_metadata(metadata)
    if file.filename:
        extra.setdefault("filename", file.filename)

    organization_id_var.set(organization_id)
    services = get_services(request)
    return services.orchestrator.submit(content, organization_id, extra)


@router.post("/issue", response_model=SubmissionResult)
def issue_certificate(request: Request, body: IssueRequest):
    """Render a certificate from a template, record it on LedgerA and anchor it."""
    organization_id_var.set(body.organization_id)
    services = get_services(request)
    return services.orchestrator.issue_from_template(
        body.template_id,
        body.data,
        body.organization_id,
        metadata=body.metadata,
    )


@router.get("/templates", response_model=list[TemplateItem])
def list_templates(request: Request):
    """Templates available for issuance."""
    renderer = get_services(request).orchestrator.renderer
    templates = getattr(renderer, "templates", {})
    return [
        TemplateItem(
            template_id=t.template_id,
            title=t.title,
            required_fields=list(t.required_fields),
            optional_fields=list(t.optional_fields),
        )
        for t in templates.values()
    ]
