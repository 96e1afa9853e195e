"""
Artifact Rendering

Turns a template plus field data into the bytes that get hashed, stored
and anchored for template issuance.

The certificate id and verify URL are embedded in the rendered bytes, so
the caller must know them before rendering. Rendering must be
deterministic: the same inputs always produce the same bytes, and hence
the same document hash.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import ValidationError
from .hasher import CanonicalSerializationError, Hasher


@dataclass(frozen=True)
class TemplateDefinition:
    """A certificate layout and the fields it needs."""
    template_id: str
    title: str
    required_fields: tuple[str, ...] = ()
    holder_field: str = "holder_name"
    issue_date_field: str = "issue_date"
    optional_fields: tuple[str, ...] = field(default_factory=tuple)

    def validate(self, data: dict[str, Any]) -> None:
        missing = [f for f in self.required_fields if data.get(f) in (None, "")]
        if missing:
            raise ValidationError(
                f"Template {self.template_id} is missing fields: {', '.join(missing)}"
            )


DEFAULT_TEMPLATES: dict[str, TemplateDefinition] = {
    t.template_id: t
    for t in (
        TemplateDefinition(
            template_id="certificate-of-completion",
            title="Certificate of Completion",
            required_fields=("holder_name", "course_name", "issue_date"),
            optional_fields=("grade", "hours"),
        ),
        TemplateDefinition(
            template_id="diploma",
            title="Diploma",
            required_fields=("holder_name", "degree", "institution", "issue_date"),
            optional_fields=("honors",),
        ),
        TemplateDefinition(
            template_id="employment-letter",
            title="Employment Verification Letter",
            required_fields=("holder_name", "position", "start_date", "issue_date"),
            optional_fields=("end_date",),
        ),
    )
}


class ArtifactRenderer(ABC):
    """Renders issued certificates."""

    @abstractmethod
    def get_template(self, template_id: str) -> TemplateDefinition:
        """
        Raises:
            ValidationError: Unknown template
        """
        pass

    @abstractmethod
    def render(
        self,
        template: TemplateDefinition,
        data: dict[str, Any],
        certificate_id: str,
        verify_url: str,
    ) -> bytes:
        pass


class CanonicalJsonRenderer(ArtifactRenderer):
    """
    Renders certificates as canonical JSON documents.

    Byte-for-byte reproducible, which makes re-verifying an issued
    artifact a matter of hashing the downloaded bytes.
    """

    content_type = "application/json"

    def __init__(self, templates: Optional[dict[str, TemplateDefinition]] = None):
        self._templates = dict(templates if templates is not None else DEFAULT_TEMPLATES)

    @property
    def templates(self) -> dict[str, TemplateDefinition]:
        return dict(self._templates)

    def get_template(self, template_id: str) -> TemplateDefinition:
        template = self._templates.get(template_id)
        if template is None:
            raise ValidationError(f"Unknown template: {template_id}")
        return template

    def render(
        self,
        template: TemplateDefinition,
        data: dict[str, Any],
        certificate_id: str,
        verify_url: str,
    ) -> bytes:
        template.validate(data)
        allowed = set(template.required_fields) | set(template.optional_fields)
        fields = {k: v for k, v in data.items() if k in allowed}

        document = {
            "template_id": template.template_id,
            "title": template.title,
            "certificate_id": certificate_id,
            "verify_url": verify_url,
            "fields": fields,
        }
        try:
            return Hasher.canonicalize(document).encode("utf-8")
        except CanonicalSerializationError as e:
            raise ValidationError(f"Template data cannot be rendered: {e}") from e
