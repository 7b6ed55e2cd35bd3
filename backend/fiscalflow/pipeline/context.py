"""
PipelinePayload — the accumulating state carried from stage to stage.

Every field is "known so far or not": a stage reads the fields earlier
stages contributed, declares the ones it cannot run without, and returns
its own contributions.  The payload a stage publishes is always the
incoming payload plus those contributions, so later stages see every
earlier stage's output.

Wire form (event payloads, job results) uses camelCase keys.  Fields the
model does not know are carried through untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from fiscalflow.pipeline.errors import PayloadValidationError


class SourceFile(BaseModel):
    """A submitted document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_name: str
    content: str = ""
    mime_type: str | None = None


class PipelinePayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    # ── Submission ────────────────────────────
    files: list[SourceFile] | None = None

    # ── extraction ────────────────────────────
    artifacts: list[dict[str, Any]] | None = None
    file_contents: list[dict[str, Any]] | None = None
    data_quality_report: dict[str, Any] | None = None
    processing_metrics: dict[str, Any] | None = None

    # ── validation ────────────────────────────
    validations: list[dict[str, Any]] | None = None
    fiscal_checks: dict[str, Any] | None = None

    # ── audit / classification ────────────────
    audit_findings: dict[str, Any] | None = None
    classifications: dict[str, Any] | None = None

    # ── analysis ──────────────────────────────
    executive_summary: dict[str, Any] | None = None
    simulation_result: dict[str, Any] | None = None

    # ── indexing ──────────────────────────────
    indexing: dict[str, Any] | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any] | None) -> PipelinePayload:
        return cls.model_validate(data or {})

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def missing(self, *fields: str) -> list[str]:
        """Names of ``fields`` that are not populated yet."""
        return [name for name in fields if getattr(self, name, None) is None]

    def require(self, *fields: str, stage_name: str | None = None, job_id: str | None = None) -> None:
        """
        Raise PayloadValidationError unless every field is populated.

        An empty list counts as populated; only absent fields fail.
        """
        missing = self.missing(*fields)
        if missing:
            wire_names = [to_camel(name) for name in missing]
            raise PayloadValidationError(
                f"Payload is missing required field(s): {', '.join(wire_names)}",
                missing_fields=wire_names,
                stage_name=stage_name,
                job_id=job_id,
            )

    def merged(self, **contributions: Any) -> PipelinePayload:
        """A new payload: this one plus ``contributions`` (snake_case field names)."""
        data = self.model_dump(by_alias=False, exclude_none=True)
        data.update(contributions)
        return type(self).model_validate(data)


@dataclass
class StageOutcome:
    """
    What a stage produced.

    ``contributions`` use payload field names; ``result_payload`` is the
    same data in wire form, which the Dispatcher merges into the job result.
    """

    contributions: dict[str, Any] = field(default_factory=dict)
    info: str | None = None
    from_cache: bool = False

    @property
    def result_payload(self) -> dict[str, Any]:
        return {
            to_camel(name): _to_wire(value)
            for name, value in self.contributions.items()
        }


def _to_wire(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_to_wire(v) for v in value]
    return value
