import pytest

from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.errors import PayloadValidationError


def test_wire_form_uses_camel_case_and_drops_unknown_fields():
    payload = PipelinePayload.from_wire({
        "files": [{"fileName": "a.txt", "content": "x"}],
        "fileContents": [{"fileName": "a.txt", "content": "x"}],
    })

    wire = payload.to_wire()
    assert wire["fileContents"] == [{"fileName": "a.txt", "content": "x"}]
    assert wire["files"] == [{"fileName": "a.txt", "content": "x"}]
    assert "auditFindings" not in wire


def test_extra_fields_are_carried_through():
    payload = PipelinePayload.from_wire({"customerRef": "ACME-1"})
    assert payload.to_wire()["customerRef"] == "ACME-1"
    assert payload.merged(validations=[]).to_wire()["customerRef"] == "ACME-1"


def test_require_names_missing_fields_in_wire_form():
    payload = PipelinePayload.from_wire({"artifacts": []})

    with pytest.raises(PayloadValidationError) as exc_info:
        payload.require("artifacts", "file_contents", "validations", stage_name="audit", job_id="j1")

    assert exc_info.value.missing_fields == ["fileContents", "validations"]
    assert exc_info.value.stage_name == "audit"


def test_empty_list_counts_as_populated():
    PipelinePayload.from_wire({"validations": []}).require("validations")


def test_merged_adds_contributions_without_mutating_original():
    original = PipelinePayload.from_wire({"fileContents": [{"fileName": "a", "content": "b"}]})
    merged = original.merged(validations=[{"cnpj": "1"}], fiscal_checks={"summary": {}})

    assert original.validations is None
    assert merged.validations == [{"cnpj": "1"}]
    assert merged.file_contents == original.file_contents
    assert merged.to_wire()["fiscalChecks"] == {"summary": {}}


def test_outcome_result_payload_is_camel_case():
    outcome = StageOutcome(contributions={"audit_findings": {"summary": {"riskScore": 70}}})
    assert outcome.result_payload == {"auditFindings": {"summary": {"riskScore": 70}}}
