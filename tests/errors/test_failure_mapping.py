"""Tests for mapping domain errors to structured failures."""

import pytest

from abraxas.errors import (
    DecryptionError,
    ErrorKind,
    NotFoundError,
    SandboxExecutionError,
    UnauthenticatedError,
    ValidationError,
    WebhookSignatureError,
    format_failure,
    get_error,
    to_failure,
)
from abraxas.errors.formatter import INTERNAL_ERROR_CODE, KIND_TABLE


class TestKindTable:
    def test_every_kind_is_mapped(self):
        assert set(KIND_TABLE) == set(ErrorKind)

    @pytest.mark.parametrize("code", [code for code, _ in KIND_TABLE.values()])
    def test_every_code_is_registered(self, code):
        assert get_error(code) is not None


class TestToFailure:
    def test_not_found(self):
        failure = to_failure(NotFoundError("task", "t-1"))
        assert failure.code == "E-1001"
        assert failure.status_code == 404
        assert failure.kind == "not_found"
        assert failure.details == {"entity": "task", "id": "t-1"}

    def test_validation_code_override(self):
        error = ValidationError("execution_state", "Task is already executing", code="E-2002")
        failure = to_failure(error)
        assert failure.code == "E-2002"
        assert failure.status_code == 400
        assert failure.remediation == get_error("E-2002").remediation

    def test_webhook_signature_is_401(self):
        failure = to_failure(WebhookSignatureError())
        assert failure.code == "E-3002"
        assert failure.status_code == 401
        assert failure.kind == "unauthenticated"

    def test_unauthenticated(self):
        assert to_failure(UnauthenticatedError()).code == "E-5001"

    def test_sandbox_details(self):
        failure = to_failure(SandboxExecutionError("boom", "abraxas-1"))
        assert failure.status_code == 502
        assert failure.details == {"sandbox_name": "abraxas-1"}

    def test_message_is_sanitized(self):
        failure = to_failure(DecryptionError("bad token=ghp_abc"))
        assert "ghp_abc" not in failure.message

    def test_unexpected_exception(self):
        failure = to_failure(RuntimeError("disk full"), "execute task")
        assert failure.code == INTERNAL_ERROR_CODE
        assert failure.kind == "internal"
        assert failure.status_code == 500
        assert failure.message == "Failed to execute task: disk full"


class TestEnvelope:
    def test_details_omitted_when_empty(self):
        envelope = to_failure(UnauthenticatedError()).to_envelope()
        assert envelope == {
            "error": {
                "code": "E-5001",
                "kind": "unauthenticated",
                "message": "Authentication required",
            }
        }


class TestFormatFailure:
    def test_includes_details_and_action(self):
        text = format_failure(to_failure(NotFoundError("project", "p-1")))
        assert text.startswith("E-1001: ")
        assert "  entity: project" in text
        assert "  Action: " in text

    def test_without_remediation(self):
        text = format_failure(to_failure(NotFoundError("project", "p-1")), include_remediation=False)
        assert "Action" not in text
