"""Unit tests for entity models and the audit status lifecycle."""

import pytest

from responsekit.store.models import (
    AuditRecord,
    AuditStatus,
    InvalidTransitionError,
    TemplateFile,
    UploadStatus,
    check_audit_transition,
)


class TestAuditTransitions:
    """Tests for check_audit_transition."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (AuditStatus.PENDING, AuditStatus.IN_PROGRESS),
            (AuditStatus.PENDING, AuditStatus.FAILED),
            (AuditStatus.IN_PROGRESS, AuditStatus.COMPLETED),
            (AuditStatus.IN_PROGRESS, AuditStatus.FAILED),
        ],
    )
    def test_allowed(self, current, target):
        check_audit_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (AuditStatus.PENDING, AuditStatus.COMPLETED),
            (AuditStatus.IN_PROGRESS, AuditStatus.PENDING),
            (AuditStatus.COMPLETED, AuditStatus.FAILED),
            (AuditStatus.FAILED, AuditStatus.IN_PROGRESS),
            (AuditStatus.COMPLETED, AuditStatus.COMPLETED),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError):
            check_audit_transition(current, target)

    def test_accepts_plain_strings(self):
        check_audit_transition("pending", "in_progress")


class TestEntityHelpers:
    """Tests for model convenience properties."""

    def test_is_terminal(self):
        record = AuditRecord(correlation_key="k", request_payload="{}")
        assert not record.is_terminal
        assert record.model_copy(update={"status": AuditStatus.FAILED}).is_terminal

    def test_is_uploaded_requires_file_id(self):
        entry = TemplateFile(template_id=1, file_url="x", upload_status=UploadStatus.COMPLETED)
        assert not entry.is_uploaded
        assert entry.model_copy(update={"remote_file_id": "file_1"}).is_uploaded
