from __future__ import annotations

import unittest
from uuid import uuid4

from tests._bootstrap import bootstrap_backend_imports


bootstrap_backend_imports()

from app.attachment.models import Attachment, AttachmentStatus  # noqa: E402
from app.attachment.state import (  # noqa: E402
    DELETABLE_STATUSES,
    HIDDEN_STATUSES,
    InvalidStatusTransition,
    ServableInvariantError,
    can_transition,
    transition,
)


def _attachment(status: AttachmentStatus, *, external_id: str | None = "k", fallback: bytes | None = b"x") -> Attachment:
    return Attachment(
        id=uuid4(),
        organization_id="org-1",
        owner_type="Project",
        owner_id="p-1",
        file_name="a.txt",
        mime_type="text/plain",
        size_bytes=1,
        external_id=external_id,
        fallback_bytes=fallback,
        status=status,
    )


class AttachmentStateTests(unittest.TestCase):
    def test_main_line(self) -> None:
        attachment = _attachment(AttachmentStatus.PENDING_UPLOAD)

        self.assertTrue(transition(attachment, AttachmentStatus.ACTIVE))
        self.assertTrue(transition(attachment, AttachmentStatus.PENDING_DELETE))
        self.assertTrue(transition(attachment, AttachmentStatus.DELETED))

        self.assertEqual(attachment.status, AttachmentStatus.DELETED)
        self.assertIsNotNone(attachment.deleted_at)

    def test_same_state_is_noop(self) -> None:
        attachment = _attachment(AttachmentStatus.ACTIVE)
        self.assertFalse(transition(attachment, AttachmentStatus.ACTIVE))
        self.assertTrue(can_transition(AttachmentStatus.DELETED, AttachmentStatus.DELETED))

    def test_drift_and_retry_paths(self) -> None:
        attachment = _attachment(AttachmentStatus.ACTIVE)

        transition(attachment, AttachmentStatus.PENDING_UPLOAD)
        transition(attachment, AttachmentStatus.FAILED)
        transition(attachment, AttachmentStatus.PENDING_UPLOAD)

        self.assertEqual(attachment.status, AttachmentStatus.PENDING_UPLOAD)

    def test_upload_failure_never_deletes(self) -> None:
        for status in (AttachmentStatus.PENDING_UPLOAD, AttachmentStatus.FAILED):
            self.assertFalse(can_transition(status, AttachmentStatus.DELETED))

        attachment = _attachment(AttachmentStatus.PENDING_UPLOAD)
        with self.assertRaises(InvalidStatusTransition) as ctx:
            transition(attachment, AttachmentStatus.DELETED)

        self.assertEqual(ctx.exception.current, AttachmentStatus.PENDING_UPLOAD)
        self.assertEqual(ctx.exception.target, AttachmentStatus.DELETED)
        self.assertEqual(attachment.status, AttachmentStatus.PENDING_UPLOAD)
        self.assertIsNone(attachment.deleted_at)

    def test_deleted_is_terminal(self) -> None:
        for target in AttachmentStatus:
            if target != AttachmentStatus.DELETED:
                self.assertFalse(can_transition(AttachmentStatus.DELETED, target))

    def test_pending_delete_only_moves_to_deleted(self) -> None:
        attachment = _attachment(AttachmentStatus.PENDING_DELETE)
        with self.assertRaises(InvalidStatusTransition):
            transition(attachment, AttachmentStatus.ACTIVE)

    def test_active_requires_a_durable_copy(self) -> None:
        attachment = _attachment(AttachmentStatus.PENDING_UPLOAD, external_id=None, fallback=None)
        with self.assertRaises(ServableInvariantError):
            transition(attachment, AttachmentStatus.ACTIVE)

        only_local = _attachment(AttachmentStatus.PENDING_UPLOAD, external_id=None)
        self.assertTrue(transition(only_local, AttachmentStatus.ACTIVE))

    def test_status_sets(self) -> None:
        self.assertEqual(HIDDEN_STATUSES, {AttachmentStatus.PENDING_DELETE, AttachmentStatus.DELETED})
        self.assertNotIn(AttachmentStatus.PENDING_DELETE, DELETABLE_STATUSES)
        self.assertNotIn(AttachmentStatus.DELETED, DELETABLE_STATUSES)
        self.assertIn(AttachmentStatus.FAILED, DELETABLE_STATUSES)


if __name__ == "__main__":
    unittest.main()
