"""Unit tests for the outbox repository: claim, lease, mark, stats and cleanup."""
from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from tests._bootstrap import bootstrap_backend_imports, reset_caches
from tests._db import make_session


bootstrap_backend_imports()
reset_caches()


class OutboxRepoTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.now = datetime.now(timezone.utc)

    def tearDown(self) -> None:
        self.db.close()

    def _add_event(self, **overrides):
        from app.outbox.models import OutboxEvent

        values = dict(
            event_type="VERIFY_UPLOAD",
            entity_type="Attachment",
            entity_id=uuid4(),
            payload={"organizationId": "org-1"},
            processed=False,
            retry_count=0,
            created_at=self.now - timedelta(seconds=30),
            available_at=self.now - timedelta(seconds=30),
        )
        values.update(overrides)
        event = OutboxEvent(**values)
        self.db.add(event)
        self.db.commit()
        return event

    def test_enqueue_event_is_staged_until_commit(self) -> None:
        from app.outbox.models import OutboxEvent
        from app.outbox.repo import enqueue_event

        entity_id = uuid4()
        event = enqueue_event(
            self.db,
            event_type="DELETE_FILE",
            entity_type="Attachment",
            entity_id=entity_id,
            payload={"externalId": "k"},
        )
        self.db.rollback()
        self.assertEqual(self.db.query(OutboxEvent).count(), 0)

        event = enqueue_event(
            self.db,
            event_type="DELETE_FILE",
            entity_type="Attachment",
            entity_id=entity_id,
            payload={"externalId": "k"},
        )
        self.db.commit()
        self.db.refresh(event)
        self.assertFalse(event.processed)
        self.assertEqual(event.retry_count, 0)
        self.assertEqual(event.payload, {"externalId": "k"})

    def test_model_annotations_name_python_types(self) -> None:
        from app.outbox.models import OutboxEvent

        annotations = OutboxEvent.__annotations__
        self.assertEqual(annotations["entity_id"], "Mapped[uuid.UUID]")
        self.assertEqual(annotations["available_at"], "Mapped[datetime]")
        self.assertEqual(annotations["processed_at"], "Mapped[datetime | None]")
        self.assertEqual(annotations["locked_at"], "Mapped[datetime | None]")

        event = self._add_event()
        self.db.refresh(event)
        self.assertIsInstance(event.entity_id, UUID)
        self.assertIsInstance(event.available_at, datetime)

    def test_claim_batch_stamps_lease(self) -> None:
        from app.outbox.repo import OutboxRepo

        event = self._add_event()

        result = OutboxRepo(self.db, worker_id="w1").claim_batch(
            now=self.now,
            batch_size=10,
            lock_ttl_sec=300,
            max_retries=3,
        )

        self.assertEqual([row.id for row in result.claimed], [event.id])
        self.db.refresh(event)
        self.assertEqual(event.locked_by, "w1")
        self.assertIsNotNone(event.locked_at)
        self.assertFalse(event.processed)

    def test_claim_batch_requires_worker_id(self) -> None:
        from app.outbox.repo import OutboxRepo

        with self.assertRaises(ValueError):
            OutboxRepo(self.db).claim_batch(now=self.now, batch_size=1, lock_ttl_sec=300, max_retries=3)

    def test_claim_batch_orders_oldest_first_and_respects_batch_size(self) -> None:
        from app.outbox.repo import OutboxRepo

        newer = self._add_event(created_at=self.now - timedelta(seconds=5))
        older = self._add_event(created_at=self.now - timedelta(seconds=50))
        middle = self._add_event(created_at=self.now - timedelta(seconds=20))

        result = OutboxRepo(self.db, worker_id="w1").claim_batch(
            now=self.now,
            batch_size=2,
            lock_ttl_sec=300,
            max_retries=3,
        )

        self.assertEqual([row.id for row in result.claimed], [older.id, middle.id])
        self.db.refresh(newer)
        self.assertIsNone(newer.locked_by)

    def test_claim_batch_skips_exhausted_processed_and_backed_off(self) -> None:
        from app.outbox.repo import OutboxRepo

        self._add_event(retry_count=3)
        self._add_event(processed=True, processed_at=self.now)
        self._add_event(available_at=self.now + timedelta(minutes=5))
        eligible = self._add_event(retry_count=2)

        result = OutboxRepo(self.db, worker_id="w1").claim_batch(
            now=self.now,
            batch_size=10,
            lock_ttl_sec=300,
            max_retries=3,
        )

        self.assertEqual([row.id for row in result.claimed], [eligible.id])

    def test_live_lease_not_reclaimed_but_expired_lease_is(self) -> None:
        from app.outbox.repo import OutboxRepo

        live = self._add_event(locked_by="other", locked_at=self.now - timedelta(seconds=100))
        stale = self._add_event(locked_by="crashed", locked_at=self.now - timedelta(seconds=400))

        result = OutboxRepo(self.db, worker_id="w1").claim_batch(
            now=self.now,
            batch_size=10,
            lock_ttl_sec=300,
            max_retries=3,
        )

        self.assertEqual([row.id for row in result.claimed], [stale.id])
        self.db.refresh(live)
        self.assertEqual(live.locked_by, "other")

    def test_mark_succeeded_clears_error_and_lease(self) -> None:
        from app.outbox.repo import OutboxRepo

        event = self._add_event(error="previous failure", retry_count=1, locked_by="w1", locked_at=self.now)

        ok = OutboxRepo(self.db, worker_id="w1").mark_succeeded(outbox_id=event.id, now=self.now)

        self.assertTrue(ok)
        self.db.refresh(event)
        self.assertTrue(event.processed)
        self.assertIsNotNone(event.processed_at)
        self.assertIsNone(event.error)
        self.assertIsNone(event.locked_by)
        self.assertEqual(event.retry_count, 1)

    def test_mark_succeeded_fails_when_lease_owned_by_other_worker(self) -> None:
        from app.outbox.repo import OutboxRepo

        event = self._add_event(locked_by="w2", locked_at=self.now)

        ok = OutboxRepo(self.db, worker_id="w1").mark_succeeded(outbox_id=event.id, now=self.now)

        self.assertFalse(ok)
        self.db.refresh(event)
        self.assertFalse(event.processed)

    def test_register_failure_increments_and_force_processes_at_limit(self) -> None:
        from app.outbox.repo import MAX_ERROR_LENGTH, OutboxRepo

        event = self._add_event(retry_count=1, locked_by="w1", locked_at=self.now)
        repo = OutboxRepo(self.db, worker_id="w1")

        row = repo.register_failure(outbox_id=event.id, error_message="x" * 5000, max_retries=3, now=self.now)
        self.db.commit()

        self.assertEqual(row.retry_count, 2)
        self.assertFalse(row.processed)
        self.assertEqual(len(row.error), MAX_ERROR_LENGTH)
        self.assertIsNone(row.locked_by)

        row.locked_by = "w1"
        row.locked_at = self.now
        self.db.commit()

        row = repo.register_failure(outbox_id=event.id, error_message="again", max_retries=3, now=self.now)
        self.db.commit()

        self.assertEqual(row.retry_count, 3)
        self.assertTrue(row.processed)
        self.assertIsNotNone(row.processed_at)
        self.assertEqual(row.error, "again")

    def test_release_clears_only_own_leases(self) -> None:
        from app.outbox.repo import OutboxRepo

        mine = self._add_event(locked_by="w1", locked_at=self.now)
        theirs = self._add_event(locked_by="w2", locked_at=self.now)

        count = OutboxRepo(self.db, worker_id="w1").release([mine.id, theirs.id])

        self.assertEqual(count, 1)
        self.db.refresh(mine)
        self.db.refresh(theirs)
        self.assertIsNone(mine.locked_by)
        self.assertEqual(theirs.locked_by, "w2")

    def test_compute_backoff(self) -> None:
        from app.outbox.repo import compute_backoff

        self.assertEqual(compute_backoff(1, 0.0, 300.0), timedelta(0))

        first = compute_backoff(1, 10.0, 300.0)
        self.assertGreaterEqual(first, timedelta(seconds=10))
        self.assertLessEqual(first, timedelta(seconds=11))

        third = compute_backoff(3, 10.0, 300.0)
        self.assertGreaterEqual(third, timedelta(seconds=40))

        capped = compute_backoff(20, 10.0, 300.0)
        self.assertLessEqual(capped, timedelta(seconds=330))


class OutboxMaintenanceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.now = datetime.now(timezone.utc)

    def tearDown(self) -> None:
        self.db.close()

    def _add_event(self, **overrides):
        from app.outbox.models import OutboxEvent

        values = dict(
            event_type="UPLOAD_SUCCESS",
            entity_type="Attachment",
            entity_id=uuid4(),
            payload={},
            processed=False,
            retry_count=0,
        )
        values.update(overrides)
        event = OutboxEvent(**values)
        self.db.add(event)
        self.db.commit()
        return event

    def test_stats_count_escalated_events_as_failed(self) -> None:
        from app.outbox.service import get_outbox_stats

        self._add_event()
        self._add_event(retry_count=1)
        self._add_event(processed=True, processed_at=self.now)
        self._add_event(processed=True, processed_at=self.now, retry_count=3)

        stats = get_outbox_stats(self.db, max_retries=3)

        self.assertEqual(stats.total, 4)
        self.assertEqual(stats.unprocessed, 2)
        self.assertEqual(stats.processed, 2)
        self.assertEqual(stats.failed, 1)

    def test_cleanup_deletes_only_old_processed_events(self) -> None:
        from app.outbox.models import OutboxEvent
        from app.outbox.service import cleanup_old_events

        old = self._add_event(processed=True, processed_at=self.now - timedelta(days=40))
        recent = self._add_event(processed=True, processed_at=self.now - timedelta(days=2))
        pending = self._add_event(created_at=self.now - timedelta(days=60))

        deleted = cleanup_old_events(self.db, older_than=self.now - timedelta(days=30))

        self.assertEqual(deleted, 1)
        remaining = {row.id for row in self.db.query(OutboxEvent).all()}
        self.assertEqual(remaining, {recent.id, pending.id})
        self.assertNotIn(old.id, remaining)

    def test_cleanup_defaults_to_thirty_days(self) -> None:
        from app.outbox.service import cleanup_old_events

        self._add_event(processed=True, processed_at=self.now - timedelta(days=31))
        self._add_event(processed=True, processed_at=self.now - timedelta(days=29))

        self.assertEqual(cleanup_old_events(self.db), 1)


if __name__ == "__main__":
    unittest.main()
