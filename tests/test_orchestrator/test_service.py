"""Unit tests for ScanOrchestrator.

Tests cover:
- Admission: validation, immediate start, queueing and overflow
- Queue scenarios with three slots and six scans
- Cancellation of queued and running jobs
- Orphan recovery at startup
- Introspection, subscriptions and shutdown
"""

import asyncio
import re
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from keelscan.core.constants import (
    AuditEventType,
    EventKind,
    ORPHAN_ERROR,
    ScanSource,
    ScanStatus,
)
from keelscan.core.exceptions import (
    OrchestratorError,
    OrphanRecoveryError,
    QueueOverflowError,
    ValidationError,
)
from keelscan.core.models import ScanRequest
from keelscan.core.utils import instance_owner
from keelscan.storage.database import Database

from fakes import (
    FakeAdapter,
    InMemoryGateway,
    make_orchestrator,
    settle_runners,
    wait_finished,
)


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    """Orchestrator with one gated adapter: jobs run until released."""

    max_concurrent = 3

    async def asyncSetUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.gateway = InMemoryGateway()
        self.adapter = FakeAdapter("trivy", gated=True)
        self.orchestrator = self.build()
        await self.orchestrator.start()

    async def asyncTearDown(self):
        await self.orchestrator.stop()
        self.temp_dir.cleanup()

    def build(self, **kwargs):
        return make_orchestrator(
            Path(self.temp_dir.name),
            {"trivy": self.adapter},
            gateway=self.gateway,
            max_concurrent=self.max_concurrent,
            **kwargs,
        )

    async def submit(self, count, **kwargs):
        results = []
        for index in range(count):
            request = ScanRequest(image="library/nginx", tag=f"1.{index}")
            results.append(await self.orchestrator.start_scan(request, **kwargs))
        return results

    async def wait_adapter_started(self, request_id):
        await asyncio.wait_for(self.adapter.started(request_id).wait(), timeout=5.0)

    def status(self, result):
        return self.orchestrator.get_scan_job(result.request_id).status


class TestAdmission(OrchestratorTestCase):
    """Test start_scan()."""

    async def test_starts_immediately_with_free_slot(self):
        (result,) = await self.submit(1)

        self.assertFalse(result.queued)
        self.assertIsNone(result.queue_position)
        self.assertIsNone(result.estimated_wait_time)
        self.assertEqual(self.status(result), ScanStatus.RUNNING)
        self.assertEqual(self.gateway.records[result.scan_id]["image"], "library/nginx:1.0")

    async def test_request_id_format(self):
        first, second = await self.submit(2)

        self.assertRegex(first.request_id, r"^\d{8}-\d{6}-[0-9a-f]{8}$")
        self.assertNotEqual(first.request_id, second.request_id)
        self.assertNotEqual(first.scan_id, second.scan_id)

    async def test_invalid_request_rejected_before_persisting(self):
        with self.assertRaises(ValidationError):
            await self.orchestrator.start_scan(ScanRequest(image=""))
        with self.assertRaises(ValidationError):
            await self.orchestrator.start_scan(ScanRequest(image="app", source=ScanSource.TAR))

        self.assertEqual(self.gateway.records, {})

    async def test_invalid_priority_rejected(self):
        request = ScanRequest(image="nginx")

        with self.assertRaises(ValidationError):
            await self.orchestrator.start_scan(request, priority="high")
        with self.assertRaises(ValidationError):
            await self.orchestrator.start_scan(request, priority=True)

        self.assertEqual(self.gateway.records, {})

    async def test_disabled_scanner_rejected(self):
        request = ScanRequest(image="nginx", scanners=("grype",))

        with self.assertRaisesRegex(ValidationError, "grype"):
            await self.orchestrator.start_scan(request)

    async def test_rejected_while_stopping(self):
        await self.orchestrator.stop()

        with self.assertRaises(OrchestratorError):
            await self.orchestrator.start_scan(ScanRequest(image="nginx"))

    async def test_queue_overflow_marks_record_failed(self):
        await self.orchestrator.stop()
        self.orchestrator = self.build(max_queue_length=1)
        await self.orchestrator.start()
        await self.submit(4)

        with self.assertRaises(QueueOverflowError):
            await self.orchestrator.start_scan(ScanRequest(image="alpine"))

        rejected = [r for r in self.gateway.records.values() if r["image"] == "alpine:latest"]
        self.assertEqual(len(rejected), 1)
        self.assertEqual(rejected[0]["status"], ScanStatus.FAILED)
        self.assertIn("queue is full", rejected[0]["error"])
        self.assertEqual(self.orchestrator.get_queue_stats().queued, 1)


class TestQueueScenarios(OrchestratorTestCase):
    """Three slots, six scans submitted back to back."""

    async def test_three_run_three_wait(self):
        results = await self.submit(6)

        for result in results[:3]:
            self.assertFalse(result.queued)
            self.assertEqual(self.status(result), ScanStatus.RUNNING)

        self.assertEqual([r.queue_position for r in results[3:]], [1, 2, 3])
        for result in results[3:]:
            self.assertTrue(result.queued)
            self.assertEqual(self.status(result), ScanStatus.QUEUED)

    async def test_finishing_scan_dispatches_head_of_queue(self):
        results = await self.submit(6)
        first = results[0]
        await self.wait_adapter_started(first.request_id)

        self.adapter.release(first.request_id)
        event = await wait_finished(self.orchestrator, first.request_id)

        self.assertEqual(event.status, ScanStatus.SUCCESS)
        self.assertEqual(self.status(results[3]), ScanStatus.RUNNING)
        self.assertEqual(self.orchestrator.get_queue_position(results[3].request_id), -1)
        self.assertEqual(self.orchestrator.get_queue_position(results[4].request_id), 1)
        self.assertEqual(self.orchestrator.get_queue_position(results[5].request_id), 2)
        self.assertEqual(len(self.orchestrator.get_running_scans()), 3)

    async def test_cancelling_queued_scan_shifts_later_positions(self):
        results = await self.submit(6)
        running_before = {job.request_id for job in self.orchestrator.get_running_scans()}

        self.assertTrue(await self.orchestrator.cancel_scan(results[4].request_id))

        self.assertEqual(self.status(results[4]), ScanStatus.CANCELLED)
        self.assertEqual(self.orchestrator.get_queue_position(results[3].request_id), 1)
        self.assertEqual(self.orchestrator.get_queue_position(results[5].request_id), 2)
        self.assertEqual(self.orchestrator.get_queue_position(results[4].request_id), -1)
        running_after = {job.request_id for job in self.orchestrator.get_running_scans()}
        self.assertEqual(running_before, running_after)
        self.assertEqual(self.gateway.status(results[4].scan_id), ScanStatus.CANCELLED)

    async def test_priority_jumps_queue(self):
        results = await self.submit(5)
        urgent = await self.orchestrator.start_scan(ScanRequest(image="urgent"), priority=10)

        self.assertEqual(urgent.queue_position, 1)
        self.assertEqual(self.orchestrator.get_queue_position(results[3].request_id), 2)

        queued = [job.request_id for job in self.orchestrator.get_queued_scans()]
        self.assertEqual(queued, [urgent.request_id, results[3].request_id, results[4].request_id])

    async def test_wait_estimate_after_history(self):
        results = await self.submit(4)
        self.assertIsNone(results[3].estimated_wait_time)
        await self.wait_adapter_started(results[0].request_id)

        self.adapter.release(results[0].request_id)
        await wait_finished(self.orchestrator, results[0].request_id)
        (late,) = await self.submit(1)

        self.assertEqual(late.queue_position, 1)
        self.assertIsNotNone(late.estimated_wait_time)
        self.assertGreaterEqual(late.estimated_wait_time, 0)
        self.assertEqual(
            self.orchestrator.get_estimated_wait_time(late.request_id),
            late.estimated_wait_time,
        )


class TestCancellation(OrchestratorTestCase):
    """Test cancel_scan()."""

    async def test_cancel_running_scan_stops_adapter(self):
        (result,) = await self.submit(1)
        await self.wait_adapter_started(result.request_id)

        self.assertTrue(await self.orchestrator.cancel_scan(result.request_id))
        await settle_runners()

        job = self.orchestrator.get_scan_job(result.request_id)
        self.assertEqual(job.status, ScanStatus.CANCELLED)
        self.assertEqual(self.adapter.cancelled, [result.request_id])
        self.assertNotIn(result.request_id, self.orchestrator.registry)
        self.assertEqual(self.gateway.status(result.scan_id), ScanStatus.CANCELLED)

    async def test_cancel_running_frees_slot(self):
        results = await self.submit(4)
        await self.wait_adapter_started(results[0].request_id)

        await self.orchestrator.cancel_scan(results[0].request_id)

        self.assertEqual(self.status(results[3]), ScanStatus.RUNNING)

    async def test_cancel_right_after_admission(self):
        (result,) = await self.submit(1)

        self.assertTrue(await self.orchestrator.cancel_scan(result.request_id))
        await settle_runners()

        self.assertEqual(self.status(result), ScanStatus.CANCELLED)
        self.assertEqual(self.gateway.status(result.scan_id), ScanStatus.CANCELLED)

    async def test_cancelled_job_never_becomes_success(self):
        (result,) = await self.submit(1)
        await self.wait_adapter_started(result.request_id)

        await self.orchestrator.cancel_scan(result.request_id)
        self.adapter.release(result.request_id)
        await settle_runners()

        self.assertEqual(self.status(result), ScanStatus.CANCELLED)

    async def test_cancel_unknown_or_finished(self):
        self.assertFalse(await self.orchestrator.cancel_scan("no-such-request"))

        (result,) = await self.submit(1)
        await self.wait_adapter_started(result.request_id)
        self.adapter.release(result.request_id)
        await wait_finished(self.orchestrator, result.request_id)

        self.assertFalse(await self.orchestrator.cancel_scan(result.request_id))
        self.assertEqual(self.status(result), ScanStatus.SUCCESS)

    async def test_subscriber_sees_cancellation(self):
        (result,) = await self.submit(1)
        follower = asyncio.create_task(wait_finished(self.orchestrator, result.request_id))
        await self.wait_adapter_started(result.request_id)

        await self.orchestrator.cancel_scan(result.request_id)
        event = await follower

        self.assertEqual(event.status, ScanStatus.CANCELLED)
        self.assertTrue(event.is_terminal)


class TestIntrospection(OrchestratorTestCase):
    """Test read-only queries and subscriptions."""

    async def test_snapshots_are_copies(self):
        (result,) = await self.submit(1)

        snapshot = self.orchestrator.get_scan_job(result.request_id)
        snapshot.progress = 99

        self.assertNotEqual(self.orchestrator.get_scan_job(result.request_id).progress, 99)

    async def test_unknown_job(self):
        self.assertIsNone(self.orchestrator.get_scan_job("missing"))
        self.assertEqual(self.orchestrator.get_queue_position("missing"), -1)
        self.assertIsNone(self.orchestrator.get_estimated_wait_time("missing"))

    async def test_all_jobs_and_stats(self):
        results = await self.submit(4)
        await self.orchestrator.cancel_scan(results[3].request_id)

        stats = self.orchestrator.get_queue_stats()

        self.assertEqual(len(self.orchestrator.get_all_jobs()), 4)
        self.assertEqual(stats.running, 3)
        self.assertEqual(stats.queued, 0)
        self.assertEqual(stats.cancelled, 1)

    async def test_subscribe_delivers_current_state(self):
        results = await self.submit(4)

        async with self.orchestrator.subscribe(results[3].request_id) as events:
            first = await events.get()

        self.assertEqual(first.status, ScanStatus.QUEUED)
        self.assertEqual(first.request_id, results[3].request_id)

    async def test_subscribe_to_finished_job_ends_immediately(self):
        (result,) = await self.submit(1)
        await self.orchestrator.cancel_scan(result.request_id)

        subscription = self.orchestrator.subscribe(result.request_id)
        received = [event async for event in subscription]

        self.assertEqual([event.status for event in received], [ScanStatus.CANCELLED])

    async def test_subscribe_to_unknown_request_ends_immediately(self):
        await self.orchestrator.stop()
        self.orchestrator = self.build(heartbeat_interval=0.05)
        await self.orchestrator.start()
        handled = []

        subscription = self.orchestrator.subscribe("no-such-request")
        received = await asyncio.wait_for(subscription.get(), timeout=1.0)
        pumped = self.orchestrator.subscribe("no-such-request", handled.append)
        await asyncio.wait_for(pumped.wait_closed(), timeout=1.0)

        self.assertIsNone(received)
        self.assertTrue(subscription.closed)
        self.assertTrue(pumped.closed)
        self.assertEqual(handled, [])
        self.assertEqual(self.orchestrator.bus.subscriber_count("no-such-request"), 0)
        self.assertEqual(self.orchestrator.bus.subscriber_count(), 0)

    async def test_heartbeat_while_idle(self):
        await self.orchestrator.stop()
        self.orchestrator = self.build(heartbeat_interval=0.05)
        await self.orchestrator.start()
        (result,) = await self.submit(1)
        await self.wait_adapter_started(result.request_id)

        async with self.orchestrator.subscribe(result.request_id) as events:
            await events.get()
            heartbeat = await asyncio.wait_for(events.get(), timeout=1.0)

        self.assertEqual(heartbeat.kind, EventKind.HEARTBEAT)
        self.assertEqual(heartbeat.status, ScanStatus.RUNNING)

    async def test_handler_subscription_removed_on_disconnect(self):
        (result,) = await self.submit(1)

        def handler(event):
            raise ConnectionResetError("client closed the stream")

        subscription = self.orchestrator.subscribe(result.request_id, handler)
        await subscription.wait_closed()

        self.assertEqual(self.orchestrator.bus.subscriber_count(result.request_id), 0)


class TestOrphanRecovery(OrchestratorTestCase):
    """Test recovery of records left unfinished by a previous process."""

    async def test_start_fails_orphans(self):
        await self.orchestrator.stop()
        self.gateway.seed("old-queued", ScanStatus.QUEUED)
        self.gateway.seed("old-running", ScanStatus.RUNNING)
        self.gateway.seed("old-done", ScanStatus.SUCCESS)
        audit = MagicMock()
        self.orchestrator = self.build(audit=audit)

        with self.assertLogs("keelscan.orchestrator.service", level="WARNING"):
            await self.orchestrator.start()

        self.assertEqual(self.gateway.status("old-queued"), ScanStatus.FAILED)
        self.assertEqual(self.gateway.status("old-running"), ScanStatus.FAILED)
        self.assertEqual(self.gateway.records["old-running"]["error"], ORPHAN_ERROR)
        self.assertEqual(self.gateway.status("old-done"), ScanStatus.SUCCESS)
        audited = [call.args[0] for call in audit.log_event.call_args_list]
        self.assertEqual(audited.count(AuditEventType.ORPHAN_RECOVERED), 2)

    async def test_active_jobs_are_not_orphans(self):
        results = await self.submit(4)

        recovered = await self.orchestrator.recover_orphans()

        self.assertEqual(recovered, 0)
        for result in results:
            self.assertNotEqual(self.gateway.status(result.scan_id), ScanStatus.FAILED)

    async def test_records_of_live_processes_are_kept(self):
        await self.orchestrator.stop()
        self.gateway.seed("other-process", ScanStatus.RUNNING, owner="build-host:4242")
        self.gateway.seed("dead-process", ScanStatus.RUNNING, owner="build-host:4343")
        self.orchestrator = self.build()

        with patch(
            "keelscan.orchestrator.service.owner_alive",
            side_effect=lambda owner: owner == "build-host:4242",
        ):
            recovered = await self.orchestrator.recover_orphans()

        self.assertEqual(recovered, 1)
        self.assertEqual(self.gateway.status("other-process"), ScanStatus.RUNNING)
        self.assertEqual(self.gateway.status("dead-process"), ScanStatus.FAILED)

    async def test_records_carry_owner(self):
        (result,) = await self.submit(1)

        self.assertEqual(self.gateway.records[result.scan_id]["owner"], instance_owner())

    async def test_unreadable_store_raises(self):
        self.gateway.fail_list = True

        with self.assertRaises(OrphanRecoveryError):
            await self.orchestrator.recover_orphans()

    async def test_recovered_error_names_policy(self):
        self.assertTrue(re.match(r"^OrphanRecovery", ORPHAN_ERROR))


class TestSharedDatabase(unittest.IsolatedAsyncioTestCase):
    """Two orchestrators, as two `keelscan scan` processes, on one database."""

    async def asyncSetUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.db = Database(root / "keelscan.db")
        self.db.init_db()
        self.adapter = FakeAdapter("trivy", gated=True)
        self.first = make_orchestrator(root / "first", {"trivy": self.adapter}, gateway=self.db)
        self.second = make_orchestrator(
            root / "second", {"trivy": FakeAdapter("trivy")}, gateway=self.db
        )

    async def asyncTearDown(self):
        await self.first.stop()
        await self.second.stop()
        self.db.close()
        self.temp_dir.cleanup()

    async def test_second_start_keeps_running_scan(self):
        await self.first.start()
        result = await self.first.start_scan(ScanRequest(image="library/nginx"))
        await asyncio.wait_for(self.adapter.started(result.request_id).wait(), timeout=5.0)

        await self.second.start()

        persisted = self.db.get_scan(result.scan_id)
        self.assertEqual(persisted["status"], ScanStatus.RUNNING)
        self.assertIsNone(persisted["error"])

        self.adapter.release(result.request_id)
        last = await wait_finished(self.first, result.request_id)
        await settle_runners()

        self.assertEqual(last.status, ScanStatus.SUCCESS)
        self.assertEqual(self.db.get_scan(result.scan_id)["status"], ScanStatus.SUCCESS)

    async def test_scan_of_dead_process_is_recovered(self):
        scan_id = self.db.create_scan_record(
            ScanRequest(image="library/nginx"), owner="build-host:4242"
        )
        self.db.update_scan_status(scan_id, ScanStatus.RUNNING)

        with patch("keelscan.orchestrator.service.owner_alive", return_value=False):
            await self.second.start()

        persisted = self.db.get_scan(scan_id)
        self.assertEqual(persisted["status"], ScanStatus.FAILED)
        self.assertEqual(persisted["error"], ORPHAN_ERROR)


class TestShutdown(OrchestratorTestCase):
    """Test stop()."""

    async def test_stop_cancels_everything(self):
        results = await self.submit(5)
        await self.wait_adapter_started(results[0].request_id)

        await self.orchestrator.stop()

        for result in results:
            self.assertEqual(self.status(result), ScanStatus.CANCELLED)
            self.assertEqual(self.gateway.status(result.scan_id), ScanStatus.CANCELLED)
        self.assertEqual(len(self.orchestrator.registry), 0)
        self.assertEqual(self.orchestrator.bus.subscriber_count(), 0)

    async def test_stop_right_after_admission(self):
        results = await self.submit(2)

        await self.orchestrator.stop()

        self.assertEqual(self.orchestrator.get_running_scans(), [])
        for result in results:
            self.assertEqual(self.status(result), ScanStatus.CANCELLED)

    async def test_stop_closes_subscriptions(self):
        (result,) = await self.submit(1)
        subscription = self.orchestrator.subscribe(result.request_id)

        await self.orchestrator.stop()

        self.assertTrue(subscription.closed)


if __name__ == "__main__":
    unittest.main()
