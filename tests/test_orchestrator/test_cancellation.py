"""Unit tests for CancellationHandle and CancellationRegistry."""

import asyncio
import unittest

from keelscan.core.exceptions import CancellationRequested
from keelscan.orchestrator.cancellation import CancellationHandle, CancellationRegistry


class TestCancellationHandle(unittest.IsolatedAsyncioTestCase):
    """Test aborting a single runner task."""

    async def test_abort_cancels_task(self):
        task = asyncio.create_task(asyncio.sleep(60))
        handle = CancellationHandle("req-1", task)

        finished = await handle.abort(grace_period=1.0)

        self.assertTrue(finished)
        self.assertTrue(handle.requested)
        self.assertTrue(task.cancelled())

    async def test_abort_finished_task(self):
        task = asyncio.create_task(asyncio.sleep(0))
        await task
        handle = CancellationHandle("req-1", task)

        self.assertTrue(handle.done)
        self.assertTrue(await handle.abort(grace_period=1.0))

    async def test_abort_waits_for_cleanup(self):
        cleaned_up = asyncio.Event()

        async def runner():
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                await asyncio.shield(asyncio.sleep(0.05))
                cleaned_up.set()
                raise

        task = asyncio.create_task(runner())
        await asyncio.sleep(0)

        await CancellationHandle("req-1", task).abort(grace_period=1.0)

        self.assertTrue(cleaned_up.is_set())

    async def test_abort_gives_up_after_grace_period(self):
        release = asyncio.Event()

        async def stubborn():
            while not release.is_set():
                try:
                    await release.wait()
                except asyncio.CancelledError:
                    continue

        task = asyncio.create_task(stubborn())
        await asyncio.sleep(0)

        with self.assertLogs("keelscan.orchestrator.cancellation", level="WARNING"):
            finished = await CancellationHandle("req-1", task).abort(grace_period=0.05)

        self.assertFalse(finished)
        release.set()
        await task

    async def test_raise_if_requested(self):
        task = asyncio.create_task(asyncio.sleep(60))
        handle = CancellationHandle("req-1", task)

        handle.raise_if_requested()
        await handle.abort(grace_period=1.0)

        with self.assertRaises(CancellationRequested):
            handle.raise_if_requested()


class TestCancellationRegistry(unittest.IsolatedAsyncioTestCase):
    """Test handle registration and bulk cancellation."""

    async def asyncSetUp(self):
        self.registry = CancellationRegistry(grace_period=1.0)
        self.tasks = []

    async def asyncTearDown(self):
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)

    def _task(self):
        task = asyncio.create_task(asyncio.sleep(60))
        self.tasks.append(task)
        return task

    async def test_register_and_lookup(self):
        handle = self.registry.register("req-1", self._task())

        self.assertIn("req-1", self.registry)
        self.assertIs(self.registry.get("req-1"), handle)
        self.assertEqual(len(self.registry), 1)

    async def test_register_twice_rejected(self):
        self.registry.register("req-1", self._task())

        with self.assertRaises(ValueError):
            self.registry.register("req-1", self._task())

    async def test_unregister(self):
        self.registry.register("req-1", self._task())

        self.assertIsNotNone(self.registry.unregister("req-1"))
        self.assertIsNone(self.registry.unregister("req-1"))
        self.assertNotIn("req-1", self.registry)

    async def test_cancel_running_job(self):
        task = self._task()
        self.registry.register("req-1", task)

        self.assertTrue(await self.registry.cancel("req-1"))

        self.assertTrue(task.cancelled())
        self.assertNotIn("req-1", self.registry)

    async def test_cancel_unknown_job(self):
        self.assertFalse(await self.registry.cancel("missing"))

    async def test_cancel_all(self):
        tasks = [self._task() for _ in range(3)]
        for index, task in enumerate(tasks):
            self.registry.register(f"req-{index}", task)

        self.assertEqual(await self.registry.cancel_all(), 3)

        self.assertTrue(all(task.cancelled() for task in tasks))
        self.assertEqual(len(self.registry), 0)


if __name__ == "__main__":
    unittest.main()
