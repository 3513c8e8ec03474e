"""Unit tests for controller.py - Reconciliation loop."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from backoff import Outcome
from config import OperatorConfig
from controller import Controller, generate_trace_id
from db import NamespacedName, ReconcileState
from errors import ConfigError, PermanentError, TransientError
from events import EventBus, EventType
from plugins.reconcilers.base import ReconcileResult
from workqueue import WorkQueue

KEY = NamespacedName("vault", "vault-unseal")


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def mock_db(sample_resource):
    db = AsyncMock()
    db.get_resource = AsyncMock(return_value=sample_resource)
    db.list_resources_changed_since = AsyncMock(return_value=[])
    db.get_resources_needing_reconciliation = AsyncMock(return_value=[])
    return db


@pytest.fixture
def reconciler():
    plugin = MagicMock()
    plugin.name = "transit-unseal"
    plugin.reconcile = AsyncMock(return_value=ReconcileResult())
    return plugin


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def controller(mock_db, reconciler, event_bus):
    return Controller(
        db_manager=mock_db,
        reconciler=reconciler,
        reconciler_ctx=MagicMock(),
        config=OperatorConfig(config_error_max_attempts=3, fetch_timeout=1.0),
        event_bus=event_bus,
        queue=WorkQueue(clock=FakeClock()),
    )


def drain(subscription_queue):
    events = []
    while not subscription_queue.empty():
        events.append(subscription_queue.get_nowait())
    return events


class TestTraceId:
    def test_trace_id_format(self):
        trace_id = generate_trace_id()
        assert len(trace_id) == 16
        int(trace_id, 16)


class TestInit:
    def test_uses_injected_queue_and_bus(self, mock_db, reconciler):
        queue = WorkQueue()
        bus = EventBus()

        ctrl = Controller(mock_db, reconciler, MagicMock(), queue=queue, event_bus=bus)

        assert ctrl.queue is queue
        assert ctrl.event_bus is bus

    def test_defaults_when_not_injected(self, mock_db, reconciler):
        ctrl = Controller(mock_db, reconciler, MagicMock())

        assert isinstance(ctrl.queue, WorkQueue)
        assert isinstance(ctrl.event_bus, EventBus)


@pytest.mark.asyncio
class TestReconcile:
    """Tests for Controller.reconcile."""

    async def test_absent_resource_is_terminal_success(
        self, controller, mock_db, reconciler
    ):
        mock_db.get_resource.return_value = None

        outcome = await controller.reconcile(KEY)

        assert outcome == Outcome()
        reconciler.reconcile.assert_not_awaited()
        mock_db.update_reconcile_state.assert_not_awaited()

    async def test_absent_resource_publishes_deleted(
        self, controller, mock_db, event_bus
    ):
        mock_db.get_resource.return_value = None
        _, subscription = event_bus.subscribe()

        await controller.reconcile(KEY)

        events = drain(subscription._queue)
        assert [e.event_type for e in events] == [EventType.DELETED]
        assert events[0].key == KEY
        assert KEY not in controller.queue

    async def test_fetch_failure_is_transient(self, controller, mock_db, reconciler):
        mock_db.get_resource.side_effect = ConnectionError("connection refused")

        outcome = await controller.reconcile(KEY)

        assert isinstance(outcome.error, TransientError)
        assert outcome.error.context["resource"] == "vault/vault-unseal"
        assert "failed to get VaultTransitUnseal" in str(outcome.error)
        assert outcome.requeue_after is None
        reconciler.reconcile.assert_not_awaited()

    async def test_resource_passed_untouched(
        self, controller, reconciler, sample_resource
    ):
        await controller.reconcile(KEY)

        resource, ctx = reconciler.reconcile.await_args.args
        assert resource is sample_resource
        assert ctx is controller.reconciler_ctx

    async def test_success_marks_ready(self, controller, mock_db, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(requeue_after=60)

        outcome = await controller.reconcile(KEY)

        assert outcome == Outcome(requeue_after=60)
        mock_db.update_reconcile_state.assert_awaited_once_with(
            7,
            ReconcileState.READY,
            message="Reconciliation successful",
            observed_generation=2,
            config_error=False,
        )
        kwargs = mock_db.record_reconciliation.await_args.kwargs
        assert kwargs["success"] is True
        assert kwargs["error_kind"] is None
        assert kwargs["requeue_after"] == 60

    async def test_transient_error_retries(self, controller, mock_db, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(
            error=TransientError("vault sealed"), requeue_after=45
        )

        outcome = await controller.reconcile(KEY)

        assert outcome.failed is False
        assert outcome.requeue_after == 45
        state = mock_db.update_reconcile_state.await_args
        assert state.args[1] == ReconcileState.RETRYING
        assert state.kwargs["observed_generation"] is None
        assert state.kwargs["config_error"] is False
        kwargs = mock_db.record_reconciliation.await_args.kwargs
        assert kwargs["success"] is False
        assert kwargs["error_kind"] == "transient"

    async def test_transient_error_uses_minimum_backoff(self, controller, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(
            error=TransientError("blip")
        )

        outcome = await controller.reconcile(KEY)

        assert outcome.requeue_after == 30

    async def test_permanent_error_fails(self, controller, mock_db, reconciler):
        err = PermanentError("invalid spec")
        reconciler.reconcile.return_value = ReconcileResult(error=err, requeue_after=10)

        outcome = await controller.reconcile(KEY)

        assert outcome.error is err
        assert outcome.requeue_after is None
        mock_db.update_reconcile_state.assert_awaited_once_with(
            7,
            ReconcileState.FAILED,
            message="invalid spec",
            observed_generation=2,
            config_error=False,
        )

    async def test_reconciler_exception_is_permanent(self, controller, reconciler):
        reconciler.reconcile.side_effect = RuntimeError("bug")

        outcome = await controller.reconcile(KEY)

        assert isinstance(outcome.error, RuntimeError)
        assert outcome.requeue_after is None

    async def test_config_error_escalates_after_budget(
        self, controller, reconciler, sample_resource
    ):
        sample_resource["retry_count"] = 2
        sample_resource["config_error_count"] = 2
        reconciler.reconcile.return_value = ReconcileResult(
            error=ConfigError("secret not found")
        )

        outcome = await controller.reconcile(KEY)

        assert isinstance(outcome.error, PermanentError)
        assert outcome.error.context["attempts"] == 3

    async def test_transient_retries_do_not_spend_config_budget(
        self, controller, mock_db, reconciler, sample_resource
    ):
        sample_resource["retry_count"] = 9
        sample_resource["config_error_count"] = 0
        reconciler.reconcile.return_value = ReconcileResult(
            error=ConfigError("secret not found")
        )

        outcome = await controller.reconcile(KEY)

        assert outcome.failed is False
        assert outcome.requeue_after == 30
        state = mock_db.update_reconcile_state.await_args
        assert state.args[1] == ReconcileState.RETRYING
        assert state.kwargs["config_error"] is True

    async def test_config_error_counted_after_transients(
        self, controller, mock_db, reconciler, sample_resource
    ):
        reconciler.reconcile.side_effect = [
            ReconcileResult(error=TransientError("vault sealed")),
            ReconcileResult(error=TransientError("vault sealed")),
            ReconcileResult(error=ConfigError("secret not found")),
        ]

        for retry_count in range(3):
            sample_resource["retry_count"] = retry_count
            outcome = await controller.reconcile(KEY)

        assert outcome.failed is False
        flags = [
            call.kwargs["config_error"]
            for call in mock_db.update_reconcile_state.await_args_list
        ]
        assert flags == [False, False, True]

    async def test_bookkeeping_failure_keeps_outcome(
        self, controller, mock_db, reconciler
    ):
        mock_db.update_reconcile_state.side_effect = OSError("db down")
        reconciler.reconcile.return_value = ReconcileResult(requeue_after=60)

        outcome = await controller.reconcile(KEY)

        assert outcome == Outcome(requeue_after=60)

    async def test_publishes_reconciled_event(self, controller, event_bus):
        _, subscription = event_bus.subscribe()

        await controller.reconcile(KEY)

        events = drain(subscription._queue)
        assert [e.event_type for e in events] == [EventType.RECONCILED]
        assert events[0].key == KEY

    async def test_publishes_failed_event(self, controller, event_bus, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(
            error=PermanentError("invalid spec")
        )
        _, subscription = event_bus.subscribe()

        await controller.reconcile(KEY)

        events = drain(subscription._queue)
        assert [e.event_type for e in events] == [EventType.FAILED]
        assert events[0].message == "invalid spec"

    async def test_retry_publishes_nothing(self, controller, event_bus, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(
            error=TransientError("blip")
        )
        _, subscription = event_bus.subscribe()

        await controller.reconcile(KEY)

        assert subscription._queue.empty()


@pytest.mark.asyncio
class TestWorker:
    """Tests for the worker loop."""

    async def _run_until(self, predicate):
        for _ in range(200):
            if predicate():
                return
            await asyncio.sleep(0)
        raise AssertionError("condition not reached")

    async def test_requeues_after_delay(self, controller):
        controller.reconcile = AsyncMock(return_value=Outcome(requeue_after=30))
        controller.queue.add(KEY)

        worker = asyncio.create_task(controller._worker(0))
        await self._run_until(lambda: controller.reconcile.await_count == 1)
        await self._run_until(lambda: KEY in controller.queue)

        assert not controller.queue.is_processing(KEY)
        controller.queue.shutdown()
        await asyncio.wait_for(worker, 1)

    async def test_no_requeue_without_delay(self, controller):
        controller.reconcile = AsyncMock(return_value=Outcome())
        controller.queue.add(KEY)

        worker = asyncio.create_task(controller._worker(0))
        await self._run_until(lambda: controller.reconcile.await_count == 1)
        await self._run_until(lambda: not controller.queue.is_processing(KEY))

        assert KEY not in controller.queue
        controller.queue.shutdown()
        await asyncio.wait_for(worker, 1)

    async def test_worker_survives_unexpected_error(self, controller):
        controller.reconcile = AsyncMock(side_effect=RuntimeError("boom"))
        controller.queue.add(KEY)

        worker = asyncio.create_task(controller._worker(0))
        await self._run_until(lambda: controller.reconcile.await_count == 1)
        await self._run_until(lambda: not controller.queue.is_processing(KEY))

        assert not worker.done()
        controller.queue.shutdown()
        await asyncio.wait_for(worker, 1)


@pytest.mark.asyncio
class TestEventSources:
    """Tests for the watch and trigger paths."""

    async def test_trigger_reconciliation(self, controller):
        controller.trigger_reconciliation("vault", "vault-unseal")

        assert KEY in controller.queue

    async def test_resync_queues_unscheduled_resources(
        self, controller, mock_db, sample_resource
    ):
        mock_db.get_resources_needing_reconciliation.return_value = [sample_resource]

        assert await controller._resync() == 1
        assert KEY in controller.queue

    async def test_resync_keeps_pending_backoff(
        self, mock_db, reconciler, sample_resource
    ):
        clock = FakeClock(1000)
        ctrl = Controller(
            mock_db, reconciler, MagicMock(), queue=WorkQueue(clock=clock)
        )
        sample_resource["reconcile_state"] = "retrying"
        mock_db.get_resources_needing_reconciliation.return_value = [sample_resource]
        ctrl.queue.add(KEY, 300)

        assert await ctrl._resync() == 0

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(ctrl.queue.get(), 0.05)

        clock.now += 300
        assert await asyncio.wait_for(ctrl.queue.get(), 1) == KEY

    async def test_resync_skips_key_in_flight(
        self, controller, mock_db, sample_resource
    ):
        mock_db.get_resources_needing_reconciliation.return_value = [sample_resource]
        controller.queue.add(KEY)
        assert await controller.queue.get() == KEY

        assert await controller._resync() == 0

        controller.queue.done(KEY)
        assert KEY not in controller.queue

    async def test_poll_changes_publishes_and_advances_cursor(
        self, controller, mock_db, event_bus
    ):
        mock_db.list_resources_changed_since.return_value = [
            {"namespace": "vault", "name": "a", "generation": 1,
             "last_reconcile_time": None, "updated_at": 10},
            {"namespace": "vault", "name": "b", "generation": 4,
             "last_reconcile_time": 5, "updated_at": 20},
        ]
        _, subscription = event_bus.subscribe()

        await controller._poll_changes()

        events = drain(subscription._queue)
        assert [e.event_type for e in events] == [EventType.CREATED, EventType.MODIFIED]
        assert controller._watch_cursor == 20

        await controller._poll_changes()
        mock_db.list_resources_changed_since.assert_awaited_with(20)

    async def test_is_alive(self, controller):
        assert controller.is_alive() is False

        controller.running = True
        assert controller.is_alive() is True

    async def test_start_and_stop(self, controller, mock_db, sample_resource):
        mock_db.get_resources_needing_reconciliation.return_value = [sample_resource]

        task = asyncio.create_task(controller.start())
        for _ in range(200):
            if controller.reconciler.reconcile.await_count:
                break
            await asyncio.sleep(0)

        assert controller.is_alive()
        assert controller.reconciler.reconcile.await_count >= 1

        await controller.stop()
        await asyncio.wait_for(task, 2)
        assert controller.is_alive() is False
        assert controller.event_bus.subscriber_count() == 0
