"""
Operator Controller - Main reconciliation loop.

Watches VaultTransitUnseal resources, feeds their identities into a
single-flight work queue and runs a bounded pool of workers. Each worker
fetches the resource, hands it to the reconciler plugin and turns the result
into a scheduling decision.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from backoff import BackoffPolicy, Outcome, OutcomeClassifier
from config import OperatorConfig
from db import DatabaseManager, NamespacedName, ReconcileState
from errors import ErrorKind, TransientError, error_kind
from events import EventBus, EventType, ResourceEvent
from plugins.reconcilers.base import (
    ReconcileResult,
    ReconcilerContext,
    ReconcilerPlugin,
)
from workqueue import QueueShutdown, WorkQueue

logger = logging.getLogger(__name__)


def generate_trace_id() -> str:
    return uuid.uuid4().hex[:16]


class Controller:
    """
    Main controller that implements the reconciliation loop.

    At most one reconciliation per resource identity runs at a time, and
    at most ``max_concurrent_reconciles`` run overall.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        reconciler: ReconcilerPlugin,
        reconciler_ctx: ReconcilerContext,
        config: Optional[OperatorConfig] = None,
        event_bus: Optional[EventBus] = None,
        queue: Optional[WorkQueue] = None,
    ):
        self.db = db_manager
        self.reconciler = reconciler
        self.reconciler_ctx = reconciler_ctx
        self.config = config or OperatorConfig()
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.queue = queue if queue is not None else WorkQueue()
        self.classifier = OutcomeClassifier(
            BackoffPolicy(
                min_backoff=self.config.min_backoff,
                max_backoff=self.config.max_backoff,
            ),
            config_error_max_attempts=self.config.config_error_max_attempts,
        )
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._subscriber_id: Optional[str] = None
        self._watch_cursor: Optional[datetime] = None

    def is_alive(self) -> bool:
        """True while the controller runs and none of its loops has died."""
        return self.running and all(not task.done() for task in self._tasks)

    async def start(self):
        """Start the watch, resync and worker loops and wait for them."""
        logger.info(
            f"Starting Operator Controller with "
            f"{self.config.max_concurrent_reconciles} worker(s)"
        )
        self.running = True
        self._shutdown_event.clear()

        self._subscriber_id, subscription = self.event_bus.subscribe(
            lambda event: event.triggers_reconcile
        )

        self._tasks = [
            asyncio.create_task(self._event_loop(subscription)),
            asyncio.create_task(self._watch_loop()),
            asyncio.create_task(self._resync_loop()),
        ]
        for worker_id in range(self.config.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker(worker_id)))

        try:
            await asyncio.gather(*self._tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop handing out work; in-flight reconciliations finish."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self._shutdown_event.set()
        self.queue.shutdown()
        if self._subscriber_id is not None:
            self.event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

    def trigger_reconciliation(self, namespace: str, name: str) -> None:
        """Manually queue a resource for immediate reconciliation."""
        key = NamespacedName(namespace, name)
        logger.info(f"Manually triggering reconciliation for {key}")
        self.queue.add(key)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ==================== Event sources ====================

    async def _event_loop(self, subscription) -> None:
        """Queue every resource named by a created or modified event."""
        async for event in subscription:
            self.queue.add(event.key)

    async def _watch_loop(self) -> None:
        """Poll the store for changed resources and publish change events."""
        while self.running:
            try:
                await self._poll_changes()
            except Exception as e:
                logger.error(f"Error in watch loop: {e}", exc_info=True)
            await self._sleep(self.config.watch_interval)

    async def _poll_changes(self) -> None:
        changed = await self.db.list_resources_changed_since(self._watch_cursor)
        for resource in changed:
            event_type = (
                EventType.CREATED
                if resource.get("last_reconcile_time") is None
                else EventType.MODIFIED
            )
            self.event_bus.publish(ResourceEvent.from_resource(event_type, resource))
            updated_at = resource.get("updated_at")
            if updated_at is not None and (
                self._watch_cursor is None or updated_at > self._watch_cursor
            ):
                self._watch_cursor = updated_at

    async def _resync_loop(self) -> None:
        """Periodically queue every resource that still needs reconciliation."""
        while self.running:
            try:
                await self._resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)
            await self._sleep(self.config.resync_interval)

    async def _resync(self) -> int:
        """
        Queue resources needing reconciliation that are not already scheduled.

        Keys already queued or in flight keep their pending backoff delay.

        Returns:
            Number of keys queued.
        """
        queued = 0
        for resource in await self.db.get_resources_needing_reconciliation():
            key = NamespacedName.from_resource(resource)
            if key in self.queue or self.queue.is_processing(key):
                continue
            self.queue.add(key)
            queued += 1
        if queued:
            logger.info(f"Resync queued {queued} resource(s)")
        return queued

    # ==================== Workers ====================

    async def _worker(self, worker_id: int) -> None:
        """Take keys off the queue until it shuts down."""
        while True:
            try:
                key = await self.queue.get()
            except QueueShutdown:
                logger.debug(f"Worker {worker_id} exiting")
                return

            try:
                outcome = await self.reconcile(key)
                if outcome.requeue_after:
                    self.queue.add(key, outcome.requeue_after)
            except Exception as e:
                logger.error(f"Unhandled error reconciling {key}: {e}", exc_info=True)
            finally:
                self.queue.done(key)

    async def reconcile(self, key: NamespacedName) -> Outcome:
        """
        Reconcile a single resource identity.

        A missing resource is a terminal success and publishes a DELETED
        event. A failed fetch is reported as a transient failure and left to
        the periodic resync.
        """
        trace_id = generate_trace_id()
        logger.debug(f"[{trace_id}] Starting reconciliation of {key}")

        try:
            resource = await asyncio.wait_for(
                self.db.get_resource(key.namespace, key.name),
                timeout=self.config.fetch_timeout,
            )
        except Exception as e:
            error = TransientError("failed to get VaultTransitUnseal", e).with_context(
                "resource", str(key)
            )
            logger.error(f"[{trace_id}] {error}")
            return Outcome(error=error)

        if resource is None:
            logger.debug(f"[{trace_id}] {key} not found, likely deleted")
            self.event_bus.publish(
                ResourceEvent(EventType.DELETED, key, "resource not found")
            )
            return Outcome()

        start_time = time.monotonic()
        try:
            result = await self.reconciler.reconcile(resource, self.reconciler_ctx)
        except Exception as e:
            logger.error(
                f"[{trace_id}] Reconciler raised for {key}: {e}", exc_info=True
            )
            result = ReconcileResult(error=e)
        duration = time.monotonic() - start_time

        attempt = resource.get("retry_count", 0) + 1
        outcome = self.classifier.classify(
            result, attempt=resource.get("config_error_count", 0) + 1
        )

        if outcome.failed:
            logger.error(
                f"[{trace_id}] Reconciliation of {key} failed permanently: "
                f"{outcome.error}"
            )
        elif result.error is not None:
            logger.warning(
                f"[{trace_id}] Reconciliation of {key} failed, retrying in "
                f"{outcome.requeue_after}s (attempt {attempt}): {result.error}"
            )
        else:
            logger.debug(
                f"[{trace_id}] Reconciliation of {key} completed, "
                f"requeueAfter={outcome.requeue_after}"
            )

        await self._record(resource, result, outcome, duration, trace_id)
        return outcome

    async def _record(
        self,
        resource: Dict[str, Any],
        result: ReconcileResult,
        outcome: Outcome,
        duration: float,
        trace_id: str,
    ) -> None:
        """Write bookkeeping, history and events. Never alters the outcome."""
        resource_id = resource["id"]
        generation = resource.get("generation", 0)
        error = outcome.error or result.error

        if outcome.failed:
            state = ReconcileState.FAILED
            message = str(outcome.error)
            observed_generation: Optional[int] = generation
        elif result.error is not None:
            state = ReconcileState.RETRYING
            message = str(result.error)
            observed_generation = None
        else:
            state = ReconcileState.READY
            message = "Reconciliation successful"
            observed_generation = generation

        try:
            await self.db.update_reconcile_state(
                resource_id,
                state,
                message=message,
                observed_generation=observed_generation,
                config_error=(
                    result.error is not None
                    and error_kind(result.error) == ErrorKind.CONFIG
                ),
            )
            await self.db.record_reconciliation(
                resource_id=resource_id,
                generation=generation,
                success=error is None,
                error_kind=error_kind(error).value if error is not None else None,
                error_message=str(error) if error is not None else None,
                requeue_after=outcome.requeue_after,
                duration_seconds=duration,
                trace_id=trace_id,
            )
        except Exception as e:
            logger.error(
                f"[{trace_id}] Failed to record reconciliation of "
                f"{resource.get('namespace')}/{resource.get('name')}: {e}"
            )

        if outcome.failed:
            self.event_bus.publish(
                ResourceEvent.from_resource(EventType.FAILED, resource, message)
            )
        elif result.error is None:
            self.event_bus.publish(
                ResourceEvent.from_resource(EventType.RECONCILED, resource, message)
            )
