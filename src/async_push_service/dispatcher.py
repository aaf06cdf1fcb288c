# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-credential push dispatcher.

This module provides :class:`PushDispatcher`, the stateful service that owns
one gateway credential and serializes every attempt made with it through a
single asyncio worker task. It drives one attempt through the
:class:`~async_push_service.gateway.GatewayClient`, routes successful
responses through the :class:`~async_push_service.classifier.ResultClassifier`
and hands transient failures to the
:class:`~async_push_service.backoff.BackoffScheduler`.

Entry points:
    - ``submit``: enqueue a multicast push and return immediately; outcomes
      are reported through the error sink and the log.
    - ``submit_sync``: wait for exactly one attempt and return the
      per-recipient results or a :class:`DispatchFailure`.
    - ``web_push_submit`` / ``web_push_submit_sync``: same contract for a
      single web-push subscription.

Example:
    Running a dispatcher::

        dispatcher = PushDispatcher("API_KEY", name="android")
        await dispatcher.start()

        dispatcher.submit(["token-a", "token-b"], {"data": {"type": "wakeUp"}})
        results = await dispatcher.submit_sync(["token-c"], {"data": {}})

        await dispatcher.stop()
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .backoff import BackoffScheduler, ScheduleOutcome
from .classifier import CLASSIFICATION_ERROR, ErrorSink, ResultClassifier, log_error_sink, sink_arguments
from .gateway import GatewayClient
from .logger import get_logger
from .models import (
    DispatchFailure,
    ErrorKind,
    GatewayResponse,
    PushJob,
    RecipientResult,
    ResultStatus,
    TransportFailure,
    WebPushSubscription,
)
from .prometheus import PushMetrics

DEFAULT_ATTEMPT_BUDGET = 3

DispatchOutcome = list[RecipientResult] | DispatchFailure


class DispatcherStopped(RuntimeError):
    """Raised when a synchronous submission reaches a stopped dispatcher."""

    def __init__(self, message: str = "Dispatcher is stopped"):
        super().__init__(message)
        self.code = "dispatcher_stopped"


class PushDispatcher:
    """Serialized dispatcher bound to a single gateway credential.

    Attributes:
        name: Dispatcher name used in logs and metric labels.
        gateway: Client performing the HTTP attempts.
        classifier: Per-recipient result classifier.
        scheduler: Backoff scheduler for transient failures.
        metrics: Prometheus metrics collector.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        credential: str,
        *,
        name: str = "default",
        gateway: GatewayClient | None = None,
        classifier: ResultClassifier | None = None,
        scheduler: BackoffScheduler | None = None,
        metrics: PushMetrics | None = None,
        error_sink: ErrorSink | None = log_error_sink,
        default_attempt_budget: int = DEFAULT_ATTEMPT_BUDGET,
        log_delivery_activity: bool = False,
        on_abandoned: Callable[[PushJob, str], None] | None = None,
        logger=None,
    ):
        """Initialize the dispatcher.

        Args:
            credential: Gateway API key; immutable for the dispatcher lifetime.
            name: Name used in logs and metric labels.
            gateway: Gateway client. Defaults to :class:`GatewayClient`.
            classifier: Result classifier. Defaults to :class:`ResultClassifier`.
            scheduler: Backoff scheduler. Defaults to a new scheduler using
                ``on_abandoned`` as its abandonment hook.
            metrics: Metrics collector. If None, creates a new instance.
            error_sink: Callback ``(error_code, context)`` receiving classified
                errors of asynchronous pushes. None disables reporting.
            default_attempt_budget: Resubmissions allowed when a call does not
                pass ``attempt_budget``.
            log_delivery_activity: Log attempts at info level instead of debug.
            on_abandoned: Observability hook for abandoned pushes.
            logger: Custom logger instance.
        """
        self._credential = credential
        self.name = name
        self.logger = logger or get_logger("PushDispatcher")
        self.gateway = gateway or GatewayClient(logger=self.logger)
        self.classifier = classifier or ResultClassifier()
        self.scheduler = scheduler or BackoffScheduler(on_abandoned=on_abandoned, logger=self.logger)
        self.metrics = metrics or PushMetrics()
        self._error_sink = error_sink
        self._default_attempt_budget = max(0, int(default_attempt_budget))
        self._log_delivery_activity = bool(log_delivery_activity)

        self._queue: asyncio.Queue[tuple[PushJob, asyncio.Future | None]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._current: asyncio.Future | None = None
        self._stopped = False

    @property
    def credential(self) -> str:
        return self._credential

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._stopped

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Spawn the worker task draining the submission queue."""
        if self._stopped:
            raise DispatcherStopped(f"Dispatcher {self.name} cannot be restarted")
        if self._task is None:
            self._task = asyncio.create_task(self._worker_loop(), name=f"push-dispatcher-{self.name}")
            self.logger.debug("Dispatcher %s started", self.name)

    async def stop(self) -> None:
        """Stop the worker; in-flight and queued pushes are abandoned.

        Synchronous callers still waiting receive :class:`DispatcherStopped`.
        Scheduled backoff timers are left in place and become no-ops.
        """
        if self._stopped:
            return
        self._stopped = True
        waiters = [self._current] if self._current is not None else []
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self._current = None
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if future is not None:
                waiters.append(future)
        for future in waiters:
            if not future.done():
                future.set_exception(DispatcherStopped(f"Dispatcher {self.name} stopped"))
        self.metrics.set_queued(self.name, 0)
        self.logger.debug("Dispatcher %s stopped", self.name)

    def update_error_sink(self, sink: ErrorSink | None) -> None:
        """Replace the sink receiving classified errors of asynchronous pushes."""
        self._error_sink = sink

    # ---------------------------------------------------------------- submission
    def submit(
        self,
        recipients: Sequence[str],
        message: Mapping[str, Any],
        attempt_budget: int | None = None,
    ) -> None:
        """Enqueue a multicast push and return immediately."""
        self._enqueue(PushJob.multicast(recipients, message, self._budget(attempt_budget)), None)

    async def submit_sync(
        self,
        recipients: Sequence[str],
        message: Mapping[str, Any],
        attempt_budget: int | None = None,
    ) -> DispatchOutcome:
        """Run one multicast attempt and return its outcome.

        Returns:
            The per-recipient results in request order, or a
            :class:`DispatchFailure`. A transient failure yields
            ``RETRY_SCHEDULED`` while the retry proceeds asynchronously.

        Raises:
            DispatcherStopped: If the dispatcher was stopped.
        """
        job = PushJob.multicast(recipients, message, self._budget(attempt_budget))
        return await self._enqueue_and_wait(job)

    def web_push_submit(
        self,
        subscription: WebPushSubscription,
        message: Mapping[str, Any],
        attempt_budget: int | None = None,
    ) -> None:
        """Enqueue a web push for a single subscription and return immediately."""
        self._enqueue(PushJob.web_push(subscription, message, self._budget(attempt_budget)), None)

    async def web_push_submit_sync(
        self,
        subscription: WebPushSubscription,
        message: Mapping[str, Any],
        attempt_budget: int | None = None,
    ) -> DispatchOutcome:
        """Run one web-push attempt and return its outcome."""
        job = PushJob.web_push(subscription, message, self._budget(attempt_budget))
        return await self._enqueue_and_wait(job)

    def _budget(self, attempt_budget: int | None) -> int:
        return self._default_attempt_budget if attempt_budget is None else attempt_budget

    def _enqueue(self, job: PushJob, future: asyncio.Future | None) -> None:
        if self._stopped:
            self.logger.warning(
                "Dispatcher %s is stopped, dropping push to %d recipient(s)", self.name, len(job.targets)
            )
            return
        self._queue.put_nowait((job, future))
        self.metrics.set_queued(self.name, self._queue.qsize())

    async def _enqueue_and_wait(self, job: PushJob) -> DispatchOutcome:
        if self._stopped:
            raise DispatcherStopped(f"Dispatcher {self.name} is stopped")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._enqueue(job, future)
        return await future

    def _resubmit(self, job: PushJob) -> None:
        """Timer callback re-entering the serialized attempt path."""
        if self._stopped:
            self.logger.warning(
                "Scheduled resubmission for dispatcher %s dropped: dispatcher stopped", self.name
            )
            return
        self._enqueue(job, None)

    # ------------------------------------------------------------------- worker
    async def _worker_loop(self) -> None:
        """Process queued jobs one at a time until cancelled."""
        while True:
            job, future = await self._queue.get()
            self._current = future
            self.metrics.set_queued(self.name, self._queue.qsize())
            try:
                outcome = await self._attempt(job, report=future is None)
            except Exception as exc:
                self.logger.exception("Unhandled error while dispatching push: %s", exc)
                outcome = DispatchFailure(ErrorKind.UNKNOWN_TRANSPORT_FAILURE, str(exc))
            finally:
                self._current = None
                self._queue.task_done()
            if future is not None and not future.done():
                future.set_result(outcome)

    async def _attempt(self, job: PushJob, *, report: bool) -> DispatchOutcome:
        """Perform one gateway attempt for ``job``.

        Args:
            job: The push to attempt.
            report: Whether classified errors go to the error sink
                (asynchronous pushes and resubmissions).
        """
        self._log_attempt(job)
        self.metrics.inc_attempt(self.name)
        if job.subscription is not None:
            outcome = await self.gateway.send_web_push(job.subscription, job.message, self._credential)
        else:
            outcome = await self.gateway.send(job.recipients, job.message, self._credential)

        if isinstance(outcome, TransportFailure):
            return self._handle_failure(job, outcome)
        return await self._handle_response(job, outcome, report=report)

    def _handle_failure(self, job: PushJob, failure: TransportFailure) -> DispatchFailure:
        self.metrics.inc_transport_failure(self.name, failure.kind.value)
        if not failure.is_transient:
            self.logger.error(
                "Push to %d recipient(s) failed (attempt %d): %s %s",
                len(job.targets),
                job.attempt,
                failure.kind.value,
                failure.detail or "",
            )
            return DispatchFailure(failure.kind, failure.detail)

        scheduled = self.scheduler.schedule(failure.retry_hint, job, self._resubmit)
        if scheduled is ScheduleOutcome.SCHEDULED:
            self.metrics.inc_retry(self.name)
            return DispatchFailure(ErrorKind.RETRY_SCHEDULED, failure.detail)
        self.metrics.inc_abandoned(self.name)
        return DispatchFailure(ErrorKind.ABANDONED, failure.detail)

    async def _handle_response(
        self, job: PushJob, response: GatewayResponse, *, report: bool
    ) -> list[RecipientResult]:
        if job.subscription is not None:
            results = [RecipientResult.delivered(job.subscription.token)]
        elif (
            report
            and len(response.results) == len(job.recipients)
            and not self.classifier.needs_classification(response)
        ):
            # Aligned batch with nothing to report: every recipient was delivered unchanged
            self.metrics.inc_delivered(self.name, len(job.recipients))
            self._log_activity("Push delivered to all %d recipient(s)", len(job.recipients))
            return []
        else:
            results = self.classifier.classify_batch(response, job.recipients)

        self._record(results)
        if report:
            await self._report(results)
        return results

    def _record(self, results: list[RecipientResult]) -> None:
        delivered = 0
        for result in results:
            match result.status:
                case ResultStatus.DELIVERED:
                    delivered += 1
                case ResultStatus.IDENTIFIER_CHANGED:
                    self.metrics.inc_identifier_changed(self.name)
                case ResultStatus.MALFORMED:
                    self.metrics.inc_recipient_error(self.name, CLASSIFICATION_ERROR)
                case _:
                    self.metrics.inc_recipient_error(self.name, result.error or result.status.value)
        if delivered:
            self.metrics.inc_delivered(self.name, delivered)
        self._log_activity(
            "Push completed: %d delivered, %d not delivered cleanly", delivered, len(results) - delivered
        )

    async def _report(self, results: list[RecipientResult]) -> None:
        sink = self._error_sink
        if sink is None:
            return
        for result in results:
            arguments = sink_arguments(result)
            if arguments is None:
                continue
            try:
                outcome = sink(*arguments)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                self.logger.exception("Error sink failed for %s: %s", result.recipient, exc)

    def _log_attempt(self, job: PushJob) -> None:
        self._log_activity(
            "Message=%s; RegIds=%s; attempt=%d",
            dict(job.message),
            list(job.targets),
            job.attempt,
        )

    def _log_activity(self, msg: str, *args: Any) -> None:
        if self._log_delivery_activity:
            self.logger.info(msg, *args)
        else:
            self.logger.debug(msg, *args)
