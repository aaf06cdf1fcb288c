# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Server-driven backoff scheduling for transient gateway failures.

The wait before a resubmission is whatever the gateway declared through its
retry hint: no jitter and no local growth are applied. The only local bound
is the attempt budget carried by each :class:`PushJob`, decremented on every
resubmission. A job with no budget left, or a ``NO_RETRY`` hint, is
abandoned silently; an optional hook can observe abandonment.

Resubmissions are event-loop timers. A timer holds the immutable
``job.next_attempt()`` and hands it to the ``resubmit`` callback when it
fires, so nothing waits idle while the delay elapses.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import Any

from .logger import get_logger
from .models import PushJob, RetryHint


class ScheduleOutcome(str, Enum):
    SCHEDULED = "scheduled"
    ABANDONED = "abandoned"


class BackoffScheduler:
    """Schedule deferred resubmissions of failed pushes.

    Attributes:
        loop: Event loop used for timers. Resolved lazily to the running
            loop when not injected.
        on_abandoned: Optional ``(job, reason)`` callback invoked when a push
            is abandoned.
    """

    def __init__(
        self,
        *,
        loop: Any = None,
        on_abandoned: Callable[[PushJob, str], None] | None = None,
        logger=None,
    ):
        self.loop = loop
        self.on_abandoned = on_abandoned
        self.logger = logger or get_logger("BackoffScheduler")
        self._handles: set[Any] = set()

    @property
    def pending(self) -> int:
        """Number of resubmissions whose timer has not fired yet."""
        return len(self._handles)

    def schedule(
        self,
        hint: RetryHint,
        job: PushJob,
        resubmit: Callable[[PushJob], None],
    ) -> ScheduleOutcome:
        """Schedule ``job`` again after the hinted delay, or abandon it.

        Args:
            hint: Retry hint derived from the gateway response.
            job: The push whose attempt just failed.
            resubmit: Callback receiving the decremented resubmission.

        Returns:
            ``SCHEDULED`` when a timer was armed, ``ABANDONED`` otherwise.
        """
        if not hint.should_retry:
            return self._abandon(job, "no retry hint")
        if job.attempt_budget <= 0:
            return self._abandon(job, "attempt budget exhausted")

        next_job = job.next_attempt()
        loop = self.loop or asyncio.get_running_loop()
        handle: Any = None

        def _fire() -> None:
            self._handles.discard(handle)
            resubmit(next_job)

        handle = loop.call_later(hint.seconds, _fire)
        self._handles.add(handle)
        self.logger.warning(
            "Resubmitting %d recipient(s) in %ss (attempt %d, budget left %d)",
            len(next_job.targets),
            hint.seconds,
            next_job.attempt,
            next_job.attempt_budget,
        )
        return ScheduleOutcome.SCHEDULED

    def _abandon(self, job: PushJob, reason: str) -> ScheduleOutcome:
        self.logger.debug("Abandoning push to %d recipient(s): %s", len(job.targets), reason)
        if self.on_abandoned is not None:
            try:
                self.on_abandoned(job, reason)
            except Exception:
                self.logger.exception("Abandonment hook failed")
        return ScheduleOutcome.ABANDONED
