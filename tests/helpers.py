"""Shared test doubles for the push dispatcher tests."""

from __future__ import annotations

import asyncio
import types
from typing import Any

from async_push_service.models import GatewayResponse, TransportFailure


class DummyHandle:
    def __init__(self, delay, callback, args):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Records ``call_later`` timers instead of arming them."""

    def __init__(self):
        self.calls: list[DummyHandle] = []

    def call_later(self, delay, callback, *args):
        handle = DummyHandle(delay, callback, args)
        self.calls.append(handle)
        return handle

    @property
    def delays(self) -> list[float]:
        return [handle.delay for handle in self.calls]

    def fire_all(self) -> int:
        pending, self.calls = self.calls, []
        for handle in pending:
            handle.callback(*handle.args)
        return len(pending)


class DummyGateway:
    """Gateway double returning scripted outcomes.

    The last outcome is repeated once the script is exhausted.
    """

    def __init__(self, *outcomes: GatewayResponse | TransportFailure):
        self.outcomes = list(outcomes) or [GatewayResponse(success=1)]
        self.calls: list[dict[str, Any]] = []
        self.release: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    def _next(self):
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]

    async def _record(self, call: dict[str, Any]):
        self.calls.append(call)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.release is not None:
                await self.release.wait()
            else:
                await asyncio.sleep(0)
            return self._next()
        finally:
            self.in_flight -= 1

    async def send(self, recipients, message, credential):
        return await self._record(
            {"kind": "multicast", "recipients": list(recipients), "message": dict(message), "credential": credential}
        )

    async def send_web_push(self, subscription, message, credential):
        return await self._record(
            {"kind": "web_push", "subscription": subscription, "message": dict(message), "credential": credential}
        )


class SinkRecorder:
    def __init__(self):
        self.calls: list[tuple[str, Any]] = []

    def __call__(self, code, context):
        self.calls.append((code, context))


def silent_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


def gateway_response(*results: dict[str, Any]) -> GatewayResponse:
    """Build a response whose counters match ``results``."""
    failure = sum(1 for entry in results if "error" in entry)
    canonical = sum(1 for entry in results if "registration_id" in entry)
    return GatewayResponse(
        multicast_id=1,
        success=len(results) - failure,
        failure=failure,
        canonical_ids=canonical,
        results=tuple(results),
    )
