# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Host-side registry of named, credential-bound dispatchers.

The registry is what a host application uses to start one
:class:`PushDispatcher` per credential and address it by name afterwards.
Dispatchers share the metrics collector and the gateway configuration but
no mutable state.
"""

from __future__ import annotations

from .backoff import BackoffScheduler
from .classifier import ErrorSink, log_error_sink
from .config_loader import ServiceSettings
from .dispatcher import PushDispatcher
from .gateway import GatewayClient
from .logger import get_logger
from .prometheus import PushMetrics


class DispatcherRegistry:
    """Start, look up and stop dispatchers by name."""

    def __init__(
        self,
        settings: ServiceSettings | None = None,
        *,
        metrics: PushMetrics | None = None,
        gateway: GatewayClient | None = None,
        logger=None,
    ):
        self.settings = settings or ServiceSettings()
        self.metrics = metrics or PushMetrics()
        self.logger = logger or get_logger("DispatcherRegistry")
        self.gateway = gateway or GatewayClient(
            self.settings.gateway_url,
            timeout=self.settings.request_timeout,
            default_retry_after=self.settings.default_retry_after,
        )
        self._dispatchers: dict[str, PushDispatcher] = {}

    def names(self) -> list[str]:
        return sorted(self._dispatchers)

    def __contains__(self, name: str) -> bool:
        return name in self._dispatchers

    def get(self, name: str) -> PushDispatcher:
        """Return the running dispatcher registered as ``name``.

        Raises:
            KeyError: If no dispatcher has that name.
        """
        try:
            return self._dispatchers[name]
        except KeyError as e:
            raise KeyError(f"No dispatcher registered with name={name}") from e

    async def start(
        self,
        name: str,
        credential: str,
        error_sink: ErrorSink | None = log_error_sink,
    ) -> PushDispatcher:
        """Create and start a dispatcher bound to ``credential``.

        Raises:
            ValueError: If ``name`` is already registered or the credential
                is empty.
        """
        if not credential:
            raise ValueError(f"Dispatcher {name} requires a credential")
        if name in self._dispatchers:
            raise ValueError(f"Dispatcher {name} is already started")
        dispatcher_logger = get_logger(f"PushDispatcher.{name}")
        dispatcher = PushDispatcher(
            credential,
            name=name,
            gateway=self.gateway,
            scheduler=BackoffScheduler(logger=dispatcher_logger),
            metrics=self.metrics,
            error_sink=error_sink,
            default_attempt_budget=self.settings.attempt_budget,
            log_delivery_activity=self.settings.log_delivery_activity,
            logger=dispatcher_logger,
        )
        await dispatcher.start()
        self._dispatchers[name] = dispatcher
        self.logger.info("Dispatcher %s started", name)
        return dispatcher

    async def start_configured(self) -> int:
        """Start every dispatcher listed in the settings; return how many."""
        started = 0
        for name, credential in self.settings.dispatchers.items():
            if name not in self._dispatchers:
                await self.start(name, credential)
                started += 1
        return started

    async def stop(self, name: str) -> bool:
        """Stop and unregister ``name``. Returns False if it was unknown."""
        dispatcher = self._dispatchers.pop(name, None)
        if dispatcher is None:
            return False
        await dispatcher.stop()
        self.logger.info("Dispatcher %s stopped", name)
        return True

    async def stop_all(self) -> None:
        for name in list(self._dispatchers):
            await self.stop(name)
