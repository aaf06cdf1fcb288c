"""Asynchronous push-notification dispatcher with gateway-driven retries.

This package sends batched push requests to a cloud messaging gateway and
reconciles the per-recipient outcomes:

- One serialized dispatcher per gateway credential
- Positional classification of gateway results (delivered, identifier
  changed, error code, malformed entry)
- Backoff scheduling honoring the gateway's ``Retry-After`` hint with a
  bounded attempt budget
- Web-push variant for a single encrypted subscription
- Prometheus metrics and a FastAPI host surface

Example:
    Basic usage::

        from async_push_service import PushDispatcher

        dispatcher = PushDispatcher("API_KEY", name="android")
        await dispatcher.start()
        results = await dispatcher.submit_sync(["token"], {"data": {"type": "wakeUp"}})

Authors:
    Softwell S.r.l.
"""

from .backoff import BackoffScheduler, ScheduleOutcome
from .classifier import ResultClassifier, log_error_sink
from .dispatcher import DispatcherStopped, PushDispatcher
from .gateway import GatewayClient
from .models import (
    NO_RETRY,
    DispatchFailure,
    ErrorKind,
    GatewayResponse,
    PushJob,
    RecipientResult,
    ResultStatus,
    RetryHint,
    TransportFailure,
    WebPushSubscription,
)
from .registry import DispatcherRegistry

__all__ = [
    "BackoffScheduler",
    "DispatchFailure",
    "DispatcherRegistry",
    "DispatcherStopped",
    "ErrorKind",
    "GatewayClient",
    "GatewayResponse",
    "NO_RETRY",
    "PushDispatcher",
    "PushJob",
    "RecipientResult",
    "ResultClassifier",
    "ResultStatus",
    "RetryHint",
    "ScheduleOutcome",
    "TransportFailure",
    "WebPushSubscription",
    "log_error_sink",
]
