# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Value types shared by the push dispatcher components.

This module defines the immutable records exchanged between the gateway
client, the result classifier, the backoff scheduler and the dispatcher.

Types:
    - ErrorKind: Transport and dispatch error taxonomy
    - ResultStatus: Per-recipient classification outcome
    - RetryHint: Gateway-declared wait before a safe resubmission
    - WebPushSubscription: Recipient token plus encryption keys
    - GatewayResponse: Decoded body of a successful gateway attempt
    - TransportFailure: Non-success outcome of one attempt
    - RecipientResult: Classified outcome for one recipient
    - DispatchFailure: Error envelope returned to synchronous callers
    - PushJob: Immutable parameters of one logical push
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error kinds reported by the gateway client and the dispatcher.

    Attributes:
        MALFORMED_REQUEST: Gateway rejected the payload (HTTP 400).
        AUTH_ERROR: Gateway rejected the credential (HTTP 401).
        RETRYABLE_SERVER_ERROR: Gateway failed with a 5xx status.
        TIMEOUT: Unrecognized status line or request deadline exceeded.
        UNKNOWN_TRANSPORT_FAILURE: No usable response at all.
        RETRY_SCHEDULED: A transient failure was handed to the scheduler.
        ABANDONED: Retry budget exhausted or gateway asked not to retry.
    """

    MALFORMED_REQUEST = "malformed_request"
    AUTH_ERROR = "auth_error"
    RETRYABLE_SERVER_ERROR = "retryable_server_error"
    TIMEOUT = "timeout"
    UNKNOWN_TRANSPORT_FAILURE = "unknown_transport_failure"
    RETRY_SCHEDULED = "retry_scheduled"
    ABANDONED = "abandoned"


TRANSIENT_ERROR_KINDS = frozenset({ErrorKind.RETRYABLE_SERVER_ERROR, ErrorKind.TIMEOUT})


class ResultStatus(str, Enum):
    """Classification outcome for a single recipient."""

    DELIVERED = "delivered"
    IDENTIFIER_CHANGED = "identifier_changed"
    ERROR = "error"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class RetryHint:
    """Wait interval declared by the gateway; ``seconds=None`` means no retry."""

    seconds: float | None = None

    @classmethod
    def after(cls, seconds: float) -> RetryHint:
        return cls(seconds=max(0.0, float(seconds)))

    @property
    def should_retry(self) -> bool:
        return self.seconds is not None


NO_RETRY = RetryHint()


@dataclass(frozen=True)
class WebPushSubscription:
    """Single web-push destination.

    Attributes:
        token: Recipient token issued by the gateway.
        p256dh: Base64url-encoded public key of the browser.
        auth: Base64url-encoded authentication secret.
    """

    token: str
    p256dh: str
    auth: str


@dataclass(frozen=True)
class GatewayResponse:
    """Decoded body of a successful multicast attempt.

    ``results`` is positionally aligned with the submitted recipients.
    """

    multicast_id: Any = None
    success: int = 0
    failure: int = 0
    canonical_ids: int = 0
    results: tuple[Mapping[str, Any], ...] = ()

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> GatewayResponse:
        """Build a response from the gateway JSON body.

        Missing counters default to zero. A missing or non-list ``results``
        becomes an empty tuple so the length check fails closed.
        """
        raw_results = data.get("results")
        if not isinstance(raw_results, list):
            raw_results = []
        return cls(
            multicast_id=data.get("multicast_id"),
            success=_as_int(data.get("success")),
            failure=_as_int(data.get("failure")),
            canonical_ids=_as_int(data.get("canonical_ids")),
            results=tuple(item if isinstance(item, Mapping) else {} for item in raw_results),
        )


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class TransportFailure:
    """Outcome of an attempt that produced no per-recipient results."""

    kind: ErrorKind
    retry_hint: RetryHint = NO_RETRY
    status: int | None = None
    detail: str | None = None

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_ERROR_KINDS


@dataclass(frozen=True)
class RecipientResult:
    """Classified outcome of one recipient in a batch."""

    recipient: str
    status: ResultStatus
    message_id: str | None = None
    new_id: str | None = None
    error: str | None = None

    @classmethod
    def delivered(cls, recipient: str, message_id: str | None = None) -> RecipientResult:
        return cls(recipient, ResultStatus.DELIVERED, message_id=message_id)

    @classmethod
    def identifier_changed(cls, recipient: str, message_id: str, new_id: str) -> RecipientResult:
        return cls(recipient, ResultStatus.IDENTIFIER_CHANGED, message_id=message_id, new_id=new_id)

    @classmethod
    def error_code(cls, recipient: str, code: str) -> RecipientResult:
        return cls(recipient, ResultStatus.ERROR, error=code)

    @classmethod
    def malformed(cls, recipient: str, reason: str) -> RecipientResult:
        return cls(recipient, ResultStatus.MALFORMED, error=reason)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"recipient": self.recipient, "status": self.status.value}
        if self.message_id is not None:
            data["message_id"] = self.message_id
        if self.new_id is not None:
            data["new_id"] = self.new_id
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class DispatchFailure:
    """Error envelope returned by synchronous submissions."""

    kind: ErrorKind
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.kind.value, "detail": self.detail}


@dataclass(frozen=True)
class PushJob:
    """Immutable parameters of one logical push.

    Exactly one of ``recipients`` (multicast) or ``subscription`` (web push)
    is meaningful. ``attempt`` counts attempts starting at 1 and
    ``attempt_budget`` the resubmissions still allowed.
    """

    message: Mapping[str, Any]
    attempt_budget: int
    recipients: tuple[str, ...] = ()
    subscription: WebPushSubscription | None = None
    attempt: int = 1

    @classmethod
    def multicast(cls, recipients: Sequence[str], message: Mapping[str, Any], attempt_budget: int) -> PushJob:
        return cls(message=dict(message), attempt_budget=max(0, int(attempt_budget)), recipients=tuple(recipients))

    @classmethod
    def web_push(
        cls, subscription: WebPushSubscription, message: Mapping[str, Any], attempt_budget: int
    ) -> PushJob:
        return cls(message=dict(message), attempt_budget=max(0, int(attempt_budget)), subscription=subscription)

    @property
    def is_web_push(self) -> bool:
        return self.subscription is not None

    @property
    def targets(self) -> tuple[str, ...]:
        """Recipient tokens in submission order."""
        if self.subscription is not None:
            return (self.subscription.token,)
        return self.recipients

    def next_attempt(self) -> PushJob:
        """Return the resubmission with one attempt consumed from the budget."""
        return replace(self, attempt_budget=self.attempt_budget - 1, attempt=self.attempt + 1)
