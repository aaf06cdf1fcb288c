# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTTP client for the push messaging gateway.

One call performs one POST and never raises: every outcome is returned as
either a :class:`GatewayResponse` (HTTP 200 with a JSON body) or a
:class:`TransportFailure` carrying the error kind and a retry hint.

Status mapping:
    - 200: decoded response (web push: any 2xx, no body expected)
    - 400: ``MALFORMED_REQUEST``
    - 401: ``AUTH_ERROR``
    - 5xx: ``RETRYABLE_SERVER_ERROR`` with the ``Retry-After`` hint
    - any other status: ``TIMEOUT``
    - request deadline exceeded: ``TIMEOUT``
    - any other exception: ``UNKNOWN_TRANSPORT_FAILURE``

Example:
    Sending a multicast request::

        client = GatewayClient(default_retry_after=10)
        outcome = await client.send(["token-a"], {"data": {"type": "wakeUp"}}, "API_KEY")
"""

from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import aiohttp
from pywebpush import WebPusher

from .logger import get_logger
from .models import (
    NO_RETRY,
    ErrorKind,
    GatewayResponse,
    RetryHint,
    TransportFailure,
    WebPushSubscription,
)

DEFAULT_GATEWAY_URL = "https://android.googleapis.com/gcm/send"
DEFAULT_REQUEST_TIMEOUT = 30.0


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header into seconds.

    Accepts delta-seconds (``"120"``) or an HTTP date. Returns None when the
    header is absent or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def build_multicast_body(recipients: Sequence[str], message: Mapping[str, Any]) -> dict[str, Any]:
    """Merge the recipient list with the caller's message fields."""
    body: dict[str, Any] = {"registration_ids": list(recipients)}
    for key, value in message.items():
        if key != "registration_ids":
            body[key] = value
    return body


def _text(value: Any) -> str:
    return value.decode("ascii") if isinstance(value, bytes) else str(value)


class GatewayClient:
    """aiohttp-based client for the gateway HTTP contract.

    Attributes:
        url: Gateway endpoint receiving the POST requests.
        timeout: Total deadline in seconds for a single request.
        default_retry_after: Hint applied to 5xx responses without a
            ``Retry-After`` header and to timeouts. None disables retries
            for those cases.
    """

    def __init__(
        self,
        url: str = DEFAULT_GATEWAY_URL,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        default_retry_after: float | None = None,
        logger=None,
    ):
        self.url = url
        self.timeout = timeout
        self.default_retry_after = default_retry_after
        self.logger = logger or get_logger("GatewayClient")

    @property
    def default_hint(self) -> RetryHint:
        if self.default_retry_after is None:
            return NO_RETRY
        return RetryHint.after(self.default_retry_after)

    async def send(
        self,
        recipients: Sequence[str],
        message: Mapping[str, Any],
        credential: str,
    ) -> GatewayResponse | TransportFailure:
        """POST a multicast request and decode the per-recipient response."""
        body = build_multicast_body(recipients, message)
        return await self._post(json.dumps(body), self._headers(credential), web_push=False)

    async def send_web_push(
        self,
        subscription: WebPushSubscription,
        message: Mapping[str, Any],
        credential: str,
    ) -> GatewayResponse | TransportFailure:
        """POST an encrypted payload for a single web-push subscription.

        The gateway does not return per-recipient results on this path, so a
        success yields an empty :class:`GatewayResponse`.
        """
        try:
            payload, crypto_headers = self._encrypt(subscription, message)
        except Exception as exc:
            self.logger.error("Cannot encrypt web push payload for %s: %s", subscription.token, exc)
            return TransportFailure(ErrorKind.MALFORMED_REQUEST, detail=f"encryption failed: {exc}")
        body = {"registration_ids": [subscription.token], "raw_data": payload}
        headers = {**self._headers(credential), **crypto_headers}
        return await self._post(json.dumps(body), headers, web_push=True)

    def _headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"key={credential}", "Content-Type": "application/json"}

    def _encrypt(self, subscription: WebPushSubscription, message: Mapping[str, Any]) -> tuple[str, dict[str, str]]:
        pusher = WebPusher(
            {
                "endpoint": f"{self.url.rstrip('/')}/{subscription.token}",
                "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
            }
        )
        encoded = pusher.encode(json.dumps(dict(message)).encode("utf-8"), content_encoding="aesgcm")
        headers = {
            "Content-Encoding": "aesgcm",
            "Crypto-Key": f"dh={_text(encoded['crypto_key'])}",
            "Encryption": f"salt={_text(encoded['salt'])}",
        }
        return base64.b64encode(encoded["body"]).decode("ascii"), headers

    async def _post(
        self, data: str, headers: dict[str, str], *, web_push: bool
    ) -> GatewayResponse | TransportFailure:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.url, data=data, headers=headers) as resp:
                    return await self._interpret(resp, web_push=web_push)
        except asyncio.TimeoutError:
            self.logger.error("Error in request. Reason was: timeout after %ss", self.timeout)
            return TransportFailure(ErrorKind.TIMEOUT, retry_hint=self.default_hint, detail="request timed out")
        except Exception as exc:
            self.logger.error("Error in request. Exception %r while calling URL: %s", exc, self.url)
            return TransportFailure(ErrorKind.UNKNOWN_TRANSPORT_FAILURE, detail=str(exc) or type(exc).__name__)

    async def _interpret(
        self, resp: aiohttp.ClientResponse, *, web_push: bool
    ) -> GatewayResponse | TransportFailure:
        status = resp.status
        if status == 200 or (web_push and 200 <= status < 300):
            if web_push:
                return GatewayResponse(success=1)
            try:
                data = json.loads(await resp.text())
            except ValueError as exc:
                self.logger.error("Error in request. Reason was: undecodable body (%s)", exc)
                return TransportFailure(
                    ErrorKind.UNKNOWN_TRANSPORT_FAILURE, status=status, detail="invalid JSON body"
                )
            if not isinstance(data, Mapping):
                return TransportFailure(
                    ErrorKind.UNKNOWN_TRANSPORT_FAILURE, status=status, detail="unexpected JSON body"
                )
            return GatewayResponse.from_json(data)
        if status == 400:
            self.logger.error("Error in request. Reason was: json_error")
            return TransportFailure(ErrorKind.MALFORMED_REQUEST, status=status, detail="json_error")
        if status == 401:
            self.logger.error("Error in request. Reason was: authorization error")
            return TransportFailure(ErrorKind.AUTH_ERROR, status=status, detail="authorization error")
        if 500 <= status <= 599:
            seconds = parse_retry_after(resp.headers.get("Retry-After"))
            hint = RetryHint.after(seconds) if seconds is not None else self.default_hint
            self.logger.error(
                "Error in request. Reason was: retry. Will retry in: %s",
                hint.seconds if hint.should_retry else "no_retry",
            )
            return TransportFailure(
                ErrorKind.RETRYABLE_SERVER_ERROR, retry_hint=hint, status=status, detail=f"HTTP {status}"
            )
        self.logger.error("Error in request. Reason was: timeout (HTTP %s)", status)
        return TransportFailure(ErrorKind.TIMEOUT, retry_hint=self.default_hint, status=status, detail=f"HTTP {status}")
