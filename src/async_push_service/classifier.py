# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient classification of gateway results.

The gateway answers a multicast request with a ``results`` array aligned
with the submitted ``registration_ids``. Each entry carries up to three
fields and the combination present decides the outcome:

==========  ==========  ===============  ======================
error       message_id  registration_id  outcome
==========  ==========  ===============  ======================
yes         no          no               error code
no          yes         no               delivered
no          yes         yes              identifier changed
any other combination                    malformed entry
==========  ==========  ===============  ======================

This module also provides the default error sink, which logs every
classified error the way a host application would be expected to react.

Example:
    Classifying a decoded response::

        classifier = ResultClassifier()
        results = classifier.classify_batch(response, ["token-a", "token-b"])
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from .logger import get_logger
from .models import GatewayResponse, RecipientResult, ResultStatus

NEW_REGISTRATION_ID = "NewRegistrationId"
CLASSIFICATION_ERROR = "ClassificationError"

ErrorSink = Callable[[str, Any], Awaitable[None] | None]

logger = get_logger("ResultClassifier")


class ResultClassifier:
    """Stateless classifier for gateway result entries."""

    @staticmethod
    def needs_classification(response: GatewayResponse) -> bool:
        """Return False when the batch reports neither failures nor canonical ids."""
        return not (response.failure == 0 and response.canonical_ids == 0)

    def classify(self, entry: Mapping[str, Any], recipient: str) -> RecipientResult:
        """Classify a single result entry for ``recipient``."""
        error = entry.get("error")
        message_id = entry.get("message_id")
        new_id = entry.get("registration_id")

        if error is not None and message_id is None and new_id is None:
            return RecipientResult.error_code(recipient, str(error))
        if error is None and message_id is not None and new_id is None:
            return RecipientResult.delivered(recipient, str(message_id))
        if error is None and message_id is not None and new_id is not None:
            return RecipientResult.identifier_changed(recipient, str(message_id), str(new_id))

        present = sorted(key for key in ("error", "message_id", "registration_id") if entry.get(key) is not None)
        return RecipientResult.malformed(recipient, f"unexpected result fields: {present or 'none'}")

    def classify_batch(self, response: GatewayResponse, recipients: Sequence[str]) -> list[RecipientResult]:
        """Classify every entry positionally.

        When the gateway returned a different number of entries than
        recipients, every recipient is reported malformed.
        """
        if len(response.results) != len(recipients):
            reason = f"result count mismatch: expected {len(recipients)}, got {len(response.results)}"
            logger.error("Gateway response misaligned with request (%s)", reason)
            return [RecipientResult.malformed(recipient, reason) for recipient in recipients]
        return [self.classify(entry, recipient) for entry, recipient in zip(response.results, recipients)]


def sink_arguments(result: RecipientResult) -> tuple[str, Any] | None:
    """Translate a classified result into ``(error_code, context)`` for a sink.

    Returns None for delivered recipients, which are never reported.
    """
    if result.status is ResultStatus.IDENTIFIER_CHANGED:
        return NEW_REGISTRATION_ID, (result.recipient, result.new_id)
    if result.status is ResultStatus.ERROR:
        return result.error or "", result.recipient
    if result.status is ResultStatus.MALFORMED:
        return CLASSIFICATION_ERROR, result.recipient
    return None


def log_error_sink(code: str, context: Any) -> None:
    """Default error sink: log each classified error by code."""
    match code:
        case "NewRegistrationId":
            old_id, new_id = context
            logger.info("Message sent. Update id %s with new id %s.", old_id, new_id)
        case "Unavailable":
            # The gateway could not process the request in time
            logger.error("unavailable %s", context)
        case "InternalServerError":
            logger.error("internal server error %s", context)
        case "InvalidRegistration":
            # Stored identifier is invalid, caller should drop it
            logger.error("invalid registration %s", context)
        case "NotRegistered":
            # Application removed from the device
            logger.error("not registered %s", context)
        case _:
            logger.error("unexpected error %s in %s", code, context)
