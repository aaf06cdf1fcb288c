# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the push service.

Settings are read from an INI file with environment variables as fallbacks.
Values found in the file take precedence over the environment.

Example:
    Configuration file format (config.ini)::

        [gateway]
        url = https://android.googleapis.com/gcm/send
        request_timeout = 30
        # Used for 5xx responses without Retry-After and for timeouts
        default_retry_after = 10
        attempt_budget = 3

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = my-secret-token

        [logging]
        delivery_activity = true

        # One dispatcher per credential, started with the server
        [dispatchers]
        android = AIzaSy...
        chrome = AIzaSy...

Environment variables (all prefixed with APS_):
    APS_CONFIG - Path to config.ini file (default: config.ini)
    APS_GATEWAY_URL - Gateway endpoint
    APS_REQUEST_TIMEOUT - Request deadline in seconds (default: 30)
    APS_DEFAULT_RETRY_AFTER - Retry hint when the gateway gives none
    APS_ATTEMPT_BUDGET - Default attempt budget (default: 3)
    APS_HOST - Server host (default: 0.0.0.0)
    APS_PORT - Server port (default: 8000)
    APS_API_TOKEN - API authentication token
    APS_LOG_DELIVERY_ACTIVITY - Log every attempt at info level
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .dispatcher import DEFAULT_ATTEMPT_BUDGET
from .gateway import DEFAULT_GATEWAY_URL, DEFAULT_REQUEST_TIMEOUT
from .logger import get_logger

logger = get_logger("ConfigLoader")


@dataclass
class ServiceSettings:
    """Resolved service configuration.

    Attributes:
        gateway_url: Gateway endpoint receiving the POST requests.
        request_timeout: Deadline in seconds for a single gateway request.
        default_retry_after: Retry hint applied when the gateway declares
            none. None means such failures are not retried.
        attempt_budget: Default number of resubmissions per push.
        host: API server bind address.
        port: API server port.
        api_token: Token required in the ``X-API-Token`` header, if any.
        log_delivery_activity: Log every attempt at info level.
        dispatchers: Mapping of dispatcher name to credential.
    """

    gateway_url: str = DEFAULT_GATEWAY_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    default_retry_after: float | None = None
    attempt_budget: int = DEFAULT_ATTEMPT_BUDGET
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    log_delivery_activity: bool = False
    dispatchers: dict[str, str] = field(default_factory=dict)


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings(
    config_path: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ServiceSettings:
    """Load settings from an INI file with environment fallbacks.

    Args:
        config_path: Path to the INI file. Defaults to ``$APS_CONFIG`` or
            ``config.ini``. A missing file is not an error.
        environ: Environment mapping, defaults to ``os.environ``.

    Returns:
        ServiceSettings with parsed values and defaults for anything missing.

    Raises:
        ValueError: If a numeric option cannot be parsed.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("APS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    else:
        logger.info("Config file %s not found, using environment and defaults", path)

    def get(section: str, option: str, env_key: str) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or None
        return env.get(env_key) or None

    def get_float(section: str, option: str, env_key: str, default: float | None) -> float | None:
        value = get(section, option, env_key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as e:
            raise ValueError(f"Invalid number for [{section}] {option}: {value!r}") from e

    def get_int(section: str, option: str, env_key: str, default: int) -> int:
        value = get(section, option, env_key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ValueError(f"Invalid integer for [{section}] {option}: {value!r}") from e

    dispatchers: dict[str, str] = {}
    if parser.has_section("dispatchers"):
        for name, credential in parser.items("dispatchers"):
            credential = credential.strip()
            if not credential:
                logger.warning("Ignoring dispatcher %s without credential", name)
                continue
            dispatchers[name] = credential

    settings = ServiceSettings(
        gateway_url=get("gateway", "url", "APS_GATEWAY_URL") or DEFAULT_GATEWAY_URL,
        request_timeout=get_float("gateway", "request_timeout", "APS_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
        default_retry_after=get_float("gateway", "default_retry_after", "APS_DEFAULT_RETRY_AFTER", None),
        attempt_budget=max(0, get_int("gateway", "attempt_budget", "APS_ATTEMPT_BUDGET", DEFAULT_ATTEMPT_BUDGET)),
        host=get("server", "host", "APS_HOST") or "0.0.0.0",
        port=get_int("server", "port", "APS_PORT", 8000),
        api_token=get("server", "api_token", "APS_API_TOKEN"),
        log_delivery_activity=_parse_bool(
            get("logging", "delivery_activity", "APS_LOG_DELIVERY_ACTIVITY"), False
        ),
        dispatchers=dispatchers,
    )
    logger.debug("Loaded settings with %d configured dispatcher(s)", len(dispatchers))
    return settings
