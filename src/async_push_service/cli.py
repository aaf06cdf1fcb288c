"""Command-line interface for async-push-service.

Usage:
    push-service serve --config /etc/push-service/config.ini
    push-service send --key API_KEY TOKEN [TOKEN...] --message '{"data": {"type": "wakeUp"}}'
    push-service web-push --key API_KEY --token TOKEN --p256dh KEY --auth SECRET

``send`` and ``web-push`` run a single synchronous attempt through a
temporary dispatcher and print the per-recipient results.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from async_push_service.dispatcher import DispatchOutcome, PushDispatcher
from async_push_service.gateway import DEFAULT_GATEWAY_URL, GatewayClient
from async_push_service.models import DispatchFailure, WebPushSubscription

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def _parse_message(raw: str) -> dict[str, Any]:
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}") from e
    if not isinstance(message, dict):
        raise click.BadParameter("message must be a JSON object")
    return message


def _print_outcome(outcome: DispatchOutcome) -> None:
    if isinstance(outcome, DispatchFailure):
        print_error(f"{outcome.kind.value}" + (f" ({outcome.detail})" if outcome.detail else ""))
        sys.exit(1)

    table = Table(title="Push results")
    table.add_column("Recipient", style="cyan")
    table.add_column("Status")
    table.add_column("Message id")
    table.add_column("New id / error")
    for result in outcome:
        color = "green" if result.status.value == "delivered" else "yellow"
        table.add_row(
            result.recipient,
            f"[{color}]{result.status.value}[/{color}]",
            result.message_id or "-",
            result.new_id or result.error or "-",
        )
    console.print(table)


async def _send_once(key: str, gateway_url: str, timeout: float, call) -> DispatchOutcome:
    # Budget 0: a one-shot CLI call never leaves retries behind
    dispatcher = PushDispatcher(
        key,
        name="cli",
        gateway=GatewayClient(gateway_url, timeout=timeout),
        default_attempt_budget=0,
    )
    await dispatcher.start()
    try:
        return await call(dispatcher)
    finally:
        await dispatcher.stop()


@click.group()
@click.version_option(package_name="async-push-service")
@click.option("--log-level", default="WARNING", show_default=True, help="Logging level.")
def main(log_level: str) -> None:
    """async-push-service CLI - Dispatch push notifications."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@main.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.ini.")
@click.option("--host", default=None, help="Bind address (overrides config).")
@click.option("--port", type=int, default=None, help="Port (overrides config).")
def serve(config_path: str | None, host: str | None, port: int | None) -> None:
    """Start the HTTP API with the configured dispatchers."""
    import uvicorn

    from async_push_service.config_loader import load_settings

    if config_path:
        os.environ["APS_CONFIG"] = config_path
    settings = load_settings(config_path)
    uvicorn.run(
        "async_push_service.server:app",
        host=host or settings.host,
        port=port or settings.port,
    )


@main.command()
@click.argument("tokens", nargs=-1, required=True)
@click.option("--key", envvar="APS_API_KEY", required=True, help="Gateway credential.")
@click.option("--message", "raw_message", default="{}", show_default=True, help="Message fields as JSON.")
@click.option("--gateway-url", default=DEFAULT_GATEWAY_URL, show_default=True)
@click.option("--timeout", type=float, default=30.0, show_default=True)
def send(tokens: tuple[str, ...], key: str, raw_message: str, gateway_url: str, timeout: float) -> None:
    """Send one multicast push to TOKENS and print the results."""
    message = _parse_message(raw_message)
    outcome = run_async(
        _send_once(key, gateway_url, timeout, lambda d: d.submit_sync(list(tokens), message))
    )
    _print_outcome(outcome)


@main.command("web-push")
@click.option("--key", envvar="APS_API_KEY", required=True, help="Gateway credential.")
@click.option("--token", required=True, help="Subscription token.")
@click.option("--p256dh", required=True, help="Subscription public key (base64url).")
@click.option("--auth", "auth_secret", required=True, help="Subscription auth secret (base64url).")
@click.option("--message", "raw_message", default="{}", show_default=True, help="Message fields as JSON.")
@click.option("--gateway-url", default=DEFAULT_GATEWAY_URL, show_default=True)
@click.option("--timeout", type=float, default=30.0, show_default=True)
def web_push(
    key: str,
    token: str,
    p256dh: str,
    auth_secret: str,
    raw_message: str,
    gateway_url: str,
    timeout: float,
) -> None:
    """Send one web push to a single subscription."""
    message = _parse_message(raw_message)
    subscription = WebPushSubscription(token=token, p256dh=p256dh, auth=auth_secret)
    outcome = run_async(
        _send_once(key, gateway_url, timeout, lambda d: d.web_push_submit_sync(subscription, message))
    )
    _print_outcome(outcome)


if __name__ == "__main__":
    main()
