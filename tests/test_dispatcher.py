"""Tests for the serialized per-credential dispatcher."""

import asyncio

import pytest

from async_push_service.backoff import BackoffScheduler
from async_push_service.classifier import CLASSIFICATION_ERROR, NEW_REGISTRATION_ID
from async_push_service.dispatcher import DispatcherStopped, PushDispatcher
from async_push_service.models import (
    NO_RETRY,
    DispatchFailure,
    ErrorKind,
    GatewayResponse,
    RecipientResult,
    ResultStatus,
    RetryHint,
    TransportFailure,
    WebPushSubscription,
)
from async_push_service.prometheus import PushMetrics

from tests.helpers import DummyGateway, FakeLoop, SinkRecorder, gateway_response, silent_logger

SERVER_BUSY = TransportFailure(ErrorKind.RETRYABLE_SERVER_ERROR, retry_hint=RetryHint.after(2), status=503)
SUBSCRIPTION = WebPushSubscription(token="web-token", p256dh="key", auth="secret")


async def make_dispatcher(gateway, *, loop=None, sink=None, budget=3, on_abandoned=None, **kwargs):
    loop = loop or FakeLoop()
    dispatcher = PushDispatcher(
        "API_KEY",
        name="android",
        gateway=gateway,
        scheduler=BackoffScheduler(loop=loop, on_abandoned=on_abandoned, logger=silent_logger()),
        metrics=PushMetrics(),
        error_sink=sink if sink is not None else SinkRecorder(),
        default_attempt_budget=budget,
        logger=silent_logger(),
        **kwargs,
    )
    await dispatcher.start()
    return dispatcher


async def drain(dispatcher):
    await asyncio.wait_for(dispatcher._queue.join(), timeout=2)


async def run_timers(loop, dispatcher):
    """Fire every armed timer and process the resubmissions until none remain."""
    fired = 0
    while loop.calls:
        fired += loop.fire_all()
        await drain(dispatcher)
    return fired


def sample(dispatcher, metric, **labels):
    return dispatcher.metrics.registry.get_sample_value(metric, {"dispatcher": "android", **labels})


@pytest.mark.asyncio
async def test_submit_sync_returns_delivered_result():
    gateway = DummyGateway(gateway_response({"message_id": "1:0408"}))
    dispatcher = await make_dispatcher(gateway)

    outcome = await dispatcher.submit_sync(["tok-a"], {"data": {"type": "wakeUp"}})

    assert outcome == [RecipientResult.delivered("tok-a", "1:0408")]
    assert gateway.calls == [
        {
            "kind": "multicast",
            "recipients": ["tok-a"],
            "message": {"data": {"type": "wakeUp"}},
            "credential": "API_KEY",
        }
    ]
    assert sample(dispatcher, "aps_attempts_total") == 1.0
    assert sample(dispatcher, "aps_delivered_total") == 1.0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_submit_sync_classifies_mixed_batch_in_order():
    gateway = DummyGateway(
        gateway_response(
            {"error": "NotRegistered"},
            {"message_id": "1:1"},
            {"message_id": "1:2", "registration_id": "tok-c2"},
        )
    )
    sink = SinkRecorder()
    dispatcher = await make_dispatcher(gateway, sink=sink)

    outcome = await dispatcher.submit_sync(["tok-a", "tok-b", "tok-c"], {})

    assert [r.status for r in outcome] == [
        ResultStatus.ERROR,
        ResultStatus.DELIVERED,
        ResultStatus.IDENTIFIER_CHANGED,
    ]
    assert outcome[2].new_id == "tok-c2"
    # Synchronous results go to the caller, not the sink
    assert sink.calls == []
    assert sample(dispatcher, "aps_recipient_errors_total", code="NotRegistered") == 1.0
    assert sample(dispatcher, "aps_identifier_changed_total") == 1.0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_submit_sync_classifies_even_without_failures():
    gateway = DummyGateway(gateway_response({"message_id": "1:1"}, {"message_id": "1:2"}))
    dispatcher = await make_dispatcher(gateway)

    outcome = await dispatcher.submit_sync(["a", "b"], {})

    assert [r.message_id for r in outcome] == ["1:1", "1:2"]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_submit_returns_before_attempt():
    gateway = DummyGateway(gateway_response({"message_id": "1:1"}))
    gateway.release = asyncio.Event()
    dispatcher = await make_dispatcher(gateway)

    assert dispatcher.submit(["a"], {}) is None
    assert gateway.calls == []

    gateway.release.set()
    await drain(dispatcher)
    assert len(gateway.calls) == 1
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_async_clean_batch_reports_nothing():
    gateway = DummyGateway(gateway_response({"message_id": "1:1"}, {"message_id": "1:2"}))
    sink = SinkRecorder()
    dispatcher = await make_dispatcher(gateway, sink=sink)

    dispatcher.submit(["a", "b"], {})
    await drain(dispatcher)

    assert sink.calls == []
    assert sample(dispatcher, "aps_delivered_total") == 2.0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_async_errors_reach_the_sink():
    gateway = DummyGateway(
        gateway_response(
            {"message_id": "1:1"},
            {"error": "NotRegistered"},
            {"message_id": "1:2", "registration_id": "tok-c2"},
            {"bogus": 1},
        )
    )
    sink = SinkRecorder()
    dispatcher = await make_dispatcher(gateway, sink=sink)

    dispatcher.submit(["tok-a", "tok-b", "tok-c", "tok-d"], {})
    await drain(dispatcher)

    assert sink.calls == [
        ("NotRegistered", "tok-b"),
        (NEW_REGISTRATION_ID, ("tok-c", "tok-c2")),
        (CLASSIFICATION_ERROR, "tok-d"),
    ]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_async_length_mismatch_reports_every_recipient():
    gateway = DummyGateway(GatewayResponse(failure=1, results=({"error": "Unavailable"},)))
    sink = SinkRecorder()
    dispatcher = await make_dispatcher(gateway, sink=sink)

    dispatcher.submit(["a", "b"], {})
    await drain(dispatcher)

    assert sink.calls == [(CLASSIFICATION_ERROR, "a"), (CLASSIFICATION_ERROR, "b")]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_async_response_without_counters_is_still_length_checked():
    gateway = DummyGateway(GatewayResponse.from_json({"multicast_id": 1, "results": []}))
    sink = SinkRecorder()
    dispatcher = await make_dispatcher(gateway, sink=sink)

    dispatcher.submit(["a", "b"], {})
    await drain(dispatcher)

    assert sink.calls == [(CLASSIFICATION_ERROR, "a"), (CLASSIFICATION_ERROR, "b")]
    assert sample(dispatcher, "aps_delivered_total") is None
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_malformed_results_share_one_metric_label():
    gateway = DummyGateway(
        GatewayResponse(failure=1, results=({"error": "Unavailable"},)),
        GatewayResponse(results=({"message_id": "1"}, {"message_id": "2"}, {"message_id": "3"})),
        gateway_response({"message_id": "1"}, {"bogus": True}),
    )
    dispatcher = await make_dispatcher(gateway)

    for _ in range(3):
        await dispatcher.submit_sync(["a", "b"], {})

    codes = {
        entry.labels["code"]
        for metric in dispatcher.metrics.registry.collect()
        if metric.name == "aps_recipient_errors"
        for entry in metric.samples
        if entry.name == "aps_recipient_errors_total"
    }
    assert codes == {CLASSIFICATION_ERROR}
    assert sample(dispatcher, "aps_recipient_errors_total", code=CLASSIFICATION_ERROR) == 5.0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_coroutine_sink_is_awaited():
    gateway = DummyGateway(gateway_response({"error": "InvalidRegistration"}))
    received = []

    async def sink(code, context):
        await asyncio.sleep(0)
        received.append((code, context))

    dispatcher = await make_dispatcher(gateway, sink=sink)

    dispatcher.submit(["a"], {})
    await drain(dispatcher)

    assert received == [("InvalidRegistration", "a")]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_failing_sink_does_not_stop_the_worker():
    gateway = DummyGateway(gateway_response({"error": "NotRegistered"}, {"error": "Unavailable"}))
    seen = []

    def sink(code, context):
        seen.append(code)
        raise RuntimeError("sink down")

    dispatcher = await make_dispatcher(gateway, sink=sink)

    dispatcher.submit(["a", "b"], {})
    await drain(dispatcher)
    assert seen == ["NotRegistered", "Unavailable"]

    outcome = await dispatcher.submit_sync(["a", "b"], {})
    assert len(outcome) == 2
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_update_error_sink_replaces_the_sink():
    gateway = DummyGateway(gateway_response({"error": "NotRegistered"}))
    first, second = SinkRecorder(), SinkRecorder()
    dispatcher = await make_dispatcher(gateway, sink=first)

    dispatcher.update_error_sink(second)
    dispatcher.submit(["a"], {})
    await drain(dispatcher)

    assert first.calls == []
    assert second.calls == [("NotRegistered", "a")]
    await dispatcher.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        TransportFailure(ErrorKind.AUTH_ERROR, status=401),
        TransportFailure(ErrorKind.MALFORMED_REQUEST, status=400, detail="json_error"),
        TransportFailure(ErrorKind.UNKNOWN_TRANSPORT_FAILURE, detail="refused"),
    ],
)
async def test_permanent_failures_are_never_retried(failure):
    loop = FakeLoop()
    gateway = DummyGateway(failure)
    dispatcher = await make_dispatcher(gateway, loop=loop, budget=5)

    outcome = await dispatcher.submit_sync(["a", "b"], {})

    assert outcome == DispatchFailure(failure.kind, failure.detail)
    assert loop.calls == []
    assert len(gateway.calls) == 1
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_transient_failure_schedules_retry_after_hint():
    loop = FakeLoop()
    gateway = DummyGateway(SERVER_BUSY, gateway_response({"error": "NotRegistered"}))
    sink = SinkRecorder()
    dispatcher = await make_dispatcher(gateway, loop=loop, sink=sink, budget=3)

    outcome = await dispatcher.submit_sync(["a"], {"data": {}})

    assert isinstance(outcome, DispatchFailure)
    assert outcome.kind is ErrorKind.RETRY_SCHEDULED
    assert loop.delays == [2.0]
    assert len(gateway.calls) == 1

    await run_timers(loop, dispatcher)

    assert len(gateway.calls) == 2
    assert gateway.calls[1]["recipients"] == ["a"]
    # The retried attempt reports through the sink
    assert sink.calls == [("NotRegistered", "a")]
    assert sample(dispatcher, "aps_retries_scheduled_total") == 1.0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_repeated_server_errors_exhaust_budget_silently():
    loop = FakeLoop()
    gateway = DummyGateway(SERVER_BUSY)
    sink = SinkRecorder()
    abandoned = []
    dispatcher = await make_dispatcher(
        gateway, loop=loop, sink=sink, budget=3, on_abandoned=lambda job, reason: abandoned.append(reason)
    )

    dispatcher.submit(["a"], {})
    await drain(dispatcher)
    fired = await run_timers(loop, dispatcher)

    assert fired == 3
    assert len(gateway.calls) == 4
    assert abandoned == ["attempt budget exhausted"]
    assert sink.calls == []
    assert sample(dispatcher, "aps_abandoned_total") == 1.0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_transient_failure_without_hint_is_abandoned():
    loop = FakeLoop()
    gateway = DummyGateway(TransportFailure(ErrorKind.TIMEOUT, retry_hint=NO_RETRY))
    dispatcher = await make_dispatcher(gateway, loop=loop)

    outcome = await dispatcher.submit_sync(["a"], {})

    assert outcome.kind is ErrorKind.ABANDONED
    assert loop.calls == []
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_explicit_zero_budget_disables_retries():
    loop = FakeLoop()
    dispatcher = await make_dispatcher(DummyGateway(SERVER_BUSY), loop=loop, budget=3)

    outcome = await dispatcher.submit_sync(["a"], {}, attempt_budget=0)

    assert outcome.kind is ErrorKind.ABANDONED
    assert loop.calls == []
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_web_push_sync_success():
    gateway = DummyGateway(GatewayResponse(success=1))
    dispatcher = await make_dispatcher(gateway)

    outcome = await dispatcher.web_push_submit_sync(SUBSCRIPTION, {"title": "hi"})

    assert outcome == [RecipientResult.delivered("web-token")]
    assert gateway.calls[0]["kind"] == "web_push"
    assert gateway.calls[0]["subscription"] is SUBSCRIPTION
    assert gateway.calls[0]["credential"] == "API_KEY"
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_web_push_auth_error():
    gateway = DummyGateway(TransportFailure(ErrorKind.AUTH_ERROR, status=401))
    dispatcher = await make_dispatcher(gateway)

    outcome = await dispatcher.web_push_submit_sync(SUBSCRIPTION, {})

    assert outcome.kind is ErrorKind.AUTH_ERROR
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_web_push_retry_keeps_subscription():
    loop = FakeLoop()
    gateway = DummyGateway(SERVER_BUSY, GatewayResponse(success=1))
    dispatcher = await make_dispatcher(gateway, loop=loop)

    dispatcher.web_push_submit(SUBSCRIPTION, {"title": "hi"})
    await drain(dispatcher)
    await run_timers(loop, dispatcher)

    assert [call["subscription"] for call in gateway.calls] == [SUBSCRIPTION, SUBSCRIPTION]
    assert sample(dispatcher, "aps_delivered_total") == 1.0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_attempts_are_serialized():
    gateway = DummyGateway(gateway_response({"message_id": "1"}))
    gateway.release = asyncio.Event()
    dispatcher = await make_dispatcher(gateway)

    tasks = [asyncio.create_task(dispatcher.submit_sync([f"tok-{i}"], {})) for i in range(3)]
    await asyncio.sleep(0.01)
    assert len(gateway.calls) == 1

    gateway.release.set()
    results = await asyncio.gather(*tasks)

    assert gateway.max_in_flight == 1
    assert [call["recipients"] for call in gateway.calls] == [["tok-0"], ["tok-1"], ["tok-2"]]
    assert [r[0].recipient for r in results] == ["tok-0", "tok-1", "tok-2"]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_jobs_queued_before_start_are_processed():
    gateway = DummyGateway(gateway_response({"message_id": "1"}))
    dispatcher = PushDispatcher("API_KEY", gateway=gateway, metrics=PushMetrics(), logger=silent_logger())

    dispatcher.submit(["a"], {})
    assert gateway.calls == []

    await dispatcher.start()
    await drain(dispatcher)
    assert len(gateway.calls) == 1
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_stop_fails_waiting_callers():
    gateway = DummyGateway(gateway_response({"message_id": "1"}))
    gateway.release = asyncio.Event()
    dispatcher = await make_dispatcher(gateway)

    in_flight = asyncio.create_task(dispatcher.submit_sync(["a"], {}))
    queued = asyncio.create_task(dispatcher.submit_sync(["b"], {}))
    await asyncio.sleep(0.01)

    await dispatcher.stop()

    with pytest.raises(DispatcherStopped):
        await in_flight
    with pytest.raises(DispatcherStopped):
        await queued
    assert dispatcher.is_stopped
    assert not dispatcher.is_running


@pytest.mark.asyncio
async def test_submissions_after_stop():
    gateway = DummyGateway(gateway_response({"message_id": "1"}))
    dispatcher = await make_dispatcher(gateway)
    await dispatcher.stop()
    await dispatcher.stop()

    dispatcher.submit(["a"], {})
    dispatcher.web_push_submit(SUBSCRIPTION, {})
    with pytest.raises(DispatcherStopped):
        await dispatcher.submit_sync(["a"], {})
    with pytest.raises(DispatcherStopped):
        await dispatcher.web_push_submit_sync(SUBSCRIPTION, {})
    with pytest.raises(DispatcherStopped):
        await dispatcher.start()

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_timer_firing_after_stop_is_a_no_op():
    loop = FakeLoop()
    gateway = DummyGateway(SERVER_BUSY)
    dispatcher = await make_dispatcher(gateway, loop=loop)

    await dispatcher.submit_sync(["a"], {})
    assert len(loop.calls) == 1

    await dispatcher.stop()
    loop.fire_all()
    await asyncio.sleep(0)

    assert len(gateway.calls) == 1
    assert dispatcher._queue.empty()


@pytest.mark.asyncio
async def test_unexpected_gateway_exception_is_contained():
    class ExplodingGateway(DummyGateway):
        async def send(self, recipients, message, credential):
            raise RuntimeError("kaboom")

    dispatcher = await make_dispatcher(ExplodingGateway())

    outcome = await dispatcher.submit_sync(["a"], {})

    assert outcome.kind is ErrorKind.UNKNOWN_TRANSPORT_FAILURE
    assert outcome.detail == "kaboom"
    assert dispatcher.is_running
    await dispatcher.stop()
