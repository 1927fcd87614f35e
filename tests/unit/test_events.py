import pytest

from stepwise import events
from stepwise.events import EventBus


@pytest.mark.asyncio
async def test_sync_and_async_subscribers_receive_events():
    bus = EventBus()
    received = []

    def on_sync(event):
        received.append(("sync", event.name))

    async def on_async(event):
        received.append(("async", event.payload["index"]))

    bus.subscribe(events.STEP_COMPLETED, on_sync)
    bus.subscribe(events.STEP_COMPLETED, on_async)
    event = await bus.emit(events.STEP_COMPLETED, "wf-1", index=3, durationMs=12)

    assert received == [("sync", "step.completed"), ("async", 3)]
    assert event.workflow_id == "wf-1"
    assert bus.events(events.STEP_COMPLETED, "wf-1") == [event]


@pytest.mark.asyncio
async def test_wildcard_and_failing_subscribers():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(events.WORKFLOW_STARTED, broken)
    bus.subscribe("*", lambda e: seen.append(e.name))
    await bus.emit(events.WORKFLOW_STARTED, "wf-1")
    await bus.emit(events.WORKFLOW_COMPLETED, "wf-1")

    assert seen == [events.WORKFLOW_STARTED, events.WORKFLOW_COMPLETED]


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    seen = []
    callback = seen.append
    bus.subscribe(events.WORKFLOW_PAUSED, callback)
    bus.unsubscribe(events.WORKFLOW_PAUSED, callback)
    await bus.emit(events.WORKFLOW_PAUSED, "wf-1")
    assert seen == []


@pytest.mark.asyncio
async def test_payload_may_carry_a_name_key():
    bus = EventBus()
    event = await bus.emit(events.STEP_COMPLETED, "wf-1", index=0, name="fetch", durationMs=5)
    assert event.name == events.STEP_COMPLETED
    assert event.payload == {"index": 0, "name": "fetch", "durationMs": 5}
