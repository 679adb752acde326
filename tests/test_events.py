import asyncio
from pathlib import Path

from ensemble.events import EventChannel, store_hook
from ensemble.models import TransparencyEvent
from ensemble.store import CoordinationStore


def _store(tmp_path: Path) -> CoordinationStore:
    store = CoordinationStore(tmp_path / "coordination.db")
    store.initialize()
    return store


def test_subscribers_receive_committed_events_in_order(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = EventChannel()
    channel.attach(store)

    async def scenario() -> list[str]:
        subscription = channel.subscribe()
        for index in range(3):
            store.record_event(TransparencyEvent(type="note", message=f"n{index}"))
        channel.close()
        return [event.message async for event in subscription]

    assert asyncio.run(scenario()) == ["n0", "n1", "n2"]
    store.close()


def test_lagging_subscriber_catches_up_from_store_without_duplicates(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = EventChannel(maxsize=2)
    channel.attach(store)

    async def scenario() -> tuple[list[str], bool]:
        subscription = channel.subscribe()
        for index in range(6):
            store.record_event(TransparencyEvent(type="note", message=f"n{index}"))
        lagged = subscription.lagging
        channel.close()
        received = [event.message async for event in subscription]
        return received, lagged

    received, lagged = asyncio.run(scenario())

    assert lagged is True
    assert received == [f"n{index}" for index in range(6)]
    store.close()


def test_subscribe_from_event_id_skips_older_events(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = EventChannel()
    channel.attach(store)
    first = store.record_event(TransparencyEvent(type="note", message="old"))

    async def scenario() -> list[str]:
        subscription = channel.subscribe(last_event_id=first.id)
        channel.publish(first)
        store.record_event(TransparencyEvent(type="note", message="new"))
        subscription.unsubscribe()
        return [event.message async for event in subscription]

    assert asyncio.run(scenario()) == ["new"]
    store.close()


def test_store_hook_persists_component_payloads(tmp_path: Path) -> None:
    store = _store(tmp_path)
    hook = store_hook(store, "workspace")

    hook(
        {
            "type": "workspace_acquired",
            "task_id": "t1",
            "message": "ready",
            "metadata": {"branch": "ensemble/task-t1"},
        }
    )

    [event] = store.recent_events(task_id="t1")
    assert event.type == "workspace_acquired"
    assert event.source == "workspace"
    assert event.metadata == {"branch": "ensemble/task-t1"}
    store.close()
