import asyncio

from chat_hub.chat.cancellation import CancellationRegistry, subscription_key
from chat_hub.domain.conversation import ModelSource
from chat_hub.infrastructure.events.broadcast import BroadcastChannel


def test_subscription_keys():
    assert subscription_key("c1") == "c1"
    assert subscription_key("c1", ModelSource.MODEL1) == "c1"
    assert subscription_key("c1", ModelSource.MODEL2) == "c1_model2"


def test_broadcast_fan_out_and_close():
    async def run():
        channel = BroadcastChannel()
        a = channel.subscribe()
        b = channel.subscribe()
        channel.publish(1)
        channel.publish(2)
        channel.close()
        assert channel.publish(3) is False
        late = channel.subscribe()
        return await a.collect(), await b.collect(), await late.collect()

    assert asyncio.run(run()) == ([1, 2], [1, 2], [])


def test_cancel_without_active_generation_is_noop():
    async def run():
        registry = CancellationRegistry()
        return await registry.cancel("missing")

    assert asyncio.run(run()) is False


def test_cancel_stops_tasks_and_runs_hook():
    calls = []

    async def run():
        registry = CancellationRegistry()
        channel = BroadcastChannel()
        stream = channel.subscribe()

        async def hook(cid, ids, ch):
            calls.append((cid, sorted(ids)))
            ch.publish("finalized")

        entry = await registry.register("c1", channel, on_cancel=hook)
        gate = asyncio.Event()
        t1 = asyncio.create_task(gate.wait())
        t2 = asyncio.create_task(gate.wait())
        registry.track(entry, "c1", "m1", t1)
        registry.track(entry, "c1_model2", "m2", t2)
        assert registry.is_active("c1")
        assert registry.subscription("c1_model2") is t2

        assert await registry.cancel("c1") is True
        assert t1.cancelled() and t2.cancelled()
        assert entry.token.cancelled
        assert not registry.is_active("c1")
        assert registry.subscription("c1") is None
        return await stream.collect()

    assert asyncio.run(run()) == ["finalized"]
    assert calls == [("c1", ["m1", "m2"])]


def test_register_replaces_previous_entry():
    async def run():
        registry = CancellationRegistry()
        first_channel = BroadcastChannel()
        first = await registry.register("c1", first_channel)
        task = asyncio.create_task(asyncio.Event().wait())
        registry.track(first, "c1", "m1", task)

        second = await registry.register("c1", BroadcastChannel())
        assert registry.get("c1") is second
        assert first.token.cancelled
        assert task.cancelled()
        assert first_channel.closed
        return registry.active_ids()

    assert asyncio.run(run()) == ["c1"]


def test_complete_closes_channel_after_last_channel():
    async def run():
        registry = CancellationRegistry()
        channel = BroadcastChannel()
        entry = await registry.register("c1", channel)
        done = asyncio.get_running_loop().create_future()
        done.set_result(None)
        registry.track(entry, "c1", "m1", done)
        registry.track(entry, "c1_model2", "m2", done)

        assert registry.complete(entry, "c1") is False
        assert registry.is_active("c1")
        assert registry.complete(entry, "c1_model2") is True
        assert channel.closed
        assert not registry.is_active("c1")
        # 重复完成不会再次触发
        assert registry.complete(entry, "c1_model2") is False

    asyncio.run(run())


def test_cancel_single_subscription_keeps_other_running():
    async def run():
        registry = CancellationRegistry()
        cancelled_ids = []

        async def hook(cid, ids, ch):
            cancelled_ids.extend(ids)

        channel = BroadcastChannel()
        entry = await registry.register("c1", channel, on_cancel=hook)
        gate = asyncio.Event()
        t1 = asyncio.create_task(gate.wait())
        t2 = asyncio.create_task(gate.wait())
        registry.track(entry, "c1", "m1", t1)
        registry.track(entry, "c1_model2", "m2", t2)

        assert await registry.cancel_subscription("c1", ModelSource.MODEL2) is True
        assert t2.cancelled()
        assert not t1.done()
        assert registry.is_active("c1")
        assert cancelled_ids == ["m2"]

        gate.set()
        await t1
        assert registry.complete(entry, "c1") is True
        assert channel.closed

    asyncio.run(run())
