"""Tests for SnapshotStream fan-out."""
import asyncio

import pytest

from formstate import FieldDefinition, FormController, SnapshotStream, StreamClosedError


class TestSubscribe:

    def test_subscribe_and_cancel(self):
        stream = SnapshotStream()
        received = []
        subscription = stream.subscribe(received.append)
        assert stream.subscriber_count == 1

        stream.publish("a")
        subscription.cancel()
        stream.publish("b")

        assert received == ["a"]
        assert not subscription.active
        assert stream.subscriber_count == 0

    def test_subscription_is_callable(self):
        stream = SnapshotStream()
        received = []
        unsubscribe = stream.subscribe(received.append)
        unsubscribe()
        stream.publish("a")
        assert received == []

    def test_failing_subscriber_isolated(self):
        stream = SnapshotStream()
        received = []

        def broken(snapshot):
            raise RuntimeError("bug")

        stream.subscribe(broken)
        stream.subscribe(received.append)
        stream.publish("a")
        assert received == ["a"]

    def test_latest(self):
        stream = SnapshotStream()
        assert stream.latest is None
        stream.publish("a")
        assert stream.latest == "a"


class TestAsyncConsumers:

    @pytest.mark.asyncio
    async def test_next(self):
        stream = SnapshotStream()
        waiter = asyncio.ensure_future(stream.next())
        await asyncio.sleep(0)
        stream.publish("a")
        assert await waiter == "a"

    @pytest.mark.asyncio
    async def test_async_iteration_until_close(self):
        stream = SnapshotStream()
        received = []

        async def consume():
            async for snapshot in stream:
                received.append(snapshot)

        task = asyncio.ensure_future(consume())
        await asyncio.sleep(0)
        stream.publish("a")
        stream.publish("b")
        stream.close()
        await asyncio.wait_for(task, timeout=1)
        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_close_wakes_next(self):
        stream = SnapshotStream()
        waiter = asyncio.ensure_future(stream.next())
        await asyncio.sleep(0)
        stream.close()
        with pytest.raises(StreamClosedError):
            await waiter

    @pytest.mark.asyncio
    async def test_closed_stream_rejects(self):
        stream = SnapshotStream()
        stream.close()
        with pytest.raises(StreamClosedError):
            await stream.next()
        with pytest.raises(StreamClosedError):
            stream.subscribe(lambda snapshot: None)
        stream.publish("ignored")
        assert stream.latest is None

    @pytest.mark.asyncio
    async def test_controller_stream(self, name_id):
        form = FormController([FieldDefinition(name_id, initial_value="")])
        received = []

        async def consume():
            async for snapshot in form.stream:
                received.append(snapshot.values["name"])

        task = asyncio.ensure_future(consume())
        await asyncio.sleep(0)
        form.set_value(name_id, "A")
        form.set_value(name_id, "Ada")
        form.close()
        await asyncio.wait_for(task, timeout=1)
        assert received == ["A", "Ada"]
