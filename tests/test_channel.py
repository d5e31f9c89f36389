"""Tests for the poll/complete loop."""

import asyncio

import pytest

from wskdebug_core.channel import ActivationChannel
from wskdebug_core.errors import ChannelError
from wskdebug_core.models import ActivationState, ActionRef, ExecutionResult

from conftest import FAKE_NAMESPACE

REF = ActionRef(FAKE_NAMESPACE, "myaction")


class Recorder:
    """Dispatcher that remembers activations and replies with a fixed result."""

    def __init__(self, result=None):
        self.activations = []
        self.result = result or ExecutionResult.success({"msg": "local"})

    async def __call__(self, activation):
        self.activations.append(activation)
        return self.result


@pytest.mark.asyncio
async def test_retries_then_work(platform, client):
    work = {"response": {"result": {"$activationId": "a1", "name": "x"}}}
    platform.poll_script = ["retry", "retry", "retry", (200, work), "stop"]

    dispatch = Recorder()
    channel = ActivationChannel(client, REF, dispatch)
    await channel.run()

    assert channel.polls == 5
    assert [a.id for a in dispatch.activations] == ["a1"]
    assert dispatch.activations[0].params == {"name": "x"}
    assert dispatch.activations[0].state is ActivationState.COMPLETED
    assert platform.completions["a1"] == {"msg": "local"}
    assert channel.completed == 1


@pytest.mark.asyncio
async def test_stop_returns(platform, client):
    platform.poll_script = ["stop"]
    channel = ActivationChannel(client, REF, Recorder())
    await channel.run()
    assert channel.polls == 1


@pytest.mark.asyncio
async def test_unexpected_poll_response(platform, client):
    platform.poll_script = [(500, {"error": "internal"})]
    channel = ActivationChannel(client, REF, Recorder())
    with pytest.raises(ChannelError) as info:
        await channel.run()
    assert info.value.phase == "poll"


@pytest.mark.asyncio
async def test_completion_retried(platform, client):
    platform.completion_statuses = [500, 500]
    channel = ActivationChannel(client, REF, Recorder())
    await channel.complete("abc", {"msg": "ok"})
    assert platform.completions["abc"] == {"msg": "ok"}


@pytest.mark.asyncio
async def test_completion_gives_up(platform, client):
    platform.completion_statuses = [500, 500, 500]
    channel = ActivationChannel(client, REF, Recorder())
    with pytest.raises(ChannelError) as info:
        await channel.complete("abc", {"msg": "ok"})
    assert info.value.phase == "complete"
    assert "abc" not in platform.completions


@pytest.mark.asyncio
async def test_failed_execution_is_posted(platform, client):
    activation_id = platform.enqueue_invocation()
    dispatch = Recorder(ExecutionResult.failure("boom"))
    channel = ActivationChannel(client, REF, dispatch)

    task = asyncio.ensure_future(channel.run())
    try:
        result = await platform.wait_for_completion(activation_id)
    finally:
        platform.stopping = True
        await asyncio.wait_for(task, 5)

    assert result == {"error": "boom"}
    assert dispatch.activations[0].state is ActivationState.FAILED
    assert channel.idle.is_set()
    assert channel.current is None
