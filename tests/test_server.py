import asyncio
from collections.abc import Callable
from typing import Any, TypeAlias

import orjson
import pytest

from clouds.core.model import (
    BrokerError,
    CloudsError,
    Envelope,
    TeardownError,
)
from clouds.core.serialization import EnvelopeCodec
from clouds.server import CloudsServer, default_services, echo, echos
from tests.conftest import TEST_HEARTBEAT
from tests.memory_broker import MemoryHub, MemorySubscription
from tests.test_helpers import wait_for_condition

ServerFactory: TypeAlias = Callable[..., CloudsServer]


def heartbeat_key(server: CloudsServer, service: str) -> str:
    return server.namespace.heartbeat_key(service, server.id)


def decoded(hub: MemoryHub, channel: str) -> list[dict[str, Any]]:
    return [orjson.loads(raw) for raw in hub.published_to(channel)]


def test_default_services() -> None:
    assert echo("x") == "x"
    assert echos(1, 2) == (1, 2)


@pytest.mark.asyncio
async def test_node_identity_and_channel(make_server: ServerFactory) -> None:
    server = make_server(prefix="app", role="worker")
    assert server.id.startswith("worker-")
    assert server.listen_channel == f"app:L:{server.id}"


@pytest.mark.asyncio
async def test_register_chains_and_overwrites(make_server: ServerFactory) -> None:
    server = make_server()
    returned = server.register("a", lambda: 1).register("b", lambda: 2)
    server.register("a", lambda: 3)

    assert returned is server
    assert server.services == ("a", "b")
    assert server.registry.get("a")() == 3


@pytest.mark.asyncio
async def test_register_module_finds_marked_services(make_server: ServerFactory) -> None:
    server = make_server()
    server.register_module(default_services())
    assert set(server.services) == {"echo", "echos"}


@pytest.mark.asyncio
async def test_start_subscribes_and_emits_listening(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    server = make_server()
    channels: list[str] = []
    server.on_listening(channels.append)

    await server.start()

    assert server.started
    assert server.listening
    assert channels == [server.listen_channel]
    subscription = hub.connections[0].subscription
    assert isinstance(subscription, MemorySubscription)
    assert subscription.channels == [server.listen_channel]


@pytest.mark.asyncio
async def test_start_is_idempotent(hub: MemoryHub, make_server: ServerFactory) -> None:
    server = make_server()
    await server.start()
    await server.start()
    assert len(hub.connections) == 1


@pytest.mark.asyncio
async def test_connection_failure_is_fatal(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    hub.failing.add("connect")
    server = make_server()
    with pytest.raises(BrokerError):
        await server.start()
    assert not server.started


@pytest.mark.asyncio
async def test_registration_before_start_is_advertised_on_start(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    outcomes: list[BaseException | None] = []
    server = make_server()
    server.register("echo", echo, callback=outcomes.append)
    assert hub.store == {}

    await server.start()
    await wait_for_condition(lambda: outcomes == [None])

    assert hub.value(heartbeat_key(server, "echo")) == b"0"


@pytest.mark.asyncio
async def test_registration_after_start_resets_score(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    outcomes: list[BaseException | None] = []
    server = make_server()
    await server.start()

    server.register("echo", echo, callback=outcomes.append)
    await wait_for_condition(lambda: outcomes == [None])

    key = heartbeat_key(server, "echo")
    assert hub.value(key) == b"0"
    assert hub.ttl(key) <= 2 * TEST_HEARTBEAT


@pytest.mark.asyncio
async def test_registration_reset_failure_reaches_callback(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    outcomes: list[BaseException | None] = []
    server = make_server()
    await server.start()
    hub.failing.add("setex")

    server.register("echo", echo, callback=outcomes.append)
    await wait_for_condition(lambda: len(outcomes) == 1)

    assert isinstance(outcomes[0], BrokerError)
    assert "echo" in server.services


@pytest.mark.asyncio
async def test_heartbeat_keeps_keys_alive_and_preserves_score(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    server = make_server()
    server.register("echo", echo)
    await server.start()
    key = heartbeat_key(server, "echo")
    await wait_for_condition(lambda: hub.value(key) is not None)

    # an external balancer assigns a score
    hub.store[key] = (b"7", hub.clock() + 2 * TEST_HEARTBEAT)
    # outlive several TTLs, the key must survive
    await asyncio.sleep(TEST_HEARTBEAT * 6)

    assert hub.value(key) == b"7"
    assert 0 < hub.ttl(key) <= 2 * TEST_HEARTBEAT


@pytest.mark.asyncio
async def test_heartbeat_recreates_deleted_key(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    server = make_server()
    server.register("echo", echo)
    await server.start()
    key = heartbeat_key(server, "echo")
    await wait_for_condition(lambda: hub.value(key) is not None)

    del hub.store[key]

    await wait_for_condition(lambda: hub.value(key) == b"0")


@pytest.mark.asyncio
async def test_send_publishes_message_envelope(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    server = make_server()
    await server.start()

    await server.send("other-node", {"greeting": "hi"})

    assert decoded(hub, "test:L:other-node") == [
        {"type": "message", "sender": server.id, "args": [{"greeting": "hi"}]}
    ]


@pytest.mark.asyncio
async def test_send_requires_started_node(make_server: ServerFactory) -> None:
    server = make_server()
    with pytest.raises(CloudsError):
        await server.send("other-node", "hi")


@pytest.mark.asyncio
async def test_send_failure(hub: MemoryHub, make_server: ServerFactory) -> None:
    server = make_server()
    await server.start()
    hub.failing.add("publish")

    with pytest.raises(BrokerError):
        await server.send("other-node", "hi")

    outcomes: list[BaseException | None] = []
    await server.send("other-node", "hi", callback=outcomes.append)
    assert isinstance(outcomes[0], BrokerError)


@pytest.mark.asyncio
async def test_messages_between_nodes(make_server: ServerFactory) -> None:
    alice = make_server()
    bob = make_server()
    received: list[tuple[str, list[Any]]] = []
    bob.on_message(lambda sender, args: received.append((sender, args)))
    await alice.start()
    await bob.start()

    await alice.send(bob.id, "ping")

    await wait_for_condition(lambda: received == [(alice.id, ["ping"])])


@pytest.mark.asyncio
async def test_echo_call_round_trip(hub: MemoryHub, make_server: ServerFactory) -> None:
    node_a = make_server()
    node_a.register("echo", echo)
    await node_a.start()
    # node B is only a listen channel here, standing in for a caller
    caller_channel = "test:L:B"
    call = Envelope.call("B", "1", "echo", ["hi"])

    await hub.connections[0].commands.publish(
        node_a.listen_channel, EnvelopeCodec().encode(call)
    )

    await wait_for_condition(lambda: len(hub.published_to(caller_channel)) == 1)
    assert decoded(hub, caller_channel) == [
        {"type": "result", "sender": node_a.id, "id": "1", "args": ["hi"], "error": None}
    ]


@pytest.mark.asyncio
async def test_call_between_two_nodes(hub: MemoryHub, make_server: ServerFactory) -> None:
    server = make_server()
    server.register("add", lambda a, b: a + b)
    caller = make_server(role="client")
    await server.start()
    await caller.start()
    call = Envelope.call(caller.id, "42", "add", [2, 3])

    await hub.connections[1].commands.publish(
        server.listen_channel, EnvelopeCodec().encode(call)
    )

    await wait_for_condition(lambda: len(hub.published_to(caller.listen_channel)) == 1)
    [result] = decoded(hub, caller.listen_channel)
    assert result["id"] == "42"
    assert result["args"] == [5]
    assert result["sender"] == server.id


@pytest.mark.asyncio
async def test_exit_removes_keys_and_closes(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    server = make_server()
    other = make_server()
    server.register("echo", echo).register("echos", echos)
    other.register("echo", echo)
    await server.start()
    await other.start()
    await wait_for_condition(
        lambda: hub.value(heartbeat_key(server, "echos")) is not None
        and hub.value(heartbeat_key(other, "echo")) is not None
    )
    connections = hub.connections[0]

    await server.exit()

    assert not any(server.id in key for key in hub.live_keys())
    assert hub.value(heartbeat_key(other, "echo")) is not None
    assert not server.started
    assert not server.listening
    assert connections.commands.closed
    assert connections.subscription.closed

    # no refresh brings the keys back
    await asyncio.sleep(TEST_HEARTBEAT * 3)
    assert not any(server.id in key for key in hub.live_keys())


@pytest.mark.asyncio
async def test_exit_before_start_is_a_no_op(make_server: ServerFactory) -> None:
    server = make_server()
    await server.exit()
    assert not server.started


@pytest.mark.asyncio
@pytest.mark.parametrize("command", ["keys", "delete"])
async def test_exit_failure_aborts_teardown(
    hub: MemoryHub, make_server: ServerFactory, command: str
) -> None:
    server = make_server()
    server.register("echo", echo)
    await server.start()
    await wait_for_condition(lambda: hub.value(heartbeat_key(server, "echo")) is not None)
    hub.failing.add(command)

    with pytest.raises(TeardownError):
        await server.exit()

    assert server.started
    assert not hub.connections[0].commands.closed
    hub.failing.clear()


@pytest.mark.asyncio
async def test_exit_abandons_in_flight_calls(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    started = asyncio.Event()

    async def forever() -> None:
        started.set()
        await asyncio.Event().wait()

    server = make_server()
    server.register("forever", forever)
    await server.start()
    call = Envelope.call("B", "1", "forever", [])
    await hub.connections[0].commands.publish(
        server.listen_channel, EnvelopeCodec().encode(call)
    )
    await asyncio.wait_for(started.wait(), timeout=1.0)

    await server.exit()

    assert hub.published_to("test:L:B") == []


@pytest.mark.asyncio
async def test_serve_returns_after_exit(make_server: ServerFactory) -> None:
    server = make_server()
    serving = asyncio.create_task(server.serve())
    await wait_for_condition(lambda: server.listening)

    await server.exit()

    await asyncio.wait_for(serving, timeout=1.0)
    assert not server.started


@pytest.mark.asyncio
async def test_subscribe_failure_closes_connections(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    hub.failing.add("subscribe")
    server = make_server()

    with pytest.raises(BrokerError):
        await server.start()

    assert not server.started
    assert hub.connections[0].commands.closed
    assert hub.connections[0].subscription.closed


def node_keys(hub: MemoryHub, server: CloudsServer) -> list[str]:
    return [key for key in hub.live_keys() if server.id in key]


@pytest.mark.asyncio
async def test_ended_subscription_stops_advertising(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    server = make_server()
    server.register("echo", echo)
    await server.start()
    key = heartbeat_key(server, "echo")
    await wait_for_condition(lambda: hub.value(key) is not None)

    subscription = hub.connections[0].subscription
    assert isinstance(subscription, MemorySubscription)
    subscription._queue.put_nowait(None)

    await wait_for_condition(lambda: not server.listening)
    # no refresh happens any more, so the key lapses after its TTL
    await wait_for_condition(
        lambda: hub.value(key) is None, error_message="deaf node still advertises echo"
    )


@pytest.mark.asyncio
async def test_serve_tears_down_when_subscription_ends(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    server = make_server()
    server.register("echo", echo)
    serving = asyncio.create_task(server.serve())
    await wait_for_condition(lambda: hub.value(heartbeat_key(server, "echo")) is not None)

    hub.connections[0].subscription._queue.put_nowait(None)

    await asyncio.wait_for(serving, timeout=1.0)
    assert not server.started
    assert node_keys(hub, server) == []


@pytest.mark.asyncio
async def test_register_during_exit_leaves_no_key(
    hub: MemoryHub, make_server: ServerFactory
) -> None:
    server = make_server()
    server.register("a", echo)
    await server.start()
    await wait_for_condition(lambda: hub.value(heartbeat_key(server, "a")) is not None)

    exiting = asyncio.create_task(server.exit())
    await asyncio.sleep(0)
    server.register("b", echo)
    await exiting

    assert node_keys(hub, server) == []
    assert "b" in server.services


@pytest.mark.asyncio
async def test_restart_after_exit(hub: MemoryHub, make_server: ServerFactory) -> None:
    server = make_server()
    server.register("a", echo)
    await server.start()
    await server.exit()
    assert node_keys(hub, server) == []

    server.register("b", echo)
    serving = asyncio.create_task(server.serve())
    await wait_for_condition(lambda: server.listening)

    key = heartbeat_key(server, "a")
    await wait_for_condition(lambda: hub.value(key) is not None)
    assert hub.value(heartbeat_key(server, "b")) is not None
    # outlive the TTL: only heartbeats keep the key alive
    await asyncio.sleep(TEST_HEARTBEAT * 4)
    assert hub.value(key) is not None
    assert not serving.done()

    await server.exit()
    await asyncio.wait_for(serving, timeout=1.0)
    assert node_keys(hub, server) == []
