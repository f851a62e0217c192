import pytest

from server.broadcast import BroadcastRelay
from server.party_registry import PartyRegistry


class RecordingChannel:
    def __init__(self, *, writable: bool = True) -> None:
        self.frames: list[str] = []
        self.writable = writable

    @property
    def is_writable(self) -> bool:
        return self.writable

    def deliver(self, payload: str) -> bool:
        self.frames.append(payload)
        return True


class ExplodingChannel:
    is_writable = True

    def deliver(self, payload: str) -> bool:
        raise RuntimeError("socket exploded")


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def _party_of(registry: PartyRegistry, channels: dict) -> str:
    names = iter(channels)
    first = next(names)
    created = await registry.create_party(first, channels[first], first)
    for name in names:
        await registry.join_party(name, channels[name], created.party_code, name)
    return created.party_code


@pytest.mark.anyio
async def test_broadcast_excluding_skips_sender() -> None:
    registry = PartyRegistry()
    channels = {"a": RecordingChannel(), "b": RecordingChannel(), "c": RecordingChannel()}
    code = await _party_of(registry, channels)
    relay = BroadcastRelay(registry)

    delivered = await relay.broadcast_excluding(code, "frame", "a")

    assert delivered == 2
    assert channels["a"].frames == []
    assert channels["b"].frames == ["frame"]
    assert channels["c"].frames == ["frame"]


@pytest.mark.anyio
async def test_broadcast_to_all_includes_sender() -> None:
    registry = PartyRegistry()
    channels = {"a": RecordingChannel(), "b": RecordingChannel()}
    code = await _party_of(registry, channels)

    delivered = await BroadcastRelay(registry).broadcast_to_all(code, "frame")

    assert delivered == 2
    assert all(channel.frames == ["frame"] for channel in channels.values())


@pytest.mark.anyio
async def test_unwritable_and_failing_recipients_do_not_block_others() -> None:
    registry = PartyRegistry()
    channels = {
        "a": RecordingChannel(),
        "closing": RecordingChannel(writable=False),
        "broken": ExplodingChannel(),
        "d": RecordingChannel(),
    }
    code = await _party_of(registry, channels)

    delivered = await BroadcastRelay(registry).broadcast_to_all(code, "frame")

    assert delivered == 2
    assert channels["a"].frames == ["frame"]
    assert channels["closing"].frames == []
    assert channels["d"].frames == ["frame"]


@pytest.mark.anyio
async def test_broadcast_to_unknown_party_is_noop() -> None:
    relay = BroadcastRelay(PartyRegistry())

    assert await relay.broadcast_to_all("ABCDEF", "frame") == 0
    assert await relay.broadcast_excluding("ABCDEF", "frame", "a") == 0
