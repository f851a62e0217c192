import pytest

from server.party_registry import PartyRegistry
from shared.errors import NotInParty, PartyNotFound, WrongPassword
from shared.protocol import VideoDescriptor, is_valid_party_code


class RecordingChannel:
    def __init__(self) -> None:
        self.frames: list[str] = []

    @property
    def is_writable(self) -> bool:
        return True

    def deliver(self, payload: str) -> bool:
        self.frames.append(payload)
        return True


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


DAY = 24 * 60 * 60


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_create_party_registers_creator() -> None:
    registry = PartyRegistry()

    result = await registry.create_party("c1", RecordingChannel(), "alice")

    assert is_valid_party_code(result.party_code)
    assert result.has_password is False
    assert result.persistent is False
    assert result.previous_party is None
    participants = await registry.list_participants(result.party_code)
    assert [view.to_dict() for view in participants] == [
        {"username": "alice", "videoUrl": None, "synced": False}
    ]


@pytest.mark.anyio
async def test_create_party_retries_on_code_collision() -> None:
    codes = iter(["AAAAAA", "AAAAAA", "AAAAAA", "BBBBBB"])
    registry = PartyRegistry(code_factory=lambda: next(codes))

    first = await registry.create_party("c1", RecordingChannel(), "alice")
    second = await registry.create_party("c2", RecordingChannel(), "bob")

    assert first.party_code == "AAAAAA"
    assert second.party_code == "BBBBBB"
    assert sorted(await registry.party_codes()) == ["AAAAAA", "BBBBBB"]


@pytest.mark.anyio
async def test_codes_are_unique_among_live_parties() -> None:
    registry = PartyRegistry()
    codes = set()
    for index in range(200):
        result = await registry.create_party(f"c{index}", RecordingChannel(), "user")
        codes.add(result.party_code)
    assert len(codes) == 200
    assert all(is_valid_party_code(code) for code in codes)


@pytest.mark.anyio
async def test_join_with_wrong_or_missing_password_never_mutates_membership() -> None:
    registry = PartyRegistry()
    created = await registry.create_party("c1", RecordingChannel(), "alice", password="secret")
    other = await registry.create_party("c2", RecordingChannel(), "bob")

    with pytest.raises(WrongPassword):
        await registry.join_party("c2", RecordingChannel(), created.party_code, "bob", password="guess")
    with pytest.raises(WrongPassword):
        await registry.join_party("c2", RecordingChannel(), created.party_code, "bob")

    assert [view.username for view in await registry.list_participants(created.party_code)] == ["alice"]
    # The failed joins must not have pulled bob out of his own party.
    assert [view.username for view in await registry.list_participants(other.party_code)] == ["bob"]
    membership = await registry.get_membership("c2")
    assert membership is not None
    assert membership.party_code == other.party_code


@pytest.mark.anyio
async def test_join_with_correct_password_and_lowercase_code() -> None:
    registry = PartyRegistry()
    created = await registry.create_party("c1", RecordingChannel(), "alice", password="secret")

    result = await registry.join_party("c2", RecordingChannel(), created.party_code.lower(), "bob", password="secret")

    assert result.party_code == created.party_code
    assert [view.username for view in result.participants] == ["alice", "bob"]
    assert result.video is None


@pytest.mark.anyio
@pytest.mark.parametrize("code", ["", "ABC", "ABCDE0", "ABCDEFG", "ZZZZZZ"])
async def test_join_unknown_or_malformed_code_is_not_found(code: str) -> None:
    registry = PartyRegistry(code_factory=lambda: "AAAAAA")
    await registry.create_party("c1", RecordingChannel(), "alice")

    with pytest.raises(PartyNotFound):
        await registry.join_party("c2", RecordingChannel(), code, "bob")


@pytest.mark.anyio
async def test_joining_another_party_leaves_the_previous_one() -> None:
    codes = iter(["AAAAAA", "BBBBBB"])
    registry = PartyRegistry(code_factory=lambda: next(codes))
    await registry.create_party("c1", RecordingChannel(), "alice")
    await registry.create_party("c2", RecordingChannel(), "bob")
    await registry.join_party("c3", RecordingChannel(), "AAAAAA", "carol")

    result = await registry.join_party("c3", RecordingChannel(), "BBBBBB", "carol")

    assert result.previous_party == "AAAAAA"
    assert [view.username for view in await registry.list_participants("AAAAAA")] == ["alice"]
    assert [view.username for view in result.participants] == ["bob", "carol"]


@pytest.mark.anyio
async def test_switching_away_from_sole_membership_deletes_non_persistent_party() -> None:
    codes = iter(["AAAAAA", "BBBBBB"])
    registry = PartyRegistry(code_factory=lambda: next(codes))
    await registry.create_party("c1", RecordingChannel(), "alice")
    await registry.create_party("c2", RecordingChannel(), "bob")

    result = await registry.join_party("c1", RecordingChannel(), "BBBBBB", "alice")

    assert result.previous_party == "AAAAAA"
    assert await registry.has_party("AAAAAA") is False


@pytest.mark.anyio
async def test_rejoining_same_party_keeps_single_membership() -> None:
    registry = PartyRegistry()
    created = await registry.create_party("c1", RecordingChannel(), "alice")

    result = await registry.join_party("c1", RecordingChannel(), created.party_code, "alice2")

    assert result.previous_party is None
    assert [view.username for view in result.participants] == ["alice2"]
    assert await registry.has_party(created.party_code)


@pytest.mark.anyio
async def test_non_persistent_party_is_deleted_when_empty() -> None:
    registry = PartyRegistry()
    created = await registry.create_party("c1", RecordingChannel(), "alice")

    left = await registry.leave_party("c1")

    assert left == created.party_code
    assert await registry.has_party(created.party_code) is False
    with pytest.raises(PartyNotFound):
        await registry.join_party("c2", RecordingChannel(), created.party_code, "bob")


@pytest.mark.anyio
async def test_leave_is_idempotent() -> None:
    registry = PartyRegistry()
    await registry.create_party("c1", RecordingChannel(), "alice")

    assert await registry.leave_party("c1") is not None
    assert await registry.leave_party("c1") is None
    assert await registry.leave_party("never-joined") is None


@pytest.mark.anyio
async def test_persistent_party_survives_until_idle_timeout() -> None:
    clock = FakeClock()
    registry = PartyRegistry(clock=clock)
    created = await registry.create_party("c1", RecordingChannel(), "alice", persistent=True)
    clock.advance(3 * DAY)

    await registry.leave_party("c1")
    assert await registry.has_party(created.party_code)

    clock.advance(DAY - 1)
    assert await registry.expire_idle_parties() == []
    assert await registry.has_party(created.party_code)

    clock.advance(2)
    assert await registry.expire_idle_parties() == [created.party_code]
    assert await registry.has_party(created.party_code) is False


@pytest.mark.anyio
async def test_persistent_party_is_not_expired_while_occupied() -> None:
    clock = FakeClock()
    registry = PartyRegistry(clock=clock)
    created = await registry.create_party("c1", RecordingChannel(), "alice", persistent=True)

    clock.advance(10 * DAY)

    assert await registry.expire_idle_parties() == []
    assert await registry.has_party(created.party_code)


@pytest.mark.anyio
async def test_cleanup_empty_party_stamps_persistent_and_deletes_transient() -> None:
    clock = FakeClock()
    registry = PartyRegistry(clock=clock, code_factory=iter(["AAAAAA", "BBBBBB"]).__next__)
    await registry.create_party("c1", RecordingChannel(), "alice", persistent=True)
    await registry.create_party("c2", RecordingChannel(), "bob")
    await registry.leave_party("c1")
    clock.advance(100)

    assert await registry.cleanup_empty_party("AAAAAA") is False
    snapshot = await registry.snapshot()
    persistent = next(entry for entry in snapshot["parties"] if entry["party_code"] == "AAAAAA")
    assert persistent["last_activity"] == clock.now
    # Occupied parties are never removed by cleanup.
    assert await registry.cleanup_empty_party("BBBBBB") is False
    assert await registry.has_party("BBBBBB")


@pytest.mark.anyio
async def test_synced_status_follows_shared_video() -> None:
    registry = PartyRegistry()
    created = await registry.create_party("a", RecordingChannel(), "alice")
    code = created.party_code
    for connection_id, name in (("b", "bob"), ("c", "carol"), ("d", "dave")):
        await registry.join_party(connection_id, RecordingChannel(), code, name)

    await registry.record_video_info("a", VideoDescriptor(url="https://v/U", title="U"))
    await registry.record_video_info("b", VideoDescriptor(url="https://v/U", title="U"))
    await registry.record_video_info("c", VideoDescriptor(url="https://v/V", title="V"))
    await registry.record_video_info("a", VideoDescriptor(url="https://v/U", title="U"))

    views = {view.username: view for view in await registry.list_participants(code)}
    assert views["alice"].synced is True
    assert views["bob"].synced is True
    assert views["carol"].synced is False
    assert views["dave"].synced is False
    assert views["dave"].video_url is None


@pytest.mark.anyio
async def test_shared_video_is_last_writer_wins() -> None:
    registry = PartyRegistry()
    created = await registry.create_party("a", RecordingChannel(), "alice")
    await registry.join_party("b", RecordingChannel(), created.party_code, "bob")

    await registry.record_video_info("a", VideoDescriptor(url="https://v/U"))
    await registry.record_video_info("b", VideoDescriptor(url="https://v/V"))

    joined = await registry.join_party("c", RecordingChannel(), created.party_code, "carol")
    assert joined.video == VideoDescriptor(url="https://v/V")
    views = {view.username: view.synced for view in joined.participants}
    assert views == {"alice": False, "bob": True, "carol": False}


@pytest.mark.anyio
async def test_video_info_outside_party_raises() -> None:
    registry = PartyRegistry()

    with pytest.raises(NotInParty):
        await registry.record_video_info("lonely", VideoDescriptor(url="https://v/U"))
    with pytest.raises(NotInParty):
        await registry.require_membership("lonely")
    assert await registry.get_membership("lonely") is None


@pytest.mark.anyio
async def test_recipients_excludes_named_connection() -> None:
    registry = PartyRegistry()
    created = await registry.create_party("a", RecordingChannel(), "alice")
    await registry.join_party("b", RecordingChannel(), created.party_code, "bob")

    everyone = [connection_id for connection_id, _ in await registry.recipients(created.party_code)]
    others = [connection_id for connection_id, _ in await registry.recipients(created.party_code, exclude="a")]

    assert everyone == ["a", "b"]
    assert others == ["b"]
    assert await registry.recipients("NOPE22") == []


@pytest.mark.anyio
async def test_snapshot_and_events_never_expose_passwords() -> None:
    registry = PartyRegistry()
    created = await registry.create_party("a", RecordingChannel(), "alice", password="hunter2")
    await registry.leave_party("a")

    snapshot = await registry.snapshot()
    events = await registry.get_recent_events()

    assert "hunter2" not in repr(snapshot)
    assert "hunter2" not in repr(events)
    assert [event["type"] for event in events] == ["party_created", "left", "party_deleted"]
    assert events[0]["details"]["party_code"] == created.party_code
    assert events[0]["details"]["has_password"] is True
