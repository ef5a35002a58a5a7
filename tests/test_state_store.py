import json

import pytest

from lpbot.errors import InvariantViolation
from lpbot.state.state_store import AtomicStateStore, PersistedState, Position, StateStore


def test_missing_file_reads_empty(tmp_path):
    store = StateStore(tmp_path / "state" / "position.json")
    assert store.read() == PersistedState()
    assert store.read().position is None


def test_roundtrip_position(tmp_path):
    store = StateStore(tmp_path / "position.json")
    store.write(PersistedState(Position(address="PosAddr111", open_price=101.25)))

    loaded = store.read()

    assert loaded.position.address == "PosAddr111"
    assert loaded.position.open_price == 101.25


def test_file_format(tmp_path):
    path = tmp_path / "position.json"
    store = StateStore(path)

    store.write(PersistedState(Position(address="PosAddr111", open_price=99.5, tick_lower_index=-64)))
    assert json.loads(path.read_text()) == {"position": {"address": "PosAddr111", "openPrice": 99.5}}

    store.write(PersistedState())
    assert json.loads(path.read_text()) == {"position": None}
    assert store.read().position is None


def test_write_replaces_via_temp_file(tmp_path):
    path = tmp_path / "position.json"
    store = StateStore(path)
    store.write(PersistedState(Position(address="A", open_price=1.0)))
    store.write(PersistedState(Position(address="B", open_price=2.0)))

    assert not store.tmp.exists()
    assert store.read().position.address == "B"


@pytest.mark.parametrize("content", [b"{not json", b'{"position": {"address": "A"}}', b"[1, 2]"])
def test_corrupt_file_raises(tmp_path, content):
    path = tmp_path / "position.json"
    path.write_bytes(content)

    with pytest.raises(InvariantViolation):
        StateStore(path).read()


@pytest.mark.asyncio
async def test_atomic_store_roundtrip(tmp_path):
    store = AtomicStateStore(tmp_path / "position.json")
    assert (await store.read()).position is None

    await store.write(PersistedState(Position(address="PosAddr222", open_price=187.0)))

    assert (await store.read()).position == Position(address="PosAddr222", open_price=187.0)
    assert store.path == tmp_path / "position.json"
