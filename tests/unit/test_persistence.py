import json

import pytest

import autopilot_runner.persistence as persistence
from autopilot_runner.config import AutopilotConfig
from autopilot_runner.persistence import (
    InMemorySnapshotStore,
    JsonFileSnapshotStore,
    RunSnapshot,
    get_snapshot_store,
)


@pytest.mark.asyncio
async def test_memory_store_merges_top_level_keys():
    store = InMemorySnapshotStore()
    await store.write({"challenge_id": "c1", "submissions": {"a": ["s1"]}})
    await store.write({"submissions": {"b": ["s2"]}})

    snapshot = await store.read()
    assert snapshot.challenge_id == "c1"
    assert snapshot.submissions == {"b": ["s2"]}
    assert store.writes == 2

    snapshot.challenge_id = "changed"
    assert (await store.read()).challenge_id == "c1"

    await store.reset()
    assert await store.read() == RunSnapshot()


@pytest.mark.asyncio
async def test_unknown_field_is_rejected():
    store = InMemorySnapshotStore()
    with pytest.raises(KeyError):
        await store.write({"nonsense": 1})


@pytest.mark.asyncio
async def test_json_store_writes_camel_case(tmp_path):
    path = tmp_path / "state" / "last-run.json"
    store = JsonFileSnapshotStore(path)

    await store.write({"challenge_id": "c1", "appealed_comment_ids": ["k1"]})
    await store.write({"reviewer_resources": {"liuliquan": "res-1"}})

    raw = json.loads(path.read_text())
    assert raw == {
        "challengeId": "c1",
        "appealedCommentIds": ["k1"],
        "reviewerResources": {"liuliquan": "res-1"},
    }
    snapshot = await JsonFileSnapshotStore(path).read()
    assert snapshot.reviewer_resources == {"liuliquan": "res-1"}

    await store.reset()
    assert json.loads(path.read_text()) == {}


@pytest.mark.asyncio
async def test_json_store_tolerates_missing_and_corrupt_files(tmp_path):
    path = tmp_path / "last-run.json"
    store = JsonFileSnapshotStore(path)
    assert await store.read() == RunSnapshot()

    path.write_text("{not json")
    assert await store.read() == RunSnapshot()

    await store.write({"challenge_id": "c2"})
    assert (await store.read()).challenge_id == "c2"


def test_factory_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_store_instance", None)

    store = get_snapshot_store(config=AutopilotConfig(snapshot_path=":memory:"))
    assert isinstance(store, InMemorySnapshotStore)
    assert get_snapshot_store() is store

    path = tmp_path / "snap.json"
    store = get_snapshot_store(str(path))
    assert isinstance(store, JsonFileSnapshotStore)
    assert store.path == path
