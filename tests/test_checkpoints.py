"""Tests for checkpoint stores and the checkpoint manager."""

import json
import os

import pytest

from reddit_ingest.coordinator.checkpoints import (
    CheckpointManager,
    InMemoryCheckpointStore,
    JsonFileCheckpointStore,
)
from reddit_ingest.models.checkpoint import ProcessingCheckpoint


@pytest.mark.asyncio
async def test_manager_numbers_checkpoints_per_job():
    manager = CheckpointManager(InMemoryCheckpointStore())

    first = await manager.write("job-a", "a.zst", "initial")
    second = await manager.write("job-a", "a.zst", "progress", processed_lines=500)
    other = await manager.write("job-b", "b.zst", "initial")

    assert first.checkpoint_id == "job-a_cp_000001"
    assert second.checkpoint_id == "job-a_cp_000002"
    assert other.checkpoint_id == "job-b_cp_000001"
    assert (await manager.get_latest("job-a")).processed_lines == 500


@pytest.mark.asyncio
async def test_manager_marks_completion_and_failure():
    manager = CheckpointManager(InMemoryCheckpointStore())

    done = await manager.write("job", "a.zst", "completion", completion_percentage=120.0)
    failed = await manager.write("job", "a.zst", "failure", error_message="boom")

    assert done.completed
    assert done.completion_percentage == 100.0
    assert failed.is_failure
    assert failed.error_message == "boom"
    assert not failed.completed


@pytest.mark.asyncio
async def test_manager_rejects_unknown_type():
    manager = CheckpointManager(InMemoryCheckpointStore())

    with pytest.raises(ValueError):
        await manager.write("job", "a.zst", "halfway")

    assert await manager.get_all("job") == []


@pytest.mark.asyncio
async def test_manager_trims_old_checkpoints():
    manager = CheckpointManager(InMemoryCheckpointStore(), max_checkpoints_per_job=3)

    for lines in range(5):
        await manager.write("job", "a.zst", "progress", processed_lines=lines)

    remaining = await manager.get_all("job")
    assert [c.sequence for c in remaining] == [3, 4, 5]


@pytest.mark.asyncio
async def test_manager_continues_sequence_from_store(tmp_path):
    store = JsonFileCheckpointStore(str(tmp_path))
    await CheckpointManager(store).write("job", "a.zst", "initial")

    checkpoint = await CheckpointManager(store).write("job", "a.zst", "progress")

    assert checkpoint.sequence == 2


@pytest.mark.asyncio
async def test_delete_checkpoints_resets_the_job():
    manager = CheckpointManager(InMemoryCheckpointStore())
    await manager.write("job", "a.zst", "initial")
    await manager.write("job", "a.zst", "progress")

    assert await manager.delete_checkpoints("job") == 2
    assert await manager.get_latest("job") is None
    assert (await manager.write("job", "a.zst", "initial")).sequence == 1


@pytest.mark.asyncio
async def test_json_store_round_trips_checkpoints(tmp_path):
    store = JsonFileCheckpointStore(str(tmp_path))
    manager = CheckpointManager(store)
    written = await manager.write(
        "job",
        "/dumps/stocks_submissions.zst",
        "progress",
        processed_lines=10000,
        last_byte_position=5120000,
        completion_percentage=42.5,
        batch_config_snapshot={"batch_size": 750},
        metrics={"valid_items": 9990},
    )

    loaded = await store.get_latest("job")

    assert loaded == written
    assert os.path.exists(tmp_path / "job" / f"{written.checkpoint_id}.json")


@pytest.mark.asyncio
async def test_json_store_skips_unreadable_files(tmp_path):
    store = JsonFileCheckpointStore(str(tmp_path))
    await CheckpointManager(store).write("job", "a.zst", "initial")
    (tmp_path / "job" / "broken.json").write_text("{truncated", encoding="utf-8")

    checkpoints = await store.list_all("job")

    assert len(checkpoints) == 1


@pytest.mark.asyncio
async def test_json_store_delete(tmp_path):
    store = JsonFileCheckpointStore(str(tmp_path))
    manager = CheckpointManager(store)
    first = await manager.write("job", "a.zst", "initial")
    await manager.write("job", "a.zst", "progress")

    assert await store.delete("job", [first.checkpoint_id, "missing"]) == 1
    assert await store.delete("job") == 1
    assert not os.path.exists(tmp_path / "job")
    assert await store.delete("job") == 0


def test_checkpoint_from_dict_ignores_unknown_keys():
    data = ProcessingCheckpoint("job_cp_000001", "job", "a.zst").to_dict()
    data["legacy_field"] = True

    checkpoint = ProcessingCheckpoint.from_dict(json.loads(json.dumps(data)))

    assert checkpoint.checkpoint_id == "job_cp_000001"
    assert checkpoint.timestamp.tzinfo is not None
