import json
from pathlib import Path

import pytest

from maxian.messages import Message
from maxian.persistence import DirectorySizeCache, HistoryItem, TaskHistoryStore, task_metadata


def item(task_id: str, number: int, ts: int, workspace: str = "/work") -> HistoryItem:
    return HistoryItem(id=task_id, number=number, ts=ts, task=f"task {number}", workspace=workspace)


@pytest.mark.asyncio
async def test_upsert_get_and_list(tmp_path: Path):
    store = TaskHistoryStore(tmp_path / "history.db")
    try:
        await store.upsert(item("a", 1, 100))
        await store.upsert(item("b", 2, 300, workspace="/other"))
        await store.upsert(item("c", 3, 200))

        listed = await store.list()
        assert [i.id for i in listed] == ["b", "c", "a"]
        assert [i.id for i in await store.list(workspace="/work")] == ["c", "a"]
        assert [i.id for i in await store.list(limit=1)] == ["b"]

        fetched = await store.get("a")
        assert fetched == item("a", 1, 100)
        assert await store.get("missing") is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_upsert_replaces_existing_row(tmp_path: Path):
    store = TaskHistoryStore(tmp_path / "history.db")
    try:
        await store.upsert(item("a", 1, 100))
        updated = item("a", 1, 150)
        updated.tokens_in = 42
        updated.total_cost = 0.5
        await store.upsert(updated)

        listed = await store.list()
        assert len(listed) == 1
        assert listed[0].tokens_in == 42
        assert listed[0].total_cost == pytest.approx(0.5)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_next_number_and_delete(tmp_path: Path):
    store = TaskHistoryStore(tmp_path / "history.db")
    try:
        assert await store.next_number() == 1
        await store.upsert(item("a", 4, 100))
        assert await store.next_number() == 5

        assert await store.delete("a")
        assert not await store.delete("a")
        assert await store.list() == []
    finally:
        await store.close()


def test_task_metadata_summarizes_the_log(tmp_path: Path):
    (tmp_path / "ui_messages.json").write_text("[]", encoding="utf-8")
    messages = [
        Message(ts=10, type="say", say="text", text="  Refactor the parser  "),
        Message(ts=11, type="say", say="api_req_started", text=json.dumps({"request": "x"})),
        Message(
            ts=12,
            type="say",
            say="api_req_finished",
            text=json.dumps({"tokensIn": 30, "tokensOut": 6, "cacheReads": 2, "cost": 0.1}),
        ),
        Message(ts=13, type="ask", ask="resume_task"),
    ]

    history_item, usage = task_metadata("t1", 3, messages, tmp_path, "/work", DirectorySizeCache())

    assert history_item.task == "Refactor the parser"
    assert history_item.ts == 12
    assert history_item.number == 3
    assert history_item.tokens_in == 30
    assert history_item.tokens_out == 6
    assert history_item.cache_reads == 2
    assert history_item.total_cost == pytest.approx(0.1)
    assert history_item.size == 2
    assert usage.context_tokens == 36


def test_task_metadata_without_messages(tmp_path: Path):
    history_item, usage = task_metadata("t1", 9, [], tmp_path, "/work", DirectorySizeCache())

    assert history_item.task == "Task #9 (No messages)"
    assert usage.total_cache_writes == 0
    assert usage.total_tokens_in == 0


def test_task_metadata_uses_cached_size(tmp_path: Path):
    cache = DirectorySizeCache(ttl=60)
    cache.set(tmp_path, 1234)
    messages = [Message(ts=1, type="say", say="text", text="")]

    history_item, _ = task_metadata("t1", 2, messages, tmp_path, "/work", cache)

    assert history_item.size == 1234
    assert history_item.task == "Task #2 (Incomplete)"
