import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

import maxian.config as config_module
import maxian.main as main_module
from maxian import __version__
from maxian.messages import Message
from maxian.persistence import HistoryItem, TaskHistoryStore, TaskStorage

runner = CliRunner()


@pytest.fixture
def config_file(monkeypatch, tmp_path: Path) -> Path:
    # Keep structlog bound to the real stderr rather than the runner's capture.
    monkeypatch.setattr(main_module, "configure_logging", lambda: None)
    monkeypatch.setattr(config_module, "_config", config_module._config)
    path = tmp_path / "config.yaml"
    path.write_text(
        (
            "storage:\n"
            f"  path: {tmp_path / 'tasks'}\n"
            f"  history_db: {tmp_path / 'history.db'}\n"
        ),
        encoding="utf-8",
    )
    return path


def seed_history(db_path: Path, item: HistoryItem) -> None:
    async def _seed() -> None:
        store = TaskHistoryStore(db_path)
        try:
            await store.upsert(item)
        finally:
            await store.close()

    asyncio.run(_seed())


def test_version():
    result = runner.invoke(main_module.app, ["version"])

    assert result.exit_code == 0
    assert f"Maxian v{__version__}" in result.output


def test_history_empty(config_file: Path):
    result = runner.invoke(main_module.app, ["history", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "No tasks yet." in result.output


def test_history_lists_tasks(config_file: Path, tmp_path: Path):
    seed_history(
        tmp_path / "history.db",
        HistoryItem(id="t-1", number=4, ts=1000, task="Fix login", tokens_in=120, tokens_out=30),
    )

    result = runner.invoke(main_module.app, ["history", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "Fix login" in result.output
    assert "120/30" in result.output


def test_metrics_for_saved_task(config_file: Path, tmp_path: Path):
    storage = TaskStorage(tmp_path / "tasks")
    messages = [
        Message(ts=1, type="say", say="text", text="Fix login"),
        Message(
            ts=2,
            type="say",
            say="api_req_started",
            text=json.dumps({"request": "Fix login", "tokensIn": 321, "tokensOut": 45, "cost": 0.5}),
        ),
    ]
    asyncio.run(storage.save_task_messages("t-1", messages))

    result = runner.invoke(main_module.app, ["metrics", "t-1", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "321" in result.output
    assert "45" in result.output
    assert "¥0.5000" in result.output


def test_metrics_unknown_task(config_file: Path):
    result = runner.invoke(main_module.app, ["metrics", "nope", "-c", str(config_file)])

    assert result.exit_code == 1


def test_delete_task(config_file: Path, tmp_path: Path):
    storage = TaskStorage(tmp_path / "tasks")
    asyncio.run(storage.save_task_messages("t-2", [Message(ts=1, type="say", say="text", text="x")]))
    seed_history(tmp_path / "history.db", HistoryItem(id="t-2", number=1, ts=1, task="x"))

    deleted = runner.invoke(main_module.app, ["delete", "t-2", "-c", str(config_file)])
    missing = runner.invoke(main_module.app, ["delete", "t-2", "-c", str(config_file)])

    assert deleted.exit_code == 0
    assert "Deleted task t-2" in deleted.output
    assert not (tmp_path / "tasks" / "t-2").exists()
    assert missing.exit_code == 1


def test_invalid_config_exits_cleanly(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(config_module, "_config", config_module._config)
    bad = tmp_path / "bad.yaml"
    bad.write_text("storage: [oops\n", encoding="utf-8")

    result = runner.invoke(main_module.app, ["history", "-c", str(bad)])

    assert result.exit_code == 1
    assert "Invalid config file" in result.output
