import pytest

from hachiko.exceptions import ConfigurationError
from hachiko.persistence import (
    ControlState,
    InMemoryMigrationStore,
    SQLiteMigrationStore,
    StepState,
    get_store,
)
from hachiko.state import new_migration_progress


@pytest.mark.asyncio
async def test_sqlite_store_round_trip(tmp_path):
    store = SQLiteMigrationStore(tmp_path / "hachiko.db")
    progress = new_migration_progress("demo", ["a", "b"], issue_number=4, metadata={"repository": "acme/app"})
    progress.state = ControlState.RUNNING
    progress.steps["a"].state = StepState.RUNNING
    progress.steps["a"].retry_count = 1
    progress.current_step = "a"

    await store.save("demo", progress)
    loaded = await store.load("demo")
    assert loaded == progress

    progress.state = ControlState.AWAITING_REVIEW
    await store.save("demo", progress)
    assert (await store.load("demo")).state is ControlState.AWAITING_REVIEW
    assert [p.plan_id for p in await store.list()] == ["demo"]
    assert await store.load("missing") is None
    store.close()


@pytest.mark.asyncio
async def test_sqlite_store_survives_reopen(tmp_path):
    db_path = tmp_path / "hachiko.db"
    first = SQLiteMigrationStore(db_path)
    await first.save("demo", new_migration_progress("demo", ["a"]))
    first.close()

    second = SQLiteMigrationStore(db_path)
    loaded = await second.load("demo")
    assert loaded is not None
    assert list(loaded.steps) == ["a"]
    second.close()


@pytest.mark.asyncio
async def test_in_memory_store_returns_copies():
    store = InMemoryMigrationStore()
    progress = new_migration_progress("demo", ["a"])
    await store.save("demo", progress)

    loaded = await store.load("demo")
    loaded.state = ControlState.QUEUED
    assert (await store.load("demo")).state is ControlState.DRAFT


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("HACHIKO_CONFIG", str(tmp_path / "absent.yml"))
    monkeypatch.delenv("HACHIKO_DATABASE_URL", raising=False)
    assert isinstance(get_store(), InMemoryMigrationStore)

    store = get_store(f"sqlite://{tmp_path / 'state.db'}")
    assert isinstance(store, SQLiteMigrationStore)
    store.close()

    monkeypatch.setenv("HACHIKO_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    store = get_store()
    assert isinstance(store, SQLiteMigrationStore)
    store.close()

    with pytest.raises(ConfigurationError):
        get_store("postgresql://localhost/hachiko")
