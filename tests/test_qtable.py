import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from emotion_rec.database import SQLiteQTable
from emotion_rec.qtable import InMemoryQTable, QEntry


def _bump(user, state, content):
    def fn(old):
        if old is None:
            return QEntry(user, state, content, 1.0, 1)
        return replace(old, q_value=old.q_value + 1.0, visit_count=old.visit_count + 1)
    return fn


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryQTable(shards=4)
        return
    from emotion_rec.database import Database

    db = Database(tmp_path / "q.db").init()
    yield SQLiteQTable(db)
    db.close()


def test_get_missing_returns_none(store):
    assert store.get("u", "v0:a0:s0", "c") is None
    assert store.state_actions("u", "v0:a0:s0") == {}


def test_update_returns_old_and_new(store):
    old, new = store.update("u", "s", "c", _bump("u", "s", "c"))
    assert old is None
    assert new.q_value == 1.0
    assert new.visit_count == 1

    old, new = store.update("u", "s", "c", _bump("u", "s", "c"))
    assert old.q_value == 1.0
    assert new.q_value == 2.0
    assert store.get("u", "s", "c").visit_count == 2


def test_state_actions_scoped_by_user_and_state(store):
    store.update("alice", "s1", "a", _bump("alice", "s1", "a"))
    store.update("alice", "s1", "b", _bump("alice", "s1", "b"))
    store.update("alice", "s2", "a", _bump("alice", "s2", "a"))
    store.update("bob", "s1", "a", _bump("bob", "s1", "a"))

    assert set(store.state_actions("alice", "s1")) == {"a", "b"}
    assert set(store.state_actions("bob", "s1")) == {"a"}
    assert len(list(store.entries("alice"))) == 3
    assert len(list(store.entries())) == 4


def test_exploration_rate_round_trip(store):
    assert store.get_exploration_rate("u") is None
    store.set_exploration_rate("u", 0.12)
    assert store.get_exploration_rate("u") == pytest.approx(0.12)


def test_update_exploration_rate_passes_stored_value(store):
    seen = []

    def halve(rate):
        seen.append(rate)
        return (1.0 if rate is None else rate) / 2

    assert store.update_exploration_rate("u", halve) == pytest.approx(0.5)
    assert store.update_exploration_rate("u", halve) == pytest.approx(0.25)
    assert seen == [None, pytest.approx(0.5)]
    assert store.get_exploration_rate("u") == pytest.approx(0.25)


def test_concurrent_rate_updates_are_not_lost(store):
    store.set_exploration_rate("u", 0.5)

    def slow_halve(rate):
        time.sleep(0.01)
        return rate / 2

    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(lambda _: store.update_exploration_rate("u", slow_halve), range(6)))

    assert store.get_exploration_rate("u") == pytest.approx(0.5 / 2 ** 6)


def test_stats(store):
    assert store.stats()["entries"] == 0
    store.update("u", "s", "a", _bump("u", "s", "a"))
    store.update("u", "s", "a", _bump("u", "s", "a"))
    store.update("v", "t", "b", _bump("v", "t", "b"))

    stats = store.stats()
    assert stats["entries"] == 2
    assert stats["users"] == 2
    assert stats["states"] == 2
    assert stats["total_visits"] == 3
    assert stats["max_q"] == 2.0
    assert stats["mean_q"] == pytest.approx(1.5)


def test_failed_update_leaves_entry_untouched(store):
    store.update("u", "s", "c", _bump("u", "s", "c"))

    def boom(old):
        raise ValueError("nope")

    with pytest.raises(ValueError):
        store.update("u", "s", "c", boom)
    assert store.get("u", "s", "c").q_value == 1.0


def test_concurrent_updates_do_not_lose_increments(store):
    n = 40
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: store.update("u", "s", "c", _bump("u", "s", "c")), range(n)))

    entry = store.get("u", "s", "c")
    assert entry.q_value == pytest.approx(float(n))
    assert entry.visit_count == n


def test_in_memory_same_key_same_shard():
    table = InMemoryQTable(shards=16)
    assert table._shard("u", "s") == table._shard("u", "s")


def test_in_memory_other_shards_proceed_while_one_is_held():
    table = InMemoryQTable(shards=16)
    # Find two keys in different shards
    keys = [f"v{i}:a0:s0" for i in range(40)]
    held = keys[0]
    other = next(k for k in keys if table._shard("u", k) != table._shard("u", held))

    entered = threading.Event()
    release = threading.Event()

    def slow(old):
        entered.set()
        release.wait(timeout=5)
        return QEntry("u", held, "c", 1.0, 1)

    worker = threading.Thread(target=lambda: table.update("u", held, "c", slow))
    worker.start()
    assert entered.wait(timeout=5)

    # Does not block on the held shard
    _, new = table.update("u", other, "c", _bump("u", other, "c"))
    assert new.q_value == 1.0

    release.set()
    worker.join(timeout=5)
    assert table.get("u", held, "c").q_value == 1.0
