"""Job to session bookkeeping."""

from sessions import JobSessionStore


def test_bind_and_lookup():
    store = JobSessionStore()
    store.bind("search-b", "tab-1")
    store.bind("search-a", "tab-1")

    assert store.session_for("search-a") == "tab-1"
    assert store.jobs_for("tab-1") == ["search-a", "search-b"]
    assert len(store) == 2


def test_rebinding_moves_job():
    store = JobSessionStore()
    store.bind("search-a", "tab-1")
    store.bind("search-a", "tab-2")

    assert store.jobs_for("tab-1") == []
    assert store.jobs_for("tab-2") == ["search-a"]


def test_release():
    store = JobSessionStore()
    store.bind("search-a", "tab-1")

    store.release("search-a")
    store.release("search-unknown")

    assert store.session_for("search-a") is None
    assert store.jobs_for("tab-1") == []
    assert len(store) == 0
