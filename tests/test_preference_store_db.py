import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from recordexport.crud.stored_preference import stored_preference_crud
from recordexport.database import Base
from recordexport.models.stored_preference import StoredPreference
from recordexport.services.preference_store import DatabaseKeyValueStore
from recordexport.services.selection_store import SelectionStore


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


def test_crud_create_update_and_prefix_listing(session_factory):
    db = session_factory()
    try:
        stored_preference_crud.create_or_update(db, "column-order-company-acme", {"columnOrder": ["a"]})
        stored_preference_crud.create_or_update(db, "column-order-company-acme", {"columnOrder": ["b"]})
        stored_preference_crud.create_or_update(db, "column-order-issue_x-acme", {"columnOrder": []})

        assert db.query(StoredPreference).count() == 2
        assert stored_preference_crud.get_by_key(db, "column-order-company-acme").value == {"columnOrder": ["b"]}
        assert stored_preference_crud.list_keys(db, "column-order-company-") == ["column-order-company-acme"]
        # Underscore is matched literally, not as a LIKE wildcard
        assert stored_preference_crud.list_keys(db, "column-order-issue_") == ["column-order-issue_x-acme"]
        assert stored_preference_crud.list_keys(db, "column-order-issueX") == []

        assert stored_preference_crud.delete_keys(db, ["column-order-company-acme", "missing"]) == 1
        assert stored_preference_crud.delete_keys(db, []) == 0
    finally:
        db.close()


def test_database_store_behaves_like_a_key_value_store(session_factory):
    store = DatabaseKeyValueStore(session_factory)

    async def exercise():
        await store.set("a-1", {"x": 1})
        await store.set("a-2", [1, 2])
        await store.set("b-1", "text")
        assert await store.get("a-1") == {"x": 1}
        assert await store.get("missing") is None
        assert await store.get_many(["a-2", "b-1", "zzz"]) == {"a-2": [1, 2], "b-1": "text"}
        assert sorted(await store.keys("a-")) == ["a-1", "a-2"]
        await store.remove("a-1")
        await store.remove(["a-2", "b-1"])
        return await store.keys()

    assert asyncio.run(exercise()) == []


def test_selection_store_persists_through_database(session_factory):
    writer = SelectionStore(DatabaseKeyValueStore(session_factory))
    asyncio.run(writer.save_column_widths("company", {"name": 240}, "acme"))
    asyncio.run(writer.save_field_selections("company", ["name"], "acme", known_fields=["name", "mrr"]))

    reader = SelectionStore(DatabaseKeyValueStore(session_factory))
    assert asyncio.run(reader.load_column_widths("company", "acme")) == {"name": 240}
    state = asyncio.run(reader.load_field_selections("company", "acme"))
    assert state.selected_fields == ["name"]
    assert state.known_fields == ["name", "mrr"]

    asyncio.run(reader.clear(entity_type="company"))
    assert asyncio.run(SelectionStore(DatabaseKeyValueStore(session_factory)).load_column_widths("company", "acme")) == {}
