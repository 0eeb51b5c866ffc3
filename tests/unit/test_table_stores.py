"""
Unit tests for the single-table row stores.

Both backends run the same tests.

Tests cover:
- Insert with generated keys, defaults and timestamps
- eq/in filters, any_of, ordering and limit
- Unique constraints
- Update and delete return values and safety checks
- Change events published after each write
"""

import pytest

from services.collab_server.feed import ChangePublisher, InMemoryFeedStream, Operation
from services.collab_server.feed.base import ChangeEvent
from services.collab_server.models import DEFAULT_ROLES
from services.collab_server.store import (
    InMemoryTableStore,
    OrderBy,
    SqliteTableStore,
    StoreError,
    UniqueViolation,
    UnknownTableError,
    eq,
    in_,
)

TOPIC = "changes"


def project(name, **extra):
    return {"name": name, "start_date": "2024-03-01", **extra}


@pytest.fixture
async def feed():
    feed = InMemoryFeedStream()
    await feed.connect()
    yield feed
    await feed.close()


@pytest.fixture(params=["memory", "sqlite"])
async def table_store(request, feed, data_dir):
    """Fresh store of each backend, publishing to the feed."""
    publisher = ChangePublisher(feed, TOPIC)
    if request.param == "memory":
        store = InMemoryTableStore(publisher=publisher)
    else:
        store = SqliteTableStore(data_dir, wal_mode=False, publisher=publisher)
    await store.initialize()
    return store


def events(feed, table=None):
    found = [ChangeEvent.from_record(r) for r in feed.get_all_records(TOPIC)]
    return [e for e in found if table is None or e.table == table]


class TestInitialize:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_seeds_roles(self, table_store):
        """Built-in roles exist after initialize."""
        rows = await table_store.select("roles")

        assert {row["role_name"] for row in rows} == {name for name, _ in DEFAULT_ROLES}

    @pytest.mark.asyncio
    async def test_idempotent(self, table_store):
        """A second initialize adds nothing."""
        await table_store.initialize()

        assert await table_store.count("roles") == len(DEFAULT_ROLES)


class TestInsert:
    """Tests for insert()."""

    @pytest.mark.asyncio
    async def test_generates_keys_and_defaults(self, table_store):
        """Keys, defaults and timestamps are filled in."""
        [first, second] = await table_store.insert("projects", [project("A"), project("B")])

        assert second["id"] == first["id"] + 1
        assert first["status"] == "Active"
        assert first["team_members_count"] == 0
        assert first["tags"] == []
        assert first["is_archived"] is False
        assert first["created_at"] == first["updated_at"]
        assert first["end_date"] is None

    @pytest.mark.asyncio
    async def test_json_and_bool_round_trip(self, table_store):
        """Lists and booleans come back as Python values."""
        [row] = await table_store.insert(
            "projects", [project("A", tags=["water", "health"], is_archived=True)]
        )

        [fetched] = await table_store.select("projects", where=[eq("id", row["id"])])
        assert fetched["tags"] == ["water", "health"]
        assert fetched["is_archived"] is True

    @pytest.mark.asyncio
    async def test_unique_violation(self, table_store):
        """Duplicate collaborator links are rejected."""
        link = {"project_id": 1, "user_id": "u1", "role_id": 4}
        await table_store.insert("project_collaborators", [link])

        with pytest.raises(UniqueViolation):
            await table_store.insert("project_collaborators", [link])
        assert await table_store.count("project_collaborators") == 1

    @pytest.mark.asyncio
    async def test_unique_ignores_null(self, table_store):
        """Rows without a request_key never collide."""
        await table_store.insert("projects", [project("A"), project("B")])

        assert await table_store.count("projects") == 2

    @pytest.mark.asyncio
    async def test_batch_is_atomic(self, table_store):
        """A violating batch writes nothing."""
        with pytest.raises(UniqueViolation):
            await table_store.insert(
                "projects",
                [project("A", request_key="k"), project("B", request_key="k")],
            )
        assert await table_store.count("projects") == 0

    @pytest.mark.asyncio
    async def test_unknown_table_and_column(self, table_store):
        """Unknown names raise StoreError."""
        with pytest.raises(UnknownTableError):
            await table_store.insert("nope", [{"a": 1}])
        with pytest.raises(StoreError):
            await table_store.insert("projects", [project("A", colour="red")])

    @pytest.mark.asyncio
    async def test_profiles_use_user_id_key(self, table_store):
        """Profiles are keyed by user_id."""
        [row] = await table_store.insert("profiles", [{"user_id": "u1", "full_name": "U One"}])

        assert row["user_id"] == "u1"
        assert row["is_active"] is True
        with pytest.raises(UniqueViolation):
            await table_store.insert("profiles", [{"user_id": "u1", "full_name": "Again"}])


class TestSelect:
    """Tests for select() and count()."""

    @pytest.fixture
    async def rows(self, table_store):
        return await table_store.insert(
            "projects",
            [
                project("A", owner_id="u1", status="Completed"),
                project("B", owner_id="u2"),
                project("C", owner_id="u1", project_manager_id="u3"),
            ],
        )

    @pytest.mark.asyncio
    async def test_eq_and_in(self, table_store, rows):
        """Filters AND together."""
        found = await table_store.select(
            "projects", where=[eq("owner_id", "u1"), in_("id", [rows[0]["id"], rows[1]["id"]])]
        )
        assert [r["name"] for r in found] == ["A"]

    @pytest.mark.asyncio
    async def test_any_of(self, table_store, rows):
        """any_of filters OR together."""
        found = await table_store.select(
            "projects", any_of=[eq("owner_id", "u2"), eq("project_manager_id", "u3")]
        )
        assert sorted(r["name"] for r in found) == ["B", "C"]

    @pytest.mark.asyncio
    async def test_empty_in_matches_nothing(self, table_store, rows):
        """in_ with no values selects no rows."""
        assert await table_store.select("projects", where=[in_("id", [])]) == []

    @pytest.mark.asyncio
    async def test_eq_none_matches_null(self, table_store, rows):
        """eq(column, None) selects NULLs."""
        found = await table_store.select("projects", where=[eq("project_manager_id", None)])
        assert sorted(r["name"] for r in found) == ["A", "B"]

    @pytest.mark.asyncio
    async def test_order_and_limit(self, table_store, rows):
        """Explicit order with a limit."""
        found = await table_store.select(
            "projects", order_by=OrderBy("name", descending=True), limit=2
        )
        assert [r["name"] for r in found] == ["C", "B"]

    @pytest.mark.asyncio
    async def test_default_order_is_key(self, table_store, rows):
        """Without order_by rows come in key order."""
        found = await table_store.select("projects")
        assert [r["id"] for r in found] == sorted(r["id"] for r in rows)

    @pytest.mark.asyncio
    async def test_count(self, table_store, rows):
        """count() honors filters."""
        assert await table_store.count("projects", where=[eq("owner_id", "u1")]) == 2

    @pytest.mark.asyncio
    async def test_unknown_order_column(self, table_store, rows):
        """Ordering by an unknown column fails."""
        with pytest.raises(StoreError):
            await table_store.select("projects", order_by=OrderBy("colour"))


class TestUpdateDelete:
    """Tests for update() and delete()."""

    @pytest.mark.asyncio
    async def test_update_returns_new_rows(self, table_store):
        """update() returns the new state and stamps updated_at."""
        [row] = await table_store.insert("projects", [project("A")])

        [updated] = await table_store.update(
            "projects", {"status": "Completed", "tags": ["done"]}, [eq("id", row["id"])]
        )

        assert updated["status"] == "Completed"
        assert updated["tags"] == ["done"]
        assert updated["updated_at"] >= row["updated_at"]
        [fetched] = await table_store.select("projects", where=[eq("id", row["id"])])
        assert fetched["status"] == "Completed"

    @pytest.mark.asyncio
    async def test_update_no_match(self, table_store):
        """Updating nothing returns an empty list."""
        assert await table_store.update("projects", {"status": "Completed"}, [eq("id", 99)]) == []

    @pytest.mark.asyncio
    async def test_refuses_unfiltered_writes(self, table_store):
        """update() and delete() need a filter."""
        with pytest.raises(StoreError):
            await table_store.update("projects", {"status": "Completed"}, [])
        with pytest.raises(StoreError):
            await table_store.delete("projects", [])

    @pytest.mark.asyncio
    async def test_refuses_key_update(self, table_store):
        """The key column is immutable."""
        with pytest.raises(StoreError):
            await table_store.update("projects", {"id": 5}, [eq("id", 1)])

    @pytest.mark.asyncio
    async def test_delete_returns_old_rows(self, table_store):
        """delete() returns what it removed."""
        await table_store.insert(
            "project_images",
            [
                {"project_id": 1, "image_url": "a.png", "is_primary": True},
                {"project_id": 1, "image_url": "b.png"},
                {"project_id": 2, "image_url": "c.png", "is_primary": True},
            ],
        )

        removed = await table_store.delete("project_images", [eq("project_id", 1)])

        assert sorted(r["image_url"] for r in removed) == ["a.png", "b.png"]
        assert await table_store.count("project_images") == 1


class TestChangeEvents:
    """Tests for published change events."""

    @pytest.mark.asyncio
    async def test_one_event_per_row(self, table_store, feed):
        """insert, update and delete each publish per affected row."""
        [a, b] = await table_store.insert("projects", [project("A"), project("B")])
        await table_store.update("projects", {"status": "Completed"}, [eq("id", a["id"])])
        await table_store.delete("projects", [in_("id", [a["id"], b["id"]])])

        published = events(feed, "projects")
        assert [e.operation for e in published] == [
            Operation.INSERT,
            Operation.INSERT,
            Operation.UPDATE,
            Operation.DELETE,
            Operation.DELETE,
        ]
        update = published[2]
        assert update.old_row["status"] == "Active"
        assert update.new_row["status"] == "Completed"
        assert published[3].new_row is None
        assert published[3].row["id"] == a["id"]

    @pytest.mark.asyncio
    async def test_failed_write_publishes_nothing(self, table_store, feed):
        """Rejected writes emit no events."""
        before = len(events(feed))
        with pytest.raises(StoreError):
            await table_store.update("projects", {"status": "Completed"}, [])

        assert len(events(feed)) == before

    @pytest.mark.asyncio
    async def test_feed_outage_does_not_fail_write(self, table_store, feed):
        """A closed feed is logged, the row write still succeeds."""
        await feed.close()

        [row] = await table_store.insert("projects", [project("A")])

        assert row["id"]


class TestInMemoryHelpers:
    """Tests for in-memory failure injection."""

    @pytest.mark.asyncio
    async def test_fail_next(self):
        """fail_next() fails exactly the requested calls."""
        store = InMemoryTableStore()
        await store.initialize()
        store.fail_next("projects", "insert", times=2)

        for _ in range(2):
            with pytest.raises(StoreError):
                await store.insert("projects", [project("A")])
        await store.insert("projects", [project("A")])

        assert len(store.get_rows("projects")) == 1

    @pytest.mark.asyncio
    async def test_custom_error(self):
        """A specific exception can be injected."""
        store = InMemoryTableStore()
        store.fail_next("projects", "select", error=UniqueViolation("boom"))

        with pytest.raises(UniqueViolation):
            await store.select("projects")

    @pytest.mark.asyncio
    async def test_put_row_bypasses_constraints(self):
        """put_row() writes rows the constraints would reject."""
        store = InMemoryTableStore()
        store.put_row("project_images", {"project_id": 1, "image_url": "a", "is_primary": True})
        store.put_row("project_images", {"project_id": 1, "image_url": "b", "is_primary": True})

        assert len(await store.select("project_images", where=[eq("is_primary", True)])) == 2
