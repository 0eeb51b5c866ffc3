"""
Shared fixtures for Collab Server tests.

Users seeded by the ``store`` fixture:
    ADMIN      holds Admin
    PM         holds Project Manager
    ORGANIZER  holds Organizer
    ALICE, BOB, CAROL, EVE  hold no role
    GHOST      has no profile at all
"""

import tempfile
from dataclasses import dataclass

import pytest

from services.collab_server.aggregates import AggregateReader, AggregateWriter
from services.collab_server.authz import AuthorizationGate, RoleAdministrator, RoleResolver
from services.collab_server.feed import ChangePublisher, InMemoryFeedStream
from services.collab_server.models import ADMIN_ROLE, ORGANIZER_ROLE, PROJECT_MANAGER_ROLE
from services.collab_server.objects import InMemoryObjectStore
from services.collab_server.store import InMemoryTableStore, SqliteTableStore, eq

TOPIC = "collab-changes"

ADMIN = "user-admin"
PM = "user-pm"
ORGANIZER = "user-org"
ALICE = "user-alice"
BOB = "user-bob"
CAROL = "user-carol"
EVE = "user-eve"
GHOST = "user-ghost"

PROFILES = {
    ADMIN: ("Ada Admin", "ada@example.com"),
    PM: ("Pat Manager", "pat@example.com"),
    ORGANIZER: ("Olu Organizer", "olu@example.com"),
    ALICE: ("Alice Liddell", "alice@example.com"),
    BOB: ("Bob Builder", "bob@example.com"),
    CAROL: ("Carol Danvers", "carol@example.com"),
    EVE: ("Eve Outsider", "eve@example.com"),
}

GRANTS = {
    ADMIN: ADMIN_ROLE,
    PM: PROJECT_MANAGER_ROLE,
    ORGANIZER: ORGANIZER_ROLE,
}


async def grant(store, user_id: str, role_name: str) -> None:
    """Give a user a named role directly in the store."""
    [role] = await store.select("roles", where=[eq("role_name", role_name)])
    await store.insert("user_roles", [{"user_id": user_id, "role_id": role["id"]}])


async def seed_users(store) -> None:
    """Insert the standard profiles and role grants."""
    await store.insert(
        "profiles",
        [
            {"user_id": user_id, "full_name": name, "email": email}
            for user_id, (name, email) in PROFILES.items()
        ],
    )
    for user_id, role_name in GRANTS.items():
        await grant(store, user_id, role_name)


@dataclass
class Engine:
    """Wired engine components over one store."""

    store: InMemoryTableStore
    feed: InMemoryFeedStream
    objects: InMemoryObjectStore
    resolver: RoleResolver
    gate: AuthorizationGate
    reader: AggregateReader
    writer: AggregateWriter
    admin: RoleAdministrator


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def feed():
    """Connected in-memory change feed."""
    feed = InMemoryFeedStream(poll_interval=0.01)
    await feed.connect()
    yield feed
    await feed.close()


@pytest.fixture
async def store(feed):
    """In-memory store publishing to the feed, with seeded users."""
    store = InMemoryTableStore(publisher=ChangePublisher(feed, TOPIC))
    await store.initialize()
    await seed_users(store)
    return store


@pytest.fixture
async def sqlite_store(data_dir):
    """SQLite store with seeded users."""
    store = SqliteTableStore(data_dir, wal_mode=False)
    await store.initialize()
    await seed_users(store)
    return store


@pytest.fixture
def objects():
    """In-memory image store."""
    return InMemoryObjectStore()


def build_engine(store, feed, objects) -> Engine:
    resolver = RoleResolver(store)
    gate = AuthorizationGate(resolver)
    reader = AggregateReader(store, gate)
    return Engine(
        store=store,
        feed=feed,
        objects=objects,
        resolver=resolver,
        gate=gate,
        reader=reader,
        writer=AggregateWriter(store, gate, reader, objects=objects),
        admin=RoleAdministrator(store, gate),
    )


@pytest.fixture
def engine(store, feed, objects):
    """Engine over the in-memory store."""
    return build_engine(store, feed, objects)


@pytest.fixture
def sqlite_engine(sqlite_store, feed, objects):
    """Engine over the SQLite store."""
    return build_engine(sqlite_store, feed, objects)
