"""
Integration tests for AggregateWriter.

Tests cover:
- Image normalization on create and update
- Counter reconciliation
- Ordered deletes
- Authorization and validation before any write
- Partial write reporting and idempotent retry
- Image uploads and cleanup
- Single collaborator add/remove
"""

import pytest

from services.collab_server.errors import (
    AuthorizationDenied,
    DependencyFailure,
    NotFoundError,
    PartialWriteFailure,
    ValidationFailed,
)
from services.collab_server.models import VIEWER_ROLE, CollaboratorInput, Image, ImageInput
from services.collab_server.objects import InMemoryObjectStore, ObjectStoreError
from services.collab_server.store import UniqueViolation, eq
from tests.conftest import ADMIN, ALICE, BOB, CAROL, EVE, GHOST, ORGANIZER, PM, build_engine

PROJECT = {"name": "Water Well", "start_date": "2024-03-01", "end_date": "2024-09-01"}
EVENT = {"title": "Launch", "start_time": "2024-05-01T18:00:00Z"}
BOTH_PRIMARY = [ImageInput(url="a.png", is_primary=True), ImageInput(url="b.png", is_primary=True)]


def urls(aggregate):
    return [(image.url, image.is_primary) for image in aggregate.images]


async def relation_rows(store, project_id):
    images = await store.select("project_images", where=[eq("project_id", project_id)])
    links = await store.select("project_collaborators", where=[eq("project_id", project_id)])
    return images, links


class TestCreate:
    """Tests for create()."""

    @pytest.mark.asyncio
    async def test_first_image_promoted(self, engine):
        """With no primary flagged, the first image becomes primary."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(url="a.png"), ImageInput(url="b.png")]
        )

        assert urls(project) == [("a.png", True), ("b.png", False)]

    @pytest.mark.asyncio
    async def test_only_first_primary_kept(self, engine):
        """Several primaries collapse to the first."""
        project = await engine.writer.create(
            PM,
            "project",
            PROJECT,
            images=BOTH_PRIMARY,
        )

        assert urls(project) == [("a.png", True), ("b.png", False)]
        images, _ = await relation_rows(engine.store, project.id)
        assert [row["is_primary"] for row in images] == [True, False]

    @pytest.mark.asyncio
    async def test_primary_index(self, engine):
        """primary_index picks the primary image."""
        project = await engine.writer.create(
            PM,
            "project",
            PROJECT,
            images=[ImageInput(url="a.png"), ImageInput(url="b.png")],
            primary_index=1,
        )

        assert project.primary_image == Image("b.png", True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("primary_index", [2, -1])
    async def test_primary_index_out_of_range(self, engine, primary_index):
        """primary_index must name one of the images."""
        with pytest.raises(ValidationFailed) as exc_info:
            await engine.writer.create(
                PM,
                "project",
                PROJECT,
                images=[ImageInput(url="a.png"), ImageInput(url="b.png")],
                primary_index=primary_index,
            )

        assert exc_info.value.field_name == "primary_index"
        assert engine.store.get_rows("projects") == []

    @pytest.mark.asyncio
    async def test_owner_and_counter(self, engine):
        """The actor owns the root and the counter matches the links."""
        project = await engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE, BOB])

        [root] = await engine.store.select("projects", where=[eq("id", project.id)])
        assert root["owner_id"] == PM
        assert root["team_members_count"] == 2
        assert project.member_count == 2
        assert sorted(project.collaborator_ids()) == [ALICE, BOB]
        assert {c.role_name for c in project.collaborators} == {"Member"}

    @pytest.mark.asyncio
    async def test_explicit_collaborator_role(self, engine):
        """A named role is linked as given."""
        project = await engine.writer.create(
            PM, "project", PROJECT, collaborators=[CollaboratorInput(ALICE, VIEWER_ROLE)]
        )

        assert project.collaborators[0].role_name == VIEWER_ROLE
        assert project.collaborators[0].full_name == "Alice Liddell"

    @pytest.mark.asyncio
    async def test_event_by_organizer(self, engine):
        """Organizers create events; project managers cannot."""
        event = await engine.writer.create(ORGANIZER, "event", EVENT, collaborators=[CAROL])

        assert event.fields["attendees_count"] == 1
        assert event.fields["status"] == "Scheduled"
        with pytest.raises(AuthorizationDenied):
            await engine.writer.create(PM, "event", EVENT)

    @pytest.mark.asyncio
    async def test_denied_without_role(self, engine):
        """Actors without Admin or the manager role cannot create."""
        with pytest.raises(AuthorizationDenied) as exc_info:
            await engine.writer.create(ALICE, "project", PROJECT)

        assert exc_info.value.reason == "missing_role"
        assert engine.store.get_rows("projects") == []

    @pytest.mark.asyncio
    async def test_invalid_fields_write_nothing(self, engine):
        """Field validation fails before the first write."""
        with pytest.raises(ValidationFailed):
            await engine.writer.create(PM, "project", {"start_date": "2024-03-01"})
        with pytest.raises(ValidationFailed):
            await engine.writer.create(PM, "project", {**PROJECT, "end_date": "2023-01-01"})

        assert engine.store.get_rows("projects") == []

    @pytest.mark.asyncio
    async def test_unknown_collaborator_writes_nothing(self, engine):
        """Unknown collaborator ids fail before anything is written."""
        before = engine.feed.get_record_count("collab-changes")

        with pytest.raises(ValidationFailed) as exc_info:
            await engine.writer.create(
                PM,
                "project",
                PROJECT,
                images=[ImageInput(url="a.png")],
                collaborators=[ALICE, GHOST],
            )

        assert exc_info.value.invalid_ids == [GHOST]
        assert engine.store.get_rows("projects") == []
        assert engine.store.get_rows("project_images") == []
        assert engine.feed.get_record_count("collab-changes") == before

    @pytest.mark.asyncio
    async def test_unknown_role_writes_nothing(self, engine):
        """Unknown role names fail before anything is written."""
        with pytest.raises(ValidationFailed):
            await engine.writer.create(
                PM, "project", PROJECT, collaborators=[CollaboratorInput(ALICE, "Overlord")]
            )

        assert engine.store.get_rows("projects") == []

    @pytest.mark.asyncio
    async def test_duplicate_collaborators_rejected(self, engine):
        """A collaborator listed twice is rejected."""
        with pytest.raises(ValidationFailed) as exc_info:
            await engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE, ALICE])

        assert exc_info.value.invalid_ids == [ALICE]


class TestPartialFailure:
    """Tests for saga failure reporting and retry."""

    @pytest.mark.asyncio
    async def test_failed_link_insert_is_reported(self, engine):
        """A failed step names itself and every committed step."""
        engine.store.fail_next("project_collaborators", "insert")

        with pytest.raises(PartialWriteFailure) as exc_info:
            await engine.writer.create(
                PM, "project", PROJECT, images=[ImageInput(url="a.png")], collaborators=[ALICE]
            )

        error = exc_info.value
        assert error.failed_step == "insert_collaborators"
        assert error.committed_steps == [
            "insert_root",
            "clear_images",
            "insert_images",
            "clear_collaborators",
        ]
        assert error.aggregate_id is not None
        assert error.has_committed
        assert error.to_dict()["error_code"] == "PARTIAL_WRITE_FAILURE"

        # Committed steps are not rolled back
        assert len(engine.store.get_rows("projects")) == 1
        assert len(engine.store.get_rows("project_images")) == 1
        assert engine.store.get_rows("project_collaborators") == []

    @pytest.mark.asyncio
    async def test_retry_with_idempotency_key_converges(self, engine):
        """Retrying with the same key completes the same aggregate."""
        engine.store.fail_next("project_collaborators", "insert")
        with pytest.raises(PartialWriteFailure) as exc_info:
            await engine.writer.create(
                PM,
                "project",
                PROJECT,
                images=[ImageInput(url="a.png")],
                collaborators=[ALICE, BOB],
                idempotency_key="req-1",
            )

        project = await engine.writer.create(
            PM,
            "project",
            PROJECT,
            images=[ImageInput(url="a.png")],
            collaborators=[ALICE, BOB],
            idempotency_key="req-1",
        )

        assert project.id == exc_info.value.aggregate_id
        assert len(engine.store.get_rows("projects")) == 1
        assert len(engine.store.get_rows("project_images")) == 1
        assert project.fields["team_members_count"] == 2

    @pytest.mark.asyncio
    async def test_idempotency_key_of_another_actor(self, engine):
        """A key owned by another actor is rejected."""
        await engine.writer.create(ADMIN, "project", PROJECT, idempotency_key="req-2")

        with pytest.raises(ValidationFailed):
            await engine.writer.create(PM, "project", PROJECT, idempotency_key="req-2")

    @pytest.mark.asyncio
    async def test_concurrent_create_with_same_key(self, engine, monkeypatch):
        """Losing the insert race on a key reuses the winner's root."""
        insert = engine.store.insert

        async def racing_insert(table, rows):
            if table == "projects" and not engine.store.get_rows("projects"):
                # A concurrent create with the same key commits first
                await insert(table, [dict(rows[0])])
                raise UniqueViolation("UNIQUE constraint failed: projects.request_key")
            return await insert(table, rows)

        monkeypatch.setattr(engine.store, "insert", racing_insert)

        project = await engine.writer.create(
            PM,
            "project",
            PROJECT,
            images=[ImageInput(url="a.png")],
            collaborators=[ALICE],
            idempotency_key="req-race",
        )

        [root] = engine.store.get_rows("projects")
        assert project.id == root["id"]
        assert root["request_key"] == "req-race"
        assert urls(project) == [("a.png", True)]
        assert project.collaborator_ids() == [ALICE]
        assert project.fields["team_members_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_counter_write(self, engine):
        """A counter failure leaves links written and is reported last."""
        project = await engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE])
        engine.store.fail_next("projects", "update")

        with pytest.raises(PartialWriteFailure) as exc_info:
            await engine.writer.update(PM, "project", project.id, collaborators=[ALICE, BOB])

        assert exc_info.value.failed_step == "reconcile_counter"
        assert "insert_collaborators" in exc_info.value.committed_steps
        # The read-model still derives the count from the links
        fetched = await engine.reader.get(PM, "project", project.id)
        assert fetched.member_count == 2


class TestUpdate:
    """Tests for update()."""

    @pytest.mark.asyncio
    async def test_empty_collaborators_zero_counter(self, engine):
        """An empty collaborator list clears links and zeroes the counter."""
        project = await engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE, BOB])

        updated = await engine.writer.update(PM, "project", project.id, collaborators=[])

        [root] = await engine.store.select("projects", where=[eq("id", project.id)])
        assert root["team_members_count"] == 0
        assert updated.member_count == 0
        _, links = await relation_rows(engine.store, project.id)
        assert links == []

    @pytest.mark.asyncio
    async def test_counter_corrected_regardless_of_prior_value(self, engine):
        """A drifted counter is overwritten from the linked ids."""
        project = await engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE])
        await engine.store.update("projects", {"team_members_count": 17}, [eq("id", project.id)])

        updated = await engine.writer.update(PM, "project", project.id, collaborators=[BOB, CAROL])

        assert updated.fields["team_members_count"] == 2

    @pytest.mark.asyncio
    async def test_omitted_relations_untouched(self, engine):
        """Field-only updates leave images and links alone."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(url="a.png")], collaborators=[ALICE]
        )

        updated = await engine.writer.update(
            PM, "project", project.id, {"name": "Deep Well", "status": "On Hold"}
        )

        assert updated.fields["name"] == "Deep Well"
        assert urls(updated) == [("a.png", True)]
        assert updated.collaborator_ids() == [ALICE]

    @pytest.mark.asyncio
    async def test_images_replaced_and_normalized(self, engine):
        """Supplied images replace the old set."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(url="a.png")]
        )

        updated = await engine.writer.update(
            PM,
            "project",
            project.id,
            images=[
                ImageInput(url="c.png", is_primary=True),
                ImageInput(url="d.png", is_primary=True),
            ],
        )

        assert urls(updated) == [("c.png", True), ("d.png", False)]

    @pytest.mark.asyncio
    async def test_who_may_update(self, engine):
        """Owner and manager may update; collaborators may not."""
        project = await engine.writer.create(
            ADMIN,
            "project",
            {**PROJECT, "project_manager_id": BOB},
            collaborators=[ALICE],
        )

        await engine.writer.update(BOB, "project", project.id, {"description": "by manager"})
        with pytest.raises(AuthorizationDenied) as exc_info:
            await engine.writer.update(ALICE, "project", project.id, {"description": "nope"})

        assert exc_info.value.reason == "not_owner_or_manager"
        fetched = await engine.reader.get(ADMIN, "project", project.id)
        assert fetched.fields["description"] == "by manager"

    @pytest.mark.asyncio
    async def test_primary_index_needs_images(self, engine):
        """primary_index without an images list is rejected, not ignored."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(url="a.png"), ImageInput(url="b.png")]
        )

        with pytest.raises(ValidationFailed) as exc_info:
            await engine.writer.update(PM, "project", project.id, primary_index=1)

        assert exc_info.value.field_name == "primary_index"
        fetched = await engine.reader.get(PM, "project", project.id)
        assert urls(fetched) == [("a.png", True), ("b.png", False)]

    @pytest.mark.asyncio
    async def test_missing_aggregate(self, engine):
        """Updating an absent aggregate is NotFound."""
        with pytest.raises(NotFoundError):
            await engine.writer.update(ADMIN, "project", 999, {"name": "x"})

    @pytest.mark.asyncio
    async def test_end_checked_against_stored_start(self, engine):
        """A new end date is compared with the stored start date."""
        project = await engine.writer.create(PM, "project", PROJECT)

        with pytest.raises(ValidationFailed):
            await engine.writer.update(PM, "project", project.id, {"end_date": "2024-01-01"})


class TestDelete:
    """Tests for delete()."""

    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, engine):
        """Images, links and root are removed; get() is then NotFound."""
        project = await engine.writer.create(
            PM,
            "project",
            PROJECT,
            images=[ImageInput(url="a.png"), ImageInput(url="b.png")],
            collaborators=[ALICE, BOB],
        )
        other = await engine.writer.create(PM, "project", PROJECT, images=[ImageInput(url="z.png")])

        await engine.writer.delete(PM, "project", project.id)

        assert await relation_rows(engine.store, project.id) == ([], [])
        with pytest.raises(NotFoundError):
            await engine.reader.get(PM, "project", project.id)
        assert urls(await engine.reader.get(PM, "project", other.id)) == [("z.png", True)]

    @pytest.mark.asyncio
    async def test_delete_publishes_each_row(self, engine):
        """Every deleted row is published on the feed."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(url="a.png")], collaborators=[ALICE]
        )
        start = engine.feed.get_record_count("collab-changes")

        await engine.writer.delete(PM, "project", project.id)

        records = engine.feed.get_all_records("collab-changes")
        assert len(records) == start + 3
        deleted_tables = {record.key for record in records}
        assert {"project_images", "project_collaborators", "projects"} <= deleted_tables

    @pytest.mark.asyncio
    async def test_non_owner_denied_and_nothing_changes(self, engine):
        """Outsiders and collaborators cannot delete."""
        project = await engine.writer.create(
            PM,
            "project",
            {**PROJECT, "project_manager_id": BOB},
            images=[ImageInput(url="a.png")],
            collaborators=[ALICE],
        )
        before = await relation_rows(engine.store, project.id)

        for actor in (EVE, ALICE, BOB):
            with pytest.raises(AuthorizationDenied):
                await engine.writer.delete(actor, "project", project.id)

        assert await relation_rows(engine.store, project.id) == before
        assert len(engine.store.get_rows("projects")) == 1

    @pytest.mark.asyncio
    async def test_failed_root_delete_is_reported(self, engine):
        """Relation deletes stay committed when the root delete fails."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(url="a.png")]
        )
        engine.store.fail_next("projects", "delete")

        with pytest.raises(PartialWriteFailure) as exc_info:
            await engine.writer.delete(PM, "project", project.id)

        assert exc_info.value.failed_step == "delete_root"
        assert exc_info.value.committed_steps == ["delete_images", "delete_collaborators"]

        # Retry completes
        await engine.writer.delete(PM, "project", project.id)
        assert engine.store.get_rows("projects") == []


class FlakyObjectStore(InMemoryObjectStore):
    """Fails the upload with the given call number."""

    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    async def upload(self, folder, filename, content, content_type=None):
        self.calls += 1
        if self.calls == self.fail_on:
            raise ObjectStoreError("bucket unavailable")
        return await super().upload(folder, filename, content, content_type)


class TestUploads:
    """Tests for image uploads through the writer."""

    @pytest.mark.asyncio
    async def test_files_uploaded_before_rows(self, engine):
        """File inputs are uploaded and referenced by public URL."""
        project = await engine.writer.create(
            PM,
            "project",
            PROJECT,
            images=[ImageInput(filename="site.png", content=b"png"), ImageInput(url="b.png")],
        )

        [path] = engine.objects.objects
        assert path.startswith("project-images/")
        assert urls(project) == [(engine.objects.public_url(path), True), ("b.png", False)]

    @pytest.mark.asyncio
    async def test_replaced_uploads_removed(self, engine):
        """Objects no longer referenced after an update are removed."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(filename="old.png", content=b"1")]
        )
        [old_url] = [image.url for image in project.images]

        await engine.writer.update(
            PM,
            "project",
            project.id,
            images=[ImageInput(url=old_url), ImageInput(filename="new.png", content=b"2")],
        )
        assert len(engine.objects.objects) == 2

        await engine.writer.update(PM, "project", project.id, images=[ImageInput(url="x.png")])
        assert engine.objects.objects == {}

    @pytest.mark.asyncio
    async def test_shared_upload_kept_on_delete(self, engine):
        """An object still referenced by another aggregate survives a delete."""
        first = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(filename="site.png", content=b"1")]
        )
        [shared_url] = [image.url for image in first.images]
        second = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(url=shared_url)]
        )
        event = await engine.writer.create(
            ORGANIZER, "event", EVENT, images=[ImageInput(url=shared_url)]
        )

        await engine.writer.delete(PM, "project", first.id)
        await engine.writer.update(PM, "project", second.id, images=[])

        assert engine.objects.path_for_url(shared_url) in engine.objects.objects

        await engine.writer.delete(ORGANIZER, "event", event.id)
        assert engine.objects.objects == {}

    @pytest.mark.asyncio
    async def test_cleanup_skipped_when_reference_check_fails(self, engine):
        """If references cannot be checked, objects are kept."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(filename="a.png", content=b"1")]
        )
        engine.store.fail_next("event_images", "select")

        await engine.writer.delete(PM, "project", project.id)

        assert engine.store.get_rows("projects") == []
        assert len(engine.objects.objects) == 1

    @pytest.mark.asyncio
    async def test_removal_failure_does_not_fail_write(self, engine):
        """Storage cleanup is best-effort."""
        project = await engine.writer.create(
            PM, "project", PROJECT, images=[ImageInput(filename="a.png", content=b"1")]
        )
        engine.objects.fail_removals = True

        await engine.writer.delete(PM, "project", project.id)

        assert engine.store.get_rows("projects") == []
        assert len(engine.objects.objects) == 1

    @pytest.mark.asyncio
    async def test_upload_failure_cleans_up(self, store, feed):
        """A failed upload removes earlier uploads and writes no rows."""
        objects = FlakyObjectStore(fail_on=2)
        engine = build_engine(store, feed, objects)

        with pytest.raises(DependencyFailure) as exc_info:
            await engine.writer.create(
                PM,
                "project",
                PROJECT,
                images=[
                    ImageInput(filename="a.png", content=b"1"),
                    ImageInput(filename="b.png", content=b"2"),
                ],
            )

        assert exc_info.value.dependency == "object_store"
        assert objects.objects == {}
        assert store.get_rows("projects") == []

    @pytest.mark.asyncio
    async def test_file_without_content_rejected(self, engine):
        """A file input needs content."""
        with pytest.raises(ValidationFailed):
            await engine.writer.create(
                PM, "project", PROJECT, images=[ImageInput(filename="a.png")]
            )


class TestCollaboratorEdits:
    """Tests for add_collaborator() and remove_collaborator()."""

    @pytest.mark.asyncio
    async def test_add_and_remove(self, engine):
        """Single edits keep the counter in step."""
        project = await engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE])

        added = await engine.writer.add_collaborator(PM, "project", project.id, BOB, VIEWER_ROLE)
        assert added.fields["team_members_count"] == 2
        assert {c.user_id: c.role_name for c in added.collaborators}[BOB] == VIEWER_ROLE

        removed = await engine.writer.remove_collaborator(PM, "project", project.id, ALICE)
        assert removed.collaborator_ids() == [BOB]
        assert removed.fields["team_members_count"] == 1

    @pytest.mark.asyncio
    async def test_add_existing_collaborator(self, engine):
        """Linking a user twice is a validation error."""
        project = await engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE])

        with pytest.raises(ValidationFailed) as exc_info:
            await engine.writer.add_collaborator(PM, "project", project.id, ALICE)

        assert exc_info.value.invalid_ids == [ALICE]

    @pytest.mark.asyncio
    async def test_add_unknown_user(self, engine):
        """Users without a profile cannot be linked."""
        project = await engine.writer.create(PM, "project", PROJECT)

        with pytest.raises(ValidationFailed):
            await engine.writer.add_collaborator(PM, "project", project.id, GHOST)

    @pytest.mark.asyncio
    async def test_remove_missing_collaborator(self, engine):
        """Removing a user who is not linked is NotFound."""
        project = await engine.writer.create(PM, "project", PROJECT)

        with pytest.raises(NotFoundError):
            await engine.writer.remove_collaborator(PM, "project", project.id, BOB)

    @pytest.mark.asyncio
    async def test_collaborator_cannot_add_others(self, engine):
        """Collaborator edits need update rights."""
        project = await engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE])

        with pytest.raises(AuthorizationDenied):
            await engine.writer.add_collaborator(ALICE, "project", project.id, BOB)


class TestSqliteBackend:
    """The writer over the SQLite store."""

    @pytest.mark.asyncio
    async def test_round_trip(self, sqlite_engine):
        """Create, read, update and delete against SQLite."""
        writer, reader = sqlite_engine.writer, sqlite_engine.reader

        project = await writer.create(
            PM,
            "project",
            {**PROJECT, "tags": ["water", "rural"], "budget": 1200.5},
            images=BOTH_PRIMARY,
            collaborators=[ALICE, BOB],
            idempotency_key="sqlite-1",
        )
        assert urls(project) == [("a.png", True), ("b.png", False)]
        assert project.fields["tags"] == ["water", "rural"]

        updated = await writer.update(PM, "project", project.id, collaborators=[])
        assert updated.fields["team_members_count"] == 0

        await writer.delete(PM, "project", project.id)
        with pytest.raises(NotFoundError):
            await reader.get(PM, "project", project.id)

    @pytest.mark.asyncio
    async def test_duplicate_link_against_sqlite(self, sqlite_engine):
        """The unique link constraint surfaces as a validation error."""
        project = await sqlite_engine.writer.create(PM, "project", PROJECT, collaborators=[ALICE])

        with pytest.raises(ValidationFailed):
            await sqlite_engine.writer.add_collaborator(PM, "project", project.id, ALICE)
