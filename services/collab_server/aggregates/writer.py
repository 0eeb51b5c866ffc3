"""
Aggregate writes as explicit sagas.

The store offers single-table calls only, so one logical create, update
or delete is a fixed sequence of independent steps. Each step's outcome
is recorded; the first failure stops the sequence and is reported as a
PartialWriteFailure naming the failed step and every committed one.

    create:  authorize → validate → check collaborators → upload files
             → insert_root → clear_images → insert_images
             → clear_collaborators → insert_collaborators → reconcile_counter
    update:  load root → authorize → validate → check collaborators
             → upload files → update_root? → images? → collaborators?
             → reconcile_counter?
    delete:  load root → authorize → delete_images → delete_collaborators
             → delete_root

Invariants:
    - Authorization and validation (including collaborator ids and role
      names) complete before the first write; a failure there has no
      side effects
    - Images are normalized before they are written
    - The counter is written last, from the ids actually linked
    - Nothing is rolled back; retries converge because images and
      collaborators use replace semantics and create honors an
      idempotency key
    - Object removal after a replace is best-effort and never fails a write

How to change safely:
    - Add new steps through WriteSaga.step() so they are reported
    - Keep every validation before the first saga step
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ..authz import AuthorizationGate
from ..consistency import CounterReconciler, apply_primary_index, normalize
from ..errors import DependencyFailure, NotFoundError, PartialWriteFailure, ValidationFailed
from ..models import (
    MEMBER_ROLE,
    SPECS,
    Action,
    Aggregate,
    AggregateKind,
    AggregateSpec,
    CollaboratorInput,
    Image,
    ImageInput,
    get_spec,
)
from ..objects import ObjectStore, ObjectStoreError
from ..store import StoreError, TableStore, UniqueViolation, eq, in_
from ..validation import check_collaborator_inputs, validate_or_raise
from .reader import AggregateReader

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepStatus(Enum):
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    """Outcome of one saga step."""

    name: str
    status: StepStatus
    error: str | None = None


@dataclass
class WriteSaga:
    """Tracks the steps of one multi-step write.

    Attributes:
        operation: "create", "update", "delete", ...
        spec: Aggregate kind being written
        actor: Acting user
        aggregate_id: Root id, once known
        outcomes: Recorded step outcomes, in order
    """

    operation: str
    spec: AggregateSpec
    actor: str
    aggregate_id: int | None = None
    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def committed_steps(self) -> list[str]:
        return [o.name for o in self.outcomes if o.status is StepStatus.COMMITTED]

    async def step(self, name: str, action: Callable[[], Awaitable[T]]) -> T:
        """Run one step and record its outcome.

        Raises:
            PartialWriteFailure: If the step fails
        """
        try:
            result = await action()
        except StoreError as e:
            self.outcomes.append(StepOutcome(name, StepStatus.FAILED, str(e)))
            logger.error(
                f"Write step failed: {name}",
                extra={
                    "operation": self.operation,
                    "kind": self.spec.kind.value,
                    "aggregate_id": self.aggregate_id,
                    "actor": self.actor,
                    "failed_step": name,
                    "committed_steps": self.committed_steps,
                },
            )
            raise PartialWriteFailure(
                failed_step=name,
                committed_steps=self.committed_steps,
                aggregate_id=self.aggregate_id,
                cause=str(e),
            ) from e

        self.outcomes.append(StepOutcome(name, StepStatus.COMMITTED))
        logger.debug(
            f"Write step committed: {name}",
            extra={
                "operation": self.operation,
                "kind": self.spec.kind.value,
                "aggregate_id": self.aggregate_id,
            },
        )
        return result


@dataclass(frozen=True)
class ResolvedCollaborator:
    """A collaborator input checked against profiles and roles."""

    user_id: str
    role_id: int


def _as_collaborator_inputs(
    collaborators: Sequence[CollaboratorInput | str],
) -> list[CollaboratorInput]:
    return [
        c if isinstance(c, CollaboratorInput) else CollaboratorInput(user_id=c)
        for c in collaborators
    ]


class AggregateWriter:
    """Creates, updates and deletes aggregates.

    Example:
        >>> writer = AggregateWriter(store, gate, reader, objects)
        >>> project = await writer.create(
        ...     "user-42",
        ...     "project",
        ...     {"name": "Well", "start_date": "2024-03-01"},
        ...     images=[ImageInput(url="a.png"), ImageInput(url="b.png")],
        ...     collaborators=["user-7"],
        ... )
        >>> project.primary_image.url
        'a.png'
    """

    def __init__(
        self,
        store: TableStore,
        gate: AuthorizationGate,
        reader: AggregateReader,
        objects: ObjectStore | None = None,
        default_role: str = MEMBER_ROLE,
    ) -> None:
        self.store = store
        self.gate = gate
        self.reader = reader
        self.objects = objects
        self.default_role = default_role
        self.counter = CounterReconciler(store)

    # Pre-write checks (no side effects)

    async def _resolve_collaborators(
        self,
        collaborators: Sequence[CollaboratorInput | str],
    ) -> list[ResolvedCollaborator]:
        """Check every collaborator id and role before anything is written.

        Raises:
            ValidationFailed: Unknown user id, unknown role or duplicate id
            DependencyFailure: If profiles or roles cannot be fetched
        """
        inputs = _as_collaborator_inputs(collaborators)
        check_collaborator_inputs(inputs)
        if not inputs:
            return []

        profiles = await self.reader.load_profiles(c.user_id for c in inputs)
        unknown = [c.user_id for c in inputs if c.user_id not in profiles]
        if unknown:
            raise ValidationFailed(
                f"Unknown collaborator ids: {', '.join(unknown)}",
                field_name="collaborators",
                invalid_ids=unknown,
            )

        role_ids = await self.gate.resolver.role_ids()
        resolved = []
        for c in inputs:
            role_name = c.role or self.default_role
            if role_name not in role_ids:
                raise ValidationFailed(
                    f"Unknown role: {role_name}",
                    field_name="role",
                    errors=[f"Role '{role_name}' does not exist; known roles: {sorted(role_ids)}"],
                )
            resolved.append(ResolvedCollaborator(c.user_id, role_ids[role_name]))
        return resolved

    def _check_image_inputs(self, images: Sequence[ImageInput]) -> None:
        for i, image in enumerate(images):
            if image.needs_upload:
                if not image.filename or image.content is None:
                    raise ValidationFailed(
                        f"Image {i} needs either a url or a filename with content",
                        field_name="images",
                    )
                if self.objects is None:
                    raise ValidationFailed(
                        "Image upload is not configured; supply image URLs",
                        field_name="images",
                    )

    def _check_primary_index(
        self,
        images: Sequence[ImageInput] | None,
        primary_index: int | None,
    ) -> None:
        if primary_index is None:
            return
        if images is None:
            raise ValidationFailed(
                "primary_index needs an images list", field_name="primary_index"
            )
        if not 0 <= primary_index < len(images):
            raise ValidationFailed(
                f"primary_index {primary_index} is out of range for {len(images)} images",
                field_name="primary_index",
            )

    async def _upload_images(
        self,
        spec: AggregateSpec,
        images: Sequence[ImageInput],
        primary_index: int | None,
    ) -> list[Image]:
        """Upload file inputs and return the normalized image list.

        Raises:
            DependencyFailure: If an upload fails (earlier uploads are removed)
        """
        uploaded: list[str] = []
        resolved: list[Image] = []
        for image in images:
            url = image.url
            if image.needs_upload:
                try:
                    path = await self.objects.upload(
                        f"{spec.kind.value}-images", image.filename, image.content
                    )
                except ObjectStoreError as e:
                    await self._remove_objects(uploaded)
                    raise DependencyFailure(
                        f"Image upload failed: {e}", dependency="object_store"
                    ) from e
                uploaded.append(path)
                url = self.objects.public_url(path)
            resolved.append(Image(url=url, is_primary=image.is_primary))
        return normalize(apply_primary_index(resolved, primary_index))

    async def _remove_objects(self, paths: Sequence[str]) -> None:
        if not paths or self.objects is None:
            return
        try:
            await self.objects.remove(list(paths))
        except ObjectStoreError as e:
            logger.warning(
                f"Failed to delete some images from storage: {e}",
                extra={"paths": list(paths)},
            )

    async def _remove_unreferenced(self, old_urls: Sequence[str], kept_urls: Sequence[str]) -> None:
        """Remove stored objects for URLs no images row references any more."""
        if self.objects is None:
            return
        kept = set(kept_urls)
        candidates = {
            url for url in old_urls if url not in kept and self.objects.path_for_url(url)
        }
        if not candidates:
            return

        try:
            for spec in SPECS.values():
                rows = await self.store.select(
                    spec.images_table, where=[in_("image_url", candidates)]
                )
                candidates -= {row["image_url"] for row in rows}
        except StoreError as e:
            logger.warning(
                f"Skipping image cleanup, reference check failed: {e}",
                extra={"urls": sorted(candidates)},
            )
            return

        await self._remove_objects([self.objects.path_for_url(url) for url in sorted(candidates)])

    # Relation steps

    async def _replace_images(
        self,
        saga: WriteSaga,
        spec: AggregateSpec,
        aggregate_id: int,
        images: Sequence[Image],
    ) -> list[dict[str, Any]]:
        old_rows = await saga.step(
            "clear_images",
            lambda: self.store.delete(spec.images_table, [eq(spec.foreign_key, aggregate_id)]),
        )
        rows = [
            {spec.foreign_key: aggregate_id, "image_url": image.url, "is_primary": image.is_primary}
            for image in normalize(images)
        ]
        await saga.step("insert_images", lambda: self.store.insert(spec.images_table, rows))
        return old_rows

    async def _replace_collaborators(
        self,
        saga: WriteSaga,
        spec: AggregateSpec,
        aggregate_id: int,
        collaborators: Sequence[ResolvedCollaborator],
    ) -> None:
        table = spec.collaborators_table
        await saga.step(
            "clear_collaborators",
            lambda: self.store.delete(table, [eq(spec.foreign_key, aggregate_id)]),
        )
        rows = [
            {spec.foreign_key: aggregate_id, "user_id": c.user_id, "role_id": c.role_id}
            for c in collaborators
        ]
        await saga.step("insert_collaborators", lambda: self.store.insert(table, rows))
        await saga.step(
            "reconcile_counter",
            lambda: self.counter.reconcile(spec, aggregate_id, (c.user_id for c in collaborators)),
        )

    # Operations

    async def create(
        self,
        actor: str,
        kind: AggregateKind | str,
        fields: dict[str, Any],
        images: Sequence[ImageInput] | None = None,
        primary_index: int | None = None,
        collaborators: Sequence[CollaboratorInput | str] | None = None,
        idempotency_key: str | None = None,
    ) -> Aggregate:
        """Create an aggregate.

        Raises:
            AuthorizationDenied: Actor lacks Admin or the manager role
            ValidationFailed: Bad fields, images or collaborators (no writes)
            DependencyFailure: Lookup or upload failed (no row writes)
            PartialWriteFailure: A write step failed after others committed
        """
        spec = get_spec(kind)
        images = list(images or [])
        collaborators = list(collaborators or [])

        await self.gate.require(actor, Action.CREATE, spec.kind)
        validate_or_raise(spec, fields)
        self._check_image_inputs(images)
        self._check_primary_index(images, primary_index)
        resolved = await self._resolve_collaborators(collaborators)

        existing = None
        if idempotency_key:
            existing = await self._find_by_request_key(spec, actor, idempotency_key)

        normalized = await self._upload_images(spec, images, primary_index)

        saga = WriteSaga("create", spec, actor)
        if existing is not None:
            saga.aggregate_id = existing["id"]
            logger.info(
                "Retrying create on existing root",
                extra={"kind": spec.kind.value, "aggregate_id": saga.aggregate_id},
            )
        else:
            root = {
                "status": spec.default_status,
                **fields,
                spec.counter_field: 0,
                "owner_id": actor,
                "request_key": idempotency_key,
            }
            try:
                inserted = await saga.step(
                    "insert_root", lambda: self.store.insert(spec.table, [root])
                )
            except PartialWriteFailure as e:
                if idempotency_key and isinstance(e.__cause__, UniqueViolation):
                    # Lost a race with a concurrent create using the same key
                    existing = await self._find_by_request_key(spec, actor, idempotency_key)
                if existing is None:
                    raise
                inserted = [existing]
                saga.outcomes.clear()
            saga.aggregate_id = inserted[0]["id"]

        old_images = await self._replace_images(saga, spec, saga.aggregate_id, normalized)
        await self._replace_collaborators(saga, spec, saga.aggregate_id, resolved)
        await self._remove_unreferenced(
            [row["image_url"] for row in old_images], [image.url for image in normalized]
        )

        logger.info(
            "Aggregate created",
            extra={
                "kind": spec.kind.value,
                "aggregate_id": saga.aggregate_id,
                "actor": actor,
                "images": len(normalized),
                "collaborators": len(resolved),
            },
        )
        return await self.reader.fetch(spec, saga.aggregate_id)

    async def _find_by_request_key(
        self,
        spec: AggregateSpec,
        actor: str,
        idempotency_key: str,
    ) -> dict[str, Any] | None:
        try:
            rows = await self.store.select(spec.table, where=[eq("request_key", idempotency_key)])
        except StoreError as e:
            raise DependencyFailure(f"Idempotency lookup failed: {e}", dependency=spec.table) from e
        if not rows:
            return None
        if rows[0].get("owner_id") != actor:
            raise ValidationFailed(
                "Idempotency key already used by another actor",
                field_name="idempotency_key",
            )
        return rows[0]

    async def update(
        self,
        actor: str,
        kind: AggregateKind | str,
        aggregate_id: int,
        fields: dict[str, Any] | None = None,
        images: Sequence[ImageInput] | None = None,
        primary_index: int | None = None,
        collaborators: Sequence[CollaboratorInput | str] | None = None,
    ) -> Aggregate:
        """Update an aggregate in place.

        Omitting images or collaborators (None) leaves that relation
        untouched; an empty list clears it.

        Raises:
            NotFoundError: Root does not exist
            AuthorizationDenied: Actor is not Admin, manager role, owner or manager
            ValidationFailed: Bad fields, images or collaborators (no writes)
            DependencyFailure: Lookup or upload failed (no row writes)
            PartialWriteFailure: A write step failed after others committed
        """
        spec = get_spec(kind)
        fields = fields or {}

        root = await self.reader.fetch_root(spec, aggregate_id)
        await self.gate.require(actor, Action.UPDATE, spec.kind, root)
        validate_or_raise(spec, fields, existing=root)
        self._check_primary_index(images, primary_index)
        if images is not None:
            self._check_image_inputs(images)
        resolved = None
        if collaborators is not None:
            resolved = await self._resolve_collaborators(collaborators)

        normalized = None
        if images is not None:
            normalized = await self._upload_images(spec, images, primary_index)

        saga = WriteSaga("update", spec, actor, aggregate_id=aggregate_id)
        if fields:
            await saga.step(
                "update_root",
                lambda: self.store.update(spec.table, dict(fields), [eq("id", aggregate_id)]),
            )

        if normalized is not None:
            old_rows = await self._replace_images(saga, spec, aggregate_id, normalized)
            await self._remove_unreferenced(
                [row["image_url"] for row in old_rows], [image.url for image in normalized]
            )

        if resolved is not None:
            await self._replace_collaborators(saga, spec, aggregate_id, resolved)

        logger.info(
            "Aggregate updated",
            extra={
                "kind": spec.kind.value,
                "aggregate_id": aggregate_id,
                "actor": actor,
                "steps": saga.committed_steps,
            },
        )
        return await self.reader.fetch(spec, aggregate_id)

    async def delete(self, actor: str, kind: AggregateKind | str, aggregate_id: int) -> None:
        """Delete images, then collaborator links, then the root.

        Raises:
            NotFoundError: Root does not exist
            AuthorizationDenied: Actor is not Admin, manager role or owner
            PartialWriteFailure: A delete step failed after others committed
        """
        spec = get_spec(kind)
        root = await self.reader.fetch_root(spec, aggregate_id)
        await self.gate.require(actor, Action.DELETE, spec.kind, root)

        saga = WriteSaga("delete", spec, actor, aggregate_id=aggregate_id)
        old_images = await saga.step(
            "delete_images",
            lambda: self.store.delete(spec.images_table, [eq(spec.foreign_key, aggregate_id)]),
        )
        await saga.step(
            "delete_collaborators",
            lambda: self.store.delete(
                spec.collaborators_table, [eq(spec.foreign_key, aggregate_id)]
            ),
        )
        await saga.step(
            "delete_root", lambda: self.store.delete(spec.table, [eq("id", aggregate_id)])
        )

        await self._remove_unreferenced([row["image_url"] for row in old_images], [])
        logger.info(
            "Aggregate deleted",
            extra={"kind": spec.kind.value, "aggregate_id": aggregate_id, "actor": actor},
        )

    async def add_collaborator(
        self,
        actor: str,
        kind: AggregateKind | str,
        aggregate_id: int,
        user_id: str,
        role: str | None = None,
    ) -> Aggregate:
        """Link one collaborator, then recount.

        Raises:
            NotFoundError: Root does not exist
            AuthorizationDenied: Actor may not update the aggregate
            ValidationFailed: Unknown user or role, or already a collaborator
            PartialWriteFailure: The link or counter write failed
        """
        spec = get_spec(kind)
        root = await self.reader.fetch_root(spec, aggregate_id)
        await self.gate.require(actor, Action.UPDATE, spec.kind, root)
        [resolved] = await self._resolve_collaborators([CollaboratorInput(user_id, role)])

        saga = WriteSaga("add_collaborator", spec, actor, aggregate_id=aggregate_id)
        row = {
            spec.foreign_key: aggregate_id,
            "user_id": resolved.user_id,
            "role_id": resolved.role_id,
        }
        try:
            await saga.step(
                "insert_collaborator",
                lambda: self.store.insert(spec.collaborators_table, [row]),
            )
        except PartialWriteFailure as e:
            if isinstance(e.__cause__, UniqueViolation):
                raise ValidationFailed(
                    f"{user_id} is already a collaborator",
                    field_name="user_id",
                    invalid_ids=[user_id],
                ) from e
            raise
        await saga.step("reconcile_counter", lambda: self.counter.recount(spec, aggregate_id))
        return await self.reader.fetch(spec, aggregate_id)

    async def remove_collaborator(
        self,
        actor: str,
        kind: AggregateKind | str,
        aggregate_id: int,
        user_id: str,
    ) -> Aggregate:
        """Unlink one collaborator, then recount.

        Raises:
            NotFoundError: Root absent, or user is not a collaborator
            AuthorizationDenied: Actor may not update the aggregate
            PartialWriteFailure: The unlink or counter write failed
        """
        spec = get_spec(kind)
        root = await self.reader.fetch_root(spec, aggregate_id)
        await self.gate.require(actor, Action.UPDATE, spec.kind, root)

        saga = WriteSaga("remove_collaborator", spec, actor, aggregate_id=aggregate_id)
        removed = await saga.step(
            "delete_collaborator",
            lambda: self.store.delete(
                spec.collaborators_table,
                [eq(spec.foreign_key, aggregate_id), eq("user_id", user_id)],
            ),
        )
        if not removed:
            raise NotFoundError(
                f"{user_id} is not a collaborator on {spec.kind.value} {aggregate_id}",
                resource_type="collaborator",
                resource_id=user_id,
            )
        await saga.step("reconcile_counter", lambda: self.counter.recount(spec, aggregate_id))
        return await self.reader.fetch(spec, aggregate_id)
