"""
Domain model for the collaborative aggregates.

Projects and Events share one structure, so everything that differs between
them (table names, field names, the manager role) lives in an AggregateSpec.
Engine components never hard-code a table or column name; they ask the spec.

Invariants:
    - Each AggregateKind has exactly one AggregateSpec
    - Image and Collaborator values are immutable
    - Aggregate.member_count is derived from the collaborator list

How to change safely:
    - Adding a writable field means adding it to writable_fields and to the
      table definition in store/schema.py
    - Role names are persisted in the roles table; renaming one needs a
      data migration
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

ADMIN_ROLE = "Admin"
ORGANIZER_ROLE = "Organizer"
PROJECT_MANAGER_ROLE = "Project Manager"
MEMBER_ROLE = "Member"
VIEWER_ROLE = "Viewer"

# Seed rows for the roles table: (role_name, description)
DEFAULT_ROLES: tuple[tuple[str, str], ...] = (
    (ADMIN_ROLE, "Full access to every aggregate and to role administration"),
    (ORGANIZER_ROLE, "Creates and manages events"),
    (PROJECT_MANAGER_ROLE, "Creates and manages projects"),
    (MEMBER_ROLE, "Default collaborator role"),
    (VIEWER_ROLE, "Read-only collaborator role"),
)


class AggregateKind(Enum):
    """The two aggregate kinds managed by the engine."""

    PROJECT = "project"
    EVENT = "event"


class Action(Enum):
    """Actions checked by the AuthorizationGate."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE_ROLES = "manage_roles"


@dataclass(frozen=True)
class AggregateSpec:
    """Table and field metadata for one aggregate kind.

    Attributes:
        kind: Aggregate kind
        table: Root table name
        images_table: Image relation table name
        collaborators_table: Collaborator link table name
        foreign_key: Column in both relation tables pointing at the root id
        title_field: Required display name column
        start_field: Start of the date range (required)
        end_field: End of the date range (optional)
        counter_field: Denormalized membership counter column
        manager_field: Column naming the aggregate's manager, if any
        manager_role: Named role that may create and manage every aggregate
        writable_fields: Scalar columns a caller may set
        enum_fields: Allowed values for enumerated columns
        default_status: Status assigned when the caller omits one
    """

    kind: AggregateKind
    table: str
    images_table: str
    collaborators_table: str
    foreign_key: str
    title_field: str
    start_field: str
    end_field: str
    counter_field: str
    manager_field: str | None
    manager_role: str
    writable_fields: frozenset[str]
    enum_fields: tuple[tuple[str, tuple[str, ...]], ...]
    default_status: str

    @property
    def required_fields(self) -> tuple[str, ...]:
        """Fields that must be present on create."""
        return (self.title_field, self.start_field)

    def allowed_values(self, field_name: str) -> tuple[str, ...] | None:
        """Get the allowed values for an enumerated field, if it is one."""
        for name, values in self.enum_fields:
            if name == field_name:
                return values
        return None

    def relation_tables(self) -> tuple[str, str]:
        """Tables holding rows owned by this aggregate, in delete order."""
        return (self.images_table, self.collaborators_table)


PROJECT_SPEC = AggregateSpec(
    kind=AggregateKind.PROJECT,
    table="projects",
    images_table="project_images",
    collaborators_table="project_collaborators",
    foreign_key="project_id",
    title_field="name",
    start_field="start_date",
    end_field="end_date",
    counter_field="team_members_count",
    manager_field="project_manager_id",
    manager_role=PROJECT_MANAGER_ROLE,
    writable_fields=frozenset(
        {
            "name",
            "description",
            "status",
            "start_date",
            "end_date",
            "budget",
            "progress_percentage",
            "tags",
            "max_team_members",
            "is_archived",
            "project_type",
            "project_target",
            "project_target_type",
            "project_manager_id",
        }
    ),
    enum_fields=(
        ("status", ("Active", "Completed", "On Hold", "Cancelled")),
        ("project_type", ("Internal", "External")),
        ("project_target_type", ("Revenue", "Cost")),
    ),
    default_status="Active",
)

EVENT_SPEC = AggregateSpec(
    kind=AggregateKind.EVENT,
    table="events",
    images_table="event_images",
    collaborators_table="event_collaborators",
    foreign_key="event_id",
    title_field="title",
    start_field="start_time",
    end_field="end_time",
    counter_field="attendees_count",
    manager_field=None,
    manager_role=ORGANIZER_ROLE,
    writable_fields=frozenset(
        {
            "title",
            "description",
            "start_time",
            "end_time",
            "location",
            "status",
            "event_type",
            "tags",
            "max_attendees",
            "is_recurring",
            "recurrence_rule",
        }
    ),
    enum_fields=(
        ("status", ("Scheduled", "Ongoing", "Completed", "Cancelled")),
        ("event_type", ("Public", "Private", "Internal")),
    ),
    default_status="Scheduled",
)

SPECS: dict[AggregateKind, AggregateSpec] = {
    AggregateKind.PROJECT: PROJECT_SPEC,
    AggregateKind.EVENT: EVENT_SPEC,
}


def get_spec(kind: AggregateKind | str) -> AggregateSpec:
    """Look up the spec for a kind.

    Args:
        kind: AggregateKind or its string value ("project", "event")

    Returns:
        The matching AggregateSpec

    Raises:
        ValueError: If the kind is unknown
    """
    if isinstance(kind, str):
        kind = AggregateKind(kind)
    return SPECS[kind]


def spec_for_table(table: str) -> AggregateSpec | None:
    """Find the spec owning a table (root or relation)."""
    for spec in SPECS.values():
        if table in (spec.table, spec.images_table, spec.collaborators_table):
            return spec
    return None


@dataclass(frozen=True)
class Image:
    """An image attached to an aggregate."""

    url: str
    is_primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "is_primary": self.is_primary}


@dataclass(frozen=True)
class ImageInput:
    """Caller-supplied image: either an existing URL or a file to upload.

    Attributes:
        url: Public URL of an already-stored image
        filename: Name of a file to upload (requires content)
        content: File bytes to upload
        is_primary: Caller's primary flag (normalized before writing)
    """

    url: str | None = None
    filename: str | None = None
    content: bytes | None = field(default=None, repr=False)
    is_primary: bool = False

    @property
    def needs_upload(self) -> bool:
        return self.url is None


@dataclass(frozen=True)
class CollaboratorInput:
    """Caller-supplied collaborator; role defaults to Member when omitted."""

    user_id: str
    role: str | None = None


@dataclass(frozen=True)
class Collaborator:
    """A collaborator as materialized in the read-model."""

    user_id: str
    role_id: int | None
    role_name: str | None
    full_name: str = ""
    email: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "full_name": self.full_name,
            "email": self.email,
            "role_id": self.role_id,
            "role_name": self.role_name,
        }


@dataclass
class Aggregate:
    """Read-model of one Project or Event.

    Attributes:
        kind: Aggregate kind
        id: Root row id
        fields: All root columns, including owner and counter
        images: Normalized image list
        collaborators: Materialized collaborator details
    """

    kind: AggregateKind
    id: int
    fields: dict[str, Any]
    images: list[Image] = field(default_factory=list)
    collaborators: list[Collaborator] = field(default_factory=list)

    @property
    def spec(self) -> AggregateSpec:
        return SPECS[self.kind]

    @property
    def owner_id(self) -> str | None:
        return self.fields.get("owner_id")

    @property
    def manager_id(self) -> str | None:
        manager_field = self.spec.manager_field
        return self.fields.get(manager_field) if manager_field else None

    @property
    def member_count(self) -> int:
        return len(self.collaborators)

    @property
    def primary_image(self) -> Image | None:
        for image in self.images:
            if image.is_primary:
                return image
        return None

    def collaborator_ids(self) -> list[str]:
        return [c.user_id for c in self.collaborators]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        data = dict(self.fields)
        data["kind"] = self.kind.value
        data["id"] = self.id
        data["images"] = [image.to_dict() for image in self.images]
        data["collaborators"] = [c.to_dict() for c in self.collaborators]
        data["member_count"] = self.member_count
        return data
