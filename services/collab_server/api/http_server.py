"""
HTTP server implementation for Collab Server.

This module exposes the aggregate engine as a REST API:
- List, get, create, update and delete Projects and Events
- Add and remove single collaborators
- Upload images (returns a public URL to put in an image list)
- Grant and revoke roles

Invariants:
    - Every aggregate route requires the X-Actor header
    - Request bodies are validated with pydantic before reaching the engine
    - Engine errors map to one status per error code, with body
      {"error", "error_code", "details"}

How to change safely:
    - Keep ERROR_STATUS in sync with errors.py
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from .._version import __version__
from ..aggregates import AggregateReader, AggregateWriter, ListFilter
from ..authz import RoleAdministrator
from ..config import HttpConfig
from ..errors import CollabError
from ..models import AggregateKind, CollaboratorInput, ImageInput, get_spec
from ..objects import ObjectStore, ObjectStoreError
from ..store import get_table

logger = logging.getLogger(__name__)

# URL segment -> aggregate kind
KIND_SEGMENTS: dict[str, AggregateKind] = {
    "projects": AggregateKind.PROJECT,
    "events": AggregateKind.EVENT,
}

ERROR_STATUS: dict[str, int] = {
    "AUTHORIZATION_DENIED": 403,
    "VALIDATION_FAILED": 400,
    "PARTIAL_WRITE_FAILURE": 500,
    "NOT_FOUND": 404,
    "DEPENDENCY_FAILURE": 503,
}


class ImageBody(BaseModel):
    """An image already stored (see POST /v1/uploads)."""

    url: str = Field(..., min_length=1, description="Public image URL")
    is_primary: bool = Field(False, description="Caller's primary flag")


class CollaboratorBody(BaseModel):
    """A collaborator with an optional role name."""

    user_id: str = Field(..., min_length=1)
    role: str | None = Field(None, description="Role name; defaults to Member")


class CreateAggregateRequest(BaseModel):
    """Create a Project or Event."""

    fields: dict[str, Any] = Field(..., description="Root fields")
    images: list[ImageBody] = Field(default_factory=list)
    primary_index: int | None = Field(None, description="Index of the primary image")
    collaborators: list[CollaboratorBody | str] = Field(default_factory=list)
    idempotency_key: str | None = Field(None, description="Makes retried creates safe")


class UpdateAggregateRequest(BaseModel):
    """Update a Project or Event; omitted relations are left untouched."""

    fields: dict[str, Any] = Field(default_factory=dict)
    images: list[ImageBody] | None = None
    primary_index: int | None = None
    collaborators: list[CollaboratorBody | str] | None = None


class AddCollaboratorRequest(BaseModel):
    """Add one collaborator."""

    user_id: str = Field(..., min_length=1)
    role: str | None = None


class RoleGrantRequest(BaseModel):
    """Grant a named role to a user."""

    user_id: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)


@dataclass
class ApiServices:
    """Engine components the HTTP handlers call into."""

    reader: AggregateReader
    writer: AggregateWriter
    admin: RoleAdministrator
    objects: ObjectStore | None = None
    health: Callable[[], Awaitable[dict[str, Any]]] | None = None


def _json_error(status: int, message: str, code: str, details: Any = None) -> web.Response:
    return web.json_response(
        {"error": message, "error_code": code, "details": details or {}},
        status=status,
    )


def create_http_app(services: ApiServices, config: HttpConfig | None = None) -> web.Application:
    """Create an HTTP application for Collab Server.

    Args:
        services: Engine components
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application(client_max_size=config.max_upload_bytes)

    def bind(handler: Callable[[web.Request, ApiServices], Awaitable[web.Response]]) -> Any:
        async def route(request: web.Request) -> web.Response:
            return await handler(request, services)

        return route

    app.router.add_get("/v1/health", bind(handle_health))
    app.router.add_post("/v1/uploads", bind(handle_upload))
    app.router.add_post("/v1/roles/grants", bind(handle_grant_role))
    app.router.add_delete("/v1/roles/grants/{user_id}/{role}", bind(handle_revoke_role))
    app.router.add_get("/v1/{kind}", bind(handle_list))
    app.router.add_post("/v1/{kind}", bind(handle_create))
    app.router.add_get("/v1/{kind}/{id}", bind(handle_get))
    app.router.add_patch("/v1/{kind}/{id}", bind(handle_update))
    app.router.add_delete("/v1/{kind}/{id}", bind(handle_delete))
    app.router.add_post("/v1/{kind}/{id}/collaborators", bind(handle_add_collaborator))
    app.router.add_delete(
        "/v1/{kind}/{id}/collaborators/{user_id}", bind(handle_remove_collaborator)
    )

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Actor, X-Trace-ID"

        return response

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except CollabError as e:
            status = ERROR_STATUS.get(e.code, 500)
            if status >= 500:
                logger.error(f"Request failed: {e}", extra={"path": request.path, "code": e.code})
            return web.json_response(e.to_dict(), status=status)
        except ValidationError as e:
            return _json_error(
                400,
                "Invalid request body",
                "VALIDATION_FAILED",
                {"errors": json.loads(e.json(include_url=False))},
            )
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return _json_error(500, str(e), "INTERNAL")

    app.middlewares.append(cors_middleware)
    app.middlewares.append(error_middleware)

    return app


def extract_actor(request: web.Request) -> str:
    """Extract the acting user from headers.

    Raises:
        web.HTTPBadRequest: If the X-Actor header is missing
    """
    actor = request.headers.get("X-Actor")
    if not actor:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "X-Actor header is required", "error_code": "BAD_REQUEST"}),
            content_type="application/json",
        )
    return actor


def _kind(request: web.Request) -> AggregateKind:
    segment = request.match_info["kind"]
    if segment not in KIND_SEGMENTS:
        raise web.HTTPNotFound(
            text=json.dumps({"error": f"Unknown resource: {segment}", "error_code": "NOT_FOUND"}),
            content_type="application/json",
        )
    return KIND_SEGMENTS[segment]


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": message, "error_code": "BAD_REQUEST"}),
        content_type="application/json",
    )


def _aggregate_id(request: web.Request) -> int:
    try:
        return int(request.match_info["id"])
    except ValueError:
        raise _bad_request("Aggregate id must be an integer") from None


async def _body(request: web.Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError:
        raise _bad_request("Invalid JSON body") from None


def _collaborator_inputs(items: list[CollaboratorBody | str]) -> list[CollaboratorInput]:
    return [
        CollaboratorInput(user_id=item)
        if isinstance(item, str)
        else CollaboratorInput(user_id=item.user_id, role=item.role)
        for item in items
    ]


def _image_inputs(items: list[ImageBody]) -> list[ImageInput]:
    return [ImageInput(url=item.url, is_primary=item.is_primary) for item in items]


def _list_filter(request: web.Request, kind: AggregateKind) -> ListFilter:
    query = request.query
    order_by = query.get("order_by", "created_at")
    if not get_table(get_spec(kind).table).has_column(order_by):
        raise _bad_request(f"Cannot order by unknown field '{order_by}'")

    ids = None
    if "ids" in query:
        try:
            ids = [int(x) for x in query["ids"].split(",") if x.strip()]
        except ValueError:
            raise _bad_request("ids must be a comma-separated list of integers") from None

    limit = None
    if "limit" in query:
        try:
            limit = int(query["limit"])
        except ValueError:
            raise _bad_request("limit must be an integer") from None
        if limit < 1:
            raise _bad_request("limit must be positive")

    return ListFilter(
        status=query.get("status"),
        owner_id=query.get("owner_id"),
        ids=ids,
        order_by=order_by,
        descending=query.get("descending", "true").lower() == "true",
        limit=limit,
    )


async def handle_health(request: web.Request, services: ApiServices) -> web.Response:
    """Handle GET /v1/health - Health check."""
    result = {"healthy": True, "version": __version__}
    if services.health is not None:
        result.update(await services.health())
    status = 200 if result.get("healthy") else 503
    return web.json_response(result, status=status)


async def handle_list(request: web.Request, services: ApiServices) -> web.Response:
    """Handle GET /v1/{kind} - List visible aggregates."""
    actor = extract_actor(request)
    kind = _kind(request)
    aggregates = await services.reader.list(actor, kind, _list_filter(request, kind))
    return web.json_response({"items": [a.to_dict() for a in aggregates], "count": len(aggregates)})


async def handle_get(request: web.Request, services: ApiServices) -> web.Response:
    """Handle GET /v1/{kind}/{id} - Get one aggregate."""
    actor = extract_actor(request)
    aggregate = await services.reader.get(actor, _kind(request), _aggregate_id(request))
    return web.json_response(aggregate.to_dict())


async def handle_create(request: web.Request, services: ApiServices) -> web.Response:
    """Handle POST /v1/{kind} - Create an aggregate."""
    actor = extract_actor(request)
    kind = _kind(request)
    body = CreateAggregateRequest.model_validate(await _body(request))

    aggregate = await services.writer.create(
        actor,
        kind,
        body.fields,
        images=_image_inputs(body.images),
        primary_index=body.primary_index,
        collaborators=_collaborator_inputs(body.collaborators),
        idempotency_key=body.idempotency_key,
    )
    return web.json_response(aggregate.to_dict(), status=201)


async def handle_update(request: web.Request, services: ApiServices) -> web.Response:
    """Handle PATCH /v1/{kind}/{id} - Update an aggregate."""
    actor = extract_actor(request)
    kind = _kind(request)
    aggregate_id = _aggregate_id(request)
    body = UpdateAggregateRequest.model_validate(await _body(request))

    aggregate = await services.writer.update(
        actor,
        kind,
        aggregate_id,
        fields=body.fields,
        images=_image_inputs(body.images) if body.images is not None else None,
        primary_index=body.primary_index,
        collaborators=(
            _collaborator_inputs(body.collaborators) if body.collaborators is not None else None
        ),
    )
    return web.json_response(aggregate.to_dict())


async def handle_delete(request: web.Request, services: ApiServices) -> web.Response:
    """Handle DELETE /v1/{kind}/{id} - Delete an aggregate."""
    actor = extract_actor(request)
    kind = _kind(request)
    aggregate_id = _aggregate_id(request)
    await services.writer.delete(actor, kind, aggregate_id)
    return web.json_response({"deleted": True, "kind": kind.value, "id": aggregate_id})


async def handle_add_collaborator(request: web.Request, services: ApiServices) -> web.Response:
    """Handle POST /v1/{kind}/{id}/collaborators - Add one collaborator."""
    actor = extract_actor(request)
    kind = _kind(request)
    aggregate_id = _aggregate_id(request)
    body = AddCollaboratorRequest.model_validate(await _body(request))

    aggregate = await services.writer.add_collaborator(
        actor, kind, aggregate_id, body.user_id, role=body.role
    )
    return web.json_response(aggregate.to_dict(), status=201)


async def handle_remove_collaborator(request: web.Request, services: ApiServices) -> web.Response:
    """Handle DELETE /v1/{kind}/{id}/collaborators/{user_id} - Remove one collaborator."""
    actor = extract_actor(request)
    kind = _kind(request)
    aggregate = await services.writer.remove_collaborator(
        actor, kind, _aggregate_id(request), request.match_info["user_id"]
    )
    return web.json_response(aggregate.to_dict())


async def handle_upload(request: web.Request, services: ApiServices) -> web.Response:
    """Handle POST /v1/uploads?kind=project&filename=site.png - Upload an image."""
    extract_actor(request)
    if services.objects is None:
        raise web.HTTPServiceUnavailable(
            text=json.dumps({"error": "Image uploads are not configured"}),
            content_type="application/json",
        )

    filename = request.query.get("filename")
    if not filename:
        raise _bad_request("filename query parameter is required")
    kind = request.query.get("kind", AggregateKind.PROJECT.value)
    if kind not in {k.value for k in AggregateKind}:
        raise _bad_request(f"Unknown kind '{kind}'")

    content = await request.read()
    if not content:
        raise _bad_request("Request body is empty")

    try:
        path = await services.objects.upload(
            f"{kind}-images", filename, content, content_type=request.content_type or None
        )
    except ObjectStoreError as e:
        return _json_error(
            503, f"Image upload failed: {e}", "DEPENDENCY_FAILURE", {"dependency": "object_store"}
        )
    return web.json_response({"path": path, "url": services.objects.public_url(path)}, status=201)


async def handle_grant_role(request: web.Request, services: ApiServices) -> web.Response:
    """Handle POST /v1/roles/grants - Grant a role (Admin only)."""
    actor = extract_actor(request)
    body = RoleGrantRequest.model_validate(await _body(request))
    granted = await services.admin.grant_role(actor, body.user_id, body.role)
    return web.json_response(
        {"user_id": body.user_id, "role": body.role, "granted": granted},
        status=201 if granted else 200,
    )


async def handle_revoke_role(request: web.Request, services: ApiServices) -> web.Response:
    """Handle DELETE /v1/roles/grants/{user_id}/{role} - Revoke a role (Admin only)."""
    actor = extract_actor(request)
    user_id = request.match_info["user_id"]
    role = request.match_info["role"]
    await services.admin.revoke_role(actor, user_id, role)
    return web.json_response({"user_id": user_id, "role": role, "revoked": True})

