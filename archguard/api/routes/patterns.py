"""API routes for detection pattern administration.

Endpoints
---------
GET    /v1/patterns              list every pattern in registration order
POST   /v1/patterns              add a custom pattern (``409`` on duplicate name)
PATCH  /v1/patterns/{name}       enable or disable a pattern
DELETE /v1/patterns/{name}       remove a custom pattern (``409`` for built-ins)
POST   /v1/patterns/preview      try a regex against sample text without saving it

Changes apply to jobs that start detecting after the change; a detection pass
already running keeps the pattern set it started with.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from archguard.api.dependencies import get_runtime
from archguard.core.patterns import (
    BuiltinPatternError,
    DuplicateNameError,
    InvalidPatternError,
    NotFoundError,
    preview_matches,
)
from archguard.runtime import Runtime
from archguard.schemas.patterns import (
    PatternCreate,
    PatternOut,
    PatternUpdate,
    PreviewMatch,
    PreviewOut,
    PreviewRequest,
)

router = APIRouter(prefix="/v1/patterns", tags=["patterns"])


@router.get("", response_model=list[PatternOut])
async def list_patterns(runtime: Runtime = Depends(get_runtime)) -> list[PatternOut]:
    return [PatternOut.from_pattern(p) for p in runtime.registry.all_patterns()]


@router.post("", response_model=PatternOut, status_code=status.HTTP_201_CREATED)
async def create_pattern(body: PatternCreate, runtime: Runtime = Depends(get_runtime)) -> PatternOut:
    try:
        pattern = runtime.registry.add_custom(
            body.name,
            body.pattern,
            body.category,
            description=body.description,
            severity=body.severity,
            enabled=body.enabled,
        )
    except InvalidPatternError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except DuplicateNameError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return PatternOut.from_pattern(pattern)


@router.post("/preview", response_model=PreviewOut)
async def preview_pattern(body: PreviewRequest) -> PreviewOut:
    try:
        matches = preview_matches(body.pattern, body.text)
    except InvalidPatternError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return PreviewOut(count=len(matches), matches=[PreviewMatch(match=m, index=i) for m, i in matches])


@router.patch("/{name:path}", response_model=PatternOut)
async def update_pattern(name: str, body: PatternUpdate, runtime: Runtime = Depends(get_runtime)) -> PatternOut:
    try:
        pattern = runtime.registry.set_enabled(name, body.enabled)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return PatternOut.from_pattern(pattern)


@router.delete("/{name:path}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pattern(name: str, runtime: Runtime = Depends(get_runtime)) -> Response:
    try:
        runtime.registry.remove(name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except BuiltinPatternError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
