"""
FastAPI route: alert broadcasting endpoints.

Provides endpoints to:
    POST   /api/v1/alerts                            — create + schedule an alert
    GET    /api/v1/alerts                            — list alerts (paged, newest first)
    GET    /api/v1/alerts/{id}                       — alert status and delivery stats
    DELETE /api/v1/alerts/{id}                       — delete an alert (author only)
    GET    /api/v1/alerts/audiences/{audience}/users — users behind a role audience

Callers are authenticated upstream; the administrator id arrives in the
X-Admin-Id header.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from pydantic import BaseModel, Field

from backend.app.alerts.container import PipelineContainer
from backend.app.alerts.models import Alert
from backend.app.core.errors import AlertPipelineError

router = APIRouter(prefix="/api/v1/alerts", tags=["alert-broadcasting"])


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class BlockInput(BaseModel):
    """One message payload. Only the first block is delivered."""
    title: str = Field("", max_length=500, examples=["Service update"])
    body: str = Field("", max_length=4000, examples=["Airport pickups resume at 18:00."])
    data: Dict[str, Any] = Field(default_factory=dict)


class CreateAlertRequest(BaseModel):
    audience: str = Field(
        "all", examples=["drivers"],
        description="all / drivers / passengers / custom",
    )
    recipients: List[str] = Field(
        default_factory=list,
        description="Explicit user ids; when given the audience becomes custom",
    )
    blocks: List[BlockInput] = Field(default_factory=list)


class CreateAlertResponse(BaseModel):
    alert_id: str
    status: str
    audience: str


class AlertResponse(BaseModel):
    id: str
    created_by: str
    audience: str
    recipients: List[str]
    blocks: List[Dict[str, Any]]
    status: str
    stats: Dict[str, int]
    created_at: str
    updated_at: str


class AlertPageResponse(BaseModel):
    items: List[AlertResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class AudienceUser(BaseModel):
    id: str
    roles: List[str]
    has_device_token: bool


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_container(request: Request) -> PipelineContainer:
    return request.app.state.container


def get_admin_id(x_admin_id: Optional[str] = Header(None, alias="X-Admin-Id")) -> str:
    if not x_admin_id or not x_admin_id.strip():
        raise AlertPipelineError(
            "Missing administrator identity",
            status_code=401,
            error_code="UNAUTHENTICATED",
        )
    return x_admin_id.strip()


def _to_response(alert: Alert) -> AlertResponse:
    d = alert.to_dict()
    d.pop("metadata", None)
    return AlertResponse(**d)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=CreateAlertResponse,
    status_code=202,
    summary="Create an alert and schedule its delivery",
)
async def create_alert(
    body: CreateAlertRequest,
    admin_id: str = Depends(get_admin_id),
    container: PipelineContainer = Depends(get_container),
):
    alert = await container.service.create_and_schedule(
        admin_id,
        body.audience,
        body.recipients,
        [b.model_dump() for b in body.blocks],
    )
    return CreateAlertResponse(
        alert_id=alert.id,
        status=alert.status.value,
        audience=alert.audience.value,
    )


@router.get(
    "",
    response_model=AlertPageResponse,
    summary="List alerts, newest first",
)
async def list_alerts(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    from_date: Optional[datetime] = Query(None),
    to_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    mine: bool = Query(False, description="Only alerts created by the caller"),
    admin_id: str = Depends(get_admin_id),
    container: PipelineContainer = Depends(get_container),
):
    result = await container.service.list_alerts(
        created_by=admin_id if mine else None,
        from_date=from_date,
        to_date=to_date,
        search=search,
        page=page,
        limit=limit,
    )
    return AlertPageResponse(
        items=[_to_response(a) for a in result["items"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
        total_pages=result["total_pages"],
    )


@router.get(
    "/audiences/{audience}/users",
    response_model=List[AudienceUser],
    summary="Users targeted by a role-based audience",
)
async def list_audience_users(
    audience: str,
    admin_id: str = Depends(get_admin_id),
    container: PipelineContainer = Depends(get_container),
):
    users = await container.service.list_users_by_audience(audience)
    return [
        AudienceUser(id=u.id, roles=sorted(u.roles), has_device_token=u.has_device_token)
        for u in users
    ]


@router.get(
    "/{alert_id}",
    response_model=AlertResponse,
    summary="Alert status and delivery stats",
)
async def get_alert(
    alert_id: str,
    admin_id: str = Depends(get_admin_id),
    container: PipelineContainer = Depends(get_container),
):
    return _to_response(await container.service.get_alert(alert_id))


@router.delete(
    "/{alert_id}",
    status_code=204,
    summary="Delete an alert (author only)",
)
async def delete_alert(
    alert_id: str,
    admin_id: str = Depends(get_admin_id),
    container: PipelineContainer = Depends(get_container),
):
    await container.service.delete_alert(alert_id, admin_id)
    return Response(status_code=204)
