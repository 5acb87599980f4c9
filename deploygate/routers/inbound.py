"""Inbound webhook receivers for external systems."""

import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from deploygate.dependencies import Services, get_services

router = APIRouter(prefix="/webhooks", tags=["inbound"])
logger = logging.getLogger(__name__)

_OTHER_METHODS = ["GET", "PUT", "PATCH", "DELETE"]


async def _receive(request: Request, services: Services, signature: str | None) -> JSONResponse:
    raw_body = await request.body()
    result = await services.inbound.handle_incoming(raw_body, signature)
    return JSONResponse(status_code=result.status_code, content=result.as_dict())


def _method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"success": False, "message": "Method not allowed"},
    )


@router.post("/approval-response")
async def approval_response(
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    services: Services = Depends(get_services),
):
    """Record an approve/reject decision sent by an external system."""
    return await _receive(request, services, x_webhook_signature)


@router.post("/deployment-status")
async def deployment_status(
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    services: Services = Depends(get_services),
):
    """Accept a deployment status update from a CI/CD system."""
    return await _receive(request, services, x_webhook_signature)


@router.api_route("/approval-response", methods=_OTHER_METHODS, include_in_schema=False)
@router.api_route("/deployment-status", methods=_OTHER_METHODS, include_in_schema=False)
async def inbound_method_not_allowed():
    return _method_not_allowed()
