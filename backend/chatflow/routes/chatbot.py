# /chatflow/routes/chatbot.py

from fastapi import APIRouter, Depends, HTTPException, Request
import structlog

from chatflow.config.settings import settings
from chatflow.dependencies.tenant import get_organization_id
from chatflow.models.api import APIResponse, FlowCreateRequest, FlowUpdateRequest, InboundMessage
from chatflow.models.flow import Flow
from chatflow.services.chatbot_service import ChatbotService
from chatflow.utils.dependencies import get_chatbot_service, verify_api_key
from chatflow.utils.rate_limiter import limiter
from chatflow.workflows.registry import describe, list_node_types

log = structlog.get_logger(__name__)

# Flow management for the flow editor plus the inbound message entry point
# used by the webhook ingestion layer. Every route is scoped to the
# organization named in the X-Organization-Id header.
router = APIRouter(
    prefix="/chatbot",
    tags=["Chatbot Flows"],
    dependencies=[Depends(verify_api_key)]
)


def _flow_data(flow: Flow) -> dict:
    return flow.model_dump(mode="json", by_alias=True)


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Flow not found")


@router.get("/flows", response_model=APIResponse)
async def list_flows(
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    flows = await service.list_flows(organization_id)
    return APIResponse(
        success=True,
        message=f"Retrieved {len(flows)} flows.",
        data={"flows": [_flow_data(f) for f in flows]},
        version=settings.api_version
    )


@router.get("/flows/{flow_id}", response_model=APIResponse)
async def get_flow(
    flow_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    flow = await service.get_flow(organization_id, flow_id)
    if flow is None:
        raise _not_found()
    return APIResponse(success=True, message="Flow retrieved.", data={"flow": _flow_data(flow)}, version=settings.api_version)


@router.post("/flows", response_model=APIResponse, status_code=201)
async def create_flow(
    body: FlowCreateRequest,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    """Creates an inactive flow holding only the start trigger node."""
    flow = await service.create_flow(organization_id, body)
    return APIResponse(success=True, message="Flow created.", data={"flow": _flow_data(flow)}, version=settings.api_version)


@router.put("/flows/{flow_id}", response_model=APIResponse)
async def update_flow(
    flow_id: str,
    body: FlowUpdateRequest,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    flow = await service.update_flow(organization_id, flow_id, body)
    if flow is None:
        raise _not_found()
    return APIResponse(success=True, message="Flow updated.", data={"flow": _flow_data(flow)}, version=settings.api_version)


@router.delete("/flows/{flow_id}", response_model=APIResponse)
async def delete_flow(
    flow_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    if not await service.delete_flow(organization_id, flow_id):
        raise _not_found()
    return APIResponse(success=True, message="Flow deleted.", version=settings.api_version)


@router.post("/flows/{flow_id}/duplicate", response_model=APIResponse, status_code=201)
async def duplicate_flow(
    flow_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    flow = await service.duplicate_flow(organization_id, flow_id)
    if flow is None:
        raise _not_found()
    return APIResponse(success=True, message="Flow duplicated.", data={"flow": _flow_data(flow)}, version=settings.api_version)


@router.post("/flows/{flow_id}/toggle", response_model=APIResponse)
async def toggle_flow(
    flow_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    flow = await service.toggle_flow(organization_id, flow_id)
    if flow is None:
        raise _not_found()
    state = "activated" if flow.is_active else "deactivated"
    log.info("Flow toggled.", flow_id=flow_id, is_active=flow.is_active)
    return APIResponse(success=True, message=f"Flow {state}.", data={"flow": _flow_data(flow)}, version=settings.api_version)


@router.get("/flows/{flow_id}/sessions", response_model=APIResponse)
async def get_flow_sessions(
    flow_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    """Recent sessions of the flow with completion analytics."""
    data = await service.flow_sessions(organization_id, flow_id)
    if data is None:
        raise _not_found()
    return APIResponse(success=True, message="Sessions retrieved.", data=data, version=settings.api_version)


@router.get("/flows/{flow_id}/validate", response_model=APIResponse)
async def validate_flow(
    flow_id: str,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    result = await service.validate(organization_id, flow_id)
    if result is None:
        raise _not_found()
    message = "Flow is valid." if result["is_valid"] else result["message"]
    return APIResponse(success=True, message=message, data=dict(result), version=settings.api_version)


@router.get("/node-types", response_model=APIResponse)
async def get_node_types():
    return APIResponse(
        success=True,
        message="Node types retrieved.",
        data={"node_types": list_node_types()},
        version=settings.api_version
    )


@router.get("/node-types/{node_type}", response_model=APIResponse)
async def get_node_type(node_type: str):
    description = describe(node_type)
    if description is None:
        raise HTTPException(status_code=404, detail="Unknown node type")
    return APIResponse(success=True, message="Node type retrieved.", data=description, version=settings.api_version)


@router.post("/process", response_model=APIResponse)
@limiter.limit(f"{settings.process_rate_limit_per_minute}/minute")
async def process_message(
    request: Request,
    event: InboundMessage,
    organization_id: str = Depends(get_organization_id),
    service: ChatbotService = Depends(get_chatbot_service),
):
    """Routes one inbound customer message through the organization's flows."""
    try:
        result = await service.handle_inbound(organization_id, event)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    message = "Message processed." if result.matched else result.message
    return APIResponse(success=True, message=message, data=result.model_dump(mode="json"), version=settings.api_version)
