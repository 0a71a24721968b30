# /chatflow/services/chatbot_service.py

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from chatflow.config.settings import settings
from chatflow.models.api import FlowCreateRequest, FlowUpdateRequest, InboundMessage
from chatflow.models.execution import RouterResult
from chatflow.models.flow import Flow, FlowNode, NodePosition
from chatflow.models.nodes import NodeType
from chatflow.models.session import SessionStatus
from chatflow.services.ai_service import AIService
from chatflow.services.delivery_service import DeliveryChannel
from chatflow.services.security_service import SecurityService
from chatflow.utils.locks import SessionLockManager
from chatflow.utils.scheduler import DelayScheduler
from chatflow.workflows.engine import FlowInterpreter
from chatflow.workflows.errors import PersistenceError
from chatflow.workflows.router import FlowRouter
from chatflow.workflows.stores import FlowStore, SessionStore
from chatflow.workflows.validator import ValidationResult, validate_flow

# Single entry point used by the HTTP layer: flow management on one side,
# inbound message handling (route, schedule delays, deliver) on the other.

logger = logging.getLogger(__name__)

COPY_SUFFIX = " (copy)"
SESSIONS_PAGE_SIZE = 100


def default_start_node(flow: FlowCreateRequest) -> FlowNode:
    return FlowNode(
        id=settings.flow_entry_node,
        type=NodeType.TRIGGER.value,
        data={"label": "Start", "trigger_type": flow.trigger_type.value, "keywords": list(flow.trigger_keywords)},
        position=NodePosition(x=250, y=50),
    )


class ChatbotService:
    def __init__(
        self,
        flow_store: FlowStore,
        session_store: SessionStore,
        delivery: Optional[DeliveryChannel] = None,
        ai_service: Optional[AIService] = None,
        lock_manager: Optional[SessionLockManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.flows = flow_store
        self.sessions = session_store
        self.delivery = delivery
        self.interpreter = FlowInterpreter(session_store, http_client=http_client, ai_service=ai_service)
        self.router = FlowRouter(flow_store, session_store, self.interpreter, lock_manager)
        self.scheduler = DelayScheduler(self.wake_session)
        self._dispatch_tasks: Set[asyncio.Task] = set()

    # ==================== Flow management ====================

    async def list_flows(self, organization_id: str) -> List[Flow]:
        return await self.flows.list_for_organization(organization_id)

    async def get_flow(self, organization_id: str, flow_id: str) -> Optional[Flow]:
        return await self.flows.get(flow_id, organization_id)

    async def create_flow(self, organization_id: str, request: FlowCreateRequest) -> Flow:
        flow = Flow(
            organization_id=organization_id,
            name=request.name,
            description=request.description,
            trigger_type=request.trigger_type,
            trigger_keywords=request.trigger_keywords,
            nodes=[default_start_node(request)],
            edges=[],
            is_active=False,
        )
        created = await self.flows.create(flow)
        logger.info(f"Flow {created.id} created for organization {organization_id}")
        return created

    async def update_flow(self, organization_id: str, flow_id: str, request: FlowUpdateRequest) -> Optional[Flow]:
        fields = request.model_dump(exclude_unset=True, by_alias=True, mode="json")
        return await self.flows.update(flow_id, organization_id, fields)

    async def delete_flow(self, organization_id: str, flow_id: str) -> bool:
        deleted = await self.flows.delete(flow_id, organization_id)
        if deleted:
            logger.info(f"Flow {flow_id} deleted for organization {organization_id}")
            await self._retire_delayed_sessions(flow_id)
        return deleted

    async def _retire_delayed_sessions(self, flow_id: str) -> None:
        """Sessions parked on a delay of a deleted flow would otherwise wake into nothing."""
        for parked in await self.sessions.list_pending_delays():
            if parked.flow_id != flow_id:
                continue
            self.scheduler.cancel(parked.id)
            async with self.router.locks.hold(parked.organization_id or "", parked.customer_id):
                session = await self.sessions.get(parked.id)
                if session is None or not session.is_active:
                    continue
                session.finish(SessionStatus.COMPLETED)
                await self.sessions.save(session)
            logger.info(f"Cancelled delay wake-up of session {parked.id} on deleted flow {flow_id}")

    async def duplicate_flow(self, organization_id: str, flow_id: str) -> Optional[Flow]:
        original = await self.flows.get(flow_id, organization_id)
        if original is None:
            return None
        copy = original.model_copy(
            deep=True,
            update={"id": None, "name": f"{original.name}{COPY_SUFFIX}", "is_active": False},
        )
        return await self.flows.create(copy)

    async def toggle_flow(self, organization_id: str, flow_id: str) -> Optional[Flow]:
        flow = await self.flows.get(flow_id, organization_id)
        if flow is None:
            return None
        return await self.flows.update(flow_id, organization_id, {"is_active": not flow.is_active})

    async def flow_sessions(self, organization_id: str, flow_id: str) -> Optional[Dict[str, Any]]:
        """Recent sessions of a flow plus completion analytics."""
        if await self.flows.get(flow_id, organization_id) is None:
            return None
        sessions = await self.sessions.list_for_flow(flow_id, limit=SESSIONS_PAGE_SIZE)
        counts = await self.sessions.count_by_status(flow_id)
        total = sum(counts.values())
        completed = counts.get(SessionStatus.COMPLETED.value, 0)
        return {
            "sessions": [s.model_dump(mode="json") for s in sessions],
            "analytics": {
                "total": total,
                "active": counts.get(SessionStatus.ACTIVE.value, 0),
                "completed": completed,
                "transferred": counts.get(SessionStatus.TRANSFERRED.value, 0),
                "dropped": counts.get(SessionStatus.DROPPED.value, 0),
                "completion_rate": round(completed / total * 100) if total else 0,
            },
        }

    async def validate(self, organization_id: str, flow_id: str) -> Optional[ValidationResult]:
        flow = await self.flows.get(flow_id, organization_id)
        if flow is None:
            return None
        return validate_flow(flow, settings.flow_entry_node)

    # ==================== Conversation handling ====================

    async def handle_inbound(self, organization_id: str, event: InboundMessage) -> RouterResult:
        message = SecurityService.validate_message_content(event.message)
        result = await self.router.route(organization_id, event.customer_id, event.phone, message, event.channel)
        await self._after_step(result, deliver=event.deliver)
        return result

    async def wake_session(self, session_id: str) -> Optional[RouterResult]:
        """Delay timer callback. Always delivers the resulting actions."""
        try:
            result = await self.router.continue_after_delay(session_id)
        except Exception as e:
            logger.error(f"Delay wake-up failed for session {session_id}: {e}", exc_info=True)
            return None
        if result is not None:
            await self._after_step(result, deliver=True)
        return result

    async def _after_step(self, result: RouterResult, deliver: bool) -> None:
        if not result.matched or not result.session_id:
            return
        try:
            session = await self.sessions.get(result.session_id)
        except PersistenceError as e:
            logger.error(f"Could not reload session {result.session_id} after routing: {e}")
            return
        if session is None:
            return

        if result.delay_seconds is not None and session.resume_at is not None:
            self.scheduler.schedule(session.id, session.resume_at)

        if deliver and self.delivery is not None and result.actions:
            # Message delays sleep inside this task, never inside the request
            task = asyncio.create_task(self.delivery.dispatch(session, list(result.actions)))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)

    async def restore(self) -> int:
        return await self.scheduler.restore_pending(self.sessions)

    async def shutdown(self) -> None:
        self.scheduler.shutdown()
        if self._dispatch_tasks:
            await asyncio.gather(*self._dispatch_tasks, return_exceptions=True)
        await self.interpreter.close()
        if self.delivery is not None:
            await self.delivery.close()


def build_chatbot_service() -> ChatbotService:
    """Production wiring: MongoDB stores, WhatsApp delivery, OpenAI replies."""
    from chatflow.services.ai_service import ai_service
    from chatflow.services.db_service import MongoFlowStore, MongoSessionStore, db_service
    from chatflow.services.delivery_service import MongoCustomerDirectory, WhatsAppDeliveryChannel
    from chatflow.utils.locks import build_lock_manager

    delivery = WhatsAppDeliveryChannel(
        settings.whatsapp_access_token,
        settings.whatsapp_phone_id,
        directory=MongoCustomerDirectory(db_service),
    )
    return ChatbotService(
        MongoFlowStore(db_service),
        MongoSessionStore(db_service),
        delivery=delivery,
        ai_service=ai_service,
        lock_manager=build_lock_manager(),
    )


# Globally accessible instance
chatbot_service = build_chatbot_service()
