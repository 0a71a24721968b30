# /chatflow/workflows/router.py

"""
Inbound message router.

For every inbound customer message the router decides whether it continues
the customer's active session, starts a new session on a matching active
flow, or is left alone (no match). Routing for one customer is serialized by
the lock manager so a session is never advanced by two messages at once.
"""

import time
from typing import Optional

import structlog

from chatflow.config.settings import settings
from chatflow.models.execution import RouterResult
from chatflow.models.flow import Flow, TriggerType
from chatflow.models.session import FlowSession, SessionStatus
from chatflow.utils.locks import SessionLockManager
from chatflow.utils.metrics import router_outcomes_counter, sessions_finished_counter, step_duration_histogram
from chatflow.workflows.engine import FlowInterpreter
from chatflow.workflows.errors import PersistenceError
from chatflow.workflows.stores import FlowStore, SessionStore

log = structlog.get_logger(__name__)

NO_MATCH_MESSAGE = "No matching flow"
STORE_UNAVAILABLE_MESSAGE = "Flow storage unavailable, message not processed"


def trigger_matches(flow: Flow, message: str) -> bool:
    """
    - first_message: always matches
    - keyword: any keyword is a case-insensitive substring of the message
    - button_click: the trimmed message equals a keyword, ignoring case
    Blank keywords never match.
    """
    text = (message or "").lower()
    keywords = [k.lower() for k in flow.trigger_keywords if k and k.strip()]

    if flow.trigger_type == TriggerType.FIRST_MESSAGE:
        return True
    if flow.trigger_type == TriggerType.KEYWORD:
        return any(k in text for k in keywords)
    if flow.trigger_type == TriggerType.BUTTON_CLICK:
        return text.strip() in (k.strip() for k in keywords)
    return False


class FlowRouter:
    def __init__(
        self,
        flow_store: FlowStore,
        session_store: SessionStore,
        interpreter: FlowInterpreter,
        lock_manager: Optional[SessionLockManager] = None,
        entry_node: Optional[str] = None,
    ):
        self.flows = flow_store
        self.sessions = session_store
        self.interpreter = interpreter
        self.locks = lock_manager or SessionLockManager()
        self.entry_node = entry_node or settings.flow_entry_node

    async def route(
        self,
        organization_id: str,
        customer_id: str,
        phone: Optional[str],
        message: str,
        channel: str = "whatsapp",
    ) -> RouterResult:
        started = time.perf_counter()
        async with self.locks.hold(organization_id, customer_id):
            structlog.contextvars.bind_contextvars(organization_id=organization_id, customer_id=customer_id)
            try:
                result = await self._route_locked(organization_id, customer_id, phone, message, channel)
            except PersistenceError as e:
                # Sessions are left as last persisted; the next message retries
                log.error("Routing aborted, store unavailable.", operation=e.operation)
                router_outcomes_counter.labels(outcome="store_unavailable").inc()
                result = RouterResult(
                    matched=False, stalled=True, error=PersistenceError.reason, message=STORE_UNAVAILABLE_MESSAGE
                )
            finally:
                structlog.contextvars.unbind_contextvars("organization_id", "customer_id")
        step_duration_histogram.observe(time.perf_counter() - started)
        return result

    async def _route_locked(
        self, organization_id: str, customer_id: str, phone: Optional[str], message: str, channel: str
    ) -> RouterResult:
        session = await self.sessions.get_active_for_customer(customer_id, organization_id)
        if session is not None:
            flow = await self.flows.get(session.flow_id)
            if flow is None:
                # Flow deleted under a live session: retire it and route afresh
                log.warning("Active session points at a missing flow, closing it.", session_id=session.id, flow_id=session.flow_id)
                session.finish(SessionStatus.COMPLETED)
                sessions_finished_counter.labels(status=SessionStatus.COMPLETED.value).inc()
                await self.sessions.save(session)
            else:
                step = await self.interpreter.resume(flow, session, message)
                router_outcomes_counter.labels(outcome="resumed").inc()
                log.info("Session resumed.", session_id=session.id, flow_id=flow.id, actions=len(step.actions))
                return RouterResult.from_step(step, session)

        for flow in await self.flows.list_active(organization_id):
            if not trigger_matches(flow, message):
                continue

            entry = flow.entry_node_id(self.entry_node)
            session = await self.sessions.create(
                FlowSession(
                    organization_id=organization_id,
                    flow_id=flow.id,
                    customer_id=customer_id,
                    phone=phone,
                    channel=channel,
                    current_node=entry or self.entry_node,
                )
            )
            step = await self.interpreter.step(flow, session, entry)
            router_outcomes_counter.labels(outcome="started").inc()
            log.info("Session started.", session_id=session.id, flow_id=flow.id, actions=len(step.actions))
            return RouterResult.from_step(step, session)

        router_outcomes_counter.labels(outcome="no_match").inc()
        return RouterResult(matched=False, message=NO_MATCH_MESSAGE)

    async def continue_after_delay(self, session_id: str) -> Optional[RouterResult]:
        """
        Wakes a session parked on a delay node. Returns None when the session
        is gone, no longer active, or its flow was deleted.
        """
        session = await self.sessions.get(session_id)
        if session is None or not session.is_active:
            return None

        async with self.locks.hold(session.organization_id or "", session.customer_id):
            # Re-read under the lock, an inbound message may have moved it meanwhile
            session = await self.sessions.get(session_id)
            if session is None or not session.is_active:
                return None
            flow = await self.flows.get(session.flow_id)
            if flow is None:
                log.warning("Delayed session's flow no longer exists.", session_id=session_id, flow_id=session.flow_id)
                return None
            step = await self.interpreter.continue_after_delay(flow, session)

        router_outcomes_counter.labels(outcome="delay_resumed").inc()
        return RouterResult.from_step(step, session)
