# /chatflow/services/memory_store.py

from collections import Counter
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chatflow.models.flow import Flow
from chatflow.models.session import FlowSession, SessionStatus, utc_now
from chatflow.workflows.stores import FlowStore, SessionStore

# Process-local stores. Used by the test-suite and for running the service
# without MongoDB; nothing survives a restart.


class InMemoryFlowStore(FlowStore):
    def __init__(self):
        self._flows: Dict[str, Flow] = {}

    async def get(self, flow_id: str, organization_id: Optional[str] = None) -> Optional[Flow]:
        flow = self._flows.get(flow_id)
        if flow is None or (organization_id and flow.organization_id != organization_id):
            return None
        return flow.model_copy(deep=True)

    async def list_for_organization(self, organization_id: str) -> List[Flow]:
        flows = [f for f in self._flows.values() if f.organization_id == organization_id]
        flows.sort(key=lambda f: f.updated_at or f.created_at, reverse=True)
        return [f.model_copy(deep=True) for f in flows]

    async def list_active(self, organization_id: str) -> List[Flow]:
        # dicts keep insertion order, which is creation order here
        return [
            f.model_copy(deep=True)
            for f in self._flows.values()
            if f.organization_id == organization_id and f.is_active
        ]

    async def create(self, flow: Flow) -> Flow:
        now = utc_now()
        stored = flow.model_copy(deep=True, update={"id": flow.id or uuid4().hex, "created_at": now, "updated_at": now})
        self._flows[stored.id] = stored
        return stored.model_copy(deep=True)

    async def update(self, flow_id: str, organization_id: str, fields: Dict[str, Any]) -> Optional[Flow]:
        current = await self.get(flow_id, organization_id)
        if current is None:
            return None
        merged = current.model_dump()
        merged.update(fields)
        merged["updated_at"] = utc_now()
        updated = Flow.model_validate(merged)
        self._flows[flow_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, flow_id: str, organization_id: str) -> bool:
        if await self.get(flow_id, organization_id) is None:
            return False
        del self._flows[flow_id]
        return True


class InMemorySessionStore(SessionStore):
    def __init__(self):
        self._sessions: Dict[str, FlowSession] = {}

    async def get(self, session_id: str) -> Optional[FlowSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def create(self, session: FlowSession) -> FlowSession:
        stored = session.model_copy(deep=True, update={"id": session.id or uuid4().hex, "updated_at": utc_now()})
        self._sessions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_active_for_customer(self, customer_id: str, organization_id: Optional[str] = None) -> Optional[FlowSession]:
        for session in reversed(list(self._sessions.values())):
            if session.customer_id != customer_id or session.status != SessionStatus.ACTIVE:
                continue
            if organization_id and session.organization_id != organization_id:
                continue
            return session.model_copy(deep=True)
        return None

    async def save(self, session: FlowSession) -> None:
        session.updated_at = utc_now()
        self._sessions[session.id] = session.model_copy(deep=True)

    async def save_progress(self, session: FlowSession) -> None:
        stored = self._sessions.get(session.id)
        if stored is None:
            return
        stored.current_node = session.current_node
        stored.variables = dict(session.variables)
        stored.resume_at = session.resume_at
        stored.updated_at = utc_now()

    async def list_for_flow(self, flow_id: str, limit: int = 100) -> List[FlowSession]:
        sessions = [s for s in self._sessions.values() if s.flow_id == flow_id]
        sessions.sort(key=lambda s: s.started_at, reverse=True)
        return [s.model_copy(deep=True) for s in sessions[:limit]]

    async def count_by_status(self, flow_id: str) -> Dict[str, int]:
        counts = Counter(s.status.value for s in self._sessions.values() if s.flow_id == flow_id)
        return dict(counts)

    async def list_pending_delays(self) -> List[FlowSession]:
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.status == SessionStatus.ACTIVE and s.resume_at is not None
        ]
