# /chatflow/workflows/stores.py

"""
Persistence capabilities the engine depends on.

The interpreter and router only see these interfaces; MongoDB and in-memory
implementations live under chatflow.services.

When the backing store fails, `FlowStore.get`, `FlowStore.list_active`,
`SessionStore.get`, `SessionStore.get_active_for_customer` and all writes
raise PersistenceError. A `None` from a getter always means "not found".
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from chatflow.models.flow import Flow
from chatflow.models.session import FlowSession


class FlowStore(ABC):

    @abstractmethod
    async def get(self, flow_id: str, organization_id: Optional[str] = None) -> Optional[Flow]:
        """Loads a flow; with an organization id, only if that organization owns it."""

    @abstractmethod
    async def list_for_organization(self, organization_id: str) -> List[Flow]:
        """All flows of an organization, most recently updated first."""

    @abstractmethod
    async def list_active(self, organization_id: str) -> List[Flow]:
        """Active flows of an organization in declaration (creation) order."""

    @abstractmethod
    async def create(self, flow: Flow) -> Flow:
        ...

    @abstractmethod
    async def update(self, flow_id: str, organization_id: str, fields: Dict[str, Any]) -> Optional[Flow]:
        ...

    @abstractmethod
    async def delete(self, flow_id: str, organization_id: str) -> bool:
        ...


class SessionStore(ABC):

    @abstractmethod
    async def get(self, session_id: str) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def create(self, session: FlowSession) -> FlowSession:
        ...

    @abstractmethod
    async def get_active_for_customer(self, customer_id: str, organization_id: Optional[str] = None) -> Optional[FlowSession]:
        """The customer's session in status ACTIVE, if any."""

    @abstractmethod
    async def save(self, session: FlowSession) -> None:
        """Persists the whole session record."""

    @abstractmethod
    async def save_progress(self, session: FlowSession) -> None:
        """Persists current_node, variables and resume_at only."""

    @abstractmethod
    async def list_for_flow(self, flow_id: str, limit: int = 100) -> List[FlowSession]:
        """Most recent sessions of a flow first."""

    @abstractmethod
    async def count_by_status(self, flow_id: str) -> Dict[str, int]:
        ...

    @abstractmethod
    async def list_pending_delays(self) -> List[FlowSession]:
        """Active sessions parked on a delay node."""
