from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment before any chatflow import: settings are read
# once, at import time.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test")

from chatflow.main import app  # noqa: E402
from chatflow.models.flow import Flow, FlowEdge, FlowNode  # noqa: E402
from chatflow.services.chatbot_service import ChatbotService  # noqa: E402
from chatflow.services.memory_store import InMemoryFlowStore, InMemorySessionStore  # noqa: E402
from chatflow.utils.dependencies import get_chatbot_service  # noqa: E402
from chatflow.workflows.engine import FlowInterpreter  # noqa: E402

ORG_ID = "org_1"
CUSTOMER_ID = "cust_1"
PHONE = "+15551234567"


def make_flow(nodes, edges, flow_id="flow_1", **overrides) -> Flow:
    """Builds a flow from compact (id, type, data) and (source, target[, handle]) tuples."""
    fields = {
        "id": flow_id,
        "organization_id": ORG_ID,
        "name": "Test flow",
        "trigger_type": "keyword",
        "trigger_keywords": ["hi"],
        "is_active": True,
        "nodes": [FlowNode(id=n[0], type=n[1], data=n[2] if len(n) > 2 else {}) for n in nodes],
        "edges": [
            FlowEdge(id=f"e{i}", source=e[0], target=e[1], source_handle=e[2] if len(e) > 2 else None)
            for i, e in enumerate(edges)
        ],
    }
    fields.update(overrides)
    return Flow(**fields)


@pytest.fixture
def flow_store():
    return InMemoryFlowStore()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def interpreter(session_store):
    return FlowInterpreter(session_store, ai_service=None)


@pytest.fixture
def chatbot(flow_store, session_store):
    """ChatbotService over in-memory stores, without delivery."""
    return ChatbotService(flow_store, session_store)


@pytest.fixture(scope="function")
def test_client(mocker, chatbot):
    """
    Provides a TestClient for API integration tests.
    The database is never touched: indexes are skipped and every route gets
    the in-memory chatbot service.
    """
    mocker.patch("chatflow.utils.lifecycle.db_service.create_indexes", new_callable=AsyncMock)
    mocker.patch("chatflow.utils.lifecycle.chatbot_service", chatbot)
    app.dependency_overrides[get_chatbot_service] = lambda: chatbot

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def flow_factory():
    return make_flow
