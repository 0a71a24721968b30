# backend/tests/unit/test_router.py

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatflow.models.session import FlowSession, SessionStatus
from chatflow.services.db_service import DatabaseService, MongoFlowStore
from chatflow.services.memory_store import InMemorySessionStore
from chatflow.workflows.errors import PersistenceError
from chatflow.workflows.router import FlowRouter, NO_MATCH_MESSAGE, STORE_UNAVAILABLE_MESSAGE, trigger_matches

ORG_ID = "org_1"
CUSTOMER_ID = "cust_1"
PHONE = "+15551234567"


@pytest.fixture
def router(flow_store, session_store, interpreter):
    return FlowRouter(flow_store, session_store, interpreter)


def _greeting_flow(flow_factory, **overrides):
    return flow_factory(
        [("start", "message", {"text": "Hello {{name}}"}), ("done", "end")],
        [("start", "done")],
        **overrides,
    )


def _survey_flow(flow_factory, **overrides):
    return flow_factory(
        [("start", "trigger"),
         ("ask", "message", {"text": "How old are you?"}),
         ("wait", "wait_input", {"variable": "age"}),
         ("check", "condition", {"variable": "age", "operator": "greater", "value": "18"}),
         ("adult_msg", "message", {"text": "Adult plan"}),
         ("minor_msg", "message", {"text": "Junior plan"})],
        [("start", "ask"), ("ask", "wait"), ("wait", "check"),
         ("check", "adult_msg", "true"), ("check", "minor_msg", "false")],
        **overrides,
    )


class TestTriggerMatching:

    def test_keyword_is_case_insensitive_substring(self, flow_factory):
        flow = _greeting_flow(flow_factory, trigger_keywords=["Hi"])
        assert trigger_matches(flow, "oh HI there") is True
        assert trigger_matches(flow, "hello") is False

    def test_first_message_always_matches(self, flow_factory):
        flow = _greeting_flow(flow_factory, trigger_type="first_message", trigger_keywords=[])
        assert trigger_matches(flow, "") is True
        assert trigger_matches(flow, "anything") is True

    def test_button_click_needs_exact_keyword(self, flow_factory):
        flow = _greeting_flow(flow_factory, trigger_type="button_click", trigger_keywords=["Track order"])
        assert trigger_matches(flow, "  track ORDER ") is True
        assert trigger_matches(flow, "please track order") is False

    def test_blank_keywords_never_match(self, flow_factory):
        flow = _greeting_flow(flow_factory, trigger_keywords=["", "  "])
        assert trigger_matches(flow, "anything") is False


class TestRouter:

    @pytest.mark.asyncio
    async def test_keyword_trigger_scenario(self, router, flow_store, session_store, flow_factory):
        flow = await flow_store.create(_greeting_flow(flow_factory))

        result = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "hi there")

        assert result.matched is True
        assert result.flow_id == flow.id
        assert [a.type for a in result.actions] == ["send_message"]
        assert result.actions[0].text == "Hello {{name}}"
        assert result.completed is True
        session = await session_store.get(result.session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.phone == PHONE

    @pytest.mark.asyncio
    async def test_inactive_flow_is_never_matched(self, router, flow_store, session_store, flow_factory):
        flow = await flow_store.create(
            _greeting_flow(flow_factory, trigger_type="first_message", is_active=False)
        )

        result = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "hello")

        assert result.matched is False
        assert result.message == NO_MATCH_MESSAGE
        assert result.actions == []
        assert await session_store.list_for_flow(flow.id) == []

    @pytest.mark.asyncio
    async def test_first_matching_flow_wins(self, router, flow_store, flow_factory):
        first = await flow_store.create(_greeting_flow(flow_factory, flow_id="first", trigger_type="first_message"))
        await flow_store.create(_greeting_flow(flow_factory, flow_id="second", trigger_keywords=["hi"]))

        result = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "hi")

        assert result.flow_id == first.id

    @pytest.mark.asyncio
    async def test_flows_of_other_organizations_are_ignored(self, router, flow_store, flow_factory):
        await flow_store.create(_greeting_flow(flow_factory, organization_id="org_2", trigger_type="first_message"))

        result = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "hi")

        assert result.matched is False

    @pytest.mark.asyncio
    async def test_active_session_is_resumed(self, router, flow_store, session_store, flow_factory):
        flow = await flow_store.create(_survey_flow(flow_factory, trigger_keywords=["plan"]))

        first = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "which plan?")
        assert [a.text for a in first.actions] == ["How old are you?"]
        assert first.wait_for_input is True

        # "20" does not contain the trigger keyword, the session carries it
        second = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "20")
        assert second.session_id == first.session_id
        assert [a.text for a in second.actions] == ["Adult plan"]
        assert second.completed is True
        assert len(await session_store.list_for_flow(flow.id)) == 1

    @pytest.mark.asyncio
    async def test_terminal_session_is_never_resumed(self, router, flow_store, session_store, flow_factory):
        await flow_store.create(_greeting_flow(flow_factory))

        first = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "hi")
        no_match = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "bye")
        again = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "hi again")

        assert first.completed is True
        assert no_match.matched is False
        assert again.matched is True
        assert again.session_id != first.session_id
        assert (await session_store.get(first.session_id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_entry_falls_back_to_first_trigger_node(self, router, flow_store, flow_factory):
        await flow_store.create(flow_factory(
            [("welcome", "trigger"), ("say", "message", {"text": "Welcome"})],
            [("welcome", "say")],
        ))

        result = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "hi")

        assert [a.text for a in result.actions] == ["Welcome"]

    @pytest.mark.asyncio
    async def test_session_on_deleted_flow_is_closed(self, router, flow_store, session_store, flow_factory):
        survey = await flow_store.create(_survey_flow(flow_factory, flow_id="survey", trigger_keywords=["plan"]))
        first = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "plan")
        await flow_store.delete(survey.id, ORG_ID)

        result = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "20")

        assert result.matched is False
        assert (await session_store.get(first.session_id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_messages_from_one_customer_are_serialized(self, router, flow_store, session_store, flow_factory):
        flow = await flow_store.create(_survey_flow(flow_factory, trigger_type="first_message"))

        results = await asyncio.gather(
            router.route(ORG_ID, CUSTOMER_ID, PHONE, "hello"),
            router.route(ORG_ID, CUSTOMER_ID, PHONE, "30"),
        )

        assert results[0].session_id == results[1].session_id
        assert [a.text for a in results[1].actions] == ["Adult plan"]
        assert len(await session_store.list_for_flow(flow.id)) == 1

    @pytest.mark.asyncio
    async def test_continue_after_delay(self, router, flow_store, session_store, flow_factory):
        await flow_store.create(flow_factory(
            [("start", "delay", {"seconds": 5}), ("later", "message", {"text": "Thanks for waiting"})],
            [("start", "later")],
        ))
        parked = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "hi")
        assert parked.delay_seconds == 5

        woken = await router.continue_after_delay(parked.session_id)

        assert [a.text for a in woken.actions] == ["Thanks for waiting"]
        assert woken.completed is True
        assert await router.continue_after_delay(parked.session_id) is None


class _UnreachableSessionStore(InMemorySessionStore):
    """Looking up the customer's active session fails while `down` is set."""

    def __init__(self):
        super().__init__()
        self.down = False

    async def get_active_for_customer(self, customer_id, organization_id=None):
        if self.down:
            raise PersistenceError("get_active_session")
        return await super().get_active_for_customer(customer_id, organization_id)


@pytest.fixture
def mongo_flow_store():
    """MongoFlowStore whose collection is replaced by a mock; nothing connects."""
    store = MongoFlowStore(DatabaseService("mongodb://localhost:27017/chatflow_test"))
    store.collection = MagicMock()
    return store


class TestStoreOutages:

    @pytest.mark.asyncio
    async def test_flow_read_failure_raises_instead_of_not_found(self, mongo_flow_store):
        mongo_flow_store.collection.find_one = AsyncMock(side_effect=ConnectionError("connection refused"))

        with pytest.raises(PersistenceError):
            await mongo_flow_store.get("flow_1", ORG_ID)

    @pytest.mark.asyncio
    async def test_flow_read_failure_keeps_live_session(self, mongo_flow_store, session_store, interpreter, flow_factory):
        flow = _survey_flow(flow_factory, trigger_keywords=["plan"])
        parked = await session_store.create(
            FlowSession(organization_id=ORG_ID, flow_id=flow.id, customer_id=CUSTOMER_ID, phone=PHONE, current_node="wait")
        )
        mongo_flow_store.collection.find_one = AsyncMock(side_effect=ConnectionError("connection refused"))
        router = FlowRouter(mongo_flow_store, session_store, interpreter)

        result = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "20")

        assert result.matched is False
        assert result.stalled is True
        assert result.error == "store_unavailable"
        assert result.message == STORE_UNAVAILABLE_MESSAGE
        stored = await session_store.get(parked.id)
        assert stored.status == SessionStatus.ACTIVE
        assert stored.current_node == "wait"
        assert "age" not in stored.variables

        # Once the database answers again the same reply continues the session
        doc = flow.model_dump(mode="python", by_alias=True, exclude={"id"})
        doc.update({"_id": flow.id, "trigger_type": flow.trigger_type.value})
        mongo_flow_store.collection.find_one = AsyncMock(return_value=doc)

        resumed = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "20")

        assert resumed.session_id == parked.id
        assert [a.text for a in resumed.actions] == ["Adult plan"]

    @pytest.mark.asyncio
    async def test_session_lookup_failure_never_opens_a_second_session(self, flow_store, interpreter, flow_factory):
        sessions = _UnreachableSessionStore()
        interpreter.sessions = sessions
        router = FlowRouter(flow_store, sessions, interpreter)
        flow = await flow_store.create(_survey_flow(flow_factory, trigger_keywords=["plan"]))
        first = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "plan")

        sessions.down = True
        result = await router.route(ORG_ID, CUSTOMER_ID, PHONE, "plan again")

        assert result.matched is False
        assert result.error == "store_unavailable"
        stored = await sessions.list_for_flow(flow.id)
        assert [s.id for s in stored] == [first.session_id]
        assert stored[0].status == SessionStatus.ACTIVE
