# backend/tests/integration/test_delay.py

from unittest.mock import AsyncMock

import pytest

from chatflow.models.api import InboundMessage
from chatflow.models.session import SessionStatus
from chatflow.services.delivery_service import DeliveryChannel
from chatflow.utils.scheduler import job_id_for

ORG_ID = "org_1"


def _event(message):
    return InboundMessage(customer_id="cust_1", phone="+15551234567", message=message)


@pytest.fixture
def delayed_flow(flow_factory):
    return flow_factory(
        [("start", "message", {"text": "Let me check"}),
         ("pause", "delay", {"seconds": 5}),
         ("answer", "message", {"text": "Your order ships today"}),
         ("done", "end")],
        [("start", "pause"), ("pause", "answer"), ("answer", "done")],
    )


@pytest.mark.asyncio
async def test_delay_schedules_a_wake_up_and_resumes(chatbot, flow_store, session_store, delayed_flow, mocker):
    await flow_store.create(delayed_flow)
    schedule = mocker.patch.object(chatbot.scheduler, "schedule")

    parked = await chatbot.handle_inbound(ORG_ID, _event("hi"))

    assert [a.text for a in parked.actions] == ["Let me check"]
    assert parked.delay_seconds == 5
    session = await session_store.get(parked.session_id)
    schedule.assert_called_once_with(session.id, session.resume_at)

    # Messages during the delay neither advance nor restart the session
    during = await chatbot.handle_inbound(ORG_ID, _event("hi again"))
    assert during.session_id == parked.session_id
    assert during.actions == []

    woken = await chatbot.wake_session(parked.session_id)

    assert [a.text for a in woken.actions] == ["Your order ships today"]
    assert woken.completed is True
    assert (await session_store.get(parked.session_id)).status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_wake_up_delivers_actions(chatbot, flow_store, delayed_flow, mocker):
    await flow_store.create(delayed_flow)
    mocker.patch.object(chatbot.scheduler, "schedule")
    delivery = AsyncMock(spec=DeliveryChannel)
    chatbot.delivery = delivery

    parked = await chatbot.handle_inbound(ORG_ID, _event("hi"))
    delivery.dispatch.assert_not_awaited()

    await chatbot.wake_session(parked.session_id)
    await chatbot.shutdown()

    delivery.dispatch.assert_awaited_once()
    session, actions = delivery.dispatch.await_args.args
    assert session.id == parked.session_id
    assert [a.text for a in actions] == ["Your order ships today"]


@pytest.mark.asyncio
async def test_wake_up_for_finished_session_is_a_no_op(chatbot, flow_store, session_store, delayed_flow, mocker):
    await flow_store.create(delayed_flow)
    mocker.patch.object(chatbot.scheduler, "schedule")
    parked = await chatbot.handle_inbound(ORG_ID, _event("hi"))

    session = await session_store.get(parked.session_id)
    session.finish(SessionStatus.DROPPED)
    await session_store.save(session)

    assert await chatbot.wake_session(parked.session_id) is None


@pytest.mark.asyncio
async def test_deleting_flow_cancels_pending_wake_up(chatbot, flow_store, session_store, delayed_flow):
    flow = await flow_store.create(delayed_flow)
    parked = await chatbot.handle_inbound(ORG_ID, _event("hi"))
    assert chatbot.scheduler.scheduler.get_job(job_id_for(parked.session_id)) is not None

    assert await chatbot.delete_flow(ORG_ID, flow.id) is True

    assert chatbot.scheduler.scheduler.get_job(job_id_for(parked.session_id)) is None
    session = await session_store.get(parked.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.resume_at is None


@pytest.mark.asyncio
async def test_shutdown_closes_http_clients(chatbot):
    delivery = AsyncMock(spec=DeliveryChannel)
    chatbot.delivery = delivery

    await chatbot.shutdown()

    assert chatbot.interpreter.http_client.is_closed is True
    delivery.close.assert_awaited_once()
