# /chatflow/services/delivery_service.py

import httpx
import logging
import asyncio
import tenacity
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from chatflow.config.settings import settings
from chatflow.models.execution import Action
from chatflow.models.session import FlowSession
from chatflow.services.security_service import SecurityService
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.metrics import delivery_counter

# Turns interpreter actions into platform calls. Actions are delivered one by
# one in the order the interpreter emitted them. A failed action is logged and
# counted, the remaining actions are still attempted.

logger = logging.getLogger(__name__)

MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_LIST_ROWS = 10
MAX_ROW_TITLE = 24
MAX_TEXT = 4096
MAX_CAPTION = 1024


class CustomerDirectory(ABC):
    """CRM-side effects of the agent hand-over and tagging actions."""

    @abstractmethod
    async def assign_agent(self, organization_id: str, customer_id: str, agent_id: Optional[str]) -> bool:
        ...

    @abstractmethod
    async def add_tag(self, organization_id: str, customer_id: str, tag: str) -> bool:
        ...


class MongoCustomerDirectory(CustomerDirectory):
    def __init__(self, database):
        self.database = database

    async def assign_agent(self, organization_id: str, customer_id: str, agent_id: Optional[str]) -> bool:
        return await self.database.assign_agent(organization_id, customer_id, agent_id)

    async def add_tag(self, organization_id: str, customer_id: str, tag: str) -> bool:
        return await self.database.add_customer_tag(organization_id, customer_id, tag)


class DeliveryChannel(ABC):

    @abstractmethod
    async def dispatch(self, session: FlowSession, actions: List[Action]) -> int:
        """Delivers the actions for one session; returns how many succeeded."""

    async def close(self) -> None:
        """Releases network resources held by the channel."""


# ==================== Payload builders ====================

def _button_option(option: Any, index: int) -> Dict[str, str]:
    if isinstance(option, dict):
        reply = option.get("reply") if isinstance(option.get("reply"), dict) else option
        title = str(reply.get("title") or reply.get("text") or reply.get("id") or f"Option {index + 1}")
        option_id = str(reply.get("id") or title)
    else:
        title = str(option)
        option_id = title
    return {"id": option_id[:256], "title": title[:MAX_BUTTON_TITLE]}


def build_text_payload(to: str, text: str) -> Dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "text",
        "text": {"body": text[:MAX_TEXT]},
    }


def build_buttons_payload(to: str, text: str, buttons: List[Any]) -> Dict[str, Any]:
    reply_buttons = [
        {"type": "reply", "reply": _button_option(option, i)}
        for i, option in enumerate(buttons[:MAX_BUTTONS])
    ]
    return {
        "messaging_product": "whatsapp", "to": to, "type": "interactive",
        "interactive": {"type": "button", "body": {"text": text[:MAX_TEXT]}, "action": {"buttons": reply_buttons}},
    }


def build_list_payload(to: str, text: str, button_text: str, sections: List[Dict[str, Any]]) -> Dict[str, Any]:
    remaining = MAX_LIST_ROWS
    wa_sections = []
    for section in sections:
        rows = []
        for i, row in enumerate(section.get("rows") or []):
            if remaining == 0:
                break
            option = _button_option(row, i)
            entry = {"id": option["id"], "title": option["title"]}
            if isinstance(row, dict) and row.get("description"):
                entry["description"] = str(row["description"])[:72]
            rows.append(entry)
            remaining -= 1
        if rows:
            wa_sections.append({"title": str(section.get("title") or "")[:MAX_ROW_TITLE], "rows": rows})

    return {
        "messaging_product": "whatsapp", "to": to, "type": "interactive",
        "interactive": {
            "type": "list",
            "body": {"text": text[:MAX_TEXT]},
            "action": {"button": (button_text or "Options")[:MAX_BUTTON_TITLE], "sections": wa_sections},
        },
    }


def build_image_payload(to: str, url: str, caption: str) -> Dict[str, Any]:
    image: Dict[str, str] = {"link": url}
    if caption:
        image["caption"] = caption[:MAX_CAPTION]
    return {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to, "type": "image", "image": image}


def build_document_payload(to: str, url: str, filename: str) -> Dict[str, Any]:
    document: Dict[str, str] = {"link": url}
    if filename:
        document["filename"] = filename
    return {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to, "type": "document", "document": document}


class WhatsAppDeliveryChannel(DeliveryChannel):
    def __init__(
        self,
        access_token: Optional[str],
        phone_id: Optional[str],
        directory: Optional[CustomerDirectory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.phone_id = phone_id
        self.directory = directory
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.base_url = f"https://graph.facebook.com/{settings.whatsapp_api_version}"
        self.circuit_breaker = CircuitBreaker("whatsapp")

    async def close(self):
        """Close HTTP client."""
        await self.http_client.aclose()

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_whatsapp_request(self, payload: dict) -> Optional[str]:
        """Posts one message payload; returns the wamid, or None on failure."""
        to_phone = payload.get("to")
        if not self.access_token or not self.phone_id:
            logger.error("WhatsApp credentials are not configured, message not sent.")
            return None
        try:
            url = f"{self.base_url}/{self.phone_id}/messages"
            headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

            if response.status_code == 200:
                message_id = response.json().get("messages", [{}])[0].get("id")
                logger.info(f"WhatsApp {payload.get('type')} sent to {to_phone}, wamid: {message_id}")
                return message_id

            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            return None
        except Exception as e:
            logger.error(f"whatsapp_send_error to {to_phone}: {e}", exc_info=True)
            return None

    async def dispatch(self, session: FlowSession, actions: List[Action]) -> int:
        delivered = 0
        for action in actions:
            ok = await self._deliver(session, action)
            delivery_counter.labels(action_type=action.type, status="success" if ok else "failed").inc()
            delivered += int(ok)
        return delivered

    async def _deliver(self, session: FlowSession, action: Action) -> bool:
        if action.type == "assign_agent":
            return await self._directory_call("assign_agent", session, action.agent_id, message=action.message)
        if action.type == "add_tag":
            return await self._directory_call("add_tag", session, action.tag)

        if session.channel != "whatsapp":
            logger.warning(f"No delivery channel for '{session.channel}', {action.type} for session {session.id} dropped.")
            return False

        to = SecurityService.sanitize_phone_number(session.phone or "")
        if not to:
            logger.error(f"Session {session.id} has no valid phone number, {action.type} not sent.")
            return False

        if action.type == "send_message":
            if action.delay and action.delay > 0:
                await asyncio.sleep(action.delay)
            payload = build_text_payload(to, action.text)
        elif action.type == "send_buttons":
            payload = build_buttons_payload(to, action.text, action.buttons)
        elif action.type == "send_list":
            payload = build_list_payload(to, action.text, action.button_text, action.sections)
        elif action.type == "send_image":
            payload = build_image_payload(to, action.url, action.caption)
        elif action.type == "send_document":
            payload = build_document_payload(to, action.url, action.filename)
        else:
            logger.warning(f"Unsupported action type: {action.type}")
            return False

        return await self.send_whatsapp_request(payload) is not None

    async def _directory_call(self, kind: str, session: FlowSession, value: Optional[str], message: str = "") -> bool:
        if self.directory is None:
            logger.warning(f"No customer directory configured, {kind} for session {session.id} skipped.")
            return False
        try:
            if kind == "assign_agent":
                ok = await self.directory.assign_agent(session.organization_id, session.customer_id, value)
            else:
                ok = await self.directory.add_tag(session.organization_id, session.customer_id, value)
        except Exception as e:
            logger.error(f"{kind} failed for customer {session.customer_id}: {e}", exc_info=True)
            return False

        # The hand-over note is sent to the customer like any other message
        if kind == "assign_agent" and message and session.channel == "whatsapp":
            to = SecurityService.sanitize_phone_number(session.phone or "")
            if to:
                await self.send_whatsapp_request(build_text_payload(to, message))
        return ok
