# /chatflow/workflows/engine.py

"""
Flow interpreter.

Walks a flow graph for one session until execution has to suspend (waiting
for the customer, or a delay timer) or terminates (end node, agent
hand-over, or no outgoing edge). One call to `step` or `resume` is one unit
of work for one inbound message:

- `current_node` is persisted before each visited node is evaluated, so a
  restart resumes at the last visited node. Actions computed before a crash
  are not replayed (at-most-once delivery)
- Actions accumulate in visiting order and are returned to the caller, the
  interpreter never talks to the delivery channel itself
- A node reached twice in the same walk aborts the step (FlowCycleError)
- Terminal sessions are inert: nothing here moves them again

Faults never raise out of `step`/`resume`: they come back as a StepResult
with `error` set and no actions.
"""

import asyncio
import json
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import ValidationError

from chatflow.config.settings import settings
from chatflow.models.execution import (
    AddTagAction,
    AssignAgentAction,
    SendButtonsAction,
    SendDocumentAction,
    SendImageAction,
    SendListAction,
    SendMessageAction,
    StepResult,
)
from chatflow.models.flow import Flow, FlowEdge, FlowNode
from chatflow.models.nodes import NodeConfig, NodeType
from chatflow.models.session import FlowSession, SessionStatus, utc_now
from chatflow.services.ai_service import AIService, AIServiceError
from chatflow.services.security_service import SecurityService
from chatflow.utils.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from chatflow.utils.metrics import (
    actions_emitted_counter,
    engine_faults_counter,
    external_calls_counter,
    nodes_evaluated_counter,
    sessions_finished_counter,
)
from chatflow.workflows.conditions import evaluate_condition
from chatflow.workflows.errors import FlowCycleError, FlowEngineError, NodeConfigError
from chatflow.workflows.stores import SessionStore
from chatflow.workflows.variables import VariableEnvironment

log = structlog.get_logger(__name__)


class _Halt:
    """Handler result: stop walking, the session suspends or has terminated."""


HALT = _Halt()

# A handler returns HALT, None (follow the default edge, complete the session
# if there is none) or a port label (follow that edge, stall if it is missing).
Directive = Union[_Halt, None, str]

# Nodes a session legitimately rests on between inbound messages
SUSPENDING_TYPES = {NodeType.WAIT_INPUT.value, NodeType.BUTTONS.value, NodeType.LIST.value, NodeType.DELAY.value}


class FlowInterpreter:
    def __init__(
        self,
        session_store: SessionStore,
        http_client: Optional[httpx.AsyncClient] = None,
        ai_service: Optional[AIService] = None,
        external_call_timeout: Optional[float] = None,
        default_delay_seconds: Optional[float] = None,
        max_delay_seconds: Optional[float] = None,
    ):
        self.sessions = session_store
        self.ai_service = ai_service
        self.external_call_timeout = external_call_timeout or settings.external_call_timeout_seconds
        self.http_client = http_client or httpx.AsyncClient(timeout=self.external_call_timeout)
        self.default_delay_seconds = default_delay_seconds if default_delay_seconds is not None else settings.default_delay_seconds
        self.max_delay_seconds = max_delay_seconds if max_delay_seconds is not None else settings.max_delay_seconds
        self.breakers = CircuitBreakerRegistry(failure_threshold=5, timeout=60)
        self._handlers: Dict[str, Callable[..., Awaitable[Directive]]] = self._register_handlers()

    def _register_handlers(self) -> Dict[str, Callable[..., Awaitable[Directive]]]:
        return {
            NodeType.TRIGGER.value: self._handle_trigger,
            NodeType.MESSAGE.value: self._handle_message,
            NodeType.BUTTONS.value: self._handle_buttons,
            NodeType.LIST.value: self._handle_list,
            NodeType.IMAGE.value: self._handle_image,
            NodeType.DOCUMENT.value: self._handle_document,
            NodeType.WAIT_INPUT.value: self._handle_wait_input,
            NodeType.DELAY.value: self._handle_delay,
            NodeType.SET_VARIABLE.value: self._handle_set_variable,
            NodeType.CONDITION.value: self._handle_condition,
            NodeType.API_CALL.value: self._handle_api_call,
            NodeType.AI_RESPONSE.value: self._handle_ai_response,
            NodeType.ASSIGN_AGENT.value: self._handle_assign_agent,
            NodeType.ADD_TAG.value: self._handle_add_tag,
            NodeType.END.value: self._handle_end,
        }

    async def close(self):
        """Close HTTP client."""
        await self.http_client.aclose()

    # ==================== Entry points ====================

    async def step(
        self,
        flow: Flow,
        session: FlowSession,
        node_id: Optional[str],
        inbound_message: Optional[str] = None,
    ) -> StepResult:
        """
        Evaluates the flow starting at `node_id`.

        When `inbound_message` is given and the session rests on a wait_input
        node, the message is first stored in that node's variable.
        """
        if not session.is_active:
            return self._inert(session)

        env = VariableEnvironment(session.variables)
        try:
            if inbound_message is not None:
                current = flow.find_node(session.current_node)
                if current is not None and current.type == NodeType.WAIT_INPUT.value:
                    config = self._config(current)
                    self._set_variable(session, env, config.variable, inbound_message)
            return await self._walk(flow, session, env, node_id)
        except FlowEngineError as e:
            return await self._fault(session, e)

    async def resume(self, flow: Flow, session: FlowSession, inbound_message: str) -> StepResult:
        """
        Continues a suspended session with the customer's next message.

        - wait_input: validates and stores the reply, then follows the node's edge
        - buttons / list: follows the edge labeled with the chosen option
        - delay: inbound messages are ignored until the timer fires
        - any other node (a stalled branch or an interrupted walk) is evaluated again
        """
        if not session.is_active:
            return self._inert(session)

        current = flow.find_node(session.current_node)
        env = VariableEnvironment(session.variables)
        try:
            if current is None:
                return await self._walk(flow, session, env, None)

            if current.type == NodeType.DELAY.value and session.resume_at is not None:
                log.info("Inbound message ignored while session waits on a delay.", session_id=session.id, node_id=current.id)
                return StepResult(session=session)

            if current.type not in SUSPENDING_TYPES:
                return await self._walk(flow, session, env, current.id)

            config = self._config(current)
            if current.type == NodeType.WAIT_INPUT.value:
                if not SecurityService.validate_reply(config.validation, inbound_message):
                    return self._reject_input(session, env, config)
                self._set_variable(session, env, config.variable, inbound_message)
                await self.sessions.save_progress(session)
                edge = flow.outgoing_edge(current.id)
            elif current.type in (NodeType.BUTTONS.value, NodeType.LIST.value):
                edge = self._choice_edge(flow, current, config, inbound_message)
            else:
                edge = flow.outgoing_edge(current.id)

            if edge is None:
                result = StepResult(session=session)
                await self._complete(session, result)
                await self.sessions.save(session)
                return result
            return await self._walk(flow, session, env, edge.target)
        except FlowEngineError as e:
            return await self._fault(session, e)

    async def continue_after_delay(self, flow: Flow, session: FlowSession) -> StepResult:
        """Advances a session parked on a delay node once its timer has fired."""
        if not session.is_active:
            return self._inert(session)

        current = flow.find_node(session.current_node)
        if current is None or current.type != NodeType.DELAY.value:
            log.warning("Delay wake-up for a session no longer on a delay node.", session_id=session.id, node_id=session.current_node)
            return StepResult(session=session)

        session.resume_at = None
        env = VariableEnvironment(session.variables)
        edge = flow.outgoing_edge(current.id)
        try:
            if edge is None:
                result = StepResult(session=session)
                await self._complete(session, result)
                await self.sessions.save(session)
                return result
            return await self._walk(flow, session, env, edge.target)
        except FlowEngineError as e:
            return await self._fault(session, e)

    # ==================== Walk ====================

    async def _walk(self, flow: Flow, session: FlowSession, env: VariableEnvironment, node_id: Optional[str]) -> StepResult:
        result = StepResult(session=session)
        visited = set()
        next_id = node_id

        while True:
            node = flow.find_node(next_id)
            if node is None:
                # Unresolvable reference: end quietly
                log.info("Walk reached a missing node, ending session.", session_id=session.id, node_id=next_id)
                await self._complete(session, result)
                break

            if node.id in visited:
                raise FlowCycleError(node.id)
            visited.add(node.id)

            session.current_node = node.id
            await self.sessions.save_progress(session)
            nodes_evaluated_counter.labels(node_type=node.type).inc()

            config = self._config(node)
            handler = self._handlers.get(node.type, self._handle_passthrough)
            directive = await handler(flow, session, env, node, config, result)

            if directive is HALT:
                break

            edge = flow.outgoing_edge(node.id, directive)
            if edge is None:
                if directive is None:
                    await self._complete(session, result)
                else:
                    self._stall(session, node, directive, result)
                break
            next_id = edge.target

        await self.sessions.save(session)
        for action in result.actions:
            actions_emitted_counter.labels(action_type=action.type).inc()
        return result

    # ==================== Node handlers ====================

    async def _handle_passthrough(self, flow, session, env, node, config, result) -> Directive:
        log.warning("Unknown node type treated as pass-through.", session_id=session.id, node_id=node.id, node_type=node.type)
        return None

    async def _handle_trigger(self, flow, session, env, node, config, result) -> Directive:
        return None

    async def _handle_message(self, flow, session, env, node, config, result) -> Directive:
        result.actions.append(SendMessageAction(text=env.interpolate(config.text), delay=config.delay))
        return None

    async def _handle_buttons(self, flow, session, env, node, config, result) -> Directive:
        result.actions.append(SendButtonsAction(text=env.interpolate(config.text), buttons=config.buttons))
        result.wait_for_input = True
        return HALT

    async def _handle_list(self, flow, session, env, node, config, result) -> Directive:
        result.actions.append(
            SendListAction(text=env.interpolate(config.text), button_text=config.button_text, sections=config.sections)
        )
        result.wait_for_input = True
        return HALT

    async def _handle_image(self, flow, session, env, node, config, result) -> Directive:
        result.actions.append(SendImageAction(url=config.url, caption=env.interpolate(config.caption)))
        return None

    async def _handle_document(self, flow, session, env, node, config, result) -> Directive:
        result.actions.append(SendDocumentAction(url=config.url, filename=env.interpolate(config.filename)))
        return None

    async def _handle_wait_input(self, flow, session, env, node, config, result) -> Directive:
        result.wait_for_input = True
        return HALT

    async def _handle_delay(self, flow, session, env, node, config, result) -> Directive:
        seconds = config.seconds or self.default_delay_seconds
        seconds = max(0.0, min(float(seconds), float(self.max_delay_seconds)))
        session.resume_at = utc_now() + timedelta(seconds=seconds)
        await self.sessions.save_progress(session)
        result.delay_seconds = seconds
        return HALT

    async def _handle_set_variable(self, flow, session, env, node, config, result) -> Directive:
        if not config.variable:
            log.warning("set_variable node without a variable name.", session_id=session.id, node_id=node.id)
            return None
        self._set_variable(session, env, config.variable, env.interpolate(config.value))
        await self.sessions.save_progress(session)
        return None

    async def _handle_condition(self, flow, session, env, node, config, result) -> Directive:
        outcome = evaluate_condition(env.get(config.variable), config.operator, config.value)
        log.debug("Condition evaluated.", session_id=session.id, node_id=node.id, outcome=outcome)
        return "true" if outcome else "false"

    async def _handle_api_call(self, flow, session, env, node, config, result) -> Directive:
        url = env.interpolate(config.url)
        if not url:
            log.warning("api_call node without a URL.", session_id=session.id, node_id=node.id)
            return "error"

        headers = {name: env.interpolate(value) for name, value in config.headers.items()}
        request_kwargs: Dict[str, Any] = {"headers": headers}
        if config.body and config.method != "GET":
            body = env.interpolate(config.body)
            try:
                request_kwargs["json"] = json.loads(body)
            except ValueError:
                request_kwargs["content"] = body

        try:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise httpx.InvalidURL(f"Not an absolute http(s) URL: {url!r}")
            request = self.http_client.build_request(
                config.method, url, timeout=self.external_call_timeout, **request_kwargs
            )
            breaker = self.breakers.get(parsed.netloc)
            response = await breaker.call(self._send_request, request)
        except (httpx.HTTPError, httpx.InvalidURL, CircuitOpenError, ValueError, UnicodeError) as e:
            # Interpolated customer input can yield an unusable URL or header value
            log.warning("api_call failed.", session_id=session.id, node_id=node.id, url=url, error=str(e))
            external_calls_counter.labels(target="api_call", status="error").inc()
            return "error"

        external_calls_counter.labels(target="api_call", status="success").inc()
        if config.result_variable:
            self._set_variable(session, env, config.result_variable, self._response_text(response))
            await self.sessions.save_progress(session)
        return "success" if flow.outgoing_edge(node.id, "success") else None

    async def _send_request(self, request: httpx.Request) -> httpx.Response:
        response = await self.http_client.send(request)
        response.raise_for_status()
        return response

    @staticmethod
    def _response_text(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text
        if isinstance(payload, str):
            return payload
        return json.dumps(payload, ensure_ascii=False)

    async def _handle_ai_response(self, flow, session, env, node, config, result) -> Directive:
        if self.ai_service is None or not self.ai_service.enabled:
            log.info("No AI client configured, ai_response node passes through.", session_id=session.id, node_id=node.id)
            return None
        try:
            reply = await asyncio.wait_for(
                self.ai_service.generate_reply(env.get("input") or "", env.interpolate(config.context)),
                timeout=self.external_call_timeout,
            )
        except (asyncio.TimeoutError, AIServiceError) as e:
            log.warning("ai_response failed.", session_id=session.id, node_id=node.id, error=str(e))
            return "error"
        self._set_variable(session, env, config.result_variable, reply)
        await self.sessions.save_progress(session)
        return "success" if flow.outgoing_edge(node.id, "success") else None

    async def _handle_assign_agent(self, flow, session, env, node, config, result) -> Directive:
        result.actions.append(AssignAgentAction(agent_id=config.agent_id, message=env.interpolate(config.message)))
        session.finish(SessionStatus.TRANSFERRED)
        sessions_finished_counter.labels(status=SessionStatus.TRANSFERRED.value).inc()
        result.transferred = True
        return HALT

    async def _handle_add_tag(self, flow, session, env, node, config, result) -> Directive:
        result.actions.append(AddTagAction(tag=config.tag))
        return None

    async def _handle_end(self, flow, session, env, node, config, result) -> Directive:
        await self._complete(session, result)
        return HALT

    # ==================== Helpers ====================

    def _config(self, node: FlowNode) -> Optional[NodeConfig]:
        try:
            return node.config()
        except ValidationError as e:
            raise NodeConfigError(node.id, str(e)) from e

    @staticmethod
    def _set_variable(session: FlowSession, env: VariableEnvironment, name: str, value: Any) -> None:
        env.set(name, value)
        session.variables = env.as_dict()

    async def _complete(self, session: FlowSession, result: StepResult) -> None:
        session.finish(SessionStatus.COMPLETED)
        sessions_finished_counter.labels(status=SessionStatus.COMPLETED.value).inc()
        result.completed = True

    def _stall(self, session: FlowSession, node: FlowNode, handle: str, result: StepResult) -> None:
        # The session stays active on this node until something changes
        log.warning("No edge for port, session stalls.", session_id=session.id, node_id=node.id, port=handle)
        engine_faults_counter.labels(reason="edge_miss").inc()
        result.stalled = True

    def _reject_input(self, session: FlowSession, env: VariableEnvironment, config: NodeConfig) -> StepResult:
        result = StepResult(session=session, wait_for_input=True)
        if config.error_message:
            result.actions.append(SendMessageAction(text=env.interpolate(config.error_message)))
        log.info("Reply failed wait_input validation.", session_id=session.id, validation=config.validation)
        return result

    def _choice_edge(self, flow: Flow, node: FlowNode, config: NodeConfig, reply: str) -> Optional[FlowEdge]:
        """
        Edge for a button or list reply: the edge labeled with the chosen
        option's id or title, else the default edge, else the node's first edge.
        """
        reply_key = (reply or "").strip().lower()
        candidates = {reply_key}
        if node.type == NodeType.BUTTONS.value:
            options = config.buttons
        else:
            options = [row for section in config.sections for row in (section.get("rows") or [])]
        for option in options:
            keys = _option_keys(option)
            if reply_key in keys:
                candidates.update(keys)

        for edge in flow.edges_from(node.id):
            if edge.source_handle and edge.source_handle.strip().lower() in candidates:
                return edge
        fallback = flow.outgoing_edge(node.id)
        if fallback is not None:
            return fallback
        edges = flow.edges_from(node.id)
        return edges[0] if edges else None

    @staticmethod
    def _inert(session: FlowSession) -> StepResult:
        return StepResult(
            session=session,
            completed=session.status == SessionStatus.COMPLETED,
            transferred=session.status == SessionStatus.TRANSFERRED,
        )

    async def _fault(self, session: FlowSession, error: FlowEngineError) -> StepResult:
        log.error("Flow step aborted.", session_id=session.id, flow_id=session.flow_id, error=str(error))
        engine_faults_counter.labels(reason=error.reason).inc()
        await self.sessions.save_progress(session)
        return StepResult(session=session, stalled=True, error=error.reason)


def _option_keys(option: Any) -> set:
    if isinstance(option, str):
        return {option.strip().lower()}
    if isinstance(option, dict):
        reply = option.get("reply") if isinstance(option.get("reply"), dict) else {}
        values = (option.get("id"), option.get("title"), option.get("text"), reply.get("id"), reply.get("title"))
        return {str(v).strip().lower() for v in values if v not in (None, "")}
    return set()
