"""
Node handlers — one coroutine per node kind, dispatched through HANDLERS.

A handler receives its typed node and the per-invocation StepContext and
returns a StepResult: either the id of the node to advance to, or a halt
status (waiting_input, paused, completed, escalated). Handlers never write
to the store; they mutate the working copy of the execution in `ctx` and
perform side effects only through the ActionGateway.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from config.settings import EngineConfig
from core.gateway import ActionGateway, ActionKind
from core.intent import IntentClassifier
from models.schemas import (
    ActionNode, ActionType, BaseNode, ConditionNode, DelayNode, EndNode,
    EscalationNode, ExecutionState, ExecutionStatus, FlowDefinition, InputNode,
    IntegrationNode, MessageNode, NodeType, StartNode,
)
from utils.conditions import needs_intent, resolve_branch
from utils.interpolation import interpolate, interpolate_mapping
from utils.parsing import parse_capture

logger = structlog.get_logger()

INTEGRATION_RESPONSE_VAR = "integration_response"


@dataclass
class StepContext:
    """Everything a handler may read or touch during one invocation."""
    flow: FlowDefinition
    execution: ExecutionState                 # working copy, persisted by the interpreter
    message: str
    now: datetime                             # aware, in the engine timezone
    gateway: ActionGateway
    intent: Optional[IntentClassifier]
    config: EngineConfig
    sleep: Callable[[float], Awaitable[None]]
    pending_input_node_id: Optional[str] = None
    outbound: list[str] = field(default_factory=list)

    @property
    def variables(self) -> dict[str, Any]:
        return self.execution.variables

    @property
    def phone(self) -> str:
        return self.execution.phone_identity


@dataclass
class StepResult:
    action_taken: str
    next_node_id: Optional[str] = None
    halt_status: Optional[ExecutionStatus] = None
    halt_node_id: Optional[str] = None        # where to park; defaults to the current node
    input_data: Any = None
    output_data: Any = None


Handler = Callable[[Any, StepContext], Awaitable[StepResult]]


# ──────────────────────────────────────────────────────────────
#  start / message
# ──────────────────────────────────────────────────────────────

async def handle_start(node: StartNode, ctx: StepContext) -> StepResult:
    return StepResult(action_taken="started", next_node_id=ctx.flow.next_node_id(node.id))


async def handle_message(node: MessageNode, ctx: StepContext) -> StepResult:
    text = interpolate(node.config.text, ctx.variables)
    delay = min(max(node.config.delay, 0), ctx.config.max_message_delay_seconds)
    if delay > 0:
        await ctx.sleep(delay)

    if not text:
        return StepResult(
            action_taken="skipped_empty",
            next_node_id=ctx.flow.next_node_id(node.id),
            input_data={"text": text},
        )

    result = await ctx.gateway.send_message(ctx.phone, text)
    if result.ok:
        ctx.outbound.append(text)
    return StepResult(
        action_taken="sent" if result.ok else "send_failed",
        next_node_id=ctx.flow.next_node_id(node.id),
        input_data={"text": text, "delay": delay},
        output_data=result.to_log(),
    )


# ──────────────────────────────────────────────────────────────
#  condition
# ──────────────────────────────────────────────────────────────

async def handle_condition(node: ConditionNode, ctx: StepContext) -> StepResult:
    config = node.config
    intent_matched: Optional[bool] = None
    if needs_intent(config, ctx.message):
        if ctx.intent is None:
            logger.warning("intent_classifier_missing", node_id=node.id)
            intent_matched = False
        else:
            intent_matched = await ctx.intent.classify(ctx.message, config.intent)

    branch_id = resolve_branch(config, ctx.message, ctx.variables, ctx.now, intent_matched)
    return StepResult(
        action_taken="evaluated",
        next_node_id=ctx.flow.branch_target(node.id, branch_id),
        input_data={"condition_type": config.condition_type.value, "message": ctx.message},
        output_data={"matched_branch": branch_id, "intent_matched": intent_matched},
    )


# ──────────────────────────────────────────────────────────────
#  action
# ──────────────────────────────────────────────────────────────

def _contact_updates(fields: dict[str, str], variables: dict[str, Any]) -> dict[str, Any]:
    updates: dict[str, Any] = {}
    if fields.get("name"):
        updates["name"] = interpolate(fields["name"], variables)
    if fields.get("email"):
        updates["email"] = interpolate(fields["email"], variables)
    if fields.get("type"):
        updates["contact_type"] = fields["type"]
    return updates


async def handle_action(node: ActionNode, ctx: StepContext) -> StepResult:
    config = node.config
    next_id = ctx.flow.next_node_id(node.id)
    action = config.action_type

    if action in (ActionType.ADD_TAG, ActionType.REMOVE_TAG):
        if not config.tag_id:
            return StepResult(action_taken=f"{action.value}_skipped", next_node_id=next_id,
                              output_data={"ok": False, "error": "no tag configured"})
        kind = ActionKind.ADD_TAG if action == ActionType.ADD_TAG else ActionKind.REMOVE_TAG
        payload: dict[str, Any] = {"phone": ctx.phone, "tag_id": config.tag_id}
    elif action == ActionType.UPDATE_CONTACT:
        fields = _contact_updates(config.contact_fields, ctx.variables)
        if not fields:
            return StepResult(action_taken="update_contact_skipped", next_node_id=next_id,
                              output_data={"ok": False, "error": "no contact fields"})
        kind = ActionKind.UPDATE_CONTACT
        payload = {"phone": ctx.phone, "fields": fields}
    else:
        kind = ActionKind.UPDATE_PROPERTY
        payload = {"phone": ctx.phone,
                   "fields": interpolate_mapping(config.record_fields, ctx.variables)}

    result = await ctx.gateway.invoke(kind, payload)
    return StepResult(
        action_taken=action.value,
        next_node_id=next_id,
        input_data=payload,
        output_data=result.to_log(),
    )


# ──────────────────────────────────────────────────────────────
#  escalation / integration
# ──────────────────────────────────────────────────────────────

async def handle_escalation(node: EscalationNode, ctx: StepContext) -> StepResult:
    config = node.config
    payload = {
        "conversation_id": ctx.execution.conversation_id,
        "department": config.department or ctx.execution.department_code,
        "priority": config.priority,
        "reason": interpolate(config.reason, ctx.variables),
    }
    escalated = await ctx.gateway.invoke(ActionKind.ESCALATE, payload)
    automation = await ctx.gateway.invoke(
        ActionKind.SET_AUTOMATION, {"phone": ctx.phone, "enabled": False},
    )
    return StepResult(
        action_taken="escalated",
        halt_status=ExecutionStatus.ESCALATED,
        input_data=payload,
        output_data={"escalate": escalated.to_log(), "automation_disabled": automation.to_log()},
    )


async def handle_integration(node: IntegrationNode, ctx: StepContext) -> StepResult:
    config = node.config
    next_id = ctx.flow.next_node_id(node.id)
    if not config.url:
        return StepResult(action_taken="skipped_no_url", next_node_id=next_id)

    payload = {
        "url": interpolate(config.url, ctx.variables),
        "method": config.method,
        "headers": interpolate_mapping(config.headers, ctx.variables),
        "body": interpolate(config.body or "{}", ctx.variables),
        "timeout": config.timeout,
    }
    result = await ctx.gateway.invoke(ActionKind.HTTP_REQUEST, payload)
    if result.ok:
        ctx.variables[INTEGRATION_RESPONSE_VAR] = result.data.get("body")
    return StepResult(
        action_taken="called" if result.ok else "call_failed",
        next_node_id=next_id,
        input_data={"url": payload["url"], "method": payload["method"]},
        output_data=result.to_log(),
    )


# ──────────────────────────────────────────────────────────────
#  delay / input
# ──────────────────────────────────────────────────────────────

async def handle_delay(node: DelayNode, ctx: StepContext) -> StepResult:
    seconds = node.config.seconds
    next_id = ctx.flow.next_node_id(node.id)

    if seconds <= ctx.config.sync_delay_threshold_seconds:
        if seconds > 0:
            await ctx.sleep(seconds)
        return StepResult(action_taken="waited", next_node_id=next_id,
                          input_data={"seconds": seconds})

    if next_id is None:
        return StepResult(action_taken="delay_at_end", input_data={"seconds": seconds})

    resume_at = ctx.now + timedelta(seconds=seconds)
    ctx.execution.context.update({
        "resume_at": resume_at.isoformat(),
        "delay_seconds": seconds,
    })
    return StepResult(
        action_taken="paused",
        halt_status=ExecutionStatus.PAUSED,
        halt_node_id=next_id,
        input_data={"seconds": seconds},
        output_data={"resume_at": resume_at.isoformat()},
    )


_WAITING_KEYS = ("waiting_for", "waiting_node_id", "timeout_at", "timeout_action")


async def handle_input(node: InputNode, ctx: StepContext) -> StepResult:
    config = node.config
    context = ctx.execution.context

    if ctx.pending_input_node_id == node.id:
        # resumed visit: capture the reply and move on
        ctx.pending_input_node_id = None
        value, valid = parse_capture(config.expected_type, ctx.message)
        ctx.variables[config.variable_name] = value

        now_ms = int(ctx.now.timestamp() * 1000)
        timeout_at = context.get("timeout_at")
        timed_out = bool(timeout_at) and now_ms > int(timeout_at)
        timeout_action = context.get("timeout_action", config.timeout_action)
        for key in _WAITING_KEYS:
            context.pop(key, None)

        if not valid:
            logger.info("input_capture_unparsed", node_id=node.id,
                        variable=config.variable_name, expected=config.expected_type.value)
        output: dict[str, Any] = {"value": value, "valid": valid}
        if timed_out:
            output.update({"timed_out": True, "timeout_action": timeout_action})
        return StepResult(
            action_taken="captured",
            next_node_id=ctx.flow.next_node_id(node.id),
            input_data={"variable_name": config.variable_name,
                        "expected_type": config.expected_type.value,
                        "raw_input": ctx.message},
            output_data=output,
        )

    context.update({
        "waiting_for": config.variable_name,
        "waiting_node_id": node.id,
        "timeout_at": int((ctx.now + timedelta(seconds=config.timeout)).timestamp() * 1000),
        "timeout_action": config.timeout_action,
    })
    return StepResult(
        action_taken="waiting",
        halt_status=ExecutionStatus.WAITING_INPUT,
        input_data={"variable_name": config.variable_name,
                    "expected_type": config.expected_type.value,
                    "timeout": config.timeout},
        output_data={"status": ExecutionStatus.WAITING_INPUT.value},
    )


# ──────────────────────────────────────────────────────────────
#  end
# ──────────────────────────────────────────────────────────────

async def handle_end(node: EndNode, ctx: StepContext) -> StepResult:
    config = node.config
    output: dict[str, Any] = {}

    if config.message:
        text = interpolate(config.message, ctx.variables)
        if text:
            sent = await ctx.gateway.send_message(ctx.phone, text)
            output["send"] = sent.to_log()
            if sent.ok:
                ctx.outbound.append(text)

    if config.close_conversation:
        closed = await ctx.gateway.invoke(ActionKind.CLOSE_CONVERSATION, {
            "conversation_id": ctx.execution.conversation_id,
            "reason": "flow_completed",
        })
        output["close"] = closed.to_log()

    return StepResult(
        action_taken="completed",
        halt_status=ExecutionStatus.COMPLETED,
        input_data={"message": config.message, "close_conversation": config.close_conversation},
        output_data=output,
    )


HANDLERS: dict[NodeType, Handler] = {
    NodeType.START: handle_start,
    NodeType.MESSAGE: handle_message,
    NodeType.CONDITION: handle_condition,
    NodeType.ACTION: handle_action,
    NodeType.ESCALATION: handle_escalation,
    NodeType.INTEGRATION: handle_integration,
    NodeType.DELAY: handle_delay,
    NodeType.INPUT: handle_input,
    NodeType.END: handle_end,
}


def get_handler(node: BaseNode) -> Handler:
    return HANDLERS[NodeType(node.type)]
