"""
Flow Interpreter — walks a flow definition one inbound message at a time.

Per invocation:
  1. resolve the conversation's non-terminal execution, or create one at
     the start node of the department's active flow
  2. seed variable bindings (contact name, phone, message, today)
  3. run a bounded loop dispatching each node to its handler until a
     handler halts (input / long delay / end / escalation), the next node
     is a condition that needs a fresh reply, or the step cap is reached
  4. persist the working copy with a version check and append the
     Execution Log entries

The stored execution is never touched until step 4: the loop mutates a
deep copy, so a ConfigurationError mid-walk leaves the stored row as it was.
"""
from __future__ import annotations

import asyncio
import structlog
import time
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config.settings import EngineConfig, get_settings
from context.lifecycle import ExecutionLifecycle
from core.errors import ConfigurationError
from core.gateway import ActionGateway, ActionKind
from core.handlers import StepContext, get_handler
from core.intent import IntentClassifier
from database.store_base import (
    BaseExecutionStore, DuplicateExecutionError, ExecutionFrozenError, StaleExecutionError,
)
from models.schemas import (
    ConditionNode, ExecutionLogEntry, ExecutionResult, ExecutionState,
    ExecutionStatus, FlowDefinition, TriggerRequest,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _engine_tz(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("engine_timezone_unknown", timezone=name)
        return timezone.utc


class FlowInterpreter:
    """
    Executes flows for inbound messages.

    `sleep` and `clock` are injectable so tests can run message and delay
    nodes without waiting.
    """

    def __init__(
        self,
        store: BaseExecutionStore,
        gateway: ActionGateway,
        intent_classifier: Optional[IntentClassifier] = None,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.intent = intent_classifier
        self.config = config or get_settings().engine
        self.lifecycle = ExecutionLifecycle()
        self._sleep = sleep
        self._clock = clock
        self._tz = _engine_tz(self.config.timezone)

    # ── Trigger contract ──────────────────────────────────────

    async def execute(self, request: TriggerRequest) -> ExecutionResult:
        log = logger.bind(conversation_id=request.conversation_id,
                          department=request.department_code)
        try:
            execution = await self.get_or_create(
                request.conversation_id, request.department_code, request.phone_identity,
            )
            if execution is None:
                log.info("no_active_flow")
                return ExecutionResult(success=True)

            if request.message_id and execution.context.get("last_message_id") == request.message_id:
                log.info("duplicate_message_ignored", execution_id=execution.id,
                         message_id=request.message_id)
                return ExecutionResult(success=True, execution_id=execution.id,
                                       status=execution.status)

            if execution.status == ExecutionStatus.PAUSED and not self._resume_due(execution):
                log.info("execution_still_paused", execution_id=execution.id,
                         resume_at=execution.context.get("resume_at"))
                return ExecutionResult(success=True, execution_id=execution.id,
                                       status=execution.status)

            flow = await self._load_flow(execution)
            return await self._run(execution, flow, request.inbound_text, request.message_id)

        except ConfigurationError as e:
            log.error("flow_configuration_error", error=str(e), flow_id=e.flow_id, node_id=e.node_id)
            return ExecutionResult(success=False, error=str(e), error_code="configuration")

    async def resume_paused(self, execution_id: str) -> ExecutionResult:
        """
        Continue a paused execution without an inbound message. Called by
        the external scheduler once a long delay has elapsed.
        """
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            return ExecutionResult(success=False, error=f"execution {execution_id} not found")
        if execution.status != ExecutionStatus.PAUSED:
            return ExecutionResult(success=False, execution_id=execution.id, status=execution.status,
                                   error=f"execution is {execution.status.value}, not paused")
        try:
            flow = await self._load_flow(execution)
            return await self._run(execution, flow, "", "")
        except ConfigurationError as e:
            logger.error("flow_configuration_error", execution_id=execution_id, error=str(e))
            return ExecutionResult(success=False, execution_id=execution_id, error=str(e),
                                   error_code="configuration")

    # ── Execution resolution ──────────────────────────────────

    async def get_or_create(
        self, conversation_id: str, department_code: str, phone_identity: str = "",
    ) -> Optional[ExecutionState]:
        """
        The conversation's non-terminal execution, or a new one at the start
        node of the department's active flow. None when the department has
        no active flow.
        """
        existing = await self.store.find_active_execution(conversation_id)
        if existing:
            return existing

        flow = await self.store.get_active_flow(department_code)
        if flow is None:
            return None

        start = flow.get_start_node()
        if start is None:
            raise ConfigurationError(f"flow {flow.id} has no start node", flow_id=flow.id)

        execution = ExecutionState(
            conversation_id=conversation_id,
            flow_id=flow.id,
            phone_identity=phone_identity,
            department_code=department_code,
            current_node_id=start.id,
            status=ExecutionStatus.RUNNING,
        )
        try:
            return await self.store.create_execution(execution)
        except DuplicateExecutionError:
            # lost the race: use the execution the other invocation created
            winner = await self.store.find_active_execution(conversation_id)
            if winner is None:
                raise
            logger.info("execution_create_race_lost",
                        conversation_id=conversation_id, execution_id=winner.id)
            return winner

    async def _load_flow(self, execution: ExecutionState) -> FlowDefinition:
        flow = await self.store.get_flow(execution.flow_id)
        if flow is None:
            raise ConfigurationError(f"flow {execution.flow_id} not found", flow_id=execution.flow_id)
        return flow

    def _resume_due(self, execution: ExecutionState) -> bool:
        resume_at = execution.context.get("resume_at")
        if not resume_at:
            return True
        try:
            due = datetime.fromisoformat(resume_at)
        except (TypeError, ValueError):
            return True
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)
        return self._clock() >= due

    # ── Graph walk ────────────────────────────────────────────

    async def _seed_variables(self, execution: ExecutionState, message: str, now: datetime) -> None:
        name = self.config.default_contact_name
        contact = await self.gateway.invoke(ActionKind.GET_CONTACT, {"phone": execution.phone_identity})
        if contact.ok and contact.data.get("name"):
            name = contact.data["name"]

        seeds = {
            "name": name,
            "phone": execution.phone_identity,
            "message": message,
            "today": now.strftime(self.config.date_format),
        }
        for alias, canonical in self.config.variable_aliases.items():
            if canonical in seeds:
                seeds[alias] = seeds[canonical]
        execution.variables.update(seeds)

    async def _run(
        self, stored: ExecutionState, flow: FlowDefinition, message: str, message_id: str,
    ) -> ExecutionResult:
        working = stored.model_copy(deep=True)
        now = self._clock().astimezone(self._tz)

        resumed_from = self.lifecycle.resume(working)
        if resumed_from == ExecutionStatus.PAUSED:
            for key in ("resume_at", "delay_seconds"):
                working.context.pop(key, None)

        await self._seed_variables(working, message, now)
        ctx = StepContext(
            flow=flow,
            execution=working,
            message=message or "",
            now=now,
            gateway=self.gateway,
            intent=self.intent,
            config=self.config,
            sleep=self._sleep,
            pending_input_node_id=(
                working.current_node_id if resumed_from == ExecutionStatus.WAITING_INPUT else None
            ),
        )

        log = logger.bind(execution_id=working.id, flow_id=flow.id,
                          conversation_id=working.conversation_id)
        entries: list[ExecutionLogEntry] = []
        steps = 0
        try:
            while True:
                if steps >= self.config.max_steps:
                    log.warning("flow_step_cap_reached", steps=steps, node_id=working.current_node_id)
                    break

                node = flow.get_node(working.current_node_id)
                if node is None:
                    raise ConfigurationError(
                        f"node {working.current_node_id} not found in flow {flow.id}",
                        flow_id=flow.id, node_id=working.current_node_id,
                    )

                steps += 1
                started = time.monotonic()
                result = await get_handler(node)(node, ctx)
                duration_ms = int((time.monotonic() - started) * 1000)
                entries.append(ExecutionLogEntry(
                    execution_id=working.id,
                    node_id=node.id,
                    node_type=node.type,
                    action_taken=result.action_taken,
                    input_data=result.input_data,
                    output_data=result.output_data,
                    duration_ms=duration_ms,
                ))
                log.info("flow_node_processed", node_id=node.id, node_type=node.type,
                         action=result.action_taken, duration_ms=duration_ms)

                if result.halt_status is not None:
                    self.lifecycle.transition(working, result.halt_status,
                                              node_id=result.halt_node_id or node.id)
                    break

                next_id = result.next_node_id
                if next_id is None:
                    log.warning("flow_dead_end", node_id=node.id, node_type=node.type)
                    self.lifecycle.transition(working, ExecutionStatus.COMPLETED)
                    break

                next_node = flow.get_node(next_id)
                if next_node is None:
                    raise ConfigurationError(
                        f"edge from {node.id} points at missing node {next_id}",
                        flow_id=flow.id, node_id=node.id,
                    )
                working.current_node_id = next_id

                # a condition that reads the reply waits for the next inbound message
                if (
                    isinstance(next_node, ConditionNode)
                    and next_node.config.reads_message
                    and steps < self.config.max_steps
                ):
                    self.lifecycle.transition(working, ExecutionStatus.WAITING_RESPONSE)
                    break
        except ConfigurationError:
            # steps already executed did happen; keep their audit trail
            await self._append_logs(entries)
            raise

        if message_id:
            working.context["last_message_id"] = message_id

        try:
            saved = await self.store.save_execution(working)
        except (StaleExecutionError, ExecutionFrozenError) as e:
            log.warning("execution_save_conflict", error=str(e))
            await self._append_logs(entries)
            return ExecutionResult(success=False, execution_id=working.id,
                                   status=stored.status, messages=ctx.outbound,
                                   error=str(e), error_code="conflict")

        await self._append_logs(entries)
        log.info("flow_invocation_finished", status=saved.status.value, steps=steps,
                 messages=len(ctx.outbound))
        return ExecutionResult(
            success=True,
            outbound_text=ctx.outbound[-1] if ctx.outbound else None,
            escalated=saved.status == ExecutionStatus.ESCALATED,
            execution_id=saved.id,
            status=saved.status,
            messages=ctx.outbound,
        )

    async def _append_logs(self, entries: list[ExecutionLogEntry]) -> None:
        if entries:
            await self.store.append_logs(entries)
