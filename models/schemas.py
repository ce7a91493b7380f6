"""
Core data models for the flow execution engine.
These are the universal types shared across all modules.

A FlowDefinition arrives as the document produced by the visual flow
builder (camelCase keys, node config nested under ``data.config``) and is
converted here into a closed union of typed nodes, so handlers never see an
untyped configuration payload.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator,
)
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    CONDITION = "condition"
    ACTION = "action"
    ESCALATION = "escalation"
    INTEGRATION = "integration"
    DELAY = "delay"
    INPUT = "input"
    END = "end"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING_RESPONSE = "waiting_response"
    WAITING_INPUT = "waiting_input"
    PAUSED = "paused"
    COMPLETED = "completed"
    ESCALATED = "escalated"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.ESCALATED})
NON_TERMINAL_STATUSES = frozenset(set(ExecutionStatus) - TERMINAL_STATUSES)


class ConditionType(str, Enum):
    KEYWORD = "keyword"
    INTENT = "intent"
    TIME = "time"
    VARIABLE = "variable"


class ActionType(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_CONTACT = "update_contact"
    UPDATE_PROPERTY = "update_property"


class ExpectedType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    CURRENCY = "currency"
    YES_NO = "yes_no"
    EMAIL = "email"
    PHONE = "phone"


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"


_UNIT_SECONDS = {DelayUnit.SECONDS: 1, DelayUnit.MINUTES: 60, DelayUnit.HOURS: 3600}


# ──────────────────────────────────────────────────────────────
#  Node configuration — one typed record per node kind
# ──────────────────────────────────────────────────────────────

class NodeConfig(BaseModel):
    """Base for every node config. Accepts camelCase (builder) and snake_case keys."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore",
    )


class StartConfig(NodeConfig):
    trigger: str = "first_message"            # first_message | keyword | template_response
    keywords: list[str] = []


class MessageConfig(NodeConfig):
    text: str = ""
    delay: float = 0                          # seconds before sending


class Branch(NodeConfig):
    """One labeled outgoing option of a condition node."""
    id: str
    label: str = ""
    value: str = ""
    keywords: list[str] = []


class TimeRange(NodeConfig):
    start: str = "09:00"
    end: str = "18:00"

    @staticmethod
    def _hour(value: str, fallback: int) -> int:
        try:
            return int(value.split(":")[0])
        except (ValueError, AttributeError):
            return fallback

    @property
    def start_hour(self) -> int:
        return self._hour(self.start, 9)

    @property
    def end_hour(self) -> int:
        return self._hour(self.end, 18)


class ConditionConfig(NodeConfig):
    condition_type: ConditionType = ConditionType.KEYWORD
    branches: list[Branch] = []
    keywords: list[str] = []                  # legacy global list, maps to the "yes" branch
    intent: str = ""
    time_range: TimeRange = Field(default_factory=TimeRange)
    variable_name: str = ""

    @property
    def reads_message(self) -> bool:
        """True when resolution consults the inbound message text."""
        if self.condition_type in (ConditionType.KEYWORD, ConditionType.INTENT):
            return True
        return bool(self.keywords) or any(b.keywords for b in self.branches)


class ActionConfig(NodeConfig):
    action_type: ActionType
    tag_id: str = ""
    contact_fields: dict[str, str] = {}
    record_fields: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("recordFields", "vistaFields", "record_fields"),
    )

    @field_validator("action_type", mode="before")
    @classmethod
    def _legacy_action_names(cls, v: Any) -> Any:
        return "update_property" if v == "update_vista" else v


class EscalationConfig(NodeConfig):
    department: str = ""
    priority: str = "medium"                  # low | medium | high
    reason: str = ""


class IntegrationConfig(NodeConfig):
    integration_type: str = "webhook"         # webhook | n8n | api
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = {}
    body: str = ""
    timeout: float = 10.0

    @field_validator("method")
    @classmethod
    def _upper(cls, v: str) -> str:
        return (v or "POST").upper()


class DelayConfig(NodeConfig):
    duration: float = 1
    unit: DelayUnit = DelayUnit.SECONDS

    @property
    def seconds(self) -> float:
        return self.duration * _UNIT_SECONDS[self.unit]


class InputConfig(NodeConfig):
    variable_name: str
    expected_type: ExpectedType = ExpectedType.TEXT
    timeout: int = 300                        # seconds
    timeout_action: str = "retry"


class EndConfig(NodeConfig):
    message: str = ""
    close_conversation: bool = False


# ──────────────────────────────────────────────────────────────
#  Nodes — closed tagged union on `type`
# ──────────────────────────────────────────────────────────────

class BaseNode(BaseModel):
    """
    A typed step in a flow.

    The builder nests configuration as ``data: {label, config}``; that shape
    is flattened before validation so each variant only declares ``config``.
    """
    model_config = ConfigDict(extra="ignore")

    id: str
    label: str = ""

    @model_validator(mode="before")
    @classmethod
    def _flatten_builder_shape(cls, raw: Any) -> Any:
        if isinstance(raw, dict) and isinstance(raw.get("data"), dict):
            data = raw["data"]
            raw = {k: v for k, v in raw.items() if k != "data"}
            raw.setdefault("label", data.get("label", ""))
            raw.setdefault("config", data.get("config") or {})
        return raw


class StartNode(BaseNode):
    type: Literal["start"] = "start"
    config: StartConfig = Field(default_factory=StartConfig)


class MessageNode(BaseNode):
    type: Literal["message"] = "message"
    config: MessageConfig = Field(default_factory=MessageConfig)


class ConditionNode(BaseNode):
    type: Literal["condition"] = "condition"
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class ActionNode(BaseNode):
    type: Literal["action"] = "action"
    config: ActionConfig


class EscalationNode(BaseNode):
    type: Literal["escalation"] = "escalation"
    config: EscalationConfig = Field(default_factory=EscalationConfig)


class IntegrationNode(BaseNode):
    type: Literal["integration"] = "integration"
    config: IntegrationConfig = Field(default_factory=IntegrationConfig)


class DelayNode(BaseNode):
    type: Literal["delay"] = "delay"
    config: DelayConfig = Field(default_factory=DelayConfig)


class InputNode(BaseNode):
    type: Literal["input"] = "input"
    config: InputConfig


class EndNode(BaseNode):
    type: Literal["end"] = "end"
    config: EndConfig = Field(default_factory=EndConfig)


FlowNode = Annotated[
    Union[
        StartNode, MessageNode, ConditionNode, ActionNode, EscalationNode,
        IntegrationNode, DelayNode, InputNode, EndNode,
    ],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────
#  Edges & Flow Definition
# ──────────────────────────────────────────────────────────────

class Edge(BaseModel):
    """Directed link between nodes. `source_handle` carries the branch tag."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=_new_id)
    source: str
    target: str
    source_handle: Optional[str] = None

    @property
    def branch(self) -> Optional[str]:
        if not self.source_handle:
            return None
        if self.source_handle.startswith("branch-"):
            return self.source_handle[len("branch-"):]
        return self.source_handle

    def matches_branch(self, branch_id: str) -> bool:
        return self.source_handle in (branch_id, f"branch-{branch_id}")


class FlowDefinition(BaseModel):
    """
    One authored conversation script for a department.

    Immutable to the engine. `validate_graph` is run by stores on import;
    the interpreter still checks node lookups at runtime because rows may be
    written by the external authoring tool.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=_new_id)
    name: str = ""
    description: str = ""
    department_code: str = Field(
        default="",
        validation_alias=AliasChoices("departmentCode", "department_code", "department"),
    )
    nodes: list[FlowNode] = []
    edges: list[Edge] = []
    is_active: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def node_index(self) -> dict[str, BaseNode]:
        return {n.id: n for n in self.nodes}

    def get_node(self, node_id: str) -> Optional[BaseNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def get_start_node(self) -> Optional[StartNode]:
        return next((n for n in self.nodes if n.type == NodeType.START), None)

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def next_node_id(self, node_id: str) -> Optional[str]:
        """Target of the first outgoing edge, tagged or not."""
        edge = next(iter(self.outgoing(node_id)), None)
        return edge.target if edge else None

    def branch_target(self, node_id: str, branch_id: Optional[str]) -> Optional[str]:
        """Target of the edge tagged with `branch_id`, else any outgoing edge."""
        if branch_id:
            for edge in self.outgoing(node_id):
                if edge.matches_branch(branch_id):
                    return edge.target
        untagged = next((e for e in self.outgoing(node_id) if not e.source_handle), None)
        if untagged:
            return untagged.target
        return self.next_node_id(node_id)

    def validate_graph(self) -> list[str]:
        """Validate the graph. Returns a list of error messages."""
        errors = []
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"duplicate node id '{node.id}'")
            seen.add(node.id)

        starts = [n for n in self.nodes if n.type == NodeType.START]
        if len(starts) != 1:
            errors.append(f"expected exactly one start node, found {len(starts)}")

        for edge in self.edges:
            if edge.source not in seen:
                errors.append(f"edge '{edge.id}' source '{edge.source}' not in nodes")
            if edge.target not in seen:
                errors.append(f"edge '{edge.id}' target '{edge.target}' not in nodes")

        for node in self.nodes:
            out = self.outgoing(node.id)
            if node.type != NodeType.CONDITION and len(out) > 1:
                errors.append(f"node '{node.id}' ({node.type}) has {len(out)} outgoing edges")
            if node.type == NodeType.CONDITION and not node.config.branches:
                errors.append(f"condition node '{node.id}' declares no branches")
        return errors


# ──────────────────────────────────────────────────────────────
#  Execution State — durable per-conversation progress
# ──────────────────────────────────────────────────────────────

class ExecutionState(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    flow_id: str
    phone_identity: str = ""
    department_code: str = ""
    current_node_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    variables: dict[str, Any] = {}
    context: dict[str, Any] = {}
    version: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExecutionLogEntry(BaseModel):
    """Immutable audit record of a single node visit."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    execution_id: str
    node_id: str
    node_type: str
    action_taken: str
    input_data: Any = None
    output_data: Any = None
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Trigger contract
# ──────────────────────────────────────────────────────────────

class TriggerRequest(BaseModel):
    """Inbound message handed to the interpreter by the ingestion layer."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    conversation_id: str
    phone_identity: str = Field(
        validation_alias=AliasChoices("phoneIdentity", "phone_identity", "phoneNumber", "phone_number"),
    )
    inbound_text: str = Field(
        default="",
        validation_alias=AliasChoices("inboundText", "inbound_text", "message"),
    )
    department_code: str = ""
    message_id: str = ""


class ExecutionResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    outbound_text: Optional[str] = None
    escalated: bool = False
    execution_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    messages: list[str] = []
    error: str = ""
    error_code: str = ""                      # "configuration" | "conflict"
