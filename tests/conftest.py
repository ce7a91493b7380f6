"""Shared test fixtures for the flow engine."""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any

from backend.connector import MockBackendConnector
from channels.base import ChannelAdapter
from config.settings import EngineConfig
from core.gateway import ExternalActionGateway
from core.intent import IntentClassifier
from core.interpreter import FlowInterpreter
from database.store_memory import InMemoryExecutionStore
from models.schemas import FlowDefinition

PHONE = "5511999990001"


# ──────────────────────────────────────────────────────────────
#  Collaborator doubles
# ──────────────────────────────────────────────────────────────

class RecordingChannel(ChannelAdapter):
    """Channel that records every outbound text instead of sending it."""

    channel_name = "test"
    retry_backoff = 0.0

    def __init__(self, fail: bool = False):
        super().__init__()
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def initialize(self, config: dict[str, Any]) -> None:
        self._initialized = True

    async def _do_send(self, phone: str, content: str, metadata: dict[str, Any]) -> dict[str, Any]:
        if self.fail:
            return {"status": "failed", "error": "recipient unreachable"}
        self.sent.append((phone, content))
        return {"status": "sent", "channel_message_id": f"msg-{len(self.sent)}"}

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


class StaticIntentClassifier(IntentClassifier):
    """Answers from a fixed message → verdict table; unknown messages are False."""

    def __init__(self, verdicts: dict[str, bool] = None):
        self.verdicts = verdicts or {}
        self.calls: list[tuple[str, str]] = []

    async def classify(self, message: str, intent: str) -> bool:
        self.calls.append((message, intent))
        return self.verdicts.get(message, False)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def no_sleep(seconds: float) -> None:
    return None


# ──────────────────────────────────────────────────────────────
#  Flow documents (builder shape: data.config, camelCase keys)
# ──────────────────────────────────────────────────────────────

def node(node_id: str, node_type: str, label: str = "", **config) -> dict:
    return {"id": node_id, "type": node_type, "data": {"label": label or node_id, "config": config}}


def edge(source: str, target: str, handle: str = None) -> dict:
    e = {"id": f"{source}->{target}", "source": source, "target": target}
    if handle:
        e["sourceHandle"] = handle
    return e


def make_flow(nodes: list[dict], edges: list[dict], department: str = "vendas",
              flow_id: str = "flow-1", active: bool = True) -> FlowDefinition:
    return FlowDefinition.model_validate({
        "id": flow_id, "name": flow_id, "departmentCode": department,
        "nodes": nodes, "edges": edges, "isActive": active,
    })


def qualification_flow_doc() -> dict:
    """Greets, asks yes/no, captures a budget, records it and closes."""
    return {
        "id": "qualificacao",
        "name": "Qualificação de leads",
        "departmentCode": "vendas",
        "isActive": True,
        "nodes": [
            node("start", "start", trigger="first_message"),
            node("greet", "message", text="Olá {{nome}}! Você procura um imóvel para comprar?"),
            node("ask", "condition", conditionType="keyword", branches=[
                {"id": "a", "label": "Sim", "value": "yes", "keywords": ["sim"]},
                {"id": "b", "label": "Não", "value": "no", "keywords": ["não"]},
            ]),
            node("budget", "input", variableName="orcamento", expectedType="currency", timeout=600),
            node("record", "action", actionType="update_vista",
                 vistaFields={"budget": "{{orcamento}}", "status": "qualificado"}),
            node("done", "end", message="Obrigado {{nome}}, um corretor vai te chamar.",
                 closeConversation=True),
            node("bye", "end", message="Tudo bem, até logo!"),
        ],
        "edges": [
            edge("start", "greet"),
            edge("greet", "ask"),
            edge("ask", "budget", "branch-a"),
            edge("ask", "bye", "b"),
            edge("budget", "record"),
            edge("record", "done"),
        ],
    }


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def backend() -> MockBackendConnector:
    return MockBackendConnector()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def gateway(backend, channel) -> ExternalActionGateway:
    return ExternalActionGateway(backend, channel)


@pytest.fixture
def intent() -> StaticIntentClassifier:
    return StaticIntentClassifier()


@pytest.fixture
def clock() -> FakeClock:
    # 12:00 in America/Sao_Paulo
    return FakeClock(datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def interpreter(store, gateway, intent, engine_config, clock) -> FlowInterpreter:
    return FlowInterpreter(store, gateway, intent, engine_config, sleep=no_sleep, clock=clock)


@pytest.fixture
def qualification_flow() -> FlowDefinition:
    return FlowDefinition.model_validate(qualification_flow_doc())
