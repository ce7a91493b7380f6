"""
FastAPI Application — trigger endpoint, audit API, flow import, webhooks.

Provides:
- POST /api/v1/flows/execute: the trigger contract (camelCase JSON)
- Flow definition import/listing with graph validation
- Execution and Execution Log lookup for debugging tools
- WhatsApp Cloud API webhook (verification + inbound messages)
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from config.settings import get_settings
from backend.connector import create_backend_connector
from channels.whatsapp_adapter import WhatsAppAdapter
from core.errors import FlowValidationError
from core.gateway import ExternalActionGateway
from core.intent import LLMIntentClassifier
from core.interpreter import FlowInterpreter
from database.session import close_db, init_db
from database.store_base import StoreError
from database.store_factory import create_store
from models.schemas import ExecutionResult, ExecutionStatus, FlowDefinition, TriggerRequest

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
store = create_store(_settings_boot.database)
backend_connector = create_backend_connector()
whatsapp_adapter = WhatsAppAdapter()
gateway = ExternalActionGateway(backend_connector, whatsapp_adapter)
intent_classifier = LLMIntentClassifier() if _settings_boot.llm.api_key else None
interpreter = FlowInterpreter(store, gateway, intent_classifier, _settings_boot.engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    wa_config = settings.channels.get("whatsapp")
    await whatsapp_adapter.initialize(wa_config.credentials if wa_config else {})

    if settings.database.store_backend == "sql":
        await init_db()

    logger.info("flow_engine_started",
                store_backend=settings.database.store_backend,
                intent_classifier=type(intent_classifier).__name__ if intent_classifier else None)
    yield

    await whatsapp_adapter.shutdown()
    await store.close()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("flow_engine_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="FlowEngine API",
    description="Flow execution engine for automated WhatsApp conversations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ERROR_STATUS = {"configuration": 422, "conflict": 409}


def _result_response(result: ExecutionResult) -> JSONResponse:
    status_code = 200 if result.success else _ERROR_STATUS.get(result.error_code, 500)
    return JSONResponse(
        status_code=status_code,
        content=result.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@app.exception_handler(StoreError)
@app.exception_handler(SQLAlchemyError)
async def store_unavailable_handler(request: Request, exc: Exception):
    logger.error("store_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"success": False, "error": "store unavailable"})


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(store).__name__,
        "whatsapp": await whatsapp_adapter.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  TRIGGER
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/flows/execute")
async def execute_flow(req: TriggerRequest):
    result = await interpreter.execute(req)
    return _result_response(result)


@app.post("/api/v1/executions/{execution_id}/resume")
async def resume_execution(execution_id: str):
    """Scheduler hook for executions paused by a long delay node."""
    result = await interpreter.resume_paused(execution_id)
    if not result.success and not result.error_code:
        raise HTTPException(404 if result.status is None else 409, result.error)
    return _result_response(result)


# ══════════════════════════════════════════════════════════════
#  FLOW DEFINITIONS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/flows")
async def import_flow(request: Request):
    try:
        flow = FlowDefinition.model_validate(await request.json())
        saved = await store.save_flow(flow)
    except ValidationError as e:
        raise HTTPException(422, json.loads(e.json()))
    except FlowValidationError as e:
        raise HTTPException(422, e.errors)
    logger.info("flow_imported", flow_id=saved.id, department=saved.department_code,
                active=saved.is_active, nodes=len(saved.nodes))
    return saved.model_dump(mode="json", by_alias=True)


@app.get("/api/v1/flows")
async def list_flows(department: str = ""):
    flows = await store.list_flows(department)
    return [
        {"id": f.id, "name": f.name, "departmentCode": f.department_code,
         "isActive": f.is_active, "nodes": len(f.nodes)}
        for f in flows
    ]


@app.get("/api/v1/flows/{flow_id}")
async def get_flow(flow_id: str):
    flow = await store.get_flow(flow_id)
    if not flow:
        raise HTTPException(404, "Flow not found")
    return flow.model_dump(mode="json", by_alias=True)


# ══════════════════════════════════════════════════════════════
#  AUDIT
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/executions")
async def list_executions(conversation_id: str = "", status: Optional[ExecutionStatus] = None,
                          limit: int = 100):
    executions = await store.list_executions(conversation_id, status, limit)
    return [e.model_dump(mode="json") for e in executions]


@app.get("/api/v1/executions/{execution_id}")
async def get_execution(execution_id: str):
    execution = await store.get_execution(execution_id)
    if not execution:
        raise HTTPException(404, "Execution not found")
    return execution.model_dump(mode="json")


@app.get("/api/v1/executions/{execution_id}/logs")
async def get_execution_logs(execution_id: str):
    if not await store.get_execution(execution_id):
        raise HTTPException(404, "Execution not found")
    return [entry.model_dump(mode="json") for entry in await store.get_logs(execution_id)]


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    params = dict(request.query_params)
    challenge = whatsapp_adapter.verify_webhook(params)
    if challenge:
        return PlainTextResponse(challenge)
    raise HTTPException(403, "Verification failed")


@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request, department: str = ""):
    """Receive WhatsApp messages and run the department's flow."""
    body_bytes = await request.body()

    signature = request.headers.get("X-Hub-Signature-256", "")
    if not whatsapp_adapter.verify_webhook_signature(body_bytes, signature):
        logger.warning("whatsapp_webhook_signature_invalid")
        raise HTTPException(403, "Invalid signature")

    try:
        body: dict[str, Any] = json.loads(body_bytes or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON")

    parsed = await whatsapp_adapter.handle_inbound(body)
    if not parsed or not parsed.get("content"):
        return {"status": "ok"}

    phone = parsed["sender_address"]
    if not await backend_connector.is_automation_enabled(phone):
        logger.info("automation_disabled_skip", phone=phone)
        return {"status": "skipped", "reason": "automation_disabled"}

    result = await interpreter.execute(TriggerRequest(
        conversation_id=f"whatsapp:{phone}",
        phone_identity=phone,
        inbound_text=parsed["content"],
        department_code=department or get_settings().engine.default_department,
        message_id=parsed.get("metadata", {}).get("channel_message_id", ""),
    ))
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
