from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from .ai_config import AIConfigError
from .config import settings
from .db import fetch_db_info, validate_extensions
from .dead_letter import replay_retryable_dead_letter_jobs
from .embeddings import EmbeddingClientError
from .llm_client import LLMProviderError
from .logging_utils import configure_logging, get_logger, reset_request_id, set_request_id
from .queue_policy import EnqueueError
from .rag import CallerContext, TenantMismatchError
from .rate_limiter import RateLimitTimeout
from .schemas import DeadLetterReplayRequest, RAGChatRequest, RAGQueryRequest, RAGResponse, RecordingWebhookPayload
from .services import Services, get_services
from .webhooks import SIGNATURE_HEADER, WebhookSignatureError, verify_signature

ADMIN_ROLES = frozenset({"OWNER", "ADMIN"})

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    if not settings.skip_extension_check:
        ok, message = validate_extensions(get_services().engine, settings)
        if not ok:
            raise RuntimeError(message)
    yield


app = FastAPI(title="Callsight API", lifespan=lifespan)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    token = set_request_id(request.headers.get("X-Request-Id") or uuid4().hex)
    try:
        return await call_next(request)
    finally:
        reset_request_id(token)


def get_caller(
    x_organization_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CallerContext:
    if not x_organization_id:
        raise HTTPException(status_code=401, detail="missing authenticated organization")
    return CallerContext(
        organization_id=x_organization_id,
        user_id=x_user_id,
        role=(x_user_role or "").upper() or None,
    )


def _answer_or_raise(fn, request, caller: CallerContext) -> RAGResponse:
    try:
        return fn(request, caller)
    except TenantMismatchError as exc:
        logger.warning(
            "rag.tenant_mismatch caller_org=%s requested_org=%s user=%s",
            caller.organization_id,
            request.organization_id,
            caller.user_id,
        )
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except (LLMProviderError, EmbeddingClientError, AIConfigError, RateLimitTimeout) as exc:
        logger.error("rag.unavailable org=%s error=%s", caller.organization_id, str(exc))
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.get("/health")
def health(services: Services = Depends(get_services)) -> dict:
    try:
        info = fetch_db_info(services.engine)
    except Exception as exc:  # pragma: no cover - safety
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ok", "db": info}


@app.get("/diagnostics")
def diagnostics(services: Services = Depends(get_services)) -> dict:
    breakers = {key: asdict(snapshot) for key, snapshot in services.breakers.snapshots().items()}
    try:
        ok, message = validate_extensions(services.engine, services.settings)
    except Exception as exc:
        return {"status": "error", "detail": str(exc), "circuit_breakers": breakers}
    return {
        "status": "ok" if ok else "mismatch",
        "detail": message,
        "circuit_breakers": breakers,
        "rate_limiter": services.rate_limiter.snapshot(),
        "tag_cache": services.tag_cache.stats(),
    }


@app.post("/rag/query", response_model=RAGResponse)
def rag_query_endpoint(
    payload: RAGQueryRequest,
    caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
) -> RAGResponse:
    return _answer_or_raise(services.rag.query, payload, caller)


@app.post("/rag/chat", response_model=RAGResponse)
def rag_chat_endpoint(
    payload: RAGChatRequest,
    caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
) -> RAGResponse:
    return _answer_or_raise(services.rag.chat, payload, caller)


@app.post("/webhooks/recordings")
async def recording_webhook_endpoint(
    request: Request,
    services: Services = Depends(get_services),
) -> dict:
    raw_body = await request.body()
    try:
        verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), services.settings.webhook_secret)
    except WebhookSignatureError as exc:
        logger.warning("webhook.rejected reason=%s", str(exc))
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    try:
        payload = RecordingWebhookPayload.model_validate_json(raw_body)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="invalid webhook payload") from exc

    try:
        outcome = await run_in_threadpool(services.webhooks.handle, payload)
    except EnqueueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": outcome.status, "call_id": outcome.call_id, "job_id": outcome.job_id}


@app.post("/admin/dead-letter/replay")
def dead_letter_replay_endpoint(
    payload: DeadLetterReplayRequest,
    caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict:
    if caller.role not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="dead-letter replay requires an admin role")
    summary = replay_retryable_dead_letter_jobs(
        services.processing_queue,
        organization_id=caller.organization_id,
        limit=payload.limit,
        trigger="manual",
        audit=services.audit,
        actor_user_id=caller.user_id,
    )
    return summary.as_dict()
