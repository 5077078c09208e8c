import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from airender import engine, render
from airender.auth import require_api_key
from airender.errors import AIRenderError, InvalidIntent
from airender.intents import AIProps
from airender.llm_client import ChatBackend, close_backend, get_backend, status as llm_status
from airender.reducer import RenderTarget, TemplateTarget, is_structured, reduce_result
from airender.store import MemoStore, close_store, get_store


if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

# Never copied onto completion records
_PRIVATE_HEADERS = {"authorization", "proxy-authorization", "cookie", "x-api-key"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    try:
        await close_store()
        await close_backend()
    except Exception:
        log.exception("shutdown: failed to close shared clients")


app = FastAPI(lifespan=lifespan)

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


@app.exception_handler(AIRenderError)
async def airender_error_handler(request: Request, exc: AIRenderError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=_error_payload(exc))


def get_memo_store() -> MemoStore:
    return get_store()


def get_chat_backend() -> ChatBackend:
    return get_backend()


def _error_payload(exc: AIRenderError) -> Dict[str, Any]:
    return {"error": type(exc).__name__, "message": str(exc)}


def _record_headers(request: Request) -> Dict[str, str]:
    return {k: v for k, v in request.headers.items() if k.lower() not in _PRIVATE_HEADERS}


def _target_for(props: AIProps) -> Optional[RenderTarget]:
    if not props.component:
        return None
    if not render.has_partial(props.component):
        raise InvalidIntent(f"unknown component {props.component!r}")
    return TemplateTarget(props.component)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
def llm_status_endpoint() -> Dict[str, Any]:
    return llm_status()


@app.post("/ai")
async def ai_endpoint(
    props: AIProps,
    request: Request,
    store: MemoStore = Depends(get_memo_store),
    backend: ChatBackend = Depends(get_chat_backend),
    api_key: Optional[str] = Depends(require_api_key),
):
    target = _target_for(props)
    outcome = await engine.complete(props, store=store, backend=backend, headers=_record_headers(request))
    return {
        "hash": outcome.fingerprint.request_hash,
        "promptHash": outcome.fingerprint.prompt_hash,
        "seed": outcome.seed,
        "isRandomSeed": outcome.fingerprint.is_random_seed,
        "cacheHit": outcome.cache_hit,
        "structured": target is None and is_structured(outcome),
        "value": reduce_result(outcome, target),
        "record": outcome.record.public(),
    }


@app.post("/ai/render", response_class=HTMLResponse)
async def ai_render_endpoint(
    props: AIProps,
    request: Request,
    store: MemoStore = Depends(get_memo_store),
    backend: ChatBackend = Depends(get_chat_backend),
    api_key: Optional[str] = Depends(require_api_key),
):
    """
    Same flow as /ai but returns an HTML page. Failures render a visible
    error block with the matching status code instead of an empty page.
    """
    try:
        target = _target_for(props)
        outcome = await engine.complete(props, store=store, backend=backend, headers=_record_headers(request))
    except AIRenderError as exc:
        log.warning("ai.render: %s: %s", type(exc).__name__, exc)
        html = render.render_error_html(exc.status_code, type(exc).__name__, str(exc))
        return HTMLResponse(html, status_code=exc.status_code)

    value = reduce_result(outcome, target)
    html = render.render_page_html(
        value,
        record={"hash": outcome.record.hash, "seed": outcome.seed},
        structured=target is None and is_structured(outcome),
        html=target is not None,
        title=props.prompt or props.user or "AI",
    )
    return HTMLResponse(html)


@app.get("/completions/variations/{prompt_hash}")
async def completion_variations(
    prompt_hash: str,
    limit: int = Query(default=10, ge=1, le=100),
    store: MemoStore = Depends(get_memo_store),
    api_key: Optional[str] = Depends(require_api_key),
) -> Dict[str, Any]:
    records = await engine.variations(prompt_hash, store=store, limit=limit)
    return {"promptHash": prompt_hash, "variations": [r.public() for r in records]}


@app.get("/completions/{request_hash}")
async def completion_record(
    request_hash: str,
    store: MemoStore = Depends(get_memo_store),
    api_key: Optional[str] = Depends(require_api_key),
):
    record = await engine.lookup(request_hash, store=store)
    if record is None:
        return JSONResponse(status_code=404, content={"error": "not found", "hash": request_hash})
    return record.public()
