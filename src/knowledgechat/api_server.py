"""
FastAPI service layer for the knowledge chat system.

Exposes POST /api/pdf-analyze, POST /api/url-extract, POST /api/chat and
GET /metrics.

Run with:
    uvicorn knowledgechat.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .analysis import NO_SUMMARY_MESSAGE, analyze
from .answer_engine import compose_answer
from .errors import ExtractionError, ValidationError
from .extractors import UrlExtractor
from .llm import initialize_llm
from .metrics import metrics_collector
from .models import SourceDraft
from .observability import get_logger

logger = get_logger(__name__)

_THREAD_POOL_WORKERS = 8       # Concurrent blocking calls (LLM, HTTP fetch)


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AnalyzeRequest(_Request):
    file_name: str | None = Field(default=None, alias="fileName")
    text: str | None = None


class UrlExtractRequest(_Request):
    url: str | None = None


class ChatRequest(_Request):
    question: str | None = None
    selected_source_name: str | None = Field(default=None, alias="selectedSourceName")
    sources: list[Any] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}

_executor = ThreadPoolExecutor(max_workers=_THREAD_POOL_WORKERS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the language model once at startup."""
    _state["llm"] = initialize_llm()
    if _state["llm"] is None:
        logger.warning("api_llm_unavailable", detail="all endpoints answer with local fallbacks")

    yield

    _state.clear()


app = FastAPI(
    title="KnowledgeChat API",
    description="Ingestion analysis, URL extraction and grounded chat over team knowledge.",
    version="1.0.0",
    lifespan=lifespan,
)


async def _run_blocking(fn, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, lambda: fn(*args, **kwargs))


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _to_sources(raw: list[Any]) -> list[SourceDraft]:
    sources: list[SourceDraft] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        sources.append(SourceDraft.model_validate({**item, "name": str(item.get("name") or "Untitled")}))
    return sources


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/api/pdf-analyze")
async def pdf_analyze_endpoint(request: AnalyzeRequest):
    """Summary + monthly pricing plans for extracted text. Degrades to the regex fallback."""
    start = time.perf_counter()
    tier = ""
    try:
        result = await _run_blocking(analyze, request.file_name or "PDF", request.text or "", llm=_state.get("llm"))
        tier = result.tier
        return result.to_payload()
    except ValidationError as exc:
        tier = "rejected"
        return _error(exc.message, 400)
    except Exception as exc:
        logger.exception("pdf_analyze_failed", error=str(exc))
        tier = "failed"
        return {"summary": NO_SUMMARY_MESSAGE, "plans": []}
    finally:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics_collector.record_request("/api/pdf-analyze", latency_ms, success=tier not in {"rejected", "failed"}, tier=tier)


@app.post("/api/url-extract")
async def url_extract_endpoint(request: UrlExtractRequest):
    """Title and readable text of a public HTML page."""
    start = time.perf_counter()
    success = False
    try:
        if not str(request.url or "").strip():
            return _error("url is required", 400)
        content = await _run_blocking(UrlExtractor(request.url or "").extract)
        success = True
        return {"title": content.title, "text": content.text}
    except (ValidationError, ExtractionError) as exc:
        return _error(exc.message, 400)
    except Exception as exc:
        logger.exception("url_extract_failed", error=str(exc))
        return _error("extract failed", 500)
    finally:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics_collector.record_request("/api/url-extract", latency_ms, success=success)


@app.post("/api/chat")
async def chat_endpoint(request: ChatRequest):
    """Answer a question against the supplied sources."""
    start = time.perf_counter()
    question = str(request.question or "").strip()
    if not question:
        return _error("question is required", 400)

    sources = _to_sources(request.sources)
    selected = None
    if request.selected_source_name:
        selected = SourceDraft(name=request.selected_source_name)
    try:
        result = await _run_blocking(compose_answer, question, selected, sources, llm=_state.get("llm"))
    except Exception as exc:
        logger.exception("chat_failed", error=str(exc))
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics_collector.record_request("/api/chat", latency_ms, success=False)
        return {"answer": "回答生成に失敗しました。"}

    latency_ms = (time.perf_counter() - start) * 1000.0
    metrics_collector.record_request("/api/chat", latency_ms, success=True, tier=result.tier)
    return {"answer": result.text}


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated service metrics."""
    return metrics_collector.get_summary()
