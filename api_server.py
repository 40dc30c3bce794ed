"""
FastAPI backend for the Thematic Analysis Engine.
Exposes the purpose table, theme extraction and saved runs as REST APIs.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config import CORPUS_FILE, LOG_LEVEL
from errors import (
    CancellationError,
    ClusteringDegenerateInputError,
    CodeExtractionError,
    EmbeddingError,
    StageTimeoutError,
    ThematicAnalysisError,
    ValidationError,
)
from models import ContentKind, SourceContent
from persistence import JsonRunStore
from purpose_config import get_profile, list_purposes

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Lazy singletons – created on first request
_engine = None
_run_store: Optional[JsonRunStore] = None


def get_engine():
    global _engine
    if _engine is None:
        from data_loader import CorpusFileLoader
        from theme_extraction import create_default_engine

        provider = CorpusFileLoader(Path(CORPUS_FILE)) if CORPUS_FILE else None
        _engine = create_default_engine(content_provider=provider)
    return _engine


def get_run_store() -> JsonRunStore:
    global _run_store
    if _run_store is None:
        _run_store = JsonRunStore()
    return _run_store


# ---- Request models ----

class SourceIn(BaseModel):
    id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    content_kind: str = Field(default="abstract", pattern="^(abstract|full_text)$")
    title: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExtractRequest(BaseModel):
    purpose: str = Field(..., min_length=1)
    sources: Optional[List[SourceIn]] = None
    source_ids: Optional[List[str]] = None
    # Per-field purpose overrides, e.g. {"min_coherence": 0.65, "targetThemesMax": 12}
    overrides: Optional[Dict[str, Any]] = None
    research_context: str = Field(default="", max_length=2000)
    save: bool = True


# ---- Error mapping ----

_ERROR_STATUS = (
    (ValidationError, 400),
    (ClusteringDegenerateInputError, 422),
    (StageTimeoutError, 504),
    (CancellationError, 499),
    (EmbeddingError, 502),
    (CodeExtractionError, 502),
)


def _http_error(e: ThematicAnalysisError) -> HTTPException:
    for cls, code in _ERROR_STATUS:
        if isinstance(e, cls):
            detail: Dict[str, Any] = {"type": type(e).__name__, "message": str(e)}
            if isinstance(e, ValidationError):
                detail["field"] = e.field
            return HTTPException(status_code=code, detail=detail)
    return HTTPException(status_code=500, detail={"type": type(e).__name__, "message": str(e)})


# ---- Lifespan ----
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Engine (and its embedding model) is built on the first extraction request
    yield


app = FastAPI(title="Thematic Analysis API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/purposes")
async def purposes_api():
    """List the research purposes with their default profiles."""
    return {"purposes": list_purposes()}


@app.get("/api/purposes/{purpose}")
async def purpose_api(purpose: str):
    try:
        return get_profile(purpose).to_dict()
    except ValidationError as e:
        raise _http_error(e)


@app.post("/api/themes/extract")
async def extract_api(body: ExtractRequest):
    if body.sources is None and body.source_ids is None:
        raise HTTPException(status_code=400, detail="Provide either sources or source_ids")
    sources = None
    if body.sources is not None:
        sources = [
            SourceContent(
                id=s.id,
                text=s.text,
                content_kind=ContentKind(s.content_kind),
                title=s.title,
                metadata=s.metadata,
            )
            for s in body.sources
        ]

    try:
        engine = get_engine()
    except RuntimeError as e:
        # e.g. OPENAI_API_KEY missing for an OpenAI backend
        raise HTTPException(status_code=400, detail=str(e))

    try:
        result = await engine.run(
            sources,
            body.purpose,
            source_ids=body.source_ids,
            overrides=body.overrides,
            research_context=body.research_context,
        )
    except ThematicAnalysisError as e:
        raise _http_error(e)
    except RuntimeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    payload = result.to_dict()
    if result.error is not None:
        raise HTTPException(
            status_code=504 if isinstance(result.error, StageTimeoutError) else 500,
            detail={"type": type(result.error).__name__, "message": str(result.error), "partial": payload},
        )
    if body.save:
        try:
            await asyncio.to_thread(get_run_store().save, result)
        except OSError as e:
            raise HTTPException(status_code=500, detail=f"Failed to save run: {e}")
    return {"result": payload, "saved": body.save}


@app.get("/api/themes/runs")
async def list_runs_api():
    return {"runs": get_run_store().list_runs()}


@app.get("/api/themes/runs/{run_id}")
async def load_run_api(run_id: str):
    try:
        data = get_run_store().load_run(run_id)
    except (OSError, ValueError) as e:
        raise HTTPException(status_code=500, detail=f"Failed to read run: {e}")
    if data is None:
        raise HTTPException(status_code=404, detail="Theme run not found")
    return data


@app.delete("/api/themes/runs/{run_id}")
async def delete_run_api(run_id: str):
    try:
        deleted = get_run_store().delete_run(run_id)
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Failed to delete run: {e}")
    if not deleted:
        raise HTTPException(status_code=404, detail="Theme run not found")
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api_server:app", host="0.0.0.0", port=8000, reload=False)
