"""
Code extraction: source text -> InitialCode[].

Two oracles share one boundary. Whatever an oracle returns (JSON text, dicts, lists) is
validated against `CodePayload` before it becomes an `InitialCode`; malformed items are
repaired where possible and otherwise dropped with a warning.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from config import (
    CODE_EXTRACTION_BACKEND,
    CODE_EXTRACTION_MODEL,
    LLM_CONCURRENCY,
    LLM_TIMEOUT_S,
    require_openai_api_key,
)
from errors import CodeExtractionError
from models import InitialCode, SourceContent
from purpose_config import ExtractionFocus, ResearchPurpose
from text_utils import (
    MIN_SENTENCE_LENGTH,
    bigrams,
    rank_terms,
    split_into_sentences,
    title_case,
    tokenize,
)

logger = logging.getLogger(__name__)


# ---- Prompt ----

CODE_EXTRACTION_PROMPT_TEMPLATE = """I have the following SOURCE from a research corpus:
TITLE: {title}
TEXT:
{text}

TASK:
Extract up to {max_codes} qualitative CODES from this SOURCE for {purpose_label} (focus: {focus}).
{research_context}
STYLE (important):
- A code is a short, specific concept (2-6 words), not a generic topic like "research" or "study".
- Give each code a 1-sentence DESCRIPTION grounded in the text.
- Give 1-3 EXCERPTS copied exactly from the text that support the code.
- Do NOT invent content that is not in the text.

Please respond ONLY with a valid JSON in the following format:
{{
  "codes": [
    {{"label": "<CODE_LABEL>", "description": "<DESCRIPTION>", "excerpts": ["<EXCERPT_1>"]}}
  ]
}}
"""

FOCUS_CODES_PER_SOURCE: Dict[ExtractionFocus, int] = {
    ExtractionFocus.BREADTH: 8,
    ExtractionFocus.SATURATION: 6,
    ExtractionFocus.COVERAGE: 6,
    ExtractionFocus.DEPTH: 4,
    ExtractionFocus.CONSTRUCT: 5,
}

MAX_LABEL_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 1000
MAX_EXCERPT_LENGTH = 300
MAX_EXCERPTS_PER_CODE = 3


# ---- Schema ----

def _collapse_ws(s: Any) -> str:
    return re.sub(r"\s+", " ", str(s)).strip()


def _truncate(s: str, n: int) -> str:
    return s if len(s) <= n else s[:n].rstrip() + "..."


class CodePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    label: str = Field(..., min_length=1, max_length=MAX_LABEL_LENGTH + 3)
    description: str = ""
    excerpts: List[str] = Field(default_factory=list)

    @field_validator("label", mode="before")
    @classmethod
    def _clean_label(cls, v: Any) -> Any:
        if v is None or isinstance(v, (dict, list)):
            return v  # let type validation reject it
        return _truncate(_collapse_ws(v), MAX_LABEL_LENGTH)

    @field_validator("description", mode="before")
    @classmethod
    def _clean_description(cls, v: Any) -> str:
        if v is None or isinstance(v, (dict, list)):
            return ""
        return _truncate(_collapse_ws(v), MAX_DESCRIPTION_LENGTH)

    @field_validator("excerpts", mode="before")
    @classmethod
    def _clean_excerpts(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            return []
        out = []
        for x in v:
            if isinstance(x, (str, int, float)) and _collapse_ws(x):
                out.append(_truncate(_collapse_ws(x), MAX_EXCERPT_LENGTH))
        return out[:MAX_EXCERPTS_PER_CODE]


def _safe_json_load(s: Any) -> Optional[Any]:
    """Best-effort JSON parsing from LLM responses."""
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    if not isinstance(s, str):
        return None
    txt = s.strip()
    if not txt:
        return None
    # try direct JSON
    try:
        return json.loads(txt)
    except ValueError:
        pass
    # try substring from first '{' to last '}'
    i = txt.find("{")
    j = txt.rfind("}")
    if i != -1 and j > i:
        try:
            return json.loads(txt[i : j + 1])
        except ValueError:
            return None
    return None


def code_id_for(source_id: str, label: str) -> str:
    digest = hashlib.sha1(f"{source_id}|{label.lower()}".encode("utf-8")).hexdigest()
    return f"code_{digest[:16]}"


def coerce_codes(raw: Any, source_id: str, *, max_codes: Optional[int] = None) -> List[InitialCode]:
    """
    Validate an oracle response into InitialCode objects.

    Accepts a JSON string, {"codes": [...]}, a list of code dicts / label strings, or a
    single code dict. Items failing the schema are dropped; duplicates (same label,
    case-insensitive) within the source are merged away.
    """
    data = _safe_json_load(raw) if isinstance(raw, str) else raw
    if isinstance(data, dict):
        items = data.get("codes") if "codes" in data else [data]
    else:
        items = data
    if not isinstance(items, list):
        if raw is not None:
            logger.warning(f"Oracle response for source {source_id} has no code list; ignoring")
        return []

    out: List[InitialCode] = []
    seen = set()
    dropped = 0
    for item in items:
        if isinstance(item, str):
            item = {"label": item}
        if not isinstance(item, dict):
            dropped += 1
            continue
        try:
            payload = CodePayload.model_validate(item)
        except PydanticValidationError:
            dropped += 1
            continue
        key = payload.label.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(
            InitialCode(
                id=code_id_for(source_id, payload.label),
                label=payload.label,
                description=payload.description or payload.label,
                source_id=str(source_id),
                excerpts=list(payload.excerpts),
            )
        )
        if max_codes is not None and len(out) >= max_codes:
            break
    if dropped:
        logger.warning(f"Dropped {dropped} malformed code(s) from source {source_id}")
    return out


# ---- Oracles ----

@dataclass(frozen=True)
class ExtractionContext:
    purpose: ResearchPurpose
    extraction_focus: ExtractionFocus
    research_context: str = ""
    max_codes: int = 6

    @classmethod
    def for_config(cls, config: Any, research_context: str = "") -> "ExtractionContext":
        return cls(
            purpose=config.purpose,
            extraction_focus=config.extraction_focus,
            research_context=research_context or "",
            max_codes=FOCUS_CODES_PER_SOURCE.get(config.extraction_focus, 6),
        )


class CodeExtractionOracle(ABC):
    name: str = "oracle"

    @abstractmethod
    async def _extract_raw(self, source: SourceContent, context: ExtractionContext) -> Any:
        """Return the oracle's untyped response."""

    async def extract_codes(self, source: SourceContent, context: ExtractionContext) -> List[InitialCode]:
        raw = await self._extract_raw(source, context)
        return coerce_codes(raw, source.id, max_codes=context.max_codes)


class OpenAICodeExtractionOracle(CodeExtractionOracle):
    """Chat-completions JSON mode; sync client in a worker thread, bounded by a semaphore."""

    name = "openai"

    def __init__(
        self,
        client: Any = None,
        model: str = None,
        timeout_s: int = None,
        concurrency: int = None,
        max_chars: int = 12000,
    ):
        self._client = client
        self.model = model or CODE_EXTRACTION_MODEL
        self.timeout_s = int(timeout_s or LLM_TIMEOUT_S)
        self._semaphore = asyncio.Semaphore(max(1, int(concurrency or LLM_CONCURRENCY)))
        self.max_chars = max_chars

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(api_key=require_openai_api_key())
        return self._client

    async def _openai_json(self, system: str, user: str) -> Optional[Any]:
        client = self._get_client()
        async with self._semaphore:
            def _call():
                resp = client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
                    response_format={"type": "json_object"},
                    temperature=0.2,
                    timeout=self.timeout_s,
                )
                return resp.choices[0].message.content

            try:
                content = await asyncio.wait_for(asyncio.to_thread(_call), timeout=self.timeout_s + 5)
            except asyncio.TimeoutError as e:
                raise CodeExtractionError(f"{self.model} timed out after {self.timeout_s}s") from e
            except Exception as e:
                raise CodeExtractionError(f"{self.model} request failed: {e}") from e
        parsed = _safe_json_load(content)
        if parsed is None:
            raise CodeExtractionError(f"{self.model} returned unparseable JSON")
        return parsed

    async def _extract_raw(self, source: SourceContent, context: ExtractionContext) -> Any:
        text = (source.text or "").strip()
        if not text:
            return []
        research_context = (
            f"RESEARCH CONTEXT: {context.research_context.strip()}\n" if context.research_context.strip() else ""
        )
        prompt = CODE_EXTRACTION_PROMPT_TEMPLATE.format(
            title=source.title or source.id,
            text=text[: self.max_chars],
            max_codes=context.max_codes,
            purpose_label=context.purpose.value.replace("_", " "),
            focus=context.extraction_focus.value,
            research_context=research_context,
        )
        system = "You are a careful qualitative researcher doing initial coding. Return only valid JSON."
        return await self._openai_json(system, prompt)


class LocalCodeExtractionOracle(CodeExtractionOracle):
    """
    Rule-based extraction: top bigrams and keywords by term frequency, each kept only
    when a sentence of the source contains it verbatim (that sentence becomes an excerpt).
    """

    name = "local"

    TOP_KEYWORDS = 10
    TOP_BIGRAMS = 5
    KEYWORDS_TO_USE = 3

    def __init__(self, cache_size: int = 1000):
        self._cache: Dict[str, List[Dict[str, Any]]] = {}
        self.cache_size = cache_size

    def extract_raw_sync(self, source: SourceContent) -> List[Dict[str, Any]]:
        key = hashlib.sha256(f"{source.id}|{source.title}|{source.text}".encode("utf-8")).hexdigest()
        if key in self._cache:
            return self._cache[key]

        sentences = split_into_sentences(source.text, min_length=MIN_SENTENCE_LENGTH)
        words = tokenize(source.text)
        codes: List[Dict[str, Any]] = []
        if sentences and words:
            keywords = [w for w, _ in rank_terms(words, self.TOP_KEYWORDS)]
            top_bigrams = [b for b, _ in rank_terms(bigrams(words), self.TOP_BIGRAMS)]
            lowered = [s.lower() for s in sentences]
            title = (source.title or "")[:50] + ("..." if len(source.title or "") > 50 else "")
            for phrase in top_bigrams + keywords[: self.KEYWORDS_TO_USE]:
                excerpts = [sentences[i] for i, s in enumerate(lowered) if phrase in s][:MAX_EXCERPTS_PER_CODE]
                if not excerpts:
                    continue  # no textual evidence
                label = title_case(phrase)
                where = f' in "{title}"' if title else ""
                codes.append(
                    {
                        "label": label,
                        "description": f'Pattern identified through frequency analysis: "{label}"{where}',
                        "excerpts": excerpts,
                    }
                )

        if len(self._cache) >= self.cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[key] = codes
        return codes

    async def _extract_raw(self, source: SourceContent, context: ExtractionContext) -> Any:
        return self.extract_raw_sync(source)


def build_code_extraction_oracle(backend: str = None, **kwargs) -> CodeExtractionOracle:
    key = (backend or CODE_EXTRACTION_BACKEND or "local").strip().lower()
    if key == "local":
        return LocalCodeExtractionOracle(**kwargs)
    if key == "openai":
        return OpenAICodeExtractionOracle(**kwargs)
    raise ValueError(f"Unknown code extraction backend: {backend!r} (expected 'local' or 'openai')")
