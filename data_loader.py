"""
Content providers: where the engine gets SourceContent from.
Corpus files (csv / xlsx / json / jsonl) are read with pandas.
"""
import re
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from models import ContentKind, SourceContent

logger = logging.getLogger(__name__)

# Normalized column names, most specific first
ID_COLUMNS = ("id", "sourceid", "paperid", "doi", "pmid")
TEXT_COLUMNS = ("text", "fulltext", "abstract", "content", "body")
TITLE_COLUMNS = ("title", "papertitle", "name")
KIND_COLUMNS = ("contentkind", "contenttype", "kind")


class ContentProvider(ABC):
    """Resolves source ids to SourceContent."""

    @abstractmethod
    def fetch(self, source_ids: Sequence[str]) -> List[SourceContent]:
        ...


class InMemoryContentProvider(ContentProvider):
    def __init__(self, sources: Iterable[SourceContent] = ()):
        self._sources: Dict[str, SourceContent] = {}
        for s in sources:
            self.add(s)

    def add(self, source: SourceContent) -> None:
        self._sources[source.id] = source

    def __len__(self) -> int:
        return len(self._sources)

    def all(self) -> List[SourceContent]:
        return list(self._sources.values())

    def fetch(self, source_ids: Sequence[str]) -> List[SourceContent]:
        out = []
        missing = []
        for sid in source_ids:
            s = self._sources.get(str(sid))
            if s is None:
                missing.append(str(sid))
            else:
                out.append(s)
        if missing:
            logger.warning(f"{len(missing)} source id(s) not found: {', '.join(missing[:5])}")
        return out


class CorpusFileLoader(ContentProvider):
    """Load a corpus table and expose it as SourceContent."""

    SUPPORTED_SUFFIXES = (".csv", ".xlsx", ".xls", ".json", ".jsonl")

    def __init__(self, corpus_file: Path, text_column: Optional[str] = None, id_column: Optional[str] = None):
        self.corpus_file = Path(corpus_file)
        self.text_column = text_column
        self.id_column = id_column
        self.data: Optional[pd.DataFrame] = None
        self._sources: Optional[InMemoryContentProvider] = None

    @staticmethod
    def _norm_field_name(name: Any) -> str:
        return re.sub(r"[_\s-]+", "", str(name or "").strip().lower())

    def _find_column(self, explicit: Optional[str], candidates: Sequence[str]) -> Optional[str]:
        if explicit:
            if explicit not in self.data.columns:
                raise KeyError(f"Column '{explicit}' not in {self.corpus_file.name}: {list(self.data.columns)}")
            return explicit
        by_norm = {self._norm_field_name(c): c for c in self.data.columns}
        for cand in candidates:
            if cand in by_norm:
                return by_norm[cand]
        return None

    def load_data(self) -> pd.DataFrame:
        """Load the corpus file into a DataFrame"""
        if not self.corpus_file.exists():
            raise FileNotFoundError(f"Corpus file not found: {self.corpus_file}")
        suffix = self.corpus_file.suffix.lower()
        if suffix not in self.SUPPORTED_SUFFIXES:
            raise ValueError(f"Unsupported corpus format '{suffix}' (expected one of {self.SUPPORTED_SUFFIXES})")

        logger.info(f"Loading corpus from {self.corpus_file}")
        if suffix == ".csv":
            self.data = pd.read_csv(self.corpus_file)
        elif suffix in (".xlsx", ".xls"):
            self.data = pd.read_excel(self.corpus_file)
        else:
            self.data = pd.read_json(self.corpus_file, lines=(suffix == ".jsonl"))
        logger.info(f"Loaded {len(self.data)} rows, {len(self.data.columns)} columns")
        return self.data

    def get_data_info(self) -> Dict[str, Any]:
        if self.data is None:
            self.load_data()
        return {
            "shape": self.data.shape,
            "columns": list(self.data.columns),
            "null_counts": self.data.isnull().sum().to_dict(),
        }

    def load_sources(self) -> List[SourceContent]:
        """
        Convert rows to SourceContent. Rows without text are skipped. Columns other than
        id / text / title / kind go into metadata.
        """
        if self.data is None:
            self.load_data()

        text_col = self._find_column(self.text_column, TEXT_COLUMNS)
        if text_col is None:
            raise KeyError(f"No text column found in {self.corpus_file.name}; pass text_column explicitly")
        id_col = self._find_column(self.id_column, ID_COLUMNS)
        title_col = self._find_column(None, TITLE_COLUMNS)
        kind_col = self._find_column(None, KIND_COLUMNS)
        default_kind = ContentKind.FULL_TEXT if self._norm_field_name(text_col) == "fulltext" else ContentKind.ABSTRACT
        reserved = {c for c in (text_col, id_col, title_col, kind_col) if c}

        sources: List[SourceContent] = []
        skipped = 0
        for idx, row in self.data.iterrows():
            text = row[text_col]
            if pd.isna(text) or not str(text).strip():
                skipped += 1
                continue
            sid = str(row[id_col]) if id_col and pd.notna(row[id_col]) else str(idx)
            kind = default_kind
            if kind_col and pd.notna(row[kind_col]):
                try:
                    kind = ContentKind(str(row[kind_col]).strip().lower())
                except ValueError:
                    logger.warning(f"Row {idx}: unknown content kind {row[kind_col]!r}; using {default_kind.value}")
            metadata = {c: row[c] for c in self.data.columns if c not in reserved and pd.notna(row[c])}
            sources.append(
                SourceContent(
                    id=sid,
                    text=str(text).strip(),
                    content_kind=kind,
                    title=str(row[title_col]).strip() if title_col and pd.notna(row[title_col]) else "",
                    metadata=metadata,
                )
            )
        if skipped:
            logger.info(f"Skipped {skipped} rows without text")
        logger.info(f"Prepared {len(sources)} sources from {self.corpus_file.name}")
        return sources

    def fetch(self, source_ids: Sequence[str]) -> List[SourceContent]:
        if self._sources is None:
            self._sources = InMemoryContentProvider(self.load_sources())
        return self._sources.fetch(source_ids)
