"""
Command-line entry point: run a purpose-adaptive thematic analysis over a corpus file.
"""
import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from config import LOG_LEVEL
from data_loader import CorpusFileLoader
from errors import ThematicAnalysisError
from models import ExtractionResult
from persistence import JsonRunStore
from progress import ProgressEvent
from purpose_config import RESEARCH_PURPOSES, list_purposes

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


def _parse_override_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def parse_overrides(items: List[str]) -> Dict[str, Any]:
    """key=value pairs -> dict. Values are read as JSON where possible ("0.7", "12", "NaN")."""
    out: Dict[str, Any] = {}
    for item in items or []:
        if "=" not in item:
            raise argparse.ArgumentTypeError(f"Override must look like key=value, got {item!r}")
        key, raw = item.split("=", 1)
        out[key.strip()] = _parse_override_value(raw.strip())
    return out


def print_purposes() -> None:
    for p in list_purposes():
        lo, hi = p["target_themes"]["min"], p["target_themes"]["max"]
        print(f"{p['purpose']:<24} themes {lo}-{hi:<4} rigor {p['validation_rigor']:<10} focus {p['extraction_focus']}")
        print(f"    {p['description']}")


def print_result(result: ExtractionResult) -> None:
    print(f"\nRun {result.run_id} ({result.purpose})")
    print(
        f"Themes: {len(result.themes)} | quality {result.quality_score:.3f}"
        f"{' (meets threshold)' if result.meets_quality_threshold else ''} | "
        f"saturation {'reached' if result.saturation_reached else 'not reached'} "
        f"after {result.iterations} iteration(s)"
    )
    print("=" * 80)
    for i, theme in enumerate(result.themes, 1):
        flag = " [low confidence]" if theme.low_confidence else ""
        print(f"\n{i}. {theme.label}{flag}")
        print(f"   coherence {theme.coherence_score:.3f} | confidence {theme.confidence:.3f} | "
              f"{len(theme.codes)} codes from {len(theme.source_ids)} sources")
        if theme.keywords:
            print(f"   keywords: {', '.join(theme.keywords)}")
        for ex in (theme.provenance.get("representative_excerpts") or [])[:2]:
            print(f"   \"{ex['text'][:160]}\"")
        print("-" * 80)


def _log_progress(event: ProgressEvent) -> None:
    logger.info(f"[{event.stage_number}/{event.total_stages}] {event.percentage:5.1f}% {event.description}")


def main():
    """Command-line interface"""
    parser = argparse.ArgumentParser(description="Purpose-adaptive thematic analysis")
    parser.add_argument("corpus", nargs="?", help="Corpus file (.csv, .xlsx, .json, .jsonl)")
    parser.add_argument(
        "--purpose",
        choices=list(RESEARCH_PURPOSES),
        default="qualitative_analysis",
        help="Research purpose (default: qualitative_analysis)"
    )
    parser.add_argument(
        "--override",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a purpose setting, e.g. --override min_coherence=0.65 (repeatable)"
    )
    parser.add_argument(
        "--oracle",
        choices=["local", "openai"],
        help="Code extraction backend (default: CODE_EXTRACTION_BACKEND)"
    )
    parser.add_argument(
        "--embeddings",
        choices=["local", "openai"],
        help="Embedding provider (default: EMBEDDING_PROVIDER)"
    )
    parser.add_argument("--text-column", help="Column holding the source text")
    parser.add_argument("--research-context", default="", help="Research question passed to the oracle")
    parser.add_argument(
        "--save",
        action="store_true",
        help="Save the run under THEME_RUNS_DIR"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output the result as JSON"
    )
    parser.add_argument(
        "--list-purposes",
        action="store_true",
        help="Show the research purposes and exit"
    )

    args = parser.parse_args()

    if args.list_purposes:
        print_purposes()
        return 0
    if not args.corpus:
        parser.print_help()
        return 1

    try:
        overrides = parse_overrides(args.override)
        sources = CorpusFileLoader(Path(args.corpus), text_column=args.text_column).load_sources()
    except (argparse.ArgumentTypeError, FileNotFoundError, KeyError, ValueError) as e:
        logger.error(f"Error loading input: {e}")
        return 1

    from theme_extraction import create_default_engine

    try:
        engine = create_default_engine(
            oracle_backend=args.oracle,
            embedding_backend=args.embeddings,
            persistence=JsonRunStore() if args.save else None,
        )
        result = asyncio.run(
            engine.run(
                sources,
                args.purpose,
                overrides=overrides,
                progress_sink=None if args.json else _log_progress,
                research_context=args.research_context,
            )
        )
    except ThematicAnalysisError as e:
        logger.error(f"Analysis failed: {e}")
        return 1
    except RuntimeError as e:
        logger.error(f"Error initializing engine: {e}")
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print_result(result)
    if not result.ok:
        logger.error(f"Partial result: {result.error}")
        return 2
    return 0


if __name__ == "__main__":
    exit(main())
