"""
Configuration file for the Thematic Analysis Engine
Values come from the environment (optionally a .env file) with local-friendly defaults
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Project paths
PROJECT_ROOT = Path(__file__).parent
VECTOR_DB_DIR = Path(os.getenv("VECTOR_DB_DIR", str(PROJECT_ROOT / "vector_db")))
EMBEDDINGS_CACHE_DIR = Path(os.getenv("EMBEDDINGS_CACHE_DIR", str(PROJECT_ROOT / "embeddings_cache")))
THEME_RUNS_DIR = Path(os.getenv("THEME_RUNS_DIR", str(PROJECT_ROOT / "theme_runs")))
# Optional corpus the API resolves source_ids against
CORPUS_FILE = os.getenv("CORPUS_FILE", "").strip()

# Embedding provider: "local" (sentence-transformers) or "openai"
EMBEDDING_PROVIDER = os.getenv("EMBEDDING_PROVIDER", "local").strip().lower()

# Local model configuration
SEMANTIC_MODEL_NAME = os.getenv(
    "SEMANTIC_MODEL_NAME",
    "all-MiniLM-L6-v2"  # Small, fast, 384 dims
)
# Alternative models (larger, better quality):
# "all-mpnet-base-v2" - 768 dims
# "BAAI/bge-small-en-v1.5" - 384 dims, strong on scientific text

# Remote model configuration
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
OPENAI_EMBEDDING_DIMENSIONS = int(os.getenv("OPENAI_EMBEDDING_DIMENSIONS", "1536"))

# Force CPU even when CUDA is available
USE_CPU = os.getenv("USE_CPU", "true").lower() == "true"

# Embedding throughput. Lower batch size = less peak RAM
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "32"))
EMBEDDING_CONCURRENCY = int(os.getenv("EMBEDDING_CONCURRENCY", "4"))
EMBEDDING_RATE_LIMIT_PER_S = float(os.getenv("EMBEDDING_RATE_LIMIT_PER_S", "0"))  # 0 = unlimited

# Retry / circuit breaker for external providers
PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "3"))
PROVIDER_RETRY_BASE_DELAY_S = float(os.getenv("PROVIDER_RETRY_BASE_DELAY_S", "0.5"))
PROVIDER_RETRY_MAX_DELAY_S = float(os.getenv("PROVIDER_RETRY_MAX_DELAY_S", "8"))
CIRCUIT_BREAKER_FAILURE_THRESHOLD = int(os.getenv("CIRCUIT_BREAKER_FAILURE_THRESHOLD", "5"))
CIRCUIT_BREAKER_RECOVERY_S = float(os.getenv("CIRCUIT_BREAKER_RECOVERY_S", "30"))

# Persist embeddings between runs in a chromadb collection (VECTOR_DB_DIR)
PERSIST_EMBEDDING_CACHE = os.getenv("PERSIST_EMBEDDING_CACHE", "false").lower() == "true"

# Code extraction oracle: "local" (rule-based) or "openai"
CODE_EXTRACTION_BACKEND = os.getenv("CODE_EXTRACTION_BACKEND", "local").strip().lower()
CODE_EXTRACTION_MODEL = os.getenv("CODE_EXTRACTION_MODEL", "gpt-4o-mini")
LLM_CONCURRENCY = int(os.getenv("LLM_CONCURRENCY", "6"))
LLM_TIMEOUT_S = int(os.getenv("LLM_TIMEOUT_S", "45"))

# Clustering
KMEANS_RANDOM_STATE = int(os.getenv("KMEANS_RANDOM_STATE", "7"))
KMEANS_MAX_ITERATIONS = int(os.getenv("KMEANS_MAX_ITERATIONS", "100"))
KMEANS_N_INIT = int(os.getenv("KMEANS_N_INIT", "3"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def require_openai_api_key() -> str:
    key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for the OpenAI backends.")
    return key
