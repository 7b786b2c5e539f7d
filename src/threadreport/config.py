"""Centralised configuration loaded from environment variables and dotenv."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ── Paths ──────────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[2]
OUTPUT_DIR: Path = Path(os.getenv("REPORT_OUTPUT_DIR", str(PROJECT_ROOT / "out")))
STORE_PATH: Path = Path(os.getenv("REPORT_STORE_PATH", str(PROJECT_ROOT / "var" / "store.sqlite3")))

# ── LLM ────────────────────────────────────────────────────────────────────
LLM_API_URL: str = os.getenv("LLM_API_URL", "https://api.openai.com/v1")
LLM_API_KEY: str = os.getenv("LLM_API_KEY", os.getenv("OPENAI_API_KEY", ""))
LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")

# ── Embeddings ─────────────────────────────────────────────────────────────
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = 1536
EMBEDDING_BATCH_SIZE = 100
EMBEDDING_CACHE_PREFIX = "emb:msg:"
EMBEDDING_CACHE_TTL_SECONDS = 30 * 24 * 60 * 60
CATEGORY_EMBEDDING_CACHE_KEY = "emb:categories:v1"
CATEGORY_EMBEDDING_CACHE_TTL_SECONDS = 7 * 24 * 60 * 60

# ── Pipeline ───────────────────────────────────────────────────────────────
# "embedding" (UMAP + k-means) or "llm" (topic assignment by prompt)
PIPELINE_MODE: str = os.getenv("REPORT_PIPELINE_MODE", "embedding")
DEFAULT_LANGUAGE: str = os.getenv("REPORT_DEFAULT_LANGUAGE", "en")
DEFAULT_TITLE = "User Conversation Analysis Report"

DEFAULT_MAX_MESSAGES = 1000
DEFAULT_DATE_RANGE_DAYS = 30
MIN_MESSAGE_LENGTH = 3
USER_SPEAKER = "User"
# Share of the sample taken from the newest messages; the rest is random.
SAMPLING_RECENT_RATIO: float = float(os.getenv("REPORT_SAMPLING_RECENT_RATIO", "0.7"))

CATEGORIZER_BATCH_SIZE = 10
CLUSTERER_BATCH_SIZE = 20
SAMPLE_SIZE_FOR_TOPICS = 50
MAX_SAMPLE_MESSAGES_PER_CLUSTER = 30

DEFAULT_NUM_CLUSTERS: int = int(os.getenv("REPORT_NUM_CLUSTERS", "8"))
MIN_MESSAGES_FOR_CLUSTERING = 10
UMAP_N_NEIGHBORS = 15
UMAP_MIN_DIST = 0.1
UMAP_SPREAD = 1.0
UMAP_RANDOM_STATE = 42
KMEANS_MAX_ITERATIONS = 100

GROUNDING_CONTENT_CHARS = 300
VISUALIZATION_TARGET_MS = 500

# ── Jobs ───────────────────────────────────────────────────────────────────
JOB_PREFIX = "report:job:"
CACHE_PREFIX = "report:cache:"
REPORT_CACHE_TTL_SECONDS = 3600
