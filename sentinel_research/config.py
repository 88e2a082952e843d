"""Centralized configuration for the Sentinel research pipeline."""
import os
from dotenv import load_dotenv

load_dotenv()

# --- Model Configuration ---
LLM_BASE_URL = os.environ.get("LLM_BASE_URL", "http://localhost:8000/v1")
LLM_API_KEY = os.environ.get("LLM_API_KEY", "NA")
QUALITY_MODEL = os.environ.get("MODEL_NAME", "")
FAST_MODEL = os.environ.get("FAST_MODEL_NAME", "") or QUALITY_MODEL
FALLBACK_MODEL = os.environ.get("FALLBACK_MODEL_NAME", "") or FAST_MODEL

# --- Service URLs ---
SEARXNG_URL = os.environ.get("SEARXNG_URL", "http://localhost:8080")

# --- Timeouts (seconds) ---
LLM_TIMEOUT = 300
SCRAPING_TIMEOUT = 25.0
SEARCH_TIMEOUT = 10.0

# --- HTTP ---
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# --- Gateway retry ---
GATEWAY_MAX_RETRIES = 3
GATEWAY_BASE_BACKOFF = 5.0

# --- Evidence Harvester ---
URL_CONCURRENCY = 5
URL_DISPATCH_DELAY = 0.25
QUERY_BATCH_SIZE = 3
QUERY_BATCH_DELAY = 1.0
MAX_RESEARCH_DEPTH = 3
MAX_FACTS_PER_SOURCE = 10
SEARCH_RESULTS_PER_QUERY = 8

# --- Draft-Review Loop ---
SECTION_BATCH_SIZE = 3
SECTION_BATCH_DELAY = 1.5
MAX_EVIDENCE_BLOCKS = 10
MAX_EDITOR_REVISIONS = 2
MAX_DRAFT_CLAIMS = 8

# --- Truncation limits (characters unless noted) ---
RAW_INTEL_CHARS = 25000
CONTEXT_CHARS = 30000
GAP_REVIEW_CONTEXT_CHARS = 12000
GAP_REVIEW_MAX_SOURCES = 50
PAGE_TEXT_CHARS = 8000
QUERY_PLANNING_CHARS = 5000
COVERAGE_CONTEXT_CHARS = 10000
