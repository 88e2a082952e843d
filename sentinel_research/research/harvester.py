"""
Evidence Harvesting Engine.

Turns direct URLs and search vectors into a de-duplicated, citation-wrapped
research context:

  1. Harvest: fetch unseen URLs through a bounded worker pool, run unseen
     queries in small batches, then drain the URLs those queries surfaced.
  2. Gap review: ask the quality tier whether the mission still has
     critical gaps; it answers with follow-up queries (fails open to none).
  3. Repeat up to ``max_depth`` follow-up rounds, stopping early once the
     review produces nothing new.

Per-item failures are recorded and the run continues. QuotaExceededError
cancels the in-flight batch and propagates to the caller.
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from sentinel_research.config import (
    GAP_REVIEW_CONTEXT_CHARS, GAP_REVIEW_MAX_SOURCES, MAX_FACTS_PER_SOURCE, MAX_RESEARCH_DEPTH,
    QUERY_BATCH_DELAY, QUERY_BATCH_SIZE, URL_CONCURRENCY, URL_DISPATCH_DELAY,
)
from sentinel_research.gateway import WEB_FETCH, GatewayError, QuotaExceededError
from sentinel_research.models import ExtractionReply, HarvestResult, QueriesReply, SourceStatus
from sentinel_research.prompts import GAP_ANALYSIS_INSTRUCTION, GAP_REVIEW_TASK, SOURCE_EXTRACTION_PROMPT
from sentinel_research.research.citations import CitationBlock, CitationLedger, evidence_block
from sentinel_research.research.registry import EvidenceStore, SourceRegistry
from sentinel_research.research.search_vector import execute_search_vector
from sentinel_research.research.task_pool import TaskPool
from sentinel_research.utils import format_source_title, is_valid_source_url, search_source_id

logger = logging.getLogger(__name__)

EXTRACTED_CONTENT_CHARS = 2000
GAP_REVIEW_TOP_FACTS = 3


@dataclass
class HarvestSettings:
    url_concurrency: int = URL_CONCURRENCY
    url_dispatch_delay: float = URL_DISPATCH_DELAY
    query_batch_size: int = QUERY_BATCH_SIZE
    query_batch_delay: float = QUERY_BATCH_DELAY
    max_depth: int = MAX_RESEARCH_DEPTH
    max_facts: int = MAX_FACTS_PER_SOURCE
    gap_context_chars: int = GAP_REVIEW_CONTEXT_CHARS
    gap_max_sources: int = GAP_REVIEW_MAX_SOURCES


class EvidenceHarvester:
    """Owns the Source Registry, Evidence Store and citation ledger for one run."""

    def __init__(
        self,
        gateway,
        mission: str = "",
        use_fallback: bool = False,
        settings: Optional[HarvestSettings] = None,
        search_executor=execute_search_vector,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.gateway = gateway
        self.mission = mission
        self.use_fallback = use_fallback
        self.settings = settings or HarvestSettings()
        self.search_executor = search_executor
        self.progress_callback = progress_callback

        self.registry = SourceRegistry()
        self.evidence = EvidenceStore(max_facts=self.settings.max_facts)
        self.ledger = CitationLedger()
        self.visited_queries: set = set()
        self.rounds = 0

        self.url_pool = TaskPool(self.settings.url_concurrency, self.settings.url_dispatch_delay)
        self.query_pool = TaskPool(self.settings.query_batch_size, self.settings.query_batch_delay)

    def _log(self, msg: str) -> None:
        logger.info(msg)
        if self.progress_callback:
            self.progress_callback(msg)

    @property
    def fetch_tier(self) -> str:
        return "fallback" if self.use_fallback else "fast"

    @property
    def review_tier(self) -> str:
        return "fallback" if self.use_fallback else "quality"

    # --- Full run ---

    async def run(self, urls: Iterable[str], queries: Iterable[str]) -> HarvestResult:
        """Harvest the caller's inputs, then follow gap review for up to ``max_depth`` rounds."""
        await self.harvest(urls, queries)

        depth = 0
        while depth < self.settings.max_depth:
            self._log("Reviewing gathered intelligence for gaps...")
            follow_ups = self._unvisited(await self.review_for_gaps())
            if not follow_ups:
                self._log("Gap review indicates coverage is sufficient.")
                break
            depth += 1
            self._log(f"Gaps detected. Launching {len(follow_ups)} follow-up vectors "
                      f"(round {depth}/{self.settings.max_depth})...")
            await self.harvest([], follow_ups)

        return self.result()

    def result(self) -> HarvestResult:
        return HarvestResult(
            context=self.ledger.render(),
            sources=self.registry.sources(),
            failed_urls=self.registry.failed(),
        )

    # --- Harvest step ---

    async def harvest(self, urls: Iterable[str], queries: Iterable[str]) -> None:
        self.rounds += 1
        await self._harvest_urls(urls)
        await self._harvest_queries(queries)

        # Sources surfaced by queries are fetched once here; no further queries
        discovered = self.registry.queued()
        if discovered:
            self._log(f"Draining {len(discovered)} sources discovered by search vectors...")
            await self.url_pool.map(self._fetch_source, discovered)

    async def _harvest_urls(self, urls: Iterable[str]) -> None:
        candidates = []
        for url in urls:
            url = (url or "").strip()
            if not url:
                continue
            if not is_valid_source_url(url):
                logger.warning(f"Skipping non-citable URL: {url}")
                continue
            candidates.append(url)

        fresh = self.registry.claim(candidates)
        if not fresh:
            return
        for url in fresh:
            self.ledger.reserve(url)
        self._log(f"Dispatching {len(fresh)} direct sources "
                  f"(max {self.settings.url_concurrency} in flight)...")
        await self.url_pool.map(self._fetch_source, fresh)

    async def _fetch_source(self, url: str) -> None:
        if not self.registry.transition(url, SourceStatus.QUEUED, SourceStatus.PROCESSING):
            return
        self._log(f"Interrogating direct source: {url}")
        try:
            reply = await self.gateway.invoke(
                SOURCE_EXTRACTION_PROMPT.format(url=url, max_facts=self.settings.max_facts),
                response_model=ExtractionReply,
                default=ExtractionReply(),
                tools=[WEB_FETCH],
                fetch_urls=[url],
                tier=self.fetch_tier,
            )
            if not (reply.text or "").strip():
                raise GatewayError("Empty response")
        except QuotaExceededError:
            self.registry.fail(url, "Quota exceeded")
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            self._log(f"Failed to access: {url}")
            logger.warning(f"Source {url} failed: {reason}")
            self.registry.fail(url, reason)
            return

        data: ExtractionReply = reply.data
        known = self.registry.get(url)
        title = data.title or (known.title if known else "") or format_source_title(url)
        summary = data.summary or "Analyzed source."

        record = self.evidence.record(url, title, summary, data.facts)
        self.registry.complete(url, title, summary)
        self.ledger.emit(evidence_block(record, extra=data.content[:EXTRACTED_CONTENT_CHARS]))

    async def _harvest_queries(self, queries: Iterable[str]) -> None:
        fresh = self._unvisited(queries)
        if not fresh:
            return
        for query in fresh:
            self.visited_queries.add(query)
            self.ledger.reserve(search_source_id(query))
        self._log(f"Executing {len(fresh)} search vectors...")
        await self.query_pool.map_batches(self._run_query, fresh)

    async def _run_query(self, query: str) -> None:
        try:
            result = await self.search_executor(self.gateway, query, tier=self.fetch_tier)
        except QuotaExceededError:
            raise
        except Exception as e:
            logger.warning(f"Search vector \"{query}\" failed: {e}")
            return

        if (result.text or "").strip():
            source_id = search_source_id(query)
            title = f"Search results: {query}"
            record = self.evidence.record(source_id, title, f"Search synthesis for \"{query}\"", result.facts)
            self.ledger.emit(CitationBlock(
                source_id=source_id,
                title=title,
                content=f"[QUERY: {query}]\n{result.text.strip()}",
            ))
            logger.debug(f"Recorded {len(record.facts)} facts for query \"{query}\"")

        added = 0
        for source in result.sources:
            if is_valid_source_url(source.url) and self.registry.register(source.url, source.title, source.summary):
                self.ledger.reserve(source.url)
                added += 1
        if added:
            self._log(f"Data acquired: \"{query}\" ({added} new sources queued)")

    def _unvisited(self, queries: Iterable[str]) -> List[str]:
        fresh = []
        for query in queries or []:
            query = (query or "").strip()
            if query and query not in self.visited_queries and query not in fresh:
                fresh.append(query)
        return fresh

    # --- Gap analysis ---

    def _evidence_digest(self) -> str:
        lines = []
        for record in self.evidence.records()[:self.settings.gap_max_sources]:
            lines.append(f"- {record.title or record.url} ({record.url})")
            for fact in record.facts[:GAP_REVIEW_TOP_FACTS]:
                lines.append(f"    * {fact}")
        return "\n".join(lines)

    async def review_for_gaps(self) -> List[str]:
        """Ask whether critical gaps remain. Any non-quota failure means 'no gaps'."""
        context = self.ledger.render()
        if len(context) > self.settings.gap_context_chars:
            context = context[-self.settings.gap_context_chars:]
        known_sources = "\n".join(
            f"{s.title or 'Source'} ({s.url})"
            for s in self.registry.sources()[:self.settings.gap_max_sources]
        )
        prompt = "\n\n".join([
            f"USER MISSION: {self.mission or 'Not provided'}",
            f"ALREADY ASKED QUERIES: {json.dumps(sorted(self.visited_queries))}",
            f"EVIDENCE SUMMARY:\n{self._evidence_digest() or 'None'}",
            f"KNOWN SOURCES:\n{known_sources or 'None'}",
            f"GATHERED CONTEXT (TRIMMED):\n{context or 'None'}",
            GAP_REVIEW_TASK,
        ])

        try:
            reply = await self.gateway.invoke(
                prompt,
                response_model=QueriesReply,
                default=QueriesReply(),
                system=GAP_ANALYSIS_INSTRUCTION,
                tier=self.review_tier,
            )
        except QuotaExceededError:
            raise
        except Exception as e:
            self._log("Gap review failed. Continuing with gathered intelligence.")
            logger.warning(f"Gap review error: {e}")
            return []
        return list(reply.data.queries)


async def harvest_evidence(
    gateway,
    urls: Iterable[str],
    queries: Iterable[str],
    mission: str = "",
    use_fallback: bool = False,
    settings: Optional[HarvestSettings] = None,
    search_executor=execute_search_vector,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> HarvestResult:
    """Run a complete harvest and return ``{context, sources, failed_urls}``."""
    harvester = EvidenceHarvester(
        gateway,
        mission=mission,
        use_fallback=use_fallback,
        settings=settings,
        search_executor=search_executor,
        progress_callback=progress_callback,
    )
    return await harvester.run(urls, queries)
