"""
Generative-call gateway.

Single entry point for every language-model call the pipeline makes:

- builds the chat messages (system instruction, prompt, attachments)
- resolves tooling before the call: ``web_search`` (SearXNG results injected
  as context and reported as grounding) and ``web_fetch`` (pages named by the
  caller retrieved and injected)
- retries rate limits and transient failures with exponential backoff + jitter
- classifies failures into typed errors: QuotaExceededError is run-fatal and
  must never be swallowed; TransientGatewayError and GatewayError are per-item
- parses the reply into a pydantic model, falling back to a caller default
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Type

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from sentinel_research.config import (
    FALLBACK_MODEL, FAST_MODEL, GATEWAY_BASE_BACKOFF, GATEWAY_MAX_RETRIES,
    LLM_API_KEY, LLM_BASE_URL, LLM_TIMEOUT, QUALITY_MODEL, SEARCH_RESULTS_PER_QUERY,
)
from sentinel_research.models import Attachment
from sentinel_research.research.search_service import PageFetcher, SearxngClient
from sentinel_research.utils import (
    extract_urls, format_source_title, is_valid_source_url, safe_parse_json, strip_think_blocks,
)

logger = logging.getLogger(__name__)

WEB_SEARCH = "web_search"
WEB_FETCH = "web_fetch"


class GatewayError(RuntimeError):
    """A gateway call failed in a way that affects only the current item."""
    pass


class TransientGatewayError(GatewayError):
    """Connection, timeout or server failure that persisted through the retry budget."""
    pass


class QuotaExceededError(GatewayError):
    """Service quota is exhausted. Run-fatal: needs operator intervention, never retried."""
    pass


@dataclass
class GroundingChunk:
    url: str
    title: str = ""


@dataclass
class GatewayReply:
    text: str
    data: Any = None
    grounding: List[GroundingChunk] = field(default_factory=list)


def _is_quota_exhausted(error: openai.APIError) -> bool:
    """True when the service reports a hard quota rather than a momentary rate limit."""
    code = getattr(error, "code", None)
    if code in ("insufficient_quota", "quota_exceeded"):
        return True
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict) and inner.get("code") in ("insufficient_quota", "quota_exceeded"):
            return True
    return False


class Gateway:
    """OpenAI-compatible gateway with search/fetch tooling and typed failures."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        models: Optional[Dict[str, str]] = None,
        search_client_factory=SearxngClient,
        page_fetcher_factory=PageFetcher,
        max_retries: int = GATEWAY_MAX_RETRIES,
        base_backoff: float = GATEWAY_BASE_BACKOFF,
        timeout: float = LLM_TIMEOUT,
    ):
        self.client = client or AsyncOpenAI(base_url=LLM_BASE_URL, api_key=LLM_API_KEY)
        self.models = models or {
            "fast": FAST_MODEL,
            "quality": QUALITY_MODEL,
            "fallback": FALLBACK_MODEL,
        }
        self.search_client_factory = search_client_factory
        self.page_fetcher_factory = page_fetcher_factory
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.timeout = timeout

    async def aclose(self) -> None:
        await self.client.close()

    async def invoke(
        self,
        prompt: str,
        *,
        response_model: Optional[Type[BaseModel]] = None,
        default: Any = None,
        attachments: Optional[Sequence[Attachment]] = None,
        tools: Optional[Sequence[str]] = None,
        system: Optional[str] = None,
        tier: str = "fast",
        search_query: Optional[str] = None,
        fetch_urls: Optional[Sequence[str]] = None,
        max_tokens: int = 4000,
        temperature: float = 0.3,
    ) -> GatewayReply:
        """Run one model call and return its raw text, parsed data and grounding.

        Args:
            prompt: User prompt text.
            response_model: Pydantic model the reply is parsed into. ``None``
                returns the raw text as ``data``.
            default: Value used as ``data`` when the reply cannot be parsed
                (defaults to ``response_model()``).
            attachments: Documents/images sent alongside the prompt.
            tools: Any of ``"web_search"``, ``"web_fetch"``.
            system: System instruction.
            tier: ``"fast"``, ``"quality"`` or ``"fallback"``.
            search_query: Query for ``web_search`` (defaults to the prompt).
            fetch_urls: Pages for ``web_fetch`` (defaults to the URLs named in
                the prompt).

        Raises:
            QuotaExceededError: quota exhausted or rate limit persisted.
            TransientGatewayError: connection/timeout/server errors persisted,
                or a ``web_fetch`` page could not be retrieved.
            GatewayError: request rejected by the service.
        """
        tools = list(tools or [])
        grounding: List[GroundingChunk] = []
        tool_context: List[str] = []

        if WEB_SEARCH in tools:
            search_text, search_grounding = await self._run_search(search_query or prompt)
            tool_context.append(search_text)
            grounding.extend(search_grounding)
        if WEB_FETCH in tools:
            tool_context.extend(await self._run_fetch(
                list(fetch_urls) if fetch_urls is not None else extract_urls(prompt)
            ))

        system_text = system or ""
        if response_model is not None:
            schema = json.dumps(response_model.model_json_schema())
            system_text = (
                f"{system_text}\n\nReturn ONLY valid JSON matching this schema:\n{schema}"
            ).strip()

        messages: List[Dict[str, Any]] = []
        if system_text:
            messages.append({"role": "system", "content": system_text})
        messages.append({
            "role": "user",
            "content": self._build_user_content(prompt, tool_context, attachments or []),
        })

        model = self.models.get(tier) or self.models["fast"]
        text = await self._complete(messages, model, max_tokens, temperature)

        if response_model is None:
            return GatewayReply(text=text, data=text, grounding=grounding)
        if default is None:
            default = response_model()
        return GatewayReply(text=text, data=self._parse(text, response_model, default), grounding=grounding)

    @staticmethod
    def _parse(text: str, response_model: Type[BaseModel], default: Any) -> Any:
        raw = safe_parse_json(text, None)
        if raw is None:
            return default
        try:
            return response_model.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Reply did not match {response_model.__name__}: {str(e)[:200]}")
            return default

    @staticmethod
    def _build_user_content(prompt: str, tool_context: List[str], attachments: Sequence[Attachment]):
        parts: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for block in tool_context:
            parts.append({"type": "text", "text": block})
        for att in attachments:
            if att.text_content:
                doc = f"\n[ATTACHED DOCUMENT: {att.name}]\n"
                if att.context:
                    doc += f"[USER CONTEXT: {att.context}]\n"
                doc += f"{att.text_content}\n[END DOCUMENT]\n"
                parts.append({"type": "text", "text": doc})
            elif att.data and att.mime_type.startswith("image/"):
                if att.context:
                    parts.append({"type": "text",
                                  "text": f"[CONTEXT FOR NEXT MEDIA ASSET ({att.name}): {att.context}]"})
                parts.append({"type": "image_url",
                              "image_url": {"url": f"data:{att.mime_type};base64,{att.data}"}})
            else:
                logger.warning(f"Skipping attachment {att.name} ({att.mime_type}): unsupported media type")

        if all(p["type"] == "text" for p in parts):
            return "\n\n".join(p["text"] for p in parts)
        return parts

    async def _run_search(self, query: str):
        try:
            async with self.search_client_factory() as client:
                results = await client.search(query, num_results=SEARCH_RESULTS_PER_QUERY)
        except Exception as e:
            # Search outage degrades to an ungrounded answer
            logger.warning(f"Search tooling failed for '{query[:80]}': {e}")
            return "SEARCH RESULTS: unavailable", []

        grounding = []
        lines = []
        for i, r in enumerate(results, 1):
            if not is_valid_source_url(r.url):
                continue
            grounding.append(GroundingChunk(url=r.url, title=r.title or format_source_title(r.url)))
            lines.append(f"[{i}] {r.title}\nURL: {r.url}\n{r.snippet}")
        body = "\n\n".join(lines) if lines else "No results."
        return f"SEARCH RESULTS for \"{query}\":\n{body}", grounding

    async def _run_fetch(self, urls: List[str]) -> List[str]:
        if not urls:
            return []
        blocks = []
        async with self.page_fetcher_factory() as fetcher:
            for url in urls:
                page = await fetcher.fetch(url)
                if page.error:
                    raise TransientGatewayError(page.error)
                blocks.append(f"PAGE CONTENT ({url}):\nTITLE: {page.title}\n{page.content}")
        return blocks

    async def _backoff(self, attempt: int, error: Exception) -> None:
        base_wait = self.base_backoff * (2 ** attempt)  # 5, 10, 20
        jitter = random.uniform(-base_wait * 0.3, base_wait * 0.3)
        wait = base_wait + jitter
        logger.warning(
            f"Gateway attempt {attempt + 1}/{self.max_retries + 1} "
            f"failed ({type(error).__name__}), retrying in {wait:.1f}s..."
        )
        await asyncio.sleep(wait)

    async def _complete(self, messages, model: str, max_tokens: int, temperature: float) -> str:
        """Chat completion with retry. Returns the reply text."""
        for attempt in range(self.max_retries + 1):
            try:
                resp = await self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    timeout=self.timeout,
                )
                return strip_think_blocks(resp.choices[0].message.content or "")
            except openai.RateLimitError as e:
                if _is_quota_exhausted(e):
                    logger.error(f"Quota exhausted for model {model}: {e}")
                    raise QuotaExceededError(str(e)) from e
                if attempt >= self.max_retries:
                    logger.error(f"Rate limit persisted after {self.max_retries + 1} attempts")
                    raise QuotaExceededError(f"Rate limit persisted: {e}") from e
                await self._backoff(attempt, e)
            except openai.NotFoundError as e:
                # Model unavailable on this account; retrying cannot help
                logger.error(f"Model {model} not available: {e}")
                raise QuotaExceededError(str(e)) from e
            except (openai.BadRequestError, openai.AuthenticationError, openai.PermissionDeniedError) as e:
                raise GatewayError(str(e)) from e
            except (ConnectionError, TimeoutError, OSError,
                    openai.APIConnectionError, openai.APITimeoutError,
                    openai.InternalServerError) as e:
                if attempt >= self.max_retries:
                    logger.error(f"Gateway failed after {self.max_retries + 1} attempts: {e}")
                    raise TransientGatewayError(str(e)) from e
                await self._backoff(attempt, e)
        raise TransientGatewayError("Retry budget exhausted")
