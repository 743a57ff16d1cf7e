"""
AI writing helpers backed by an OpenAI-compatible chat completions API.

``AIClient`` owns one ``httpx.AsyncClient`` for the process. Any transport
problem, timeout or non-2xx answer is reported as ``UpstreamUnavailable``.
Model output is free text: structured answers (ideas, summaries) are
parsed after stripping markdown code fences, and fall back to defaults
instead of failing when the JSON is unusable.
"""
import json
import logging
import re

import httpx

from blog_api import prompts
from blog_api.config import Settings
from blog_api.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

SUMMARY_TITLE_MAX = 200

DEFAULT_IDEA_DESCRIPTION = "No description available"
DEFAULT_IDEA_TAGS = ["general"]
DEFAULT_IDEA_TONE = "casual"
DEFAULT_SUMMARY_TITLE = "Blog Post Summary"

FALLBACK_IDEAS = [
    {
        "title": "Blog Post Ideas",
        "description": "The AI response could not be processed.\nPlease try again.",
        "tags": ["general", "blog", "writing"],
        "tone": DEFAULT_IDEA_TONE,
    }
]
FALLBACK_SUMMARY_TEXT = "The AI response could not be processed. Please try again."

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    text = text.strip()
    text = _FENCE_OPEN_RE.sub("", text)
    text = _FENCE_CLOSE_RE.sub("", text)
    return text.strip()


def parse_ideas(raw: str) -> list[dict]:
    """
    Parse a list of post ideas. A single JSON object is treated as a
    one-item list; items without a title, an empty list or invalid JSON
    yield ``FALLBACK_IDEAS``.
    """
    cleaned = strip_code_fences(raw)
    try:
        data = json.loads(cleaned)
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list) or not data:
            raise ValueError("expected a non-empty JSON array")
        ideas = []
        for index, item in enumerate(data):
            if not isinstance(item, dict) or not item.get("title"):
                raise ValueError(f"item {index} has no title")
            tags = item.get("tags")
            ideas.append(
                {
                    "title": str(item["title"]),
                    "description": item.get("description") or DEFAULT_IDEA_DESCRIPTION,
                    "tags": [str(t) for t in tags] if isinstance(tags, list) else list(DEFAULT_IDEA_TAGS),
                    "tone": item.get("tone") or DEFAULT_IDEA_TONE,
                }
            )
        return ideas
    except ValueError as exc:
        logger.error("Could not parse AI ideas response: %s; raw=%r", exc, raw[:200])
        return [dict(idea) for idea in FALLBACK_IDEAS]


def parse_summary(raw: str) -> dict:
    """
    Parse ``{"title", "summary"}``. Missing fields get defaults, the title
    is cut at ``SUMMARY_TITLE_MAX`` characters, and unusable JSON falls back
    to the cleaned raw text as the summary.
    """
    cleaned = strip_code_fences(raw)
    try:
        data = json.loads(cleaned)
        if not isinstance(data, dict) or not (data.get("title") or data.get("summary")):
            raise ValueError("missing both title and summary")
        title = str(data.get("title") or DEFAULT_SUMMARY_TITLE)
        summary = str(data.get("summary") or cleaned)
    except ValueError as exc:
        logger.error("Could not parse AI summary response: %s; raw=%r", exc, raw[:200])
        return {"title": DEFAULT_SUMMARY_TITLE, "summary": cleaned or FALLBACK_SUMMARY_TEXT}

    if len(title) > SUMMARY_TITLE_MAX:
        title = title[:SUMMARY_TITLE_MAX] + "..."
    return {"title": title, "summary": summary}


class AIClient:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.model = settings.AI_MODEL
        self.api_key = settings.AI_API_KEY
        self._http = httpx.AsyncClient(
            base_url=settings.AI_BASE_URL.rstrip("/") + "/",
            timeout=settings.AI_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        await self._http.aclose()

    async def complete(self, prompt: str, temperature: float = 0.7) -> str:
        """Send one user prompt and return the first choice's text."""
        if not self.available:
            raise UpstreamUnavailable("AI service is not available")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompts.SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
        }
        try:
            response = await self._http.post(
                "chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=payload,
            )
        except httpx.TimeoutException:
            logger.warning("AI request timed out")
            raise UpstreamUnavailable("AI service timed out")
        except httpx.RequestError as exc:
            logger.warning("AI request failed: %s", exc)
            raise UpstreamUnavailable("AI service is not reachable")

        if response.status_code >= 400:
            logger.warning("AI service answered HTTP %d: %s", response.status_code, response.text[:200])
            raise UpstreamUnavailable(
                "AI service returned an error", details={"status": response.status_code}
            )

        try:
            choice = response.json()["choices"][0]
            message = choice.get("message") or {}
            text = message.get("content") or choice.get("text")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            text = None
        if not text:
            logger.error("AI response had no content: %s", response.text[:200])
            raise UpstreamUnavailable("AI service returned an empty response")
        return text

    # ------------------------------------------------------------------
    # Writing helpers
    # ------------------------------------------------------------------

    async def generate_post(self, title: str, tone: str) -> str:
        return await self.complete(prompts.blog_post_prompt(title, tone))

    async def generate_ideas(self, topics: str) -> list[dict]:
        raw = await self.complete(prompts.blog_post_ideas_prompt(topics))
        logger.info("AI ideas response: %s...", raw[:200])
        return parse_ideas(raw)

    async def generate_reply(self, content: str, author: str | None = None) -> str:
        return await self.complete(prompts.comment_reply_prompt(content, author))

    async def generate_summary(self, content: str) -> dict:
        raw = await self.complete(prompts.blog_summary_prompt(content), temperature=0.3)
        return parse_summary(raw)
