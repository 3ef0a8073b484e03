"""Web fetch and search tools."""

from __future__ import annotations

import html
import re
from typing import Any
from urllib.parse import unquote

import httpx

from g_bridge.agent.tools.base import Tool, ToolContext

BROWSER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
DDG_INSTANT_URL = "https://api.duckduckgo.com/"
DDG_HTML_URL = "https://html.duckduckgo.com/html/"

_SCRIPT_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_SPACES = re.compile(r"\s{2,}")
_RESULT_TITLE = re.compile(r'<a class="result__a"[^>]*>(.*?)</a>', re.DOTALL)
_RESULT_SNIPPET = re.compile(r'<a class="result__snippet"[^>]*>(.*?)</a>', re.DOTALL)
_RESULT_URL = re.compile(r"uddg=([^&\"]+)")


def _strip_tags(text: str) -> str:
    """Reduce HTML to readable text."""
    text = _SCRIPT_STYLE.sub("", text)
    text = _TAG.sub(" ", text)
    text = html.unescape(text)
    return _SPACES.sub(" ", text).strip()


class WebFetchTool(Tool):

    def __init__(self, max_chars: int = 8000, timeout_s: float = 15.0):
        self.max_chars = max_chars
        self.timeout_s = timeout_s

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return (
            "Fetch a URL and return its content as plain text. HTML is reduced to "
            f"readable text. Returns at most {self.max_chars} characters by default."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "HTTP/HTTPS URL"},
                "max_chars": {"type": "integer", "description": "Maximum characters (max 20000)"},
            },
            "required": ["url"],
        }

    async def execute(self, ctx: ToolContext, url: str = "", max_chars: int | None = None, **kwargs: Any) -> str:
        target = (url or "").strip()
        if not target.startswith(("http://", "https://")):
            return "Error: url must start with http:// or https://"
        limit = min(int(max_chars or self.max_chars), 20_000)

        async with httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True) as client:
            response = await client.get(
                target,
                headers={"User-Agent": BROWSER_UA, "Accept": "text/html,*/*;q=0.8"},
            )
            response.raise_for_status()
        body = response.text
        if "text/html" in response.headers.get("content-type", ""):
            body = _strip_tags(body)
        return body[:limit]


class WebSearchTool(Tool):
    """DuckDuckGo search: instant answers first, then scraped HTML results."""

    def __init__(self, timeout_s: float = 15.0):
        self.timeout_s = timeout_s

    @property
    def name(self) -> str:
        return "web_search"

    @property
    def description(self) -> str:
        return (
            "Search the web and return the top results (title, snippet, URL). "
            "Use web_fetch to read a result in full."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "max_results": {"type": "integer", "description": "Results to return (max 10)"},
            },
            "required": ["query"],
        }

    async def execute(self, ctx: ToolContext, query: str = "", max_results: int = 5, **kwargs: Any) -> str:
        q = (query or "").strip()
        if not q:
            return "Error: query is empty"
        count = max(1, min(int(max_results or 5), 10))

        async with httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True) as client:
            instant = await self._instant_answer(client, q, count)
            if instant:
                return instant
            response = await client.post(DDG_HTML_URL, data={"q": q}, headers={"User-Agent": BROWSER_UA})
            response.raise_for_status()
        return self._format_html_results(q, response.text, count)

    async def _instant_answer(self, client: httpx.AsyncClient, query: str, count: int) -> str:
        try:
            response = await client.get(
                DDG_INSTANT_URL,
                params={"q": query, "format": "json", "no_html": 1, "skip_disambig": 1},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError):
            return ""

        parts: list[str] = []
        if data.get("Answer"):
            parts.append(f"Answer: {data['Answer']}")
        if data.get("AbstractText"):
            parts.append(f"Summary: {data['AbstractText']}")
            if data.get("AbstractURL"):
                parts.append(f"Source: {data['AbstractURL']}")
        topics = [t for t in data.get("Results", []) + data.get("RelatedTopics", []) if t.get("Text") and t.get("FirstURL")]
        for topic in topics[:count]:
            parts.append(f"- {topic['Text'][:200]}\n  {topic['FirstURL']}")
        return "\n".join(parts)

    def _format_html_results(self, query: str, page: str, count: int) -> str:
        titles = [_strip_tags(m)[:120] for m in _RESULT_TITLE.findall(page)]
        snippets = [_strip_tags(m)[:250] for m in _RESULT_SNIPPET.findall(page)]
        urls = [unquote(m) for m in _RESULT_URL.findall(page)]
        if not titles:
            return f"No results for '{query}'. Try web_fetch on a relevant URL."
        lines = []
        for i, title in enumerate(titles[:count]):
            entry = f"{i + 1}. {title}"
            if i < len(snippets):
                entry += f"\n{snippets[i]}"
            if i < len(urls):
                entry += f"\n{urls[i]}"
            lines.append(entry)
        return f"Results for '{query}':\n\n" + "\n\n".join(lines)
