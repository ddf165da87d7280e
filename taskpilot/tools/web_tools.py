from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlparse

import requests

from taskpilot.core.actions import ActionOutcome, ActionRegistry, ExecutionContext
from taskpilot.infra.ids import new_run_id
from taskpilot.infra.logging import log_event
from taskpilot.tools.text_tools import html_links, html_title, html_to_text, summarize_text_local


class WebSession:
    """
    A minimal "browser": one current page fetched over plain HTTP.

    Reason:
    - The loop needs a real side-effecting back-end to drive end to end.
    Benefit:
    - navigate / extract / click work anywhere requests works; no browser needed.
    """

    def __init__(self, *, timeout: float = 15.0, http: Optional[requests.Session] = None) -> None:
        self.id = new_run_id()
        self.timeout = timeout
        self.http = http or requests.Session()
        self.url: Optional[str] = None
        self.title: Optional[str] = None
        self.html: str = ""

    async def context(self) -> ExecutionContext:
        return ExecutionContext(target_id=self.id, url=self.url, title=self.title)

    async def navigate(self, url: str) -> ActionOutcome:
        parsed = urlparse(url if "://" in url else f"https://{url}")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ActionOutcome(success=False, error=f"Invalid URL: {url}")
        target = parsed.geturl()

        try:
            response = await asyncio.to_thread(self.http.get, target, timeout=self.timeout)
        except requests.RequestException as e:
            return ActionOutcome(success=False, error=f"Request failed: {type(e).__name__}: {e}")

        if response.status_code >= 400:
            return ActionOutcome(success=False, error=f"HTTP {response.status_code} for {target}")

        self.url = response.url or target
        self.html = response.text
        self.title = html_title(self.html) or None
        log_event("web_navigate", url=self.url, status=response.status_code)
        return ActionOutcome(
            success=True,
            result={"url": self.url, "status": response.status_code, "title": self.title},
        )

    async def extract_text(self, max_chars: int = 2000) -> ActionOutcome:
        if self.url is None:
            return ActionOutcome(success=False, error="No page loaded; navigate first")
        text = html_to_text(self.html)
        return ActionOutcome(
            success=True,
            result={"url": self.url, "text": text[:max_chars], "length": len(text)},
        )

    async def find_links(self, contains: str = "", limit: int = 20) -> ActionOutcome:
        if self.url is None:
            return ActionOutcome(success=False, error="No page loaded; navigate first")
        needle = contains.lower()
        links = [
            {"href": urljoin(self.url, href), "text": text}
            for href, text in html_links(self.html)
            if needle in href.lower() or needle in text.lower()
        ]
        return ActionOutcome(success=True, result={"links": links[:limit], "total": len(links)})

    async def click(self, selector: str) -> ActionOutcome:
        """Static pages have no events; clicking means following the first matching link."""
        if self.url is None:
            return ActionOutcome(success=False, error="No page loaded; navigate first")
        needle = selector.strip().lower()
        for href, text in html_links(self.html):
            if needle and (needle in text.lower() or needle in href.lower()):
                return await self.navigate(urljoin(self.url, href))
        return ActionOutcome(success=False, error=f"No link matches '{selector}'")

    async def summarize(self, max_sentences: int = 2) -> Dict[str, Any]:
        return summarize_text_local(html_to_text(self.html), max_sentences=max_sentences)


def register_web_actions(registry: ActionRegistry, session: WebSession) -> ActionRegistry:
    registry.register(
        "navigate",
        session.navigate,
        description="Load a web page by URL and make it the current page.",
        parameters={
            "type": "object",
            "properties": {"url": {"type": "string", "description": "Absolute http(s) URL"}},
            "required": ["url"],
        },
    )
    registry.register(
        "extract_text",
        session.extract_text,
        description="Return the visible text of the current page.",
        parameters={
            "type": "object",
            "properties": {"max_chars": {"type": "integer", "minimum": 100}},
        },
    )
    registry.register(
        "find_links",
        session.find_links,
        description="List links on the current page whose text or URL contains a substring.",
        parameters={
            "type": "object",
            "properties": {
                "contains": {"type": "string"},
                "limit": {"type": "integer", "minimum": 1, "maximum": 100},
            },
        },
    )
    registry.register(
        "click",
        session.click,
        description="Follow the first link whose text or URL matches the selector text.",
        parameters={
            "type": "object",
            "properties": {"selector": {"type": "string"}},
            "required": ["selector"],
        },
    )
    registry.register(
        "summarize_page",
        session.summarize,
        description="Naive summary of the current page: first sentences and key points.",
        parameters={
            "type": "object",
            "properties": {"max_sentences": {"type": "integer", "minimum": 1}},
        },
    )
    return registry
