from types import SimpleNamespace

import pytest
import requests

from taskpilot.core.actions import ActionRegistry, ExecutionContext
from taskpilot.tools.text_tools import html_links, html_title, html_to_text, summarize_text_local
from taskpilot.tools.web_tools import WebSession, register_web_actions

HOME = """
<html><head><title>Example &amp; Co</title><style>body { color: red }</style></head>
<body>
  <h1>Welcome</h1>
  <p>This domain is for use in examples. It is not for sale.</p>
  <a href="/about">About us</a>
  <a href="https://other.test/docs">Read the docs</a>
</body></html>
"""

ABOUT = "<html><head><title>About</title></head><body><p>About page.</p></body></html>"


class FakeHttp:
    def __init__(self, pages):
        self.pages = pages
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            return SimpleNamespace(status_code=404, url=url, text="not found")
        return SimpleNamespace(status_code=200, url=url, text=page)


def _session(**pages):
    http = FakeHttp(
        {
            "https://example.com": HOME,
            "https://example.com/about": ABOUT,
            "https://down.test": requests.ConnectionError("refused"),
            **pages,
        }
    )
    return WebSession(timeout=1.0, http=http), http


# --- text helpers ---------------------------------------------------------------


def test_html_helpers():
    assert html_title(HOME) == "Example & Co"
    text = html_to_text(HOME)
    assert "color: red" not in text
    assert "Welcome This domain is for use in examples." in text
    assert html_links(HOME) == [("/about", "About us"), ("https://other.test/docs", "Read the docs")]


def test_summarize_text_local():
    out = summarize_text_local("One. Two. Three.", max_sentences=2)
    assert out["summary"] == "One. Two."
    assert out["key_points"] == ["One", "Two", "Three"]


# --- session ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_navigate_loads_page():
    session, http = _session()

    outcome = await session.navigate("https://example.com")

    assert outcome.success is True
    assert outcome.result == {"url": "https://example.com", "status": 200, "title": "Example & Co"}
    assert session.title == "Example & Co"
    ctx = await session.context()
    assert ctx.url == "https://example.com"
    assert ctx.target_id == session.id


@pytest.mark.asyncio
async def test_navigate_adds_scheme():
    session, http = _session()
    outcome = await session.navigate("example.com")
    assert outcome.success is True
    assert http.requested == ["https://example.com"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url,error",
    [
        ("ftp://example.com/file", "Invalid URL"),
        ("https://missing.test", "HTTP 404"),
        ("https://down.test", "Request failed: ConnectionError"),
    ],
)
async def test_navigate_failures(url, error):
    session, _ = _session()
    outcome = await session.navigate(url)
    assert outcome.success is False
    assert error in outcome.error
    assert session.url is None


@pytest.mark.asyncio
async def test_page_actions_require_a_page():
    session, _ = _session()
    for outcome in (
        await session.extract_text(),
        await session.find_links(),
        await session.click("About"),
    ):
        assert outcome.success is False
        assert outcome.error == "No page loaded; navigate first"


@pytest.mark.asyncio
async def test_extract_text_and_find_links():
    session, _ = _session()
    await session.navigate("https://example.com")

    text = await session.extract_text(max_chars=20)
    assert len(text.result["text"]) == 20
    assert text.result["length"] > 20

    links = await session.find_links(contains="docs")
    assert links.result == {
        "links": [{"href": "https://other.test/docs", "text": "Read the docs"}],
        "total": 1,
    }


@pytest.mark.asyncio
async def test_click_follows_matching_link():
    session, http = _session()
    await session.navigate("https://example.com")

    outcome = await session.click("about")

    assert outcome.success is True
    assert session.url == "https://example.com/about"
    assert http.requested[-1] == "https://example.com/about"

    missing = await session.click("pricing")
    assert missing.success is False
    assert missing.error == "No link matches 'pricing'"


# --- registry wiring ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_registered_web_actions():
    session, _ = _session()
    registry = register_web_actions(ActionRegistry(), session)

    assert [s.name for s in registry.list_actions()] == [
        "navigate",
        "extract_text",
        "find_links",
        "click",
        "summarize_page",
    ]

    ctx = ExecutionContext()
    assert (await registry.execute("navigate", {"url": "https://example.com"}, ctx)).success
    summary = await registry.execute("summarize_page", {"max_sentences": 1}, ctx)
    assert summary.success is True
    assert summary.result["summary"].startswith("Example & Co")

    bad = await registry.execute("click", {}, ctx)
    assert bad.error == "Bad action args: missing required ['selector']"


def test_html_helpers_handle_unquoted_and_tricky_attributes():
    assert html_links("<a href=/about>About us</a>") == [("/about", "About us")]
    assert html_to_text('<p title="a > b">Hello</p>') == "Hello"
    assert html_title("<p>no title</p>") == ""
