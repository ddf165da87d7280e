import re
from typing import Any, Dict, List, Tuple

from bs4 import BeautifulSoup

_NOISE_TAGS = ("script", "style", "noscript", "template")
_WS = re.compile(r"\s+")


def _soup(markup: str) -> BeautifulSoup:
    return BeautifulSoup(markup or "", "html.parser")


def _clean(text: str) -> str:
    return _WS.sub(" ", text).strip()


def html_to_text(markup: str) -> str:
    """Visible text of a page, whitespace collapsed; good enough for feeding a model."""
    soup = _soup(markup)
    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    return _clean(soup.get_text(" "))


def html_title(markup: str) -> str:
    title = _soup(markup).title
    return _clean(title.get_text(" ")) if title else ""


def html_links(markup: str) -> List[Tuple[str, str]]:
    """(href, text) pairs in document order."""
    return [
        (a["href"].strip(), _clean(a.get_text(" ")))
        for a in _soup(markup).find_all("a", href=True)
    ]


def summarize_text_local(text: str, max_sentences: int = 2) -> Dict[str, Any]:
    """
    Naive summarizer: takes first N sentences.
    Reason:
    - Deterministic action for exercising the loop without LLM variability.
    """
    sentences = [s.strip() for s in text.replace("\n", " ").split(".") if s.strip()]
    summary = ". ".join(sentences[:max_sentences])
    key_points = sentences[:min(5, len(sentences))]
    return {
        "summary": summary + ("." if summary and not summary.endswith(".") else ""),
        "key_points": key_points,
    }
