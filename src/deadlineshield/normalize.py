from __future__ import annotations

import re
from dataclasses import dataclass

from bs4 import BeautifulSoup

from .models import WatchMode

MAX_CONTENT_CHARS = 50_000

_STRIP_TAGS = ["script", "style", "noscript", "iframe", "header", "footer", "nav"]

# Regions that churn on every request without carrying page meaning.
_BANNER_SELECTORS = [
    "[role=alert]",
    "[role=banner]",
    "[aria-live]",
    "[id*=cookie]",
    "[class*=cookie]",
    "[id*=consent]",
    "[class*=consent]",
    "[class*=banner]",
    "[id*=banner]",
    "[class*=announcement]",
    "[class*=newsletter]",
]

_PAGE_CONTAINERS = frozenset({"html", "body", "main", "article"})

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class PageSnapshot:
    text: str
    title: str
    meta_description: str


def normalize_html(html: str, max_chars: int = MAX_CONTENT_CHARS) -> str:
    soup = BeautifulSoup(html, "html.parser")
    return _normalized_text(soup, max_chars)


def extract_metadata(html: str) -> tuple[str, str]:
    soup = BeautifulSoup(html, "html.parser")
    return _metadata(soup)


def snapshot_page(html: str, max_chars: int = MAX_CONTENT_CHARS) -> PageSnapshot:
    """Normalized text plus title and meta description from one parse.

    Metadata is read before any markup is stripped so that it does not depend
    on the full-text normalization.
    """
    soup = BeautifulSoup(html, "html.parser")
    title, description = _metadata(soup)
    text = _normalized_text(soup, max_chars)
    return PageSnapshot(text=text, title=title, meta_description=description)


def watched_payload(snapshot: PageSnapshot, watch_mode: WatchMode) -> str:
    if watch_mode == WatchMode.METADATA_ONLY:
        return collapse_whitespace(f"{snapshot.title} {snapshot.meta_description}")
    return snapshot.text


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _normalized_text(soup: BeautifulSoup, max_chars: int) -> str:
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    for selector in _BANNER_SELECTORS:
        for node in soup.select(selector):
            if node.name in _PAGE_CONTAINERS or getattr(node, "decomposed", False):
                continue
            node.decompose()
    text = collapse_whitespace(soup.get_text(" ", strip=True))
    return text[:max_chars]


def _metadata(soup: BeautifulSoup) -> tuple[str, str]:
    title = ""
    if soup.title and soup.title.string:
        title = collapse_whitespace(soup.title.string)
    description = ""
    meta = soup.find("meta", attrs={"name": re.compile(r"^description$", re.IGNORECASE)})
    if meta is None:
        meta = soup.find("meta", attrs={"property": "og:description"})
    if meta is not None and meta.get("content"):
        description = collapse_whitespace(str(meta.get("content")))
    return title, description


_PASSAGE_BREAK = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class PassageDiff:
    added: list[str]
    removed: list[str]

    @property
    def text(self) -> str:
        return " ".join(self.added)

    @property
    def summary(self) -> str:
        return f"{len(self.added)} passage(s) added, {len(self.removed)} passage(s) removed."


def split_passages(text: str) -> list[str]:
    return [part for part in _PASSAGE_BREAK.split(text) if part.strip()]


def passage_diff(old: str | None, new: str) -> PassageDiff:
    """Sentences present in ``new`` but not ``old`` and the reverse, in page order.

    Without a previous text the whole new payload counts as added.
    """
    new_passages = split_passages(new)
    if old is None:
        return PassageDiff(added=new_passages, removed=[])
    old_passages = split_passages(old)
    old_set = set(old_passages)
    new_set = set(new_passages)
    added = [passage for passage in new_passages if passage not in old_set]
    removed = [passage for passage in old_passages if passage not in new_set]
    return PassageDiff(added=_dedupe(added), removed=_dedupe(removed))


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out
