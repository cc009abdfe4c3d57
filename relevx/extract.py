"""Page fetching and main-content extraction.

HTML is parsed with BeautifulSoup; trafilatura's metadata extractor fills
in title, author and date when the page's own meta tags are missing.
"""

from __future__ import annotations

import asyncio
import logging
import re
from urllib.parse import urljoin

import httpx
import trafilatura
from bs4 import BeautifulSoup

from relevx.config import get_extraction_config
from relevx.history import normalize_url
from relevx.models import ExtractedContent

logger = logging.getLogger(__name__)

CONTENT_SELECTORS = [
    "article",
    '[role="main"]',
    "main",
    ".post-content",
    ".article-content",
    ".entry-content",
    ".content",
    "#content",
    ".post",
    ".article",
]

STRIP_TAGS = ["script", "style", "nav", "footer", "header", "aside", "iframe", "noscript"]

MIN_SELECTOR_TEXT = 100

BLOCKED_STATUS_CODES = {401, 403}


def clean_text(text: str) -> str:
    """Collapse runs of whitespace."""
    return re.sub(r"\s+", " ", text).strip()


def create_snippet(text: str, min_length: int = 200, max_length: int = 500) -> str:
    """Cut text to roughly ``max_length`` characters worth of words.

    Word limits assume five characters per word. The cut backs up to the
    last sentence end when that lies past ``min_length``; otherwise the
    snippet ends with an ellipsis.
    """
    words = text.split()
    if len(words) <= min_length // 5:
        return text

    target_words = max_length // 5
    if len(words) <= target_words:
        return " ".join(words)

    snippet = " ".join(words[:target_words])
    last_sentence_end = max(snippet.rfind("."), snippet.rfind("?"), snippet.rfind("!"))
    if last_sentence_end > min_length:
        return snippet[: last_sentence_end + 1]
    return snippet + "..."


def _meta(soup: BeautifulSoup, *selectors: str) -> str | None:
    """First non-empty ``content`` among the given meta selectors."""
    for selector in selectors:
        tag = soup.select_one(selector)
        if tag and tag.get("content"):
            return tag["content"].strip()
    return None


def extract_main_content(soup: BeautifulSoup) -> str:
    """Text of the first content container with enough text, else the body."""
    for tag in soup(STRIP_TAGS):
        tag.decompose()

    for selector in CONTENT_SELECTORS:
        elements = soup.select(selector)
        if not elements:
            continue
        text = clean_text(" ".join(el.get_text(" ") for el in elements))
        if len(text) > MIN_SELECTOR_TEXT:
            return text

    body = soup.body or soup
    return clean_text(body.get_text(" "))


def extract_metadata(soup: BeautifulSoup) -> dict:
    """Description, author, date, keywords, image and content type from meta tags."""
    author = _meta(soup, 'meta[name="author"]', 'meta[property="article:author"]')
    if not author:
        link = soup.select_one('[rel="author"]')
        if link:
            author = clean_text(link.get_text()) or None

    published = _meta(
        soup,
        'meta[property="article:published_time"]',
        'meta[name="date"]',
        'meta[name="pubdate"]',
    )
    if not published:
        time_tag = soup.select_one("time[datetime]")
        if time_tag:
            published = time_tag["datetime"]

    keywords = _meta(soup, 'meta[name="keywords"]')
    content_type = _meta(soup, 'meta[property="og:type"]')
    if not content_type:
        if soup.find("article"):
            content_type = "article"
        elif soup.find("video"):
            content_type = "video"

    return {
        "description": _meta(
            soup, 'meta[name="description"]', 'meta[property="og:description"]'
        ),
        "author": author,
        "published_date": published,
        "keywords": [k.strip() for k in keywords.split(",") if k.strip()] if keywords else [],
        "image": _meta(soup, 'meta[property="og:image"]'),
        "content_type": content_type,
    }


def extract_title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.string:
        return clean_text(soup.title.string)
    og_title = _meta(soup, 'meta[property="og:title"]')
    if og_title:
        return og_title
    h1 = soup.find("h1")
    return clean_text(h1.get_text()) if h1 else ""


def extract_headings(soup: BeautifulSoup) -> list[str]:
    headings = []
    for tag in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        text = clean_text(tag.get_text())
        if text:
            headings.append(text)
    return headings


def extract_images(soup: BeautifulSoup, base_url: str) -> list[dict]:
    images = []
    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src")
        if not src:
            continue
        images.append(
            {
                "src": urljoin(base_url, src),
                "alt": img.get("alt", ""),
                "width": img.get("width"),
                "height": img.get("height"),
            }
        )
    return images


def _apply_trafilatura_metadata(html: str, url: str, title: str, metadata: dict) -> str:
    """Fill gaps from trafilatura's metadata extractor; returns the title."""
    if title and metadata["author"] and metadata["published_date"]:
        return title
    doc = trafilatura.extract_metadata(html, default_url=url)
    if doc is None:
        return title
    metadata["author"] = metadata["author"] or doc.author
    metadata["published_date"] = metadata["published_date"] or doc.date
    metadata["description"] = metadata["description"] or doc.description
    return title or doc.title or ""


class ContentExtractor:
    """Fetch pages and turn them into snippets with bounded concurrency."""

    def __init__(self, config: dict, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = get_extraction_config(config)
        self.transport = transport

    async def _fetch_html(self, url: str) -> str:
        headers = {
            "User-Agent": self.settings["user_agent"],
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        async with httpx.AsyncClient(
            timeout=self.settings["timeout"],
            follow_redirects=True,
            transport=self.transport,
        ) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
            return resp.text

    def parse(self, url: str, html: str) -> ExtractedContent:
        """Build an ExtractedContent from raw HTML."""
        soup = BeautifulSoup(html, "html.parser")
        title = extract_title(soup)
        metadata = extract_metadata(soup)
        headings = extract_headings(soup)
        images = extract_images(soup, url)
        title = _apply_trafilatura_metadata(html, url, title, metadata)

        text = extract_main_content(soup)
        snippet = create_snippet(
            text,
            self.settings["min_snippet_length"],
            self.settings["max_snippet_length"],
        )
        full_content = text if len(text) > self.settings["full_content_min_chars"] else None

        return ExtractedContent(
            url=url,
            normalized_url=normalize_url(url),
            title=title,
            snippet=snippet,
            full_content=full_content,
            headings=headings,
            images=images,
            metadata=metadata,
            word_count=len(text.split()),
            fetch_status="success",
        )

    async def extract(self, url: str) -> ExtractedContent:
        """Fetch and parse one URL; failures come back as a fetch status."""
        max_attempts = self.settings["max_retries"] + 1
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            try:
                html = await self._fetch_html(url)
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status in BLOCKED_STATUS_CODES:
                    logger.debug("Blocked (%d) fetching %s", status, url)
                    return self._failure(url, "blocked", f"HTTP {status}")
                last_error = f"HTTP {status}"
            except httpx.TimeoutException:
                logger.debug("Timed out fetching %s", url)
                return self._failure(url, "timeout", "Request timed out")
            except httpx.InvalidURL as exc:
                logger.debug("Invalid URL %r: %s", url, exc)
                return self._failure(url, "failed", f"Invalid URL: {exc}")
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                try:
                    return self.parse(url, html)
                except Exception as exc:
                    logger.warning("Could not parse %s: %s", url, exc)
                    return self._failure(url, "failed", f"Parse error: {exc}")

            if attempt < max_attempts:
                await asyncio.sleep(self.settings["retry_delay"] * attempt)

        logger.debug("Extraction failed for %s: %s", url, last_error)
        return self._failure(url, "failed", last_error)

    def _failure(self, url: str, status: str, error: str) -> ExtractedContent:
        return ExtractedContent(
            url=url,
            normalized_url=normalize_url(url),
            fetch_status=status,
            fetch_error=error,
        )

    async def extract_multiple(self, urls: list[str]) -> list[ExtractedContent]:
        """Extract in sequential batches of ``concurrency`` parallel fetches."""
        batch_size = max(1, self.settings["concurrency"])
        results: list[ExtractedContent] = []
        for start in range(0, len(urls), batch_size):
            batch = urls[start : start + batch_size]
            results.extend(await asyncio.gather(*(self.extract(u) for u in batch)))
        successes = sum(1 for r in results if r.fetch_status == "success")
        logger.info("Extracted %d/%d pages", successes, len(urls))
        return results
