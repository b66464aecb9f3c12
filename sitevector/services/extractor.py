"""Content extraction service.

Turns raw HTML into a clean title, readable body text and page metadata,
trying semantic containers first and falling back to heuristics.
"""

import html
import logging
import math
import re
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag
from bs4.element import PreformattedString

from sitevector.services.url_scoring import is_internal_url

logger = logging.getLogger(__name__)

TOKENS_PER_WORD = 1.33


def estimate_tokens(text: str) -> int:
    """Approximate token count as words x 1.33.

    A coarse stand-in for a real subword tokenizer; actual usage for cost
    accounting comes from the embedding API.
    """
    words = len(text.split())
    if not words:
        return 0
    return math.ceil(words * TOKENS_PER_WORD)


@dataclass
class Heading:
    level: int
    text: str
    id: str | None = None


@dataclass
class Link:
    url: str
    text: str
    is_internal: bool


@dataclass
class Image:
    src: str
    alt: str | None = None


@dataclass
class PageMetadata:
    """Metadata read from the document head and structure."""
    language: str | None = None
    author: str | None = None
    description: str | None = None
    canonical_url: str | None = None
    headings: list[Heading] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)
    images: list[Image] = field(default_factory=list)


@dataclass
class ExtractedContent:
    """Result of extracting a page."""
    success: bool
    title: str = ""
    clean_text: str = ""
    word_count: int = 0
    estimated_tokens: int = 0
    method: str = "failed"  # semantic, pattern_based, aggressive, failed
    quality_score: int = 0
    quality_reasons: list[str] = field(default_factory=list)
    metadata: PageMetadata = field(default_factory=PageMetadata)
    error: str | None = None


class ContentExtractor:
    """Extract readable content from HTML pages."""

    # Elements to remove entirely before anything else
    NOISY_TAGS = [
        "script", "style", "noscript", "iframe", "svg", "canvas",
        "video", "audio", "source", "track", "embed", "object", "template",
    ]

    # Boilerplate removed before body extraction
    BOILERPLATE_SELECTORS = [
        "nav", "header", "footer", "aside",
        "[role='navigation']", "[role='banner']", "[role='contentinfo']",
        ".nav", ".navbar", ".navigation", ".menu", ".sidebar", "#sidebar",
        ".header", ".footer", "#header", "#footer",
        ".ad", ".ads", ".advertisement", ".banner", "[class*='advert']",
        ".social", ".share", ".social-share", ".sharing",
        ".comments", "#comments", ".comment-list",
        ".related", ".related-posts", ".recommended",
        ".breadcrumb", ".breadcrumbs", ".pagination", ".pager",
        "[class*='cookie']", "[id*='cookie']", "[class*='consent']", "[class*='gdpr']",
        ".search", ".search-form", ".newsletter", ".subscribe",
        "[class*='popup']", "[class*='modal']", ".skip-link", ".skip-to-content",
    ]

    # Landmarks holding the page's own content; wrappers around them are kept
    CONTENT_LANDMARKS = "main, article, [role='main']"

    # Forms with less text than this are search boxes or sign-ups, not page wrappers
    SMALL_FORM_CHARS = 200

    SEMANTIC_SELECTORS = [
        "main",
        "article",
        "[role='main']",
        ".main-content",
        "#main-content",
        ".post-content",
        ".entry-content",
        ".article-content",
        ".page-content",
        "#content",
        ".content",
    ]

    PATTERN_SELECTOR = (
        "div[class*='content'], div[class*='article'], div[class*='post'], "
        "div[class*='text'], div[class*='body']"
    )

    TITLE_SELECTORS = [".title", ".page-title", ".post-title", ".article-title"]

    BLOCK_TAGS = [
        "p", "div", "section", "article", "main", "li", "ul", "ol", "dl", "dt", "dd",
        "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre", "table", "tr",
        "figure", "figcaption", "br", "hr",
    ]

    NAV_LIKE = re.compile(r"nav|menu|sidebar|footer|header|breadcrumb", re.IGNORECASE)
    AD_LIKE = re.compile(r"\bads?\b|advert|sponsor|promo|banner", re.IGNORECASE)
    TITLE_SUFFIX = re.compile(r"\s+[|\-–—:]\s+[^|\-–—:]+$")

    def __init__(self, min_text_length: int = 100, semantic_min_length: int = 200):
        self.min_text_length = min_text_length
        self.semantic_min_length = semantic_min_length

    def extract(self, raw_html: str, url: str) -> ExtractedContent:
        """Extract title, clean text, metadata and quality from HTML.

        Never raises: unrecoverable problems produce ``success=False``.
        """
        try:
            return self._extract(raw_html, url)
        except Exception as e:
            logger.exception(f"Extraction failed for {url}")
            return ExtractedContent(success=False, error=f"Extraction failed: {e}")

    def _extract(self, raw_html: str, url: str) -> ExtractedContent:
        if not raw_html or not raw_html.strip():
            return ExtractedContent(success=False, error="Empty HTML document")

        soup = BeautifulSoup(raw_html, "lxml")

        for tag in self.NOISY_TAGS:
            for element in soup.find_all(tag):
                if not element.decomposed:
                    element.decompose()

        # Title and metadata come from the full document
        title = self._extract_title(soup, url)
        metadata = self._extract_metadata(soup, url)

        self._remove_boilerplate(soup)

        method = "semantic"
        text = self._semantic_extraction(soup)
        if not text:
            method = "pattern_based"
            text = self._pattern_extraction(soup)
        if not text:
            method = "aggressive"
            text = self._aggressive_extraction(soup)

        if len(text) < self.min_text_length:
            return ExtractedContent(
                success=False,
                title=title,
                metadata=metadata,
                error="No extractable content",
            )

        word_count = len(text.split())
        score, reasons = self._score_quality(text, raw_html, word_count, method)
        return ExtractedContent(
            success=True,
            title=title,
            clean_text=text,
            word_count=word_count,
            estimated_tokens=estimate_tokens(text),
            method=method,
            quality_score=score,
            quality_reasons=reasons,
            metadata=metadata,
        )

    def _remove_boilerplate(self, soup: BeautifulSoup) -> None:
        for selector in self.BOILERPLATE_SELECTORS:
            for element in soup.select(selector):
                # Never drop the document skeleton itself
                if element.decomposed or element.name in ("html", "body"):
                    continue
                if self._holds_content(element):
                    continue
                element.decompose()

        for form in soup.find_all("form"):
            if form.decomposed or self._holds_content(form):
                continue
            if len(form.get_text(" ", strip=True)) < self.SMALL_FORM_CHARS:
                form.decompose()

    def _holds_content(self, element: Tag) -> bool:
        return element.name in ("main", "article") or element.select_one(self.CONTENT_LANDMARKS) is not None

    def _semantic_extraction(self, soup: BeautifulSoup) -> str:
        for selector in self.SEMANTIC_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            text = self._element_text(element)
            if len(text) > self.semantic_min_length:
                return text
        return ""

    def _pattern_extraction(self, soup: BeautifulSoup) -> str:
        best_text = ""
        best_score = float("-inf")

        for element in soup.select(self.PATTERN_SELECTOR):
            text = self._element_text(element)
            if len(text) <= self.min_text_length:
                continue

            classes = " ".join(element.get("class", []))
            score = min(len(text) / 100, 50) + 2 * len(element.find_all("p"))
            if self.NAV_LIKE.search(classes):
                score -= 20
            if self.AD_LIKE.search(classes):
                score -= 30

            if score > best_score:
                best_score = score
                best_text = text

        return best_text

    def _aggressive_extraction(self, soup: BeautifulSoup) -> str:
        body = soup.body or soup
        for element in body.select("button, input, select, textarea, label"):
            if not element.decomposed:
                element.decompose()
        return self._element_text(body)

    def _element_text(self, element: Tag) -> str:
        """Render an element as paragraphs separated by blank lines."""
        parts: list[str] = []
        buffer: list[str] = []

        def flush() -> None:
            paragraph = re.sub(r"\s+", " ", "".join(buffer)).strip()
            if paragraph:
                parts.append(paragraph)
            buffer.clear()

        for node in element.descendants:
            if isinstance(node, Tag):
                if node.name in self.BLOCK_TAGS:
                    flush()
                continue
            if isinstance(node, PreformattedString):
                continue  # comments, doctypes, CDATA
            buffer.append(str(node))
        flush()

        return "\n\n".join(parts)

    def _extract_title(self, soup: BeautifulSoup, url: str) -> str:
        candidates: list[str] = []

        h1 = soup.find("h1")
        if h1:
            candidates.append(h1.get_text(" ", strip=True))

        title_tag = soup.find("title")
        if title_tag:
            candidates.append(self._clean_title(title_tag.get_text(" ", strip=True)))

        for selector in self.TITLE_SELECTORS:
            element = soup.select_one(selector)
            if element:
                candidates.append(element.get_text(" ", strip=True))

        for attrs in ({"property": "og:title"}, {"name": "twitter:title"}):
            meta = soup.find("meta", attrs=attrs)
            if meta and meta.get("content"):
                candidates.append(meta["content"].strip())

        for candidate in candidates:
            candidate = html.unescape(re.sub(r"\s+", " ", candidate)).strip()
            if len(candidate) > 3:
                return candidate[:512]

        return self._title_from_url(url)

    def _clean_title(self, title: str) -> str:
        """Strip a trailing site name such as ' | Example Corp'."""
        cleaned = self.TITLE_SUFFIX.sub("", title).strip()
        return cleaned if len(cleaned) > 3 else title

    def _title_from_url(self, url: str) -> str:
        segments = [s for s in urlparse(url).path.split("/") if s]
        if not segments:
            return "Untitled"
        name = re.sub(r"\.[a-z0-9]+$", "", segments[-1], flags=re.IGNORECASE)
        name = re.sub(r"[-_]+", " ", name).strip()
        return name.title() if name else "Untitled"

    def _extract_metadata(self, soup: BeautifulSoup, url: str) -> PageMetadata:
        metadata = PageMetadata()

        html_tag = soup.find("html")
        if html_tag and html_tag.get("lang"):
            metadata.language = html_tag["lang"].strip()[:35]
        else:
            locale = soup.find("meta", attrs={"property": "og:locale"})
            metadata.language = locale["content"][:35] if locale and locale.get("content") else "en"

        author = soup.find("meta", attrs={"name": "author"})
        if author and author.get("content"):
            metadata.author = html.unescape(author["content"].strip())[:255]

        description = soup.find("meta", attrs={"name": "description"}) or soup.find(
            "meta", attrs={"property": "og:description"}
        )
        if description and description.get("content"):
            metadata.description = html.unescape(description["content"].strip())

        canonical = soup.find("link", rel="canonical")
        if canonical and canonical.get("href"):
            metadata.canonical_url = urljoin(url, canonical["href"])

        for heading in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
            text = heading.get_text(" ", strip=True)
            if text:
                metadata.headings.append(
                    Heading(level=int(heading.name[1]), text=text[:200], id=heading.get("id"))
                )

        seen: set[str] = set()
        for a in soup.find_all("a", href=True):
            href = a["href"].strip()
            if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
                continue
            absolute = urljoin(url, href)
            if absolute in seen:
                continue
            seen.add(absolute)
            metadata.links.append(
                Link(
                    url=absolute,
                    text=a.get_text(" ", strip=True)[:200],
                    is_internal=is_internal_url(absolute, url),
                )
            )

        for img in soup.find_all("img", src=True):
            metadata.images.append(Image(src=urljoin(url, img["src"]), alt=img.get("alt")))

        return metadata

    def _score_quality(
        self,
        text: str,
        raw_html: str,
        word_count: int,
        method: str,
    ) -> tuple[int, list[str]]:
        score = 50
        reasons: list[str] = []

        if word_count > 500:
            score += 20
            reasons.append("Substantial content length")
        elif word_count < 100:
            score -= 20
            reasons.append("Short content")

        if method == "semantic":
            score += 20
            reasons.append("Found semantic content container")
        elif method == "aggressive":
            score -= 15
            reasons.append("Used aggressive fallback extraction")

        ratio = len(text) / len(raw_html) if raw_html else 0
        if ratio > 0.1:
            score += 10
            reasons.append("Good content-to-HTML ratio")
        else:
            score -= 10
            reasons.append("Low content-to-HTML ratio")

        return max(0, min(100, score)), reasons
