"""Content extraction: convert raw HTML into page fields, visible text and links."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Optional
from urllib.parse import urljoin

import trafilatura
from bs4 import BeautifulSoup, Tag
from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException
from pydantic import BaseModel, Field

from visibility_scanner.config import ExtractionConfig
from visibility_scanner.models import PageMetadata

logger = logging.getLogger(__name__)

DetectorFactory.seed = 0


class PageContent(BaseModel):
    """Everything the crawler keeps from one HTML response."""

    title: str = ""
    h1: str = ""
    meta_description: str = ""
    canonical_url: str = ""
    text: str = ""
    headings: list[str] = Field(default_factory=list)
    links: list[str] = Field(default_factory=list)
    metadata: PageMetadata = Field(default_factory=PageMetadata)
    content_hash: str = ""
    word_count: int = 0


class ContentExtractor:
    """Extract clean, structured content from crawled HTML pages."""

    def __init__(self, config: Optional[ExtractionConfig] = None) -> None:
        self.config = config or ExtractionConfig()

    def extract(self, html: str, url: str) -> PageContent:
        """Extract page fields. Raises ValueError when the HTML cannot be parsed."""
        if len(html.encode("utf-8", errors="ignore")) > self.config.max_html_bytes:
            raise ValueError(f"HTML larger than {self.config.max_html_bytes} bytes")

        soup = BeautifulSoup(html, "lxml")
        if soup.find() is None:
            raise ValueError("Response body contains no HTML elements")

        text = ""
        if self.config.use_trafilatura:
            text = self._extract_with_trafilatura(html, url) or ""
        if not text and self.config.fallback_to_raw:
            text = self._extract_with_bs4(html)

        content = PageContent(
            title=self._extract_title(soup),
            h1=self._extract_h1(soup),
            meta_description=self._extract_description(soup),
            canonical_url=self._extract_canonical(soup, url),
            text=text,
            headings=self._extract_headings(soup),
            links=self._extract_links(soup, url),
            metadata=self._extract_metadata(soup, text),
            content_hash=hashlib.sha256(text.encode()).hexdigest(),
            word_count=len(text.split()),
        )
        return content

    def _extract_with_trafilatura(self, html: str, url: str) -> str | None:
        """Use trafilatura for main content extraction."""
        try:
            return trafilatura.extract(
                html,
                url=url,
                include_comments=False,
                include_tables=True,
                include_links=False,
                include_images=False,
                deduplicate=True,
            )
        except Exception as exc:
            logger.debug("Trafilatura extraction failed for %s: %s", url, exc)
            return None

    def _extract_with_bs4(self, html: str) -> str:
        """Fallback extraction using BeautifulSoup."""
        soup = BeautifulSoup(html, "lxml")

        for tag in soup.find_all(["script", "style", "nav", "header", "footer", "aside", "iframe", "noscript"]):
            tag.decompose()

        main = (
            soup.find("main")
            or soup.find("article")
            or soup.find(attrs={"role": "main"})
            or soup.find("div", class_=re.compile(r"content|article|post|entry", re.I))
            or soup.body
        )
        if main is None:
            return ""

        text = main.get_text(separator="\n", strip=True)
        text = re.sub(r"\n{3,}", "\n\n", text)
        text = re.sub(r" {2,}", " ", text)
        return text.strip()

    def _extract_title(self, soup: BeautifulSoup) -> str:
        title_tag = soup.find("title")
        if title_tag:
            return title_tag.get_text(strip=True)
        og = soup.find("meta", property="og:title")
        if og and isinstance(og, Tag) and og.get("content"):
            return str(og["content"]).strip()
        return self._extract_h1(soup)

    def _extract_h1(self, soup: BeautifulSoup) -> str:
        h1 = soup.find("h1")
        return h1.get_text(strip=True) if h1 else ""

    def _meta_content(self, soup: BeautifulSoup, candidates: list[dict[str, str]]) -> str:
        for attrs in candidates:
            tag = soup.find("meta", attrs=attrs)
            if tag and isinstance(tag, Tag) and tag.get("content"):
                return str(tag["content"]).strip()
        return ""

    def _extract_description(self, soup: BeautifulSoup) -> str:
        return self._meta_content(
            soup,
            [{"name": "description"}, {"name": "Description"}, {"property": "og:description"}],
        )

    def _extract_canonical(self, soup: BeautifulSoup, url: str) -> str:
        canonical = soup.find("link", rel="canonical")
        if canonical and isinstance(canonical, Tag) and canonical.get("href"):
            try:
                return urljoin(url, str(canonical["href"]).strip())
            except ValueError:
                logger.debug("Ignoring malformed canonical URL on %s", url)
        return url

    def _extract_metadata(self, soup: BeautifulSoup, text: str) -> PageMetadata:
        keywords_raw = self._meta_content(soup, [{"name": "keywords"}, {"name": "Keywords"}])
        keywords = [k.strip() for k in keywords_raw.split(",") if k.strip()]

        published = self._meta_content(
            soup,
            [{"property": "article:published_time"}, {"name": "date"}, {"name": "publish_date"}],
        ) or None
        if published is None:
            time_tag = soup.find("time")
            if time_tag and isinstance(time_tag, Tag) and time_tag.get("datetime"):
                published = str(time_tag["datetime"]).strip()

        modified = self._meta_content(
            soup, [{"property": "article:modified_time"}, {"property": "og:updated_time"}]
        ) or None

        return PageMetadata(
            keywords=keywords,
            author=self._meta_content(soup, [{"name": "author"}, {"property": "article:author"}]),
            language=self._extract_language(soup, text),
            published_date=published,
            modified_date=modified,
        )

    def _extract_language(self, soup: BeautifulSoup, text: str) -> str | None:
        html_tag = soup.find("html")
        if html_tag and isinstance(html_tag, Tag) and html_tag.get("lang"):
            return str(html_tag["lang"]).split("-")[0].lower()
        if not self.config.detect_language or len(text) < 20:
            return None
        try:
            langs = detect_langs(text[:5000])
        except LangDetectException:
            return None
        return langs[0].lang if langs else None

    def _extract_headings(self, soup: BeautifulSoup) -> list[str]:
        headings: list[str] = []
        for h in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
            text = h.get_text(strip=True)
            if text:
                headings.append(text)
        return headings

    def _extract_links(self, soup: BeautifulSoup, base_url: str) -> list[str]:
        links: list[str] = []
        seen: set[str] = set()
        for a in soup.find_all("a", href=True):
            href = str(a["href"]).strip()
            if not href or href.startswith(("javascript:", "mailto:", "tel:", "#")):
                continue
            try:
                absolute = urljoin(base_url, href)
            except ValueError:
                logger.debug("Skipping malformed link %r on %s", href, base_url)
                continue
            if absolute.startswith(("http://", "https://")) and absolute not in seen:
                seen.add(absolute)
                links.append(absolute)
        return links
