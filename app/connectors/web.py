"""Breadth-first web crawl connector."""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from urllib.parse import urldefrag, urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup

from connectors.base import MIN_CONTENT_CHARS, ExtractedDocument, RunContext, registry
from connectors.config import SourceDefinition, SourceType, WebConfig
from connectors.frontier import Frontier, FrontierItem
from connectors.robots import RobotsPolicy
from connectors.utils import (
    collapse_whitespace,
    encode_external_id,
    title_from_url,
    truncate_content,
)

USER_AGENT = os.getenv(
    "CRAWLER_USER_AGENT", "CrawlhubBot/1.0 (+https://github.com/crawlhub/crawlhub)"
)
ROBOTS_AGENT = "crawlhubbot"
REQUEST_TIMEOUT = float(os.getenv("CRAWLER_TIMEOUT_SECONDS", "30"))
REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml",
}
HTML_CONTENT_TYPES = ("text/html", "application/xhtml")

SKIP_PATH_PREFIXES = ("/login", "/logout", "/signin", "/signout", "/register", "/admin", "/wp-admin")
SKIP_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".pdf", ".zip", ".exe", ".dmg", ".mp3", ".mp4")
BOILERPLATE_SELECTORS = (
    "script",
    "style",
    "nav",
    "header",
    "footer",
    "aside",
    "noscript",
    "iframe",
    "form",
    '[role="navigation"]',
    '[role="banner"]',
    '[role="contentinfo"]',
    ".nav",
    ".menu",
    ".sidebar",
    ".footer",
    ".header",
    ".advertisement",
    ".ads",
)
CONTENT_SELECTORS = (
    "article",
    '[role="main"]',
    "main",
    ".content",
    ".post-content",
    ".article-content",
    ".entry-content",
    "#content",
    ".main-content",
)


def extract_title(soup: BeautifulSoup) -> str | None:
    """Return the page title from ``og:title``, then ``<title>``, then the first ``<h1>``."""
    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title and og_title.get("content", "").strip():
        return collapse_whitespace(og_title["content"])
    if soup.title and soup.title.get_text(strip=True):
        return collapse_whitespace(soup.title.get_text())
    heading = soup.find("h1")
    if heading and heading.get_text(strip=True):
        return collapse_whitespace(heading.get_text())
    return None


def extract_content(soup: BeautifulSoup) -> str:
    """Strip boilerplate from ``soup`` in place and return the main text."""
    for node in soup.select(", ".join(BOILERPLATE_SELECTORS)):
        node.decompose()
    for selector in CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is not None:
            text = collapse_whitespace(node.get_text(" "))
            if text:
                return text
    root = soup.body or soup
    return collapse_whitespace(root.get_text(" "))


def extract_links(soup: BeautifulSoup, base_url: str) -> list[str]:
    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("javascript:", "mailto:", "tel:", "#")):
            continue
        try:
            absolute, _fragment = urldefrag(urljoin(base_url, href))
        except ValueError:
            continue
        if urlsplit(absolute).scheme not in ("http", "https") or absolute in seen:
            continue
        seen.add(absolute)
        links.append(absolute)
    return links


class WebCrawlConnector:
    source_type = SourceType.WEB

    def __init__(self, source: SourceDefinition, client: httpx.AsyncClient | None = None) -> None:
        self.source = source
        self.config: WebConfig = source.config
        self.frontier = Frontier(self.config.max_depth)
        self.robots: RobotsPolicy | None = None
        self.base_domain = urlsplit(self.config.seed_url).hostname or ""
        self._include = [re.compile(pattern) for pattern in self.config.include_patterns]
        self._exclude = [re.compile(pattern) for pattern in self.config.exclude_patterns]
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT, follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def execute(self, run: RunContext) -> None:
        config = self.config
        run.log(f"Starting spider from: {config.seed_url}")
        run.log(f"Max depth: {config.max_depth}, Max pages: {config.max_pages}")
        run.log(f"Same domain only: {config.same_domain_only}")

        client = self._get_client()
        if config.respect_robots_txt:
            seed = urlsplit(config.seed_url)
            self.robots = await self._load_robots(run, client, f"{seed.scheme}://{seed.netloc}")

        self.frontier.push(config.seed_url, 0)
        processed = 0
        while len(self.frontier) and run.should_continue():
            if processed >= config.max_pages:
                run.log(f"Reached max pages limit: {config.max_pages}")
                break

            item = self.frontier.pop()
            if self.frontier.is_visited(item.url):
                continue
            if self.robots is not None and self.robots.is_disallowed(item.url):
                self.frontier.mark_visited(item.url)
                run.log(f"Skipping (robots.txt): {item.url}")
                continue

            self.frontier.mark_visited(item.url)
            processed += 1
            run.progress(
                processed,
                min(config.max_pages, processed + len(self.frontier)),
                item.url,
            )

            try:
                await self._process(run, client, item)
            except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
                run.log(f"Error processing {item.url}: {exc}")

            if len(self.frontier) and run.should_continue():
                await run.sleep(self._delay_seconds())

        run.log(f"Spider complete. Processed {processed} pages.")

    def _delay_seconds(self) -> float:
        if self.robots is not None and self.robots.crawl_delay:
            return self.robots.crawl_delay
        return self.config.rate_limit / 1000

    async def _load_robots(
        self, run: RunContext, client: httpx.AsyncClient, origin: str
    ) -> RobotsPolicy | None:
        try:
            response = await client.get(f"{origin}/robots.txt", headers=REQUEST_HEADERS)
        except httpx.HTTPError as exc:
            run.log(f"Failed to fetch robots.txt: {exc}")
            return None
        if not response.is_success:
            run.log("No robots.txt found or inaccessible")
            return None
        policy = RobotsPolicy.parse(response.text, ROBOTS_AGENT)
        run.log(f"Loaded robots.txt: {len(policy.disallowed)} disallow rules")
        if policy.crawl_delay:
            run.log(f"Crawl delay: {policy.crawl_delay}s")
        return policy

    async def _process(self, run: RunContext, client: httpx.AsyncClient, item: FrontierItem) -> None:
        run.log(f"Crawling [depth={item.depth}]: {item.url}")
        response = await client.get(item.url, headers=REQUEST_HEADERS)
        if not response.is_success:
            run.log(f"HTTP {response.status_code}: {response.reason_phrase} for {item.url}")
            return

        content_type = response.headers.get("content-type", "")
        if not any(kind in content_type for kind in HTML_CONTENT_TYPES):
            run.log(f"Skipping non-HTML content: {content_type or 'unknown'}")
            return

        final_url = str(response.url)
        self.frontier.mark_visited(final_url)

        soup = BeautifulSoup(response.text, "html.parser")
        title = extract_title(soup) or title_from_url(final_url)
        content = extract_content(soup)
        if len(content) < MIN_CONTENT_CHARS:
            run.log(f"Skipping page with insufficient content: {final_url}")
            return

        document = ExtractedDocument(
            external_id=encode_external_id(final_url),
            title=title,
            content=truncate_content(content),
            url=final_url,
            attributes={
                "crawlDepth": item.depth,
                "contentLength": len(content),
                "crawledAt": datetime.now(timezone.utc).isoformat(),
            },
            content_type="web_page",
        )
        await run.emit_document(document)

        if item.depth < self.config.max_depth:
            queued = 0
            for link in extract_links(soup, final_url):
                if self.should_enqueue(link) and self.frontier.push(link, item.depth + 1):
                    queued += 1
            if queued:
                run.log(f"Queued {queued} new links")

    def should_enqueue(self, url: str) -> bool:
        """Apply the scope, pattern and path filters to a discovered link."""
        if self.frontier.is_visited(url) or url in self.frontier:
            return False
        parts = urlsplit(url)
        if self.config.same_domain_only and parts.hostname != self.base_domain:
            return False
        if self._include and not any(pattern.search(url) for pattern in self._include):
            return False
        if any(pattern.search(url) for pattern in self._exclude):
            return False
        if parts.path.startswith(SKIP_PATH_PREFIXES):
            return False
        if parts.path.lower().endswith(SKIP_EXTENSIONS):
            return False
        return True


registry.register(SourceType.WEB, WebCrawlConnector)
