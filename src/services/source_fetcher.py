from __future__ import annotations

import html
import ipaddress
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal
from urllib.parse import quote, urlparse

import httpx

from src.app.config import PipelineSettings
from src.app.domain.models import FetchedSource, QueryClassification, StructuredQuery
from src.app.infra.providers.base import SourceProvider

logger = logging.getLogger(__name__)

SourceKind = Literal["wikipedia", "commons", "gutenberg", "usda", "openfoodfacts"]

HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
WHITESPACE_PATTERN = re.compile(r"\s+")
RESULTS_PER_SOURCE = 3
RATE_LIMIT_WINDOW_SECONDS = 60.0
BLOCKED_HOST_SUFFIXES = (".local", ".localhost", ".internal")


@dataclass(frozen=True)
class TrustedSource:
    name: str
    kind: SourceKind
    search_url: str
    domain: str
    trust_score: float
    rate_limit_per_minute: int
    license: Literal["public_domain", "creative_commons", "educational", "institutional"]
    requires_attribution: bool


TRUSTED_SOURCES: tuple[TrustedSource, ...] = (
    TrustedSource(
        name="Wikipedia (Culinary Articles)",
        kind="wikipedia",
        search_url="https://en.wikipedia.org/w/api.php",
        domain="wikipedia.org",
        trust_score=0.95,
        rate_limit_per_minute=10,
        license="creative_commons",
        requires_attribution=True,
    ),
    TrustedSource(
        name="Wikimedia Commons (Recipes)",
        kind="commons",
        search_url="https://commons.wikimedia.org/w/api.php",
        domain="commons.wikimedia.org",
        trust_score=0.9,
        rate_limit_per_minute=10,
        license="creative_commons",
        requires_attribution=True,
    ),
    TrustedSource(
        name="Project Gutenberg (Cookbooks)",
        kind="gutenberg",
        search_url="https://gutendex.com/books",
        domain="gutenberg.org",
        trust_score=0.9,
        rate_limit_per_minute=10,
        license="public_domain",
        requires_attribution=True,
    ),
    TrustedSource(
        name="USDA FoodData Central",
        kind="usda",
        search_url="https://api.nal.usda.gov/fdc/v1/foods/search",
        domain="usda.gov",
        trust_score=0.88,
        rate_limit_per_minute=120,
        license="public_domain",
        requires_attribution=False,
    ),
    TrustedSource(
        name="Open Food Facts",
        kind="openfoodfacts",
        search_url="https://world.openfoodfacts.org/cgi/search.pl",
        domain="openfoodfacts.org",
        trust_score=0.85,
        rate_limit_per_minute=10,
        license="creative_commons",
        requires_attribution=True,
    ),
)


def _clean_html(value: object) -> str:
    if not isinstance(value, str):
        return ""
    text = HTML_TAG_PATTERN.sub("", html.unescape(value))
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def _clean_string(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _split_ingredients(value: object) -> list[str]:
    if not isinstance(value, str):
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def validate_source_url(url: str) -> bool:
    """Reject non-http(s) URLs and URLs pointing at private or local hosts."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    if parsed.scheme not in {"http", "https"}:
        return False

    hostname = (parsed.hostname or "").lower()
    if not hostname or hostname == "localhost" or hostname.endswith(BLOCKED_HOST_SUFFIXES):
        return False

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return True

    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
    )


def build_search_query(structured: StructuredQuery, classification: QueryClassification) -> str:
    query = structured.dish_name
    if classification == QueryClassification.VAGUE_DESCRIPTION and structured.country:
        if structured.country not in query:
            query = f"{structured.country} {query}"
    return query


class SourceRateLimiter:
    """Fixed-window requests-per-minute limiter, one window per source."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}

    def allow(self, source: TrustedSource) -> bool:
        now = self._clock()
        count, reset_at = self._windows.get(source.name, (0, now + RATE_LIMIT_WINDOW_SECONDS))

        if now >= reset_at:
            count, reset_at = 0, now + RATE_LIMIT_WINDOW_SECONDS

        if count >= source.rate_limit_per_minute:
            self._windows[source.name] = (count, reset_at)
            return False

        self._windows[source.name] = (count + 1, reset_at)
        return True


class TrustedSourceFetcher(SourceProvider):
    def __init__(
        self,
        settings: PipelineSettings,
        client: httpx.Client | None = None,
        rate_limiter: SourceRateLimiter | None = None,
        sources: tuple[TrustedSource, ...] = TRUSTED_SOURCES,
    ) -> None:
        self.settings = settings
        self.sources = sources
        self.rate_limiter = rate_limiter or SourceRateLimiter()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=settings.source_timeout_seconds,
            headers={"User-Agent": settings.source_user_agent},
            follow_redirects=True,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch_trusted_sources(
        self,
        structured: StructuredQuery,
        classification: QueryClassification,
    ) -> list[FetchedSource]:
        query = build_search_query(structured, classification)
        logger.info("Searching trusted sources: query=%r, classification=%s", query, classification.value)

        results: list[FetchedSource] = []
        for source in self.sources:
            if len(results) >= self.settings.max_sources:
                break

            if not self.rate_limiter.allow(source):
                logger.warning("Rate limit reached for %s, skipping", source.name)
                continue

            results.extend(self._fetch_from_source(source, query))

        safe_results = [item for item in results if validate_source_url(item.url)]
        safe_results.sort(key=lambda item: item.trust_score, reverse=True)
        return safe_results[: self.settings.max_sources]

    def _fetch_from_source(self, source: TrustedSource, query: str) -> list[FetchedSource]:
        parser = self._parsers[source.kind]
        try:
            return parser(self, source, query)
        except httpx.TimeoutException:
            logger.warning("Timeout fetching from %s", source.name)
        except httpx.HTTPError as error:
            logger.warning("Error fetching from %s: %s", source.name, error)
        except (ValueError, KeyError, TypeError, AttributeError) as error:
            logger.warning("Unexpected payload from %s: %s", source.name, error)
        return []

    def _get_json(self, url: str, params: dict[str, str | int]) -> Any:
        response = self._client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    def _build_source(self, source: TrustedSource, **fields: Any) -> FetchedSource:
        return FetchedSource(
            trust_score=source.trust_score,
            source_name=source.name,
            license=source.license,
            attribution_required=source.requires_attribution,
            **fields,
        )

    def _search_wikipedia(self, source: TrustedSource, query: str) -> list[FetchedSource]:
        data = self._get_json(source.search_url, {
            "action": "query",
            "list": "search",
            "srsearch": query,
            "srlimit": RESULTS_PER_SOURCE,
            "format": "json",
        })
        hits = (data.get("query") or {}).get("search") or []
        titles = [hit["title"] for hit in hits[:RESULTS_PER_SOURCE] if _clean_string(hit.get("title"))]
        extracts = self._fetch_wikipedia_extracts(source, titles)

        return [
            self._build_source(
                source,
                url=f"https://en.wikipedia.org/wiki/{quote(hit['title'].replace(' ', '_'))}",
                title=hit["title"],
                domain=source.domain,
                excerpt_text=_clean_html(hit.get("snippet")),
                snapshot_text=extracts.get(hit["title"]),
            )
            for hit in hits[:RESULTS_PER_SOURCE]
            if hit.get("title") in titles
        ]

    def _fetch_wikipedia_extracts(self, source: TrustedSource, titles: list[str]) -> dict[str, str]:
        if not titles:
            return {}
        try:
            data = self._get_json(source.search_url, {
                "action": "query",
                "prop": "extracts",
                "exintro": 1,
                "explaintext": 1,
                "titles": "|".join(titles),
                "format": "json",
            })
        except (httpx.HTTPError, ValueError) as error:
            logger.debug("Wikipedia extracts unavailable: %s", error)
            return {}

        pages = (data.get("query") or {}).get("pages") or {}
        extracts: dict[str, str] = {}
        for page in pages.values():
            title = _clean_string(page.get("title"))
            extract = _clean_string(page.get("extract"))
            if title and extract:
                extracts[title] = extract
        return extracts

    def _search_commons(self, source: TrustedSource, query: str) -> list[FetchedSource]:
        data = self._get_json(source.search_url, {
            "action": "query",
            "list": "search",
            "srsearch": f"recipe {query}",
            "srlimit": RESULTS_PER_SOURCE,
            "format": "json",
        })
        hits = (data.get("query") or {}).get("search") or []
        return [
            self._build_source(
                source,
                url=f"https://commons.wikimedia.org/wiki/{quote(hit['title'].replace(' ', '_'))}",
                title=hit["title"],
                domain=source.domain,
                excerpt_text=_clean_html(hit.get("snippet")),
            )
            for hit in hits[:RESULTS_PER_SOURCE]
            if _clean_string(hit.get("title"))
        ]

    def _search_gutenberg(self, source: TrustedSource, query: str) -> list[FetchedSource]:
        data = self._get_json(source.search_url, {"search": query})
        results: list[FetchedSource] = []
        for book in (data.get("results") or [])[:RESULTS_PER_SOURCE]:
            title = _clean_string(book.get("title"))
            if not title or book.get("id") is None:
                continue
            subjects = [s for s in (book.get("subjects") or []) if isinstance(s, str)]
            results.append(self._build_source(
                source,
                url=f"https://www.gutenberg.org/ebooks/{book['id']}",
                title=title,
                domain=source.domain,
                excerpt_text="; ".join(subjects) or "Public domain cookbook",
            ))
        return results

    def _search_usda(self, source: TrustedSource, query: str) -> list[FetchedSource]:
        data = self._get_json(source.search_url, {
            "query": query,
            "pageSize": RESULTS_PER_SOURCE,
            "api_key": self.settings.usda_api_key,
        })
        results: list[FetchedSource] = []
        for food in (data.get("foods") or [])[:RESULTS_PER_SOURCE]:
            description = _clean_string(food.get("description"))
            if not description or food.get("fdcId") is None:
                continue
            results.append(self._build_source(
                source,
                url=f"https://fdc.nal.usda.gov/food-details/{food['fdcId']}/nutrients",
                title=description,
                domain=source.domain,
                excerpt_text=f"FDC ID: {food['fdcId']}",
                ingredients=_split_ingredients(food.get("ingredients")),
            ))
        return results

    def _search_open_food_facts(self, source: TrustedSource, query: str) -> list[FetchedSource]:
        data = self._get_json(source.search_url, {
            "search_terms": query,
            "search_simple": 1,
            "json": 1,
            "page_size": RESULTS_PER_SOURCE,
        })
        results: list[FetchedSource] = []
        for product in (data.get("products") or [])[:RESULTS_PER_SOURCE]:
            name = _clean_string(product.get("product_name"))
            if not name:
                continue
            url = _clean_string(product.get("url")) or f"https://world.openfoodfacts.org/product/{product.get('code', '')}"
            results.append(self._build_source(
                source,
                url=url,
                title=name,
                domain=source.domain,
                excerpt_text=_clean_string(product.get("categories")) or "Food product data",
                ingredients=_split_ingredients(product.get("ingredients_text")),
            ))
        return results

    _parsers: dict[str, Callable[["TrustedSourceFetcher", TrustedSource, str], list[FetchedSource]]] = {
        "wikipedia": _search_wikipedia,
        "commons": _search_commons,
        "gutenberg": _search_gutenberg,
        "usda": _search_usda,
        "openfoodfacts": _search_open_food_facts,
    }
