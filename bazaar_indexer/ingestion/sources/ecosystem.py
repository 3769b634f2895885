"""
Scrapes service cards from the public x402 ecosystem page.

The page has no API, so cards are found by loose class-name matching and
anything without an external link and a plausible name is dropped.
"""
from typing import Dict, List, Tuple

import httpx
from bs4 import BeautifulSoup

from bazaar_indexer.core.logging_config import get_logger
from bazaar_indexer.health.fetch import fetch_with_timeout
from bazaar_indexer.schemas.x402 import DiscoverySource, EcosystemService, SourceError, SourceRecord

logger = get_logger("source_ecosystem")

USER_AGENT = "x402-bazaar-indexer/1.0"

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "AI Agents": ["agent", "ai", "llm", "inference", "model"],
    "Developer Tools": ["sdk", "client", "server", "api", "framework", "kit"],
    "Infrastructure": ["facilitator", "gateway", "router", "payment", "wallet"],
    "Analytics": ["analytics", "explorer", "scan", "monitor"],
    "Marketplaces": ["marketplace", "market", "launchpad"],
    "Examples": ["example", "reference", "demo"],
}
DEFAULT_CATEGORY = "Services"

CARD_SELECTOR = (
    '[class*="card"], [class*="Card"], article, [class*="item"], '
    '[class*="partner"], [class*="service"]'
)
NAME_SELECTOR = 'h2, h3, h4, [class*="title"], [class*="name"], [class*="Title"], [class*="Name"]'
DESC_SELECTOR = 'p, [class*="desc"], [class*="Desc"], [class*="description"]'
EXCLUDED_LINK_MARKERS = ("x402.org", "coinbase.com/legal", "google.com/forms")


def infer_category(name: str, description: str) -> str:
    # Plain substring match, so "ai" also hits words like "chain"
    text = f"{name} {description}".lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(kw in text for kw in keywords):
            return category
    return DEFAULT_CATEGORY


def _external_link(card) -> str:
    for link in card.find_all("a", href=True):
        href = link["href"]
        if href.startswith("http") and not any(marker in href for marker in EXCLUDED_LINK_MARKERS):
            return href
    return ""


def parse_services(html: str) -> List[EcosystemService]:
    soup = BeautifulSoup(html, "html.parser")
    services: List[EcosystemService] = []
    seen = set()

    for card in soup.select(CARD_SELECTOR):
        url = _external_link(card)
        if not url or url in seen:
            continue

        heading = card.select_one(NAME_SELECTOR)
        name = heading.get_text(strip=True) if heading else ""
        if not name:
            link = card.find("a", href=url)
            name = link.get_text(strip=True) if link else ""
        if len(name) < 2 or len(name) > 100:
            continue

        desc_el = card.select_one(DESC_SELECTOR)
        description = desc_el.get_text(strip=True) if desc_el else ""

        seen.add(url)
        services.append(EcosystemService(
            name=name,
            url=url,
            description=description,
            category=infer_category(name, description),
        ))

    return services


def to_source_record(service: EcosystemService) -> SourceRecord:
    return SourceRecord(
        url=service.url,
        source=DiscoverySource.ECOSYSTEM,
        name=service.name,
        description=service.description or None,
        category=service.category,
    )


async def fetch_data(
    client: httpx.AsyncClient,
    ecosystem_url: str,
    timeout_ms: int,
) -> Tuple[List[SourceRecord], List[SourceError]]:
    logger.info("ecosystem_scrape_start", url=ecosystem_url)
    try:
        response = await fetch_with_timeout(
            client,
            ecosystem_url,
            timeout_ms,
            headers={"User-Agent": USER_AGENT, "Accept": "text/html"},
        )
        if response.status_code != 200:
            raise httpx.HTTPStatusError(
                f"HTTP {response.status_code}", request=response.request, response=response
            )
        services = parse_services(response.text)
    except Exception as e:
        logger.error("ecosystem_scrape_error", url=ecosystem_url, error=str(e))
        return [], [SourceError(source=ecosystem_url, error=str(e) or e.__class__.__name__)]

    logger.info("ecosystem_scrape_done", count=len(services))
    return [to_source_record(s) for s in services], []
