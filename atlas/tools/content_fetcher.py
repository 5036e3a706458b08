from __future__ import annotations

from dataclasses import dataclass

import httpx
from bs4 import BeautifulSoup

from atlas.config import settings
from atlas.tools import web_utils

USER_AGENT = "Mozilla/5.0 (compatible; AtlasResearcher/1.0)"


@dataclass
class FetchedPage:
    url: str
    text: str
    status_code: int


def html_to_text(raw_html: str, *, max_chars: int) -> str:
    """Strip scripts, styles and markup, collapse whitespace."""
    soup = BeautifulSoup(raw_html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return web_utils.clean_content(soup.get_text(" "), max_length=max_chars)


async def fetch_page(
    url: str,
    *,
    timeout: float | None = None,
    max_chars: int | None = None,
) -> FetchedPage:
    """Fetch a page and return its visible text. Raises on transport or HTTP errors."""
    if not web_utils.is_valid_url(url):
        raise ValueError(f"Invalid URL: {url}")

    async with httpx.AsyncClient(
        timeout=timeout if timeout is not None else settings.fetch_timeout_seconds,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    ) as client:
        response = await client.get(url)
        response.raise_for_status()
        body = response.text

    text = html_to_text(body, max_chars=max_chars if max_chars is not None else settings.fetch_max_chars)
    if not text:
        raise ValueError(f"No readable text at {url}")
    return FetchedPage(url=url, text=text, status_code=response.status_code)
