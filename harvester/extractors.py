from __future__ import annotations

import re
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, quote_plus, urlencode, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from .base import BaseExtractor
from .models import PageContent, Record, TaskOptions

_CARD_SELECTORS = (
    '.srp-results li[id^="item"]',
    "li[data-viewport]",
    ".s-item",
)

_TITLE_SELECTORS = (
    'a[href*="/itm/"] span',
    ".s-item__link span",
    "h3.s-item__title",
    'span[role="heading"]',
    "h3",
    ".s-item__title",
)

_PRICE_SELECTOR = 'span[class*="price"], .s-item__price, .lvprice'

_CONDITIONS = frozenset({"Brand new", "Used", "Like new", "Very good", "Good", "Acceptable"})

_DESCRIPTION_SELECTOR = (
    ".ux-expandable-textual-display-block-inline__text, "
    ".vim.d-item-description, "
    '[data-testid="item-description"]'
)

_FILTER_PARAMS = {
    "uk_only": ("LH_PrefLoc", "1"),
    "buy_it_now": ("LH_BIN", "1"),
    "free_shipping": ("LH_FS", "1"),
    "new_condition": ("LH_ItemCondition", "1000"),
}

_ITEM_RE = re.compile(r"/itm/(?:[^/?#]+/)?(\d+)")
_TOTAL_RE = re.compile(r"([\d,]+)\+?\s+results?", re.IGNORECASE)
_EAN_RE = re.compile(r"EAN[:\s]+(\d{13})", re.IGNORECASE)
_IMAGE_SIZE_RE = re.compile(r"s-l\d+")

MAX_IMAGES = 4
MAX_DESCRIPTION_CHARS = 500


def _text(node) -> str:
    return node.get_text(" ", strip=True) if node is not None else ""


def _with_params(url: str, updates: Dict[str, str], overwrite: bool = True) -> str:
    u = urlsplit(url)
    params = parse_qsl(u.query, keep_blank_values=True)
    existing = {k for k, _ in params}
    if overwrite:
        params = [(k, v) for k, v in params if k not in updates]
        params.extend(updates.items())
    else:
        params.extend((k, v) for k, v in updates.items() if k not in existing)
    return urlunsplit((u.scheme, u.netloc, u.path, urlencode(params), u.fragment))


class EbayExtractor(BaseExtractor):
    """Search-result and item-page heuristics for eBay listing pages."""

    name = "ebay"

    def __init__(self, base_url: str = "https://www.ebay.co.uk") -> None:
        self._base_url = base_url.rstrip("/")

    def search_url(self, target: str, options: TaskOptions) -> str:
        self.validate(target)
        target = target.strip()
        if target.startswith("http://") or target.startswith("https://"):
            url = target
        else:
            url = f"{self._base_url}/sch/i.html?_nkw={quote_plus(target)}"
            extra: Dict[str, str] = {}
            for key, (param, value) in _FILTER_PARAMS.items():
                if options.filters.get(key):
                    extra[param] = value
            if options.filters.get("min_price"):
                extra["_udlo"] = str(options.filters["min_price"])
            if options.filters.get("max_price"):
                extra["_udhi"] = str(options.filters["max_price"])
            if extra:
                url = _with_params(url, extra)
        return _with_params(url, {"_ipg": str(options.page_size)}, overwrite=False)

    def page_url(self, search_url: str, page: int) -> str:
        if page <= 1:
            return search_url
        return _with_params(search_url, {"_pgn": str(page)})

    def label(self, target: str) -> str:
        target = target.strip()
        if not (target.startswith("http://") or target.startswith("https://")):
            return super().label(target)

        params = dict(parse_qsl(urlsplit(target).query))
        label = params.get("_nkw") or "ebay_products"
        genre = params.get("Genre") or ""
        category = params.get("_sacat") or ""
        if genre:
            label += f"_{genre}"
        if category and category != "0":
            label += f"_cat{category}"
        return re.sub(r"[^a-z0-9]", "_", label.lower())

    def parse_total(self, content: PageContent) -> Optional[int]:
        soup = BeautifulSoup(content.html, "html.parser")
        heading = soup.select_one("h1.srp-controls__count-heading") or soup.select_one(".srp-controls__count-heading")
        if heading is None:
            return None
        match = _TOTAL_RE.search(_text(heading))
        if not match:
            return None
        return int(match.group(1).replace(",", ""))

    def has_more(self, content: PageContent, page: int) -> bool:
        soup = BeautifulSoup(content.html, "html.parser")
        disabled_next = soup.select_one('.pagination__next[aria-disabled="true"]')
        return disabled_next is None

    def detail_url(self, record: Record) -> str:
        return record.url or f"{self._base_url}/itm/{record.item_id}"

    def extract(self, content: PageContent, page: int, options: TaskOptions) -> List[Record]:
        soup = BeautifulSoup(content.html, "html.parser")

        cards = []
        for selector in _CARD_SELECTORS:
            cards = soup.select(selector)
            if cards:
                break

        records: List[Record] = []
        for card in cards:
            record = self._parse_card(card, page, options.image_quality)
            if record is not None:
                records.append(record)
        return records

    def _parse_card(self, card, page: int, image_quality: int) -> Optional[Record]:
        card_text = _text(card)
        if "SPONSORED" in card_text or "Results matching fewer words" in card_text:
            return None

        link = card.select_one('a[href*="/itm/"]')
        if link is None:
            return None
        match = _ITEM_RE.search(link.get("href", ""))
        if not match:
            return None
        item_id = match.group(1)

        title = ""
        for selector in _TITLE_SELECTORS:
            title = _text(card.select_one(selector))
            if title:
                break
        if not title:
            return None

        spans = [_text(s) for s in card.find_all("span")]
        condition = next((t for t in spans if t in _CONDITIONS), "")
        shipping = next(
            (t for t in spans if ("postage" in t or "shipping" in t) and "from" not in t and len(t) < 50),
            "",
        )

        images: List[str] = []
        for img in card.select("img"):
            src = img.get("src") or img.get("data-src") or ""
            if "ebayimg" not in src or "pixel" in src:
                continue
            images.append(_IMAGE_SIZE_RE.sub(f"s-l{image_quality}", src))
            if len(images) >= MAX_IMAGES:
                break

        return Record(
            item_id=item_id,
            title=title,
            price=_text(card.select_one(_PRICE_SELECTOR)),
            images=images,
            condition=condition,
            shipping=shipping,
            url=f"{self._base_url}/itm/{item_id}",
            page=page,
        )

    def extract_details(self, content: PageContent) -> Dict[str, str]:
        soup = BeautifulSoup(content.html, "html.parser")
        details: Dict[str, str] = {}

        for row in soup.select(".ux-layout-section--itemspecs .ux-labels-values"):
            label = _text(row.select_one(".ux-labels-values__labels")).lower()
            if "ean" in label or "gtin" in label:
                value = _text(row.select_one(".ux-labels-values__values"))
                if value:
                    details["ean"] = value
                    break
        if "ean" not in details:
            match = _EAN_RE.search(soup.get_text(" "))
            if match:
                details["ean"] = match.group(1)

        description = _text(soup.select_one(_DESCRIPTION_SELECTOR))
        if description:
            if len(description) > MAX_DESCRIPTION_CHARS:
                description = description[:MAX_DESCRIPTION_CHARS] + "..."
            details["description"] = description
        return details
