"""In-page preparation before PDF capture: broken image repair and print layout."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Mapping

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from docrender import metrics
from docrender.errors import CaptureFailed
from docrender.settings import Settings

__all__ = [
    "TEXT_ELEMENTS",
    "PrintSelectors",
    "PrintLayout",
    "ImageRepairRecord",
    "ImageCheckResult",
    "repair_broken_images",
    "apply_print_layout",
    "prepare_for_print",
]

LOGGER = logging.getLogger(__name__)

TEXT_ELEMENTS: tuple[str, ...] = (
    "p", "span", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "td", "th", "label", "a",
)

_INLINE_SCHEMES = ("data:", "blob:")
_PROBE_CONCURRENCY = 8

CLASSIFY_IMAGES_SCRIPT = """
(config) => {
    const isIcon = (img) => {
        const width = img.width || img.naturalWidth;
        const height = img.height || img.naturalHeight;
        return (
            (width > 0 && width < config.iconThreshold && height > 0 && height < config.iconThreshold) ||
            img.classList.contains('icon') ||
            img.classList.contains('emoji') ||
            !!img.closest('[class*="icon"]') ||
            !!img.closest('[class*="Icon"]')
        );
    };
    return Array.from(document.querySelectorAll('img')).map((img, index) => {
        img.setAttribute(config.marker, String(index));
        return { index, src: img.src || '', icon: isIcon(img) };
    });
}
"""

REPLACE_IMAGES_SCRIPT = """
(config) => {
    const replaced = [];
    config.indices.forEach((index) => {
        const img = document.querySelector(`img[${config.marker}="${index}"]`);
        if (!img) {
            return;
        }
        img.removeAttribute('srcset');
        img.src = config.fallbackUrl;
        img.alt = config.alt;
        img.style.display = 'block';
        img.style.maxWidth = config.maxWidth;
        img.style.height = 'auto';
        replaced.push(index);
    });
    return replaced;
}
"""

PRINT_LAYOUT_SCRIPT = """
(config) => {
    const bg = config.backgroundColor;
    const sel = config.selectors;

    document.documentElement.style.backgroundColor = bg;
    document.body.style.backgroundColor = bg;
    const content = document.querySelector(sel.pdfContent);
    if (content) {
        content.style.backgroundColor = bg;
    }

    let header = document.querySelector(`[${config.headerMarker}]`);
    if (!header) {
        header = document.createElement('div');
        header.setAttribute(config.headerMarker, 'true');
        const heading = document.createElement('h1');
        const stamp = document.createElement('div');
        header.appendChild(heading);
        header.appendChild(stamp);
        document.body.insertBefore(header, document.body.firstChild);
    }
    Object.assign(header.style, {
        backgroundColor: bg,
        padding: '20px 40px',
        borderBottom: '2px solid #C6C8CD',
        display: 'flex',
        justifyContent: 'space-between',
        alignItems: 'center',
        marginBottom: '20px',
    });
    const [heading, stamp] = header.children;
    heading.textContent = config.headerTitle;
    Object.assign(heading.style, { margin: '0', fontSize: '24px', fontWeight: 'bold', color: config.textColor });
    stamp.textContent = config.generatedAt;
    Object.assign(stamp.style, { fontSize: '14px', color: '#777C87' });

    const applyPageBreaks = (selectors, breakBefore, breakInside) => {
        selectors.forEach((selector) => {
            const el = document.querySelector(selector);
            if (!el) {
                return;
            }
            el.style.pageBreakBefore = breakBefore;
            el.style.pageBreakInside = breakInside;
            el.style.breakBefore = breakBefore === 'always' ? 'page' : 'auto';
            el.style.breakInside = breakInside;
        });
    };
    applyPageBreaks(sel.firstPage, 'auto', 'avoid');
    applyPageBreaks(sel.newPage, 'always', 'avoid');

    const overview = document.querySelector(sel.overviewCards);
    if (overview) {
        Object.assign(overview.style, {
            display: 'grid',
            gridTemplateColumns: `repeat(${config.overviewColumns}, 1fr)`,
            gap: '1.5rem',
        });
    }

    const competitors = document.querySelector(sel.competitorsContainer);
    if (competitors) {
        Object.assign(competitors.style, {
            display: 'grid',
            gridTemplateColumns: `repeat(${config.competitorColumns}, 1fr)`,
        });
        document.querySelectorAll(sel.competitorItem).forEach((el, index) => {
            if (index > 0 && index % config.competitorsPerPage === 0) {
                el.style.pageBreakBefore = 'always';
                el.style.breakBefore = 'page';
            }
            el.style.pageBreakInside = 'avoid';
            el.style.breakInside = 'avoid';
        });
    }

    const isSvgOrIcon = (el) => {
        const tag = el.tagName.toLowerCase();
        return (
            tag === 'svg' ||
            !!el.closest('svg') ||
            tag.includes('path') ||
            tag.includes('circle') ||
            tag.includes('rect') ||
            el.classList.contains('icon') ||
            el.classList.contains('Icon') ||
            !!el.closest('[class*="icon"]') ||
            !!el.closest('[class*="Icon"]')
        );
    };

    document.querySelectorAll(sel.productCard).forEach((card) => {
        Object.assign(card.style, {
            pageBreakBefore: 'always',
            pageBreakAfter: 'auto',
            breakBefore: 'page',
            breakAfter: 'auto',
            pageBreakInside: 'auto',
            breakInside: 'auto',
            maxHeight: 'none',
            overflow: 'visible',
        });
        card.querySelectorAll('*').forEach((child) => {
            if (isSvgOrIcon(child)) {
                return;
            }
            Object.assign(child.style, { pageBreakInside: 'auto', breakInside: 'auto', overflow: 'visible' });
        });
    });

    document.querySelectorAll('body *').forEach((el) => {
        if (isSvgOrIcon(el) || !config.textElements.includes(el.tagName.toLowerCase())) {
            return;
        }
        el.style.overflow = 'visible';
        el.style.textOverflow = 'clip';
        const color = window.getComputedStyle(el).color;
        if (color === 'rgba(0, 0, 0, 0)' || color === 'transparent') {
            el.style.color = config.textColor;
        }
    });

    document.querySelectorAll('svg').forEach((svg) => {
        Object.assign(svg.style, { visibility: 'visible', display: 'inline-block', opacity: '1' });
    });
}
"""


@dataclass(frozen=True, slots=True)
class PrintSelectors:
    """Section markers the print layout keys off."""

    first_page: tuple[str, ...] = ('[data-section="your-idea"]', '[data-section="overview"]')
    new_page: tuple[str, ...] = (
        '[data-section="idea-advisor"]',
        '[data-section="seo"]',
        '[data-section="other-competitors"]',
    )
    overview_cards: str = '[data-overview-cards="true"]'
    competitors_container: str = '[data-competitors-container="true"]'
    competitor_item: str = '[data-competitor-item="true"]'
    product_card: str = '[data-product-card="true"]'
    product_cards_container: str = '[data-product-cards-container="true"]'
    pdf_content: str = '[data-pdf-content="true"]'

    def to_script(self) -> dict[str, Any]:
        return {
            "firstPage": list(self.first_page),
            "newPage": list(self.new_page),
            "overviewCards": self.overview_cards,
            "competitorsContainer": self.competitors_container,
            "competitorItem": self.competitor_item,
            "productCard": self.product_card,
            "productCardsContainer": self.product_cards_container,
            "pdfContent": self.pdf_content,
        }


@dataclass(frozen=True, slots=True)
class PrintLayout:
    """Everything the print-layout script needs; fixed per job so re-runs match."""

    background_color: str
    header_title: str
    generated_at: str
    text_color: str = "#293041"
    overview_columns: int = 4
    competitor_columns: int = 3
    competitors_per_page: int = 12
    selectors: PrintSelectors = field(default_factory=PrintSelectors)
    text_elements: tuple[str, ...] = TEXT_ELEMENTS
    header_marker: str = "data-docrender-header"

    @classmethod
    def from_settings(cls, settings: Settings, *, now: datetime | None = None) -> PrintLayout:
        stamp = (now or datetime.now()).strftime("%b %d, %Y, %I:%M %p")
        return cls(
            background_color=settings.pdf.background_color,
            header_title=settings.pdf.header_title,
            generated_at=stamp,
        )

    def to_script(self) -> dict[str, Any]:
        return {
            "backgroundColor": self.background_color,
            "headerTitle": self.header_title,
            "generatedAt": self.generated_at,
            "textColor": self.text_color,
            "overviewColumns": self.overview_columns,
            "competitorColumns": self.competitor_columns,
            "competitorsPerPage": self.competitors_per_page,
            "selectors": self.selectors.to_script(),
            "textElements": list(self.text_elements),
            "headerMarker": self.header_marker,
        }


@dataclass(slots=True)
class ImageRepairRecord:
    """One broken image and why it was swapped for the fallback asset."""

    src: str
    reason: str
    status_code: int | None = None
    replaced: bool = False

    def describe(self) -> str:
        return f"{self.src} ({self.reason})"


@dataclass(slots=True)
class ImageCheckResult:
    """Diagnostics summary returned to callers after image repair."""

    total_images: int = 0
    broken_count: int = 0
    logs: list[str] = field(default_factory=list)
    broken: list[ImageRepairRecord] = field(default_factory=list)

    @property
    def broken_images(self) -> list[str]:
        return [record.describe() for record in self.broken]

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["broken_images"] = self.broken_images
        return payload


async def repair_broken_images(
    page: Page,
    *,
    fallback_url: str,
    icon_threshold: int = 50,
    client: httpx.AsyncClient | None = None,
    headers: Mapping[str, str] | None = None,
    probe_timeout_ms: int = 10_000,
    script_timeout_ms: int = 30_000,
    marker: str = "data-docrender-image",
) -> ImageCheckResult:
    """HEAD-probe every non-icon image and swap unreachable ones for ``fallback_url``.

    Never raises: probe errors count as broken, and a page that cannot be
    inspected within ``script_timeout_ms`` yields an empty summary.
    """

    result = ImageCheckResult()
    try:
        images = await asyncio.wait_for(
            page.evaluate(CLASSIFY_IMAGES_SCRIPT, {"iconThreshold": icon_threshold, "marker": marker}),
            timeout=script_timeout_ms / 1000,
        )
    except (PlaywrightError, asyncio.TimeoutError) as exc:
        reason = str(exc) or f"no answer within {script_timeout_ms}ms"
        LOGGER.warning("Image inspection failed, skipping repair: %s", reason)
        result.logs.append(f"INSPECT-ERROR: {reason}")
        return result

    result.total_images = len(images)
    to_probe: list[dict[str, Any]] = []
    for image in images:
        src = image.get("src") or ""
        if image.get("icon"):
            result.logs.append(f"SKIP: {src}")
        elif src.startswith(_INLINE_SCHEMES):
            result.logs.append(f"INLINE: {src[:64]}")
        else:
            to_probe.append(image)

    owns_client = client is None
    http = client or httpx.AsyncClient(follow_redirects=True, timeout=probe_timeout_ms / 1000)
    semaphore = asyncio.Semaphore(_PROBE_CONCURRENCY)

    async def _bounded(src: str) -> ImageRepairRecord | None:
        async with semaphore:
            return await _probe(http, src, headers)

    try:
        outcomes = await asyncio.gather(*(_bounded(image.get("src") or "") for image in to_probe))
    finally:
        if owns_client:
            await http.aclose()

    broken_by_index: dict[int, ImageRepairRecord] = {}
    for image, record in zip(to_probe, outcomes):
        src = image.get("src") or ""
        if record is None:
            result.logs.append(f"OK: {src}")
            continue
        if record.status_code is not None:
            result.logs.append(f"FAILED ({record.status_code}): {src}")
        else:
            result.logs.append(f"ERROR: {src} - {record.reason}")
        result.broken.append(record)
        broken_by_index[int(image["index"])] = record

    if broken_by_index:
        try:
            replaced = await asyncio.wait_for(
                page.evaluate(
                    REPLACE_IMAGES_SCRIPT,
                    {
                        "indices": list(broken_by_index),
                        "marker": marker,
                        "fallbackUrl": fallback_url,
                        "alt": "Logo",
                        "maxWidth": "200px",
                    },
                ),
                timeout=script_timeout_ms / 1000,
            )
        except (PlaywrightError, asyncio.TimeoutError) as exc:
            reason = str(exc) or f"no answer within {script_timeout_ms}ms"
            LOGGER.warning("Fallback image substitution failed: %s", reason)
            result.logs.append(f"REPLACE-ERROR: {reason}")
        else:
            for index in replaced or []:
                if int(index) in broken_by_index:
                    broken_by_index[int(index)].replaced = True

    result.broken_count = len(result.broken)
    metrics.observe_broken_images(result.broken_count)
    return result


async def _probe(
    client: httpx.AsyncClient,
    src: str,
    headers: Mapping[str, str] | None,
) -> ImageRepairRecord | None:
    if not src:
        return ImageRepairRecord(src=src, reason="empty source")
    try:
        response = await client.head(src, headers=dict(headers) if headers else None)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return ImageRepairRecord(src=src, reason=str(exc) or type(exc).__name__)
    if response.is_success:
        return None
    return ImageRepairRecord(src=src, reason=f"HTTP {response.status_code}", status_code=response.status_code)


async def apply_print_layout(page: Page, layout: PrintLayout, *, timeout_ms: int = 30_000) -> None:
    """Pure DOM mutation; applying it twice leaves the page as applying it once."""

    try:
        await asyncio.wait_for(page.evaluate(PRINT_LAYOUT_SCRIPT, layout.to_script()), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        raise CaptureFailed(f"Print layout did not finish within {timeout_ms}ms") from exc


async def prepare_for_print(
    page: Page,
    settings: Settings,
    *,
    layout: PrintLayout | None = None,
    client: httpx.AsyncClient | None = None,
    headers: Mapping[str, str] | None = None,
) -> ImageCheckResult:
    """Repair images, apply the print layout, then let fallback images paint."""

    images = await repair_broken_images(
        page,
        fallback_url=settings.pdf.fallback_image_url,
        icon_threshold=settings.pdf.icon_size_threshold,
        client=client,
        headers=headers,
        probe_timeout_ms=settings.timeouts.image_probe_ms,
        script_timeout_ms=settings.timeouts.page_script_ms,
    )
    if images.broken_count:
        LOGGER.warning("Replaced %d broken images", images.broken_count)
        for description in images.broken_images:
            LOGGER.warning("  - %s", description)

    await apply_print_layout(
        page,
        layout or PrintLayout.from_settings(settings),
        timeout_ms=settings.timeouts.page_script_ms,
    )
    if settings.timeouts.replacement_image_wait_ms > 0:
        await page.wait_for_timeout(settings.timeouts.replacement_image_wait_ms)
    return images

