"""HTML rehosting and Gmail-safe normalisation.

The document is parsed once into a tree, images are rehosted in document
order, then the tree is sanitised and rewritten into the small tag/style
vocabulary Gmail renders consistently, and serialised once.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Protocol, Set
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Comment
from bs4.dammit import EntitySubstitution
from bs4.element import Tag
from bs4.formatter import HTMLFormatter

from config import TransformSettings
from logging_utils import Phase, create_phase_logger, redact_url
from models import Asset, TransformResult, TransformStats
from services.errors import AssetError, PayloadTooLarge

logger = logging.getLogger(__name__)

IMAGE_STYLE = "max-width:100%;height:auto;display:block;"

_GMAIL_TEXT_STYLE = (
    "color: rgb(34, 34, 34); font-family: Arial, Helvetica, sans-serif; {size}font-style: normal; "
    "font-variant-ligatures: normal; font-variant-caps: normal; {weight}letter-spacing: normal; "
    "orphans: 2; text-align: start; text-indent: 0px; text-transform: none; widows: 2; "
    "word-spacing: 0px; -webkit-text-stroke-width: 0px; white-space: normal; "
    "text-decoration-thickness: initial; text-decoration-style: initial; "
    "text-decoration-color: initial;"
)
PARAGRAPH_STYLE = _GMAIL_TEXT_STYLE.format(size="font-size: small; ", weight="font-weight: 400; ")
_HEADING_BASE_STYLE = _GMAIL_TEXT_STYLE.format(size="", weight="")
HEADING_STYLES = {
    "h1": _HEADING_BASE_STYLE + " font-size: large; font-weight: bold;",
    "h2": _HEADING_BASE_STYLE + " font-size: medium; font-weight: bold;",
    "h3": _HEADING_BASE_STYLE + " font-size: small; font-weight: bold;",
    "h4": _HEADING_BASE_STYLE + " font-size: small; font-weight: bold;",
    "h5": _HEADING_BASE_STYLE + " font-size: small; font-weight: bold;",
    "h6": _HEADING_BASE_STYLE + " font-size: small; font-weight: bold;",
}
BLOCKQUOTE_STYLE = (
    PARAGRAPH_STYLE
    + " margin: 0px 0px 0px 0.8ex; border-left: 1px solid rgb(204, 204, 204); padding-left: 1ex;"
)
LINK_STYLE = "color: rgb(17, 85, 204);"
GMAIL_TEXT_MARKER = "color: rgb(34, 34, 34)"

BLOB_MESSAGE = (
    "Browser-local (blob:) image detected - please download and re-upload it manually for rehosting"
)
GMAIL_ATTACHMENT_MESSAGE = (
    "Gmail attachment image detected - please download and re-upload it manually for rehosting"
)

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_URL_NOISE_RE = re.compile(r"[\x00-\x20]+")
_URL_ATTRIBUTES = ("src", "action", "formaction", "background", "poster", "xlink:href")

# Escape only &, < and > and write void elements as <br>, not <br/>
_FORMATTER = HTMLFormatter(
    entity_substitution=EntitySubstitution.substitute_xml,
    void_element_close_prefix=None,
)


class AssetProcessor(Protocol):
    async def process_source(self, source: str) -> Asset:
        ...


def _is_javascript_url(value: str) -> bool:
    return _URL_NOISE_RE.sub("", value).lower().startswith("javascript:")


def _src_preview(src: str) -> str:
    if src[:5].lower() != "data:":
        src = redact_url(src)
    return src[:50]


def _hostname(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


class HTMLTransformer:
    """Rehost images and normalise a document to the Gmail-safe subset."""

    def __init__(
        self,
        asset_processor: AssetProcessor,
        settings: TransformSettings,
        *,
        asset_base_url: str,
        extra_asset_hosts: Optional[Iterable[str]] = None,
    ) -> None:
        self.asset_processor = asset_processor
        self.settings = settings
        hosts: Set[str] = set()
        base_host = urlsplit(asset_base_url).hostname
        if base_host:
            hosts.add(base_host.lower())
        hosts.update(host.lower() for host in (extra_asset_hosts or ()))
        self.asset_hosts = hosts
        self._tracking_params = {param.lower() for param in settings.tracking_params}

    async def transform_html(self, html: str) -> TransformResult:
        size = len(html.encode("utf-8"))
        if size > self.settings.max_html_bytes:
            raise PayloadTooLarge(
                f"HTML document is {size} bytes (max {self.settings.max_html_bytes})"
            )

        phase_logger = create_phase_logger("html-transform")
        stats = TransformStats()
        messages: List[str] = []

        with phase_logger.phase(Phase.TRANSFORM):
            soup = BeautifulSoup(html, "html.parser")
            await self._rehost_images(soup, stats, messages)
            self._sanitize(soup, stats)
            self._normalize_structure(soup)
            self._normalize_links(soup)
            output = soup.decode(formatter=_FORMATTER)

        phase_logger.info(
            f"images={stats.images_processed} rehosted={stats.images_rehosted} "
            f"scripts_removed={stats.scripts_removed} styles_removed={stats.styles_removed}"
        )
        return TransformResult(html=output, messages=messages, stats=stats)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def _rehost_images(self, soup: BeautifulSoup, stats: TransformStats, messages: List[str]) -> None:
        for img in soup.find_all("img"):
            src = (img.get("src") or "").strip()
            if not src:
                continue
            stats.images_processed += 1

            if self._is_own_asset(src):
                continue
            if src.lower().startswith("blob:"):
                messages.append(BLOB_MESSAGE)
                continue
            if self._is_gmail_attachment(src):
                messages.append(GMAIL_ATTACHMENT_MESSAGE)
                continue
            if not self.should_rehost(src):
                continue

            try:
                asset = await self.asset_processor.process_source(self._fetchable_source(src))
            except AssetError as exc:
                logger.warning("Failed to rehost image %s: %s", _src_preview(src), exc)
                messages.append(f"Failed to rehost image {_src_preview(src)}: {exc}")
                continue
            except Exception as exc:
                logger.exception("Unexpected error rehosting image %s", _src_preview(src))
                messages.append(f"Failed to rehost image {_src_preview(src)}: {exc}")
                continue

            img["src"] = asset.public_url
            if not img.has_attr("alt"):
                img["alt"] = ""
            img["style"] = IMAGE_STYLE
            stats.images_rehosted += 1
            if asset.deduplicated:
                messages.append(f"Image deduplicated: {_src_preview(src)} -> {asset.public_url}")
            else:
                messages.append(f"Image rehosted: {_src_preview(src)} -> {asset.public_url}")

    def _is_own_asset(self, src: str) -> bool:
        host = _hostname(src)
        return bool(host) and host in self.asset_hosts

    @staticmethod
    def _is_gmail_attachment(src: str) -> bool:
        return _hostname(src) == "mail.google.com" and "attid=" in src

    @staticmethod
    def _fetchable_source(src: str) -> str:
        # Plain-http images are fetched over https; the fetcher refuses anything else
        if src[:7].lower() == "http://":
            return "https://" + src[7:]
        return src

    def should_rehost(self, src: str) -> bool:
        """Rehost-worthiness policy for an image source."""
        lowered = src.lower()
        if lowered.startswith("data:"):
            return True
        if lowered.startswith("blob:"):
            return False
        try:
            parts = urlsplit(src)
        except ValueError:
            return True
        if parts.scheme.lower() != "https":
            return True
        host = _hostname(src)
        for ephemeral in self.settings.ephemeral_hosts:
            ephemeral = ephemeral.lower()
            if host == ephemeral or host.endswith("." + ephemeral):
                return True
        return self._has_signed_query(parts.query)

    def _has_signed_query(self, query: str) -> bool:
        if not query:
            return False
        markers = [marker.lower() for marker in self.settings.signed_query_params]
        for key, _ in parse_qsl(query, keep_blank_values=True):
            key = key.lower()
            for marker in markers:
                if marker.endswith("-") and key.startswith(marker):
                    return True
                if key == marker:
                    return True
        return False

    # ------------------------------------------------------------------
    # Sanitising
    # ------------------------------------------------------------------

    def _sanitize(self, soup: BeautifulSoup, stats: TransformStats) -> None:
        for script in soup.find_all("script"):
            script.decompose()
            stats.scripts_removed += 1
        for style in soup.find_all("style"):
            style.decompose()
            stats.styles_removed += 1
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        for tag in soup.find_all(True):
            for attr in list(tag.attrs):
                name = attr.lower()
                if name.startswith("on") or name == "id":
                    del tag[attr]
            href = tag.get("href")
            if isinstance(href, str) and _is_javascript_url(href):
                tag["href"] = "#"
            for attr in _URL_ATTRIBUTES:
                value = tag.get(attr)
                if isinstance(value, str) and _is_javascript_url(value):
                    del tag[attr]
            self._filter_classes(tag)

    def _filter_classes(self, tag: Tag) -> None:
        classes = tag.get("class")
        if classes is None:
            return
        if isinstance(classes, str):
            classes = classes.split()
        kept = [
            token
            for token in classes
            if any(token.startswith(prefix) for prefix in self.settings.allowed_class_prefixes)
        ]
        if kept:
            tag["class"] = kept
        else:
            del tag["class"]

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def _normalize_structure(self, soup: BeautifulSoup) -> None:
        for paragraph in soup.find_all("p"):
            children = [
                child for child in paragraph.contents
                if not (isinstance(child, str) and not child.strip())
            ]
            if len(children) == 1 and isinstance(children[0], Tag) and children[0].name == "br":
                paragraph.clear()
                paragraph.append(soup.new_tag("br"))
            self._restyle(paragraph, "div", PARAGRAPH_STYLE)

        for level, style in HEADING_STYLES.items():
            for heading in soup.find_all(level):
                self._restyle(heading, "div", style)

        for div in soup.find_all("div"):
            if GMAIL_TEXT_MARKER in (div.get("style") or ""):
                continue
            if div.find(["ol", "ul", "blockquote"]) is not None:
                continue
            self._restyle(div, "div", PARAGRAPH_STYLE)

        for quote in soup.find_all("blockquote"):
            quote.attrs = {"class": ["gmail_quote"], "style": BLOCKQUOTE_STYLE}

        for link in soup.find_all("a"):
            if not link.get("style"):
                link["style"] = LINK_STYLE

    @staticmethod
    def _restyle(tag: Tag, name: str, style: str) -> None:
        """Rename the tag and replace its attributes, keeping whitelisted classes."""
        classes = tag.get("class")
        tag.name = name
        tag.attrs = {"style": style}
        if classes:
            tag["class"] = classes

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def _normalize_links(self, soup: BeautifulSoup) -> None:
        for link in soup.find_all("a", href=True):
            href = link["href"]
            cleaned = self.clean_url(href)
            if cleaned != href:
                link["href"] = cleaned

    def clean_url(self, url: str) -> str:
        """mailto: for bare emails, https for http, tracking parameters removed."""
        stripped = url.strip()
        if _EMAIL_RE.match(stripped):
            return "mailto:" + stripped
        try:
            parts = urlsplit(stripped)
        except ValueError:
            return url
        scheme = parts.scheme.lower()
        if scheme == "mailto":
            return url
        changed = False
        if scheme == "http":
            scheme = "https"
            changed = True
        else:
            scheme = parts.scheme
        query = parts.query
        if query:
            pairs = parse_qsl(query, keep_blank_values=True)
            kept = [(key, value) for key, value in pairs if key.lower() not in self._tracking_params]
            if len(kept) != len(pairs):
                query = urlencode(kept)
                changed = True
        if not changed:
            return url
        return urlunsplit((scheme, parts.netloc, parts.path, query, parts.fragment))
