"""
Tests for services/html_transformer.py - image rehosting and Gmail-safe rewriting.

Test Areas:
1. Image rehosting policy and messages
2. Sanitising (scripts, styles, handlers, javascript: URLs, classes)
3. Structural normalisation
4. Link cleanup
5. Idempotence and limits
"""

import socket

import httpx
import pytest
from bs4 import BeautifulSoup

from config import TransformSettings
from conftest import FakeAssetProcessor, build_image_bytes, make_asset
from services.asset_service import AssetService
from services.content_store import ContentStore
from services.errors import FetchFailed, PayloadTooLarge
from services.fetcher import Fetcher
from services.format_decider import FormatDecider
from services.html_transformer import (
    BLOB_MESSAGE,
    BLOCKQUOTE_STYLE,
    GMAIL_ATTACHMENT_MESSAGE,
    HEADING_STYLES,
    IMAGE_STYLE,
    LINK_STYLE,
    PARAGRAPH_STYLE,
    HTMLTransformer,
)

ASSET_BASE = "https://cdn.test"


def _transformer(processor=None, settings=None):
    return HTMLTransformer(
        processor or FakeAssetProcessor(),
        settings or TransformSettings(),
        asset_base_url=ASSET_BASE,
    )


def _soup(html):
    return BeautifulSoup(html, "html.parser")


# ============================================================================
# Image Rehosting
# ============================================================================

class TestImageRehosting:

    @pytest.mark.asyncio
    async def test_data_uri_image_rehosted(self):
        """
        Given: An <img> whose src is a data URI
        When: transform_html() is called
        Then: src points at the stored asset, style and empty alt are set, a message is emitted
        """
        asset = make_asset("https://cdn.test/ab/cdefghijklmnopqrstuvwxyz.jpg")
        processor = FakeAssetProcessor({"data:image/png;base64,AAAA": asset})
        result = await _transformer(processor).transform_html('<img src="data:image/png;base64,AAAA">')

        img = _soup(result.html).find("img")
        assert img["src"] == asset.public_url
        assert img["style"] == IMAGE_STYLE
        assert img["alt"] == ""
        assert result.stats.images_processed == 1
        assert result.stats.images_rehosted == 1
        assert result.messages == [f"Image rehosted: data:image/png;base64,AAAA -> {asset.public_url}"]

    @pytest.mark.asyncio
    async def test_existing_alt_kept(self):
        result = await _transformer().transform_html('<img src="data:image/png;base64,AA" alt="logo">')
        assert _soup(result.html).find("img")["alt"] == "logo"

    @pytest.mark.asyncio
    async def test_deduplicated_message(self):
        asset = make_asset(deduplicated=True)
        processor = FakeAssetProcessor({"data:image/png;base64,BB": asset})
        result = await _transformer(processor).transform_html('<img src="data:image/png;base64,BB">')
        assert result.messages[0].startswith("Image deduplicated: ")

    @pytest.mark.asyncio
    async def test_own_asset_left_alone(self):
        processor = FakeAssetProcessor()
        html = '<img src="https://cdn.test/ab/cdef.jpg">'
        result = await _transformer(processor).transform_html(html)
        assert processor.calls == []
        assert result.messages == []
        assert result.stats.images_processed == 1
        assert _soup(result.html).find("img")["src"] == "https://cdn.test/ab/cdef.jpg"

    @pytest.mark.asyncio
    async def test_blob_image_reported(self):
        processor = FakeAssetProcessor()
        result = await _transformer(processor).transform_html('<img src="blob:https://app.example/1234">')
        assert processor.calls == []
        assert result.messages == [BLOB_MESSAGE]
        assert _soup(result.html).find("img")["src"] == "blob:https://app.example/1234"

    @pytest.mark.asyncio
    async def test_gmail_attachment_reported(self):
        processor = FakeAssetProcessor()
        src = "https://mail.google.com/mail/u/0?ui=2&amp;attid=0.1&amp;disp=emb"
        result = await _transformer(processor).transform_html(f'<img src="{src}">')
        assert processor.calls == []
        assert result.messages == [GMAIL_ATTACHMENT_MESSAGE]

    @pytest.mark.asyncio
    async def test_failure_keeps_original_src(self):
        """
        Given: An image whose rehost raises FetchFailed
        When: transform_html() is called
        Then: The tag is untouched, a failure message is recorded and other images still process
        """
        processor = FakeAssetProcessor({"data:image/png;base64,XX": FetchFailed("HTTP 404")})
        html = '<img src="data:image/png;base64,XX"><img src="data:image/png;base64,YY">'
        result = await _transformer(processor).transform_html(html)

        images = _soup(result.html).find_all("img")
        assert images[0]["src"] == "data:image/png;base64,XX"
        assert images[1]["src"].startswith("https://cdn.test/")
        assert result.messages[0] == "Failed to rehost image data:image/png;base64,XX: HTTP 404"
        assert result.stats.images_rehosted == 1
        assert processor.calls == ["data:image/png;base64,XX", "data:image/png;base64,YY"]

    @pytest.mark.asyncio
    async def test_plain_http_image_fetched_over_https(self):
        processor = FakeAssetProcessor()
        await _transformer(processor).transform_html('<img src="http://images.example.com/a.png">')
        assert processor.calls == ["https://images.example.com/a.png"]

    @pytest.mark.asyncio
    async def test_stable_https_image_not_rehosted(self):
        processor = FakeAssetProcessor()
        html = '<img src="https://images.example.com/a.png">'
        result = await _transformer(processor).transform_html(html)
        assert processor.calls == []
        assert _soup(result.html).find("img")["src"] == "https://images.example.com/a.png"

    @pytest.mark.asyncio
    async def test_images_processed_in_document_order(self):
        processor = FakeAssetProcessor()
        html = '<div><img src="data:,1"></div><p><img src="data:,2"></p><img src="data:,3">'
        await _transformer(processor).transform_html(html)
        assert processor.calls == ["data:,1", "data:,2", "data:,3"]


# ============================================================================
# Rehosting Through The Real Pipeline
# ============================================================================

class TestRehostingPipeline:
    """HTMLTransformer wired to AssetService, a mocked transport and a local store."""

    @pytest.mark.asyncio
    async def test_repeated_remote_image_stored_once(
        self, local_store, pillow_encoder_chain, image_settings, fetch_settings
    ):
        """
        Given: Two <img> tags pointing at the same signed remote URL
        When: transform_html() runs through the real pipeline
        Then: Both share one storage key and the second is reported deduplicated
        """
        png = build_image_bytes("PNG", size=(24, 16), color=(0, 120, 240))
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=png, headers={"content-type": "image/png"})

        async def lookup(hostname, port):
            return [(socket.AF_INET, "93.184.216.34")]

        fetcher = Fetcher(settings=fetch_settings, transport=httpx.MockTransport(handler))
        fetcher._lookup = lookup
        service = AssetService(
            fetcher=fetcher,
            decider=FormatDecider(image_settings),
            encoder_chain=pillow_encoder_chain,
            content_store=ContentStore(local_store),
        )
        src = "https://images.example.com/pic.png?token=abc123"
        html = f'<p><img src="{src}"></p><p><img src="{src}"></p>'

        result = await _transformer(service).transform_html(html)

        images = _soup(result.html).find_all("img")
        assert len(requests) == 2
        assert images[0]["src"] == images[1]["src"]
        assert images[0]["src"].startswith(ASSET_BASE + "/")
        assert images[0]["src"].endswith(".png")
        assert result.stats.images_rehosted == 2
        assert result.messages[0].startswith("Image rehosted: https://images.example.com/pic.png -> ")
        assert result.messages[1].startswith("Image deduplicated: https://images.example.com/pic.png -> ")
        assert all("abc123" not in message for message in result.messages)
        assert len(list(local_store.base_dir.rglob("*.png"))) == 1


class TestShouldRehost:

    @pytest.mark.parametrize(
        "src",
        [
            "data:image/png;base64,AAAA",
            "http://example.com/a.png",
            "https://bucket.s3.amazonaws.com/a.png",
            "https://lh3.googleusercontent.com/abc",
            "https://example.com/a.png?Expires=123",
            "https://example.com/a.png?X-Amz-Signature=abc",
            "https://example.com/a.png?token=abc",
        ],
    )
    def test_rehost_worthy(self, src):
        assert _transformer().should_rehost(src) is True

    @pytest.mark.parametrize(
        "src",
        [
            "https://example.com/a.png",
            "https://example.com/a.png?width=200",
            "blob:https://example.com/1",
        ],
    )
    def test_not_rehost_worthy(self, src):
        assert _transformer().should_rehost(src) is False


# ============================================================================
# Sanitising
# ============================================================================

class TestSanitize:

    @pytest.mark.asyncio
    async def test_scripts_and_styles_removed(self):
        """
        Given: A document with <script>, <style> and a comment
        When: transform_html() is called
        Then: All three are gone and the removals are counted
        """
        html = "<style>p{color:red}</style><p>Hi</p><script>alert(1)</script><!-- note -->"
        result = await _transformer().transform_html(html)
        assert "<script" not in result.html
        assert "<style" not in result.html
        assert "note" not in result.html
        assert result.stats.scripts_removed == 1
        assert result.stats.styles_removed == 1

    @pytest.mark.asyncio
    async def test_event_handlers_and_ids_removed(self):
        html = '<div id="main" onclick="steal()" onMouseOver="x()"><span onload="y()">t</span></div>'
        result = await _transformer().transform_html(html)
        lowered = result.html.lower()
        assert "onclick" not in lowered
        assert "onmouseover" not in lowered
        assert "onload" not in lowered
        assert 'id="main"' not in result.html

    @pytest.mark.asyncio
    async def test_javascript_href_neutralised(self):
        result = await _transformer().transform_html('<a href=" JavaScript:alert(1)">x</a>')
        assert _soup(result.html).find("a")["href"] == "#"

    @pytest.mark.asyncio
    async def test_only_gmail_classes_kept(self):
        html = '<blockquote class="gmail_quote fancy">q</blockquote><span class="big red">s</span>'
        soup = _soup((await _transformer().transform_html(html)).html)
        assert soup.find("blockquote")["class"] == ["gmail_quote"]
        assert soup.find("span").get("class") is None


# ============================================================================
# Structure
# ============================================================================

class TestStructure:

    @pytest.mark.asyncio
    async def test_paragraph_becomes_styled_div(self):
        result = await _transformer().transform_html('<p class="lead">Hello</p>')
        soup = _soup(result.html)
        assert soup.find("p") is None
        div = soup.find("div")
        assert div["style"] == PARAGRAPH_STYLE
        assert div.get_text() == "Hello"

    @pytest.mark.asyncio
    async def test_empty_paragraph_becomes_single_break(self):
        result = await _transformer().transform_html("<p> <br> </p>")
        div = _soup(result.html).find("div")
        assert [child.name for child in div.contents] == ["br"]

    @pytest.mark.asyncio
    async def test_headings_use_heading_styles(self):
        result = await _transformer().transform_html("<h1>Big</h1><h3>Small</h3>")
        divs = _soup(result.html).find_all("div")
        assert divs[0]["style"] == HEADING_STYLES["h1"]
        assert divs[1]["style"] == HEADING_STYLES["h3"]

    @pytest.mark.asyncio
    async def test_div_with_list_untouched(self):
        html = '<div style="margin:4px"><ul><li>a</li></ul></div>'
        result = await _transformer().transform_html(html)
        assert _soup(result.html).find("div")["style"] == "margin:4px"

    @pytest.mark.asyncio
    async def test_plain_div_restyled(self):
        result = await _transformer().transform_html('<div style="font-size:40px">x</div>')
        assert _soup(result.html).find("div")["style"] == PARAGRAPH_STYLE

    @pytest.mark.asyncio
    async def test_blockquote_gets_gmail_quote(self):
        result = await _transformer().transform_html('<blockquote style="border:0">q</blockquote>')
        quote = _soup(result.html).find("blockquote")
        assert quote["class"] == ["gmail_quote"]
        assert quote["style"] == BLOCKQUOTE_STYLE

    @pytest.mark.asyncio
    async def test_link_style_added_only_when_missing(self):
        html = '<a href="https://a.example">a</a><a href="https://b.example" style="color:red">b</a>'
        links = _soup((await _transformer().transform_html(html)).html).find_all("a")
        assert links[0]["style"] == LINK_STYLE
        assert links[1]["style"] == "color:red"


# ============================================================================
# Links
# ============================================================================

class TestCleanUrl:

    def test_bare_email_becomes_mailto(self):
        assert _transformer().clean_url("someone@example.com") == "mailto:someone@example.com"

    def test_mailto_unchanged(self):
        assert _transformer().clean_url("mailto:a@example.com?subject=hi") == "mailto:a@example.com?subject=hi"

    def test_http_upgraded(self):
        assert _transformer().clean_url("http://example.com/page") == "https://example.com/page"

    def test_tracking_params_removed(self):
        cleaned = _transformer().clean_url("https://example.com/p?utm_source=mail&id=7&fbclid=abc")
        assert cleaned == "https://example.com/p?id=7"

    def test_clean_url_untouched(self):
        url = "https://example.com/p?b=2&a=1#frag"
        assert _transformer().clean_url(url) == url

    @pytest.mark.asyncio
    async def test_links_rewritten_in_document(self):
        result = await _transformer().transform_html('<a href="http://example.com/?utm_medium=x">go</a>')
        assert _soup(result.html).find("a")["href"] == "https://example.com/"


# ============================================================================
# Idempotence and Limits
# ============================================================================

class TestIdempotenceAndLimits:

    @pytest.mark.asyncio
    async def test_second_pass_is_noop(self):
        """
        Given: A mixed document already transformed once
        When: The output is transformed again
        Then: The HTML is unchanged and nothing is rehosted
        """
        html = (
            "<h2>Title</h2><p>Text <a href='http://example.com/?utm_source=x'>link</a></p>"
            "<blockquote class='gmail_quote'>quoted</blockquote>"
            "<img src='data:image/png;base64,AAAA'><p><br></p>"
            "<div><ol><li>one</li></ol></div>"
        )
        processor = FakeAssetProcessor()
        transformer = _transformer(processor)
        first = await transformer.transform_html(html)
        second = await transformer.transform_html(first.html)
        assert second.html == first.html
        assert len(processor.calls) == 1
        assert second.stats.images_rehosted == 0

    @pytest.mark.asyncio
    async def test_oversized_document_rejected(self):
        transformer = _transformer(settings=TransformSettings(max_html_bytes=10))
        with pytest.raises(PayloadTooLarge):
            await transformer.transform_html("<p>" + "x" * 20 + "</p>")
