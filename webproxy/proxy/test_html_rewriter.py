"""
Tests for the HTML rewrite engine.

Rewritten values are checked by decoding them back through the codec, so the
assertions state which absolute URL the browser ends up requesting.
"""

from urllib.parse import urljoin

import pytest
from bs4 import BeautifulSoup

from webproxy.proxy.html_rewriter import (
    HtmlRewriteEngine,
    RewriteContext,
    parse_srcset,
    rewrite_html,
    rewrite_srcset,
)
from webproxy.proxy.url_codec import ProxyURLCodec

BASE = "https://origin.test/dir/page.html"


@pytest.fixture
def codec():
    return ProxyURLCodec("/proxy")


def _rewrite(html: str, codec: ProxyURLCodec, **kwargs) -> BeautifulSoup:
    result = rewrite_html(BASE, html, codec=codec, **kwargs)
    return BeautifulSoup(result, "html.parser", multi_valued_attributes=None)


class TestBaseElement:
    """Test <base> removal and insertion."""

    def test_inserts_base_as_first_head_child(self, codec):
        soup = _rewrite(
            "<html><head><title>t</title></head><body></body></html>", codec
        )

        first = soup.head.contents[0]
        assert first.name == "base"
        assert codec.decode(first["href"]) == BASE

    def test_existing_base_replaced_by_single_proxied_base(self, codec):
        soup = _rewrite(
            '<html><head><meta charset="utf-8"><base href="/assets/" target="_top">'
            '<base href="/ignored/"></head><body><img src="logo.png"></body></html>',
            codec,
        )

        bases = soup.find_all("base")
        assert len(bases) == 1
        assert codec.decode(bases[0]["href"]) == "https://origin.test/assets/"
        # Relative URLs resolve against the document's own base
        assert codec.decode(soup.img["src"]) == "https://origin.test/assets/logo.png"

    def test_no_head_means_no_base(self, codec):
        result = rewrite_html(BASE, '<p><a href="x.html">x</a></p>', codec=codec)

        assert "<base" not in result
        assert "<head" not in result


class TestAttributeRewriting:
    """Test resolution and proxying of resource-referencing attributes."""

    @pytest.mark.parametrize(
        "attr,tag",
        [
            ("href", "a"),
            ("src", "img"),
            ("action", "form"),
            ("poster", "video"),
            ("data-src", "img"),
            ("data-href", "div"),
        ],
    )
    def test_each_attribute(self, codec, attr, tag):
        soup = _rewrite(f'<{tag} {attr}="res/item"></{tag}>', codec)

        assert codec.decode(soup.find(tag)[attr]) == "https://origin.test/dir/res/item"

    @pytest.mark.parametrize(
        "value",
        [
            "sibling.html",
            "../up.css",
            "/root.js",
            "?q=1",
            "//cdn.test/lib.js",
            "https://elsewhere.test/a?b=c&d=e",
            "  padded.png  ",
        ],
    )
    def test_rewritten_value_resolves_like_the_original(self, codec, value):
        soup = _rewrite(f'<a href="{value}">x</a>', codec)

        assert codec.decode(soup.a["href"]) == urljoin(BASE, value.strip())

    @pytest.mark.parametrize(
        "value",
        [
            "data:image/png;base64,iVBORw0KGgo=",
            "mailto:someone@origin.test",
            "javascript:void(0)",
            "JavaScript:alert(1)",
            "#section-2",
            "#",
            "tel:+123456",
        ],
    )
    def test_ignored_values_are_byte_identical(self, codec, value):
        html = f'<a href="{value}">x</a>'

        result = rewrite_html(BASE, html, codec=codec)

        assert result == html

    def test_empty_value_left_alone(self, codec):
        html = '<img src=""/>'

        assert rewrite_html(BASE, html, codec=codec) == html

    def test_unresolvable_value_left_alone(self, codec):
        html = '<a href="http://[::1/broken">x</a>'

        assert rewrite_html(BASE, html, codec=codec) == html

    def test_unlisted_attributes_untouched(self, codec):
        soup = _rewrite('<a href="a.html" title="b.html" class="c d">x</a>', codec)

        assert soup.a["title"] == "b.html"
        assert soup.a["class"] == "c d"

    def test_script_and_style_contents_untouched(self, codec):
        html = (
            '<script>var s = "<a href=\\"x.html\\">";</script>'
            '<style>a[href="y.html"] { color: red }</style>'
            "<!-- <img src=\"z.png\"> -->"
        )

        assert rewrite_html(BASE, html, codec=codec) == html

    def test_custom_attribute_set(self, codec):
        context = RewriteContext(base_url=BASE, codec=codec, attributes=("cite",))
        result = HtmlRewriteEngine(context).rewrite(
            '<blockquote cite="q.html"></blockquote><a href="a.html">a</a>'
        )

        assert codec.encode("https://origin.test/dir/q.html").replace("&", "&amp;") in result
        assert 'href="a.html"' in result


class TestSrcset:
    """Test multi-valued srcset handling."""

    def test_descriptors_preserved(self, codec):
        soup = _rewrite('<img srcset="a.jpg 1x, b.jpg 2x">', codec)

        entries = soup.img["srcset"].split(", ")
        assert len(entries) == 2
        url_a, desc_a = entries[0].split(" ")
        url_b, desc_b = entries[1].split(" ")
        assert codec.decode(url_a) == "https://origin.test/dir/a.jpg"
        assert desc_a == "1x"
        assert codec.decode(url_b) == "https://origin.test/dir/b.jpg"
        assert desc_b == "2x"

    def test_width_descriptors_and_irregular_spacing(self):
        result = rewrite_srcset(" small.jpg  480w ,large.jpg 1080w,", str.upper)

        assert result == "SMALL.JPG 480w, LARGE.JPG 1080w"

    def test_candidate_without_descriptor(self):
        assert parse_srcset("only.png") == [("only.png", "")]

    def test_data_url_with_comma_kept_whole(self):
        value = "data:image/png;base64,AAAA 1x, hi.png 2x"

        assert parse_srcset(value) == [
            ("data:image/png;base64,AAAA", "1x"),
            ("hi.png", "2x"),
        ]

    def test_data_url_candidate_not_proxied(self, codec):
        soup = _rewrite('<img srcset="data:image/gif;base64,R0lG 1x, hi.png 2x">', codec)

        first, second = soup.img["srcset"].split(", ")
        assert first == "data:image/gif;base64,R0lG 1x"
        assert codec.decode(second.split(" ")[0]) == "https://origin.test/dir/hi.png"


class TestInlineScriptHeuristic:
    """The location-literal heuristic is opt-in and best effort."""

    SCRIPT = (
        "<script>if (x) { location.href = '/next'; }"
        ' window.location = "other.html"; location.replace("/r");'
        " if (location.href == '/same') {}</script>"
    )

    def test_disabled_by_default(self, codec):
        assert rewrite_html(BASE, self.SCRIPT, codec=codec) == self.SCRIPT

    def test_rewrites_location_literals_when_enabled(self, codec):
        result = rewrite_html(BASE, self.SCRIPT, codec=codec, rewrite_inline_scripts=True)

        assert f"location.href = '{codec.encode('https://origin.test/next')}'" in result
        assert f'window.location = "{codec.encode("https://origin.test/dir/other.html")}"' in result
        assert f'location.replace("{codec.encode("https://origin.test/r")}")' in result
        # Comparisons are not assignments
        assert "location.href == '/same'" in result

    def test_external_scripts_skipped(self, codec):
        html = "<script src=\"app.js\">location.href = '/x';</script>"

        result = rewrite_html(BASE, html, codec=codec, rewrite_inline_scripts=True)

        assert "location.href = '/x'" in result


def test_full_document_round_trip(codec):
    html = (
        "<!DOCTYPE html>\n<html><head><link rel=\"stylesheet\" href=\"s.css\"></head>"
        "<body><form action=\"/post\" method=\"post\"><input name=\"q\"></form>"
        "<video poster=\"p.jpg\" src=\"//media.test/v.mp4\"></video></body></html>"
    )

    result = rewrite_html(BASE, html, codec=codec)
    soup = BeautifulSoup(result, "html.parser")

    assert result.startswith("<!DOCTYPE html>")
    assert codec.decode(soup.link["href"]) == "https://origin.test/dir/s.css"
    assert codec.decode(soup.form["action"]) == "https://origin.test/post"
    assert soup.form["method"] == "post"
    assert codec.decode(soup.video["poster"]) == "https://origin.test/dir/p.jpg"
    assert codec.decode(soup.video["src"]) == "https://media.test/v.mp4"
