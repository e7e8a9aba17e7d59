"""
HTML rewrite engine.

Parses a document into a tree, points its ``<base>`` and every
resource-referencing attribute back through the proxy, and serializes it
again. Markup is never rewritten with regular expressions; the only regex in
this module works on inline script text and is an opt-in heuristic.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from bs4.element import Script

from .url_codec import ProxyURLCodec, is_proxiable

logger = logging.getLogger("uvicorn.error")

DEFAULT_ATTRIBUTES = ("href", "src", "action", "poster", "data-src", "data-href", "srcset")
DEFAULT_IGNORED_SCHEMES = ("data:", "mailto:", "javascript:")

# Heuristic only: string literals assigned to location or passed to
# location.assign()/location.replace(). Concatenations, template literals and
# anything computed are not seen.
_LOCATION_LITERAL = re.compile(
    r"""(?P<prefix>\blocation(?:\.href)?\s*=\s*|\blocation\.(?:assign|replace)\(\s*)"""
    r"""(?P<quote>['"])(?P<url>[^'"\\\r\n]*)(?P=quote)"""
)


@dataclass
class RewriteContext:
    base_url: str
    codec: ProxyURLCodec = field(default_factory=ProxyURLCodec)
    attributes: Tuple[str, ...] = DEFAULT_ATTRIBUTES
    ignored_schemes: Tuple[str, ...] = DEFAULT_IGNORED_SCHEMES
    rewrite_inline_scripts: bool = False


def parse_srcset(value: str) -> List[Tuple[str, str]]:
    """
    Split a srcset value into ``(url, descriptor)`` candidates.

    A URL runs until whitespace, so commas inside it (``data:`` URLs) survive;
    trailing commas end the candidate.
    """
    candidates: List[Tuple[str, str]] = []
    pos, length = 0, len(value)
    while pos < length:
        while pos < length and (value[pos].isspace() or value[pos] == ","):
            pos += 1
        if pos >= length:
            break
        start = pos
        while pos < length and not value[pos].isspace():
            pos += 1
        url = value[start:pos]
        descriptor = ""
        if url.endswith(","):
            url = url.rstrip(",")
        else:
            end = value.find(",", pos)
            if end == -1:
                end = length
            descriptor = value[pos:end].strip()
            pos = end + 1
        candidates.append((url, descriptor))
    return candidates


def rewrite_srcset(value: str, rewrite: Callable[[str], str]) -> str:
    parts = []
    for url, descriptor in parse_srcset(value):
        new_url = rewrite(url)
        parts.append(f"{new_url} {descriptor}" if descriptor else new_url)
    return ", ".join(parts)


class HtmlRewriteEngine:
    def __init__(self, context: RewriteContext):
        self.context = context
        self._base = context.base_url
        self._rewritten = 0

    def rewrite(self, html: str) -> str:
        soup = BeautifulSoup(html, "html.parser", multi_valued_attributes=None)

        self._base = self._effective_base(soup)
        self._rewritten = 0

        for base in soup.find_all("base"):
            base.decompose()

        for tag in soup.find_all(True):
            for attr in self.context.attributes:
                value = tag.get(attr)
                if not isinstance(value, str) or not value.strip():
                    continue
                if attr == "srcset":
                    tag[attr] = rewrite_srcset(value, self.rewrite_url)
                else:
                    tag[attr] = self.rewrite_url(value)

        if self.context.rewrite_inline_scripts:
            self._rewrite_inline_scripts(soup)

        if soup.head is not None:
            soup.head.insert(0, soup.new_tag("base", href=self.context.codec.encode(self._base)))

        logger.debug(
            f"[Rewrite] Rewrote {self._rewritten} URL(s), base={self._base}"
        )
        return str(soup)

    def _effective_base(self, soup: BeautifulSoup) -> str:
        """The document's own ``<base href>`` wins over the fetched URL."""
        base = soup.find("base", href=True)
        if base is None:
            return self.context.base_url
        href = base["href"].strip()
        if not href:
            return self.context.base_url
        # A proxied base (page already went through a proxy) names its target
        original = self.context.codec.try_decode(href)
        if original:
            return original
        try:
            resolved = urljoin(self.context.base_url, href)
        except ValueError:
            return self.context.base_url
        return resolved if is_proxiable(resolved) else self.context.base_url

    def rewrite_url(self, value: str) -> str:
        """Resolve ``value`` against the base and wrap it as a proxy URL.

        Returns ``value`` unchanged whenever it must not or cannot be proxied.
        """
        stripped = value.strip()
        if not stripped or stripped.startswith("#"):
            return value
        if stripped.lower().startswith(self.context.ignored_schemes):
            return value
        try:
            resolved = urljoin(self._base, stripped)
        except ValueError:
            logger.debug(f"[Rewrite] Could not resolve {value!r}; left unchanged")
            return value
        if not is_proxiable(resolved):
            return value
        self._rewritten += 1
        return self.context.codec.encode(resolved)

    def _rewrite_inline_scripts(self, soup: BeautifulSoup) -> None:
        def _replace(match: "re.Match") -> str:
            url = self.rewrite_url(match.group("url"))
            quote = match.group("quote")
            return f"{match.group('prefix')}{quote}{url}{quote}"

        for script in soup.find_all("script"):
            if script.get("src") is not None or script.string is None:
                continue
            text = str(script.string)
            new_text = _LOCATION_LITERAL.sub(_replace, text)
            if new_text != text:
                script.string.replace_with(Script(new_text))


def rewrite_html(
    base_url: str,
    html: str,
    codec: Optional[ProxyURLCodec] = None,
    rewrite_inline_scripts: bool = False,
) -> str:
    context = RewriteContext(
        base_url=base_url,
        codec=codec or ProxyURLCodec(),
        rewrite_inline_scripts=rewrite_inline_scripts,
    )
    return HtmlRewriteEngine(context).rewrite(html)
