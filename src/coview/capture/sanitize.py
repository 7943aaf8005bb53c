"""Snapshot sanitization: strip secrets and scripts, absolutize resource URLs."""

import re
from urllib.parse import urljoin, urlparse

import structlog
from bs4 import BeautifulSoup, Doctype, Tag

logger = structlog.get_logger()

# Inputs whose values are never mirrored
SENSITIVE_INPUT_SELECTOR = ", ".join(
    [
        'input[type="password"]',
        'input[type="email"]',
        'input[autocomplete="cc-number"]',
        'input[autocomplete="cc-csc"]',
        'input[autocomplete="cc-exp"]',
    ]
)

# Elements the page opted out of capture
OPT_OUT_SELECTOR = "[data-sensitive], [data-coview-hide]"

STYLE_URL_RE = re.compile(r"""url\(['"]?([^'")\s]+)['"]?\)""")


def sanitize_document(html: str, page_url: str) -> str:
    """Produce the mirrored form of a page.

    Args:
        html: Serialized live document
        page_url: Current address of the page, used to resolve relative URLs

    Returns:
        ``<!DOCTYPE html>`` followed by the sanitized root element
    """
    soup = BeautifulSoup(html, "html.parser")

    _strip_sensitive_data(soup)
    _strip_scripts(soup)
    _absolutize_urls(soup, page_url)
    _inject_base(soup, page_url)

    for node in soup.contents:
        if isinstance(node, Doctype):
            node.extract()
            break

    root = soup.find("html")
    return "<!DOCTYPE html>" + str(root if root is not None else soup)


def _strip_sensitive_data(soup: BeautifulSoup) -> None:
    for el in soup.select(SENSITIVE_INPUT_SELECTOR):
        el["value"] = ""
    for el in soup.select(OPT_OUT_SELECTOR):
        if not el.decomposed:
            el.decompose()


def _strip_scripts(soup: BeautifulSoup) -> None:
    for el in soup.find_all(["script", "noscript"]):
        if not el.decomposed:
            el.decompose()
    for el in soup.find_all(True):
        handlers = [name for name in el.attrs if name.lower().startswith("on")]
        for name in handlers:
            del el[name]


def _absolutize_urls(soup: BeautifulSoup, base_url: str) -> None:
    for el in soup.find_all(href=True):
        href = el["href"].strip()
        if href and not href.startswith(("data:", "javascript:", "#")):
            el["href"] = _resolve(href, base_url)

    for el in soup.find_all(src=True):
        src = el["src"].strip()
        if src and not src.startswith("data:"):
            el["src"] = _resolve(src, base_url)

    for el in soup.find_all(srcset=True):
        el["srcset"] = _rewrite_srcset(el["srcset"], base_url)

    for el in soup.find_all(style=True):
        style = el["style"]
        if "url(" in style:
            el["style"] = STYLE_URL_RE.sub(lambda m: _rewrite_style_url(m, base_url), style)


def _rewrite_srcset(srcset: str, base_url: str) -> str:
    candidates = []
    for part in srcset.split(","):
        pieces = part.strip().split()
        if not pieces:
            continue
        url, descriptor = pieces[0], " ".join(pieces[1:])
        absolute = _resolve(url, base_url)
        candidates.append(f"{absolute} {descriptor}" if descriptor else absolute)
    return ", ".join(candidates)


def _rewrite_style_url(match: re.Match[str], base_url: str) -> str:
    url = match.group(1)
    if url.startswith("data:"):
        return match.group(0)
    return f"url('{_resolve(url, base_url)}')"


def _resolve(url: str, base_url: str) -> str:
    try:
        return urljoin(base_url, url)
    except ValueError:
        # Unparseable reference, leave as-is
        return url


def _inject_base(soup: BeautifulSoup, page_url: str) -> None:
    head = soup.find("head")
    if not isinstance(head, Tag):
        return
    parsed = urlparse(page_url)
    origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.scheme and parsed.netloc else page_url
    base = soup.new_tag("base", href=origin)
    head.insert(0, base)
