"""
Content identifier links.

ED2K link:    ed2k://|file|<urlencoded name>|<size>|<32 hex md4>|/
ED2K magnet:  magnet:?xt=urn:btih:<32 hex md4 + 00000000>&dn=<name>&xl=<size>

ED2K hashes are padded with eight zeros so *arr clients accept them as
BitTorrent info hashes; the padding is stripped again on the way back.
"""
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, unquote, urlsplit
import re

from .errors import ParseError

ED2K_HASH_RE = re.compile(r"^[0-9a-fA-F]{32}$")
BTIH_RE = re.compile(r"urn:btih:([0-9a-fA-F]{40})$", re.IGNORECASE)
URN_ED2K_RE = re.compile(r"urn:ed2k:([0-9a-fA-F]{32})$", re.IGNORECASE)
MAGNET_PADDING = "00000000"


@dataclass(frozen=True)
class ContentLink:
    filename: str
    size: int
    hash: str


def parse_ed2k_link(link: str) -> ContentLink:
    parts = (link or "").strip().split("|")
    if len(parts) < 6 or parts[0] != "ed2k://" or parts[1] != "file":
        raise ParseError(f"invalid ED2K link (expected ed2k://|file|name|size|hash|/): {link!r}")

    name, raw_size, raw_hash = parts[2], parts[3], parts[4]
    if not name:
        raise ParseError(f"ED2K link has no file name: {link!r}")
    try:
        size = int(raw_size)
    except ValueError:
        raise ParseError(f"ED2K link has a non-numeric size: {raw_size!r}") from None
    if size < 0:
        raise ParseError(f"ED2K link has a negative size: {size}")
    if not ED2K_HASH_RE.match(raw_hash):
        raise ParseError(f"ED2K link has an invalid hash: {raw_hash!r}")

    return ContentLink(filename=unquote(name), size=size, hash=raw_hash.lower())


def parse_ed2k_magnet(magnet: str) -> ContentLink:
    query = parse_qs(urlsplit(magnet or "").query)
    xt = (query.get("xt") or [""])[0]

    m = BTIH_RE.search(xt)
    if m:
        padded = m.group(1).lower()
        if not padded.endswith(MAGNET_PADDING):
            raise ParseError("BitTorrent hash does not carry ED2K padding")
        h = padded[:32]
    else:
        m = URN_ED2K_RE.search(xt)
        if not m:
            raise ParseError("not an ED2K magnet (expected padded urn:btih or urn:ed2k)")
        h = m.group(1).lower()

    name = (query.get("dn") or ["unknown"])[0]
    try:
        size = int((query.get("xl") or ["0"])[0])
    except ValueError:
        size = 0
    return ContentLink(filename=name, size=size, hash=h)


def parse_content_link(link: str) -> ContentLink:
    if (link or "").lower().startswith("magnet:"):
        return parse_ed2k_magnet(link)
    return parse_ed2k_link(link)


def to_ed2k_link(item: ContentLink) -> str:
    return f"ed2k://|file|{quote(item.filename)}|{item.size}|{item.hash}|/"
