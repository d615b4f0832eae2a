"""Optional visual-match capabilities consulted by the clustering engine."""

from __future__ import annotations

import os
import re
from typing import Callable, Iterable, List, Optional
from urllib.parse import urlparse

from listing_schema import PropertyRecord

ImageSimilarity = Callable[[PropertyRecord, PropertyRecord], bool]


def no_image_match(a: PropertyRecord, b: PropertyRecord) -> bool:
    """Default capability: photos are never compared."""
    return False


def extract_token_from_url(url: str) -> Optional[str]:
    parsed = urlparse(url)
    path = parsed.path
    if not path:
        return None
    name = os.path.basename(path)
    name = name.split("?")[0]
    name = name.replace("_fss", "")
    token = re.sub(r"[^A-Za-z0-9]+", "", name)
    return token or None


def photo_tokens(urls: Iterable[str]) -> List[str]:
    tokens = set()
    for url in urls or ():
        if not url:
            continue
        token = extract_token_from_url(url)
        if token:
            tokens.add(token)
    return sorted(tokens)


class PhotoFingerprintMatcher:
    """Match two listings that reuse the same photo files.

    Portals re-host agency photos under the original file name, so a shared
    file-name token is strong evidence of the same property.
    """

    def __init__(self, min_shared: int = 1) -> None:
        self.min_shared = max(1, int(min_shared))
        self._cache: dict = {}

    def tokens_for(self, record: PropertyRecord) -> frozenset:
        cached = self._cache.get(record.id)
        if cached is None:
            cached = frozenset(photo_tokens(record.photo_urls))
            self._cache[record.id] = cached
        return cached

    def __call__(self, a: PropertyRecord, b: PropertyRecord) -> bool:
        tokens_a = self.tokens_for(a)
        tokens_b = self.tokens_for(b)
        if not tokens_a or not tokens_b:
            return False
        return len(tokens_a & tokens_b) >= self.min_shared
