"""
URL normalization with deterministic domain parsing

RSS link 正規化 (移除追蹤參數與 fragment)，以及 allowed_domains constraint 用的
publisher domain 解析 (tldextract)。
"""

from urllib.parse import urlparse, parse_qsl, urlencode, urlunparse
import tldextract
from typing import Iterable, Optional


# 固定 tldextract extraction (確保 determinism)
_EXTRACTOR = None

TRACKING_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
    'fbclid', 'gclid', 'msclkid', '_ga', 'mc_cid', 'mc_eid'
}


def get_extractor(cache_dir: Optional[str] = None):
    """取得 tldextract extractor (使用內建 snapshot，不需要網路)"""
    global _EXTRACTOR
    if _EXTRACTOR is None:
        if cache_dir:
            _EXTRACTOR = tldextract.TLDExtract(cache_dir=cache_dir, suffix_list_urls=())
        else:
            _EXTRACTOR = tldextract.TLDExtract(suffix_list_urls=())
    return _EXTRACTOR


def normalize_url(url: str) -> str:
    """
    正規化 URL

    1. Lowercase scheme/domain
    2. 移除追蹤參數 (utm_*, fbclid, gclid, etc.)，其餘參數保持原順序
    3. 移除 fragment (#xxx)

    Args:
        url: 原始 URL

    Returns:
        正規化後的 URL (空字串原樣回傳)
    """
    url = (url or "").strip()
    if not url:
        return url

    parsed = urlparse(url)
    query = parsed.query
    if query:
        params = [(k, v) for k, v in parse_qsl(query, keep_blank_values=True)
                  if k.lower() not in TRACKING_PARAMS]
        query = urlencode(params)

    return urlunparse((
        parsed.scheme.lower(), parsed.netloc.lower(), parsed.path, parsed.params, query, ''
    ))


def extract_domain(url: str, cache_dir: Optional[str] = None) -> str:
    """
    提取 publisher domain (eTLD+1, 去 www)

    例如:
    - https://www.animate-cafe.com/event/... -> animate-cafe.com
    - https://collabo-cafe.com/events/... -> collabo-cafe.com

    Args:
        url: URL
        cache_dir: tldextract cache 目錄

    Returns:
        Publisher domain；無法解析時為空字串
    """
    extracted = get_extractor(cache_dir)(url)
    if not extracted.domain:
        return ""
    if not extracted.suffix:
        return extracted.domain.lower()
    return f"{extracted.domain}.{extracted.suffix}".lower()


def is_allowed_domain(url: str, allowed_domains: Iterable[str]) -> bool:
    """
    URL 是否屬於 allowed_domains 之一 (比對 eTLD+1)

    allowed_domains 為空時一律允許。
    """
    allowed = {extract_domain(d) for d in allowed_domains if d}
    if not allowed:
        return True
    return extract_domain(url) in allowed
