import re
import tldextract
from urllib.parse import urlparse, urlunparse

# Offline extractor: bundled public suffix snapshot, no network fetch
_extract = tldextract.TLDExtract(suffix_list_urls=())

def normalize_origin(domain: str) -> str:
    """
    Absolute origin for a user supplied domain.
    'example.com' -> 'https://example.com', URLs with a scheme are kept.
    """
    domain = (domain or "").strip()
    if not domain:
        raise ValueError("Domain is required")
    if "://" not in domain:
        domain = f"https://{domain}"
    return domain

def hostname(domain: str) -> str:
    """Lowercased host of a domain or URL, without port."""
    if "://" not in domain:
        domain = f"https://{domain}"
    return (urlparse(domain).hostname or "").lower()

def extract_main_domain(domain: str) -> str:
    """
    Directory key for a domain: host without a leading 'www.'.
    Uses tldextract so multi-part suffixes (.co.uk) stay intact.
    'https://www.shop.example.co.uk/x' -> 'shop.example.co.uk'
    """
    host = hostname(domain)
    ext = _extract(host)
    if not ext.suffix or not ext.domain:
        # localhost, IPs and private names
        return host[4:] if host.startswith("www.") else host

    subdomain = ext.subdomain
    if subdomain == "www":
        subdomain = ""
    elif subdomain.startswith("www."):
        subdomain = subdomain[4:]
    parts = [p for p in (subdomain, ext.domain, ext.suffix) if p]
    return ".".join(parts)

def domain_folder(domain: str) -> str:
    """Filesystem-safe folder name for a domain."""
    return re.sub(r"[^a-zA-Z0-9.-]", "_", extract_main_domain(domain))

def normalize_url(url: str) -> str:
    """
    Canonical key for snapshot maps:
    - lowercase scheme and host
    - fragment dropped
    - root path rendered as '/'
    """
    p = urlparse(url)
    path = p.path or "/"
    return urlunparse((
        p.scheme.lower(),
        p.netloc.lower(),
        path,
        p.params,
        p.query,
        ""
    ))

def is_same_site(seed_url: str, candidate_url: str) -> bool:
    """www/naked variants of the seed host count as internal."""
    s_host = hostname(seed_url)
    c_host = hostname(candidate_url)
    s_base = s_host[4:] if s_host.startswith("www.") else s_host
    c_base = c_host[4:] if c_host.startswith("www.") else c_host
    return s_base == c_base
