from urllib.parse import urljoin, urlparse, urlunparse
import re


# longest URL any url column stores
MAX_URL_LENGTH = 2048


def _clean_tracking_params(query: str) -> str:
    clean_query = re.sub(r"(utm_[^=&]+|sessionid|fbclid|gclid|gh_src|lever-source)=[^&]*", "", query, flags=re.IGNORECASE)
    clean_query = re.sub(r"&&+", "&", clean_query).strip("&")
    return clean_query


def ensure_scheme(url: str | None) -> str | None:
    """Prefix bare hosts with https:// and protocol-relative URLs with https:."""
    if url is None:
        return None
    value = url.strip()
    if not value:
        return None
    if value.startswith("//"):
        return "https:" + value
    if "://" not in value:
        return "https://" + value
    return value


def normalize_url(base_url: str, link: str) -> str | None:
    """Resolve ``link`` against ``base_url`` and strip tracking noise."""
    try:
        raw_link = link.strip()
        if raw_link.startswith("//"):
            base_scheme = urlparse(base_url).scheme or "https"
            raw_link = f"{base_scheme}:{raw_link}"

        url = urljoin(base_url, raw_link)
        parsed = urlparse(url)

        if parsed.scheme not in ("http", "https"):
            return None

        clean_query = _clean_tracking_params(parsed.query)
        parsed = parsed._replace(query=clean_query, fragment="")

        path = parsed.path or "/"
        path = re.sub(r"/{2,}", "/", path)
        if path != "/" and path.endswith("/"):
            path = path[:-1]

        parsed = parsed._replace(path=path, netloc=parsed.netloc.lower())
        return urlunparse(parsed)

    except ValueError:
        return None


def get_domain(url: str) -> str:
    """Lowercase host of ``url`` without the port, or "" when unparsable."""
    try:
        netloc = urlparse(url).netloc.lower()
        if "@" in netloc:
            netloc = netloc.rsplit("@", 1)[1]
        return netloc.split(":", 1)[0]
    except ValueError:
        return ""


def path_with_query(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        return f"{path}?{parsed.query}"
    return path


def strip_www(host: str) -> str:
    host = (host or "").lower()
    return host[4:] if host.startswith("www.") else host


def root_url(domain: str, path: str = "/") -> str:
    """``https://{domain}{path}`` for a bare company domain."""
    host = get_domain(ensure_scheme(domain) or "") or domain.strip().lower()
    if not path.startswith("/"):
        path = "/" + path
    return f"https://{host}{path}"
