"""URL normalization, filtering and priority scoring."""

import re
from urllib.parse import urljoin, urlparse

from sitevector.exceptions import InvalidUrlError

MIN_SCORE = 0
MAX_SCORE = 100
BASE_SCORE = 50
INVALID_URL_SCORE = 25

INDEX_FILES = (
    "/index.html", "/index.htm", "/index.php",
    "/default.html", "/default.htm", "/default.aspx",
)

# Static assets never worth fetching as pages
ASSET_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp",
    ".css", ".js", ".map", ".xml", ".json", ".txt", ".zip", ".tar", ".gz", ".rar",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".wav", ".webm",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".woff", ".woff2", ".ttf", ".eot", ".otf",
)

SKIP_PATH_PATTERNS = (
    # Authentication and admin
    "/login", "/signin", "/sign-in", "/logout", "/signout", "/sign-out",
    "/register", "/signup", "/sign-up",
    "/auth/", "/oauth/", "/sso/",
    "/admin", "/wp-admin/", "/cms/", "/wp-login",
    "/account", "/my-account", "/cart", "/checkout",

    # Technical/system paths
    "/wp-content/", "/wp-includes/", "/cdn-cgi/", "/_next/", "/_nuxt/",
    "/static/", "/assets/", "/.well-known/",
    "/webhooks/", "/feed", "/rss",
)

SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "ftp:")

# Path fragments that usually lead to valuable content
CATEGORY_BONUSES = (
    (("/about", "/company", "/team"), 35),
    (("/services", "/products", "/product", "/solutions"), 35),
    (("/contact",), 30),
    (("/pricing", "/plans"), 30),
    (("/docs", "/documentation", "/api", "/reference", "/guide", "/tutorial"), 25),
    (("/help", "/support", "/faq"), 20),
    (("/features", "/overview", "/platform"), 20),
    (("/blog", "/news", "/articles", "/insights"), 15),
)

NEGATIVE_PATTERNS = (
    "/privacy", "/terms", "/legal", "/cookie", "/gdpr", "/disclaimer",
    "/tag/", "/tags/", "/author/", "/archive", "/page/", "/search",
    "/login", "/signin", "/register", "/signup", "/account",
)

DOCUMENT_EXTENSIONS = (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".zip")
MEDIA_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".mp3", ".mp4", ".mov", ".avi")

LANGUAGE_PREFIX = re.compile(r"^/[a-z]{2}(-[a-z]{2})?(/|$)")

POSITIVE_ANCHOR_WORDS = (
    "about", "services", "products", "documentation", "docs", "guide",
    "pricing", "features", "contact", "learn", "overview",
)
NEGATIVE_ANCHOR_WORDS = ("login", "sign in", "register", "privacy", "terms", "cookie")

TRACKING_PARAMS = ("utm_", "fbclid", "gclid", "ref=", "sessionid")

NAVIGATION_BONUS = 45


DOMAIN_PATTERN = re.compile(r"^([a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$")


def validate_url(url: str) -> str:
    """Check that a URL is an absolute http(s) URL with a plausible domain.

    Returns:
        The stripped URL.

    Raises:
        InvalidUrlError: with a message describing the problem.
    """
    url = (url or "").strip()
    try:
        parsed = urlparse(url)
        host = parsed.hostname
    except ValueError as e:
        raise InvalidUrlError(f"Invalid URL format: {url}") from e

    if parsed.scheme not in ("http", "https"):
        raise InvalidUrlError(f"URL must use http:// or https://: {url}")
    if not host:
        raise InvalidUrlError(f"URL must include a domain name: {url}")
    if host != "localhost" and not DOMAIN_PATTERN.match(host):
        raise InvalidUrlError(f"Invalid domain name: {host}")
    return url


def normalize_url(url: str) -> str:
    """Normalize URL for deduplication.

    - Lowercases scheme and host
    - Strips fragments (#section)
    - Normalizes index files to directory root
    - Removes trailing slashes (except for root)
    """
    parsed = urlparse(url.strip())
    path = parsed.path or "/"

    for pattern in INDEX_FILES:
        if path.endswith(pattern):
            path = path[:-len(pattern)] or "/"
            break

    if len(path) > 1:
        path = path.rstrip("/") or "/"

    normalized = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}"
    if parsed.query:
        normalized += f"?{parsed.query}"
    return normalized


def get_domain(url: str) -> str:
    """Return the lowercase host of a URL without port or leading www."""
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def is_internal_url(url: str, base_url: str) -> bool:
    """Check whether ``url`` is on the same site as ``base_url`` (or a subdomain)."""
    host = get_domain(url)
    base_host = get_domain(base_url)
    if not host or not base_host:
        return False
    return host == base_host or host.endswith(f".{base_host}")


def resolve_link(href: str, page_url: str) -> str | None:
    """Resolve an href against the page URL, returning None for non-page links."""
    href = href.strip()
    if not href or href.startswith("#") or href.lower().startswith(SKIPPED_SCHEMES):
        return None
    try:
        absolute = urljoin(page_url, href)
    except ValueError:
        return None
    if urlparse(absolute).scheme not in ("http", "https") or not is_well_formed(absolute):
        return None
    return absolute


def is_well_formed(url: str) -> bool:
    """Check that a URL's host and port parse (e.g. rejects ``example.com:abc``)."""
    try:
        parsed = urlparse(url)
        return bool(parsed.hostname) and (parsed.port is None or parsed.port >= 0)
    except ValueError:
        return False


def should_skip_url(url: str) -> bool:
    """Check if URL should be skipped based on technical criteria only."""
    if not is_well_formed(url):
        return True
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return True

    path = parsed.path.lower()
    if path.endswith(ASSET_EXTENSIONS):
        return True

    # API reference pages under docs are content, raw API endpoints are not
    if "/api/" in path and "/docs" not in path:
        return True

    for pattern in SKIP_PATH_PATTERNS:
        if pattern in path:
            return True

    return False


def path_segments(url: str) -> list[str]:
    return [segment for segment in urlparse(url).path.split("/") if segment]


def _clamp(score: float) -> int:
    return int(max(MIN_SCORE, min(MAX_SCORE, round(score))))


class UrlScorer:
    """Score candidate URLs by their expected content value (0-100)."""

    def __init__(self, base_url: str):
        self.base_url = normalize_url(base_url)

    def is_root(self, url: str) -> bool:
        return normalize_url(url) == self.base_url or not path_segments(url)

    def score(
        self,
        url: str,
        anchor_text: str | None = None,
        is_navigation: bool = False,
    ) -> int:
        """Calculate a priority score for a URL.

        Args:
            url: Absolute URL to score
            anchor_text: Link text the URL was found under, if any
            is_navigation: URL appears in the homepage's primary navigation

        Returns:
            Score clamped to [0, 100]; the site root always scores 100.
        """
        try:
            parsed = urlparse(url)
            path = parsed.path.lower()
            query = parsed.query.lower()
            if not parsed.netloc:
                return INVALID_URL_SCORE
        except ValueError:
            return INVALID_URL_SCORE

        if self.is_root(url) and not query:
            return MAX_SCORE

        score: float = BASE_SCORE

        if is_navigation:
            score += NAVIGATION_BONUS

        # Best matching category only
        category_bonus = 0
        for patterns, bonus in CATEGORY_BONUSES:
            if any(pattern in path for pattern in patterns):
                category_bonus = max(category_bonus, bonus)
        score += category_bonus

        depth = len(path_segments(url))
        if depth == 1:
            score += 20
        elif depth == 2:
            score += 10
        elif depth > 4:
            score -= 15

        if LANGUAGE_PREFIX.match(path):
            score += 5

        for pattern in NEGATIVE_PATTERNS:
            if pattern in path:
                score -= 25

        if path.endswith(DOCUMENT_EXTENSIONS):
            score -= 40
        elif path.endswith(MEDIA_EXTENSIONS):
            score -= 30

        if query:
            score -= 5
            if any(param in query for param in TRACKING_PARAMS):
                score -= 15

        if anchor_text:
            text = anchor_text.lower()
            if any(word in text for word in POSITIVE_ANCHOR_WORDS):
                score += 10
            if any(word in text for word in NEGATIVE_ANCHOR_WORDS):
                score -= 20

        return _clamp(score)


def manual_priority(url: str) -> int:
    """Priority for a page added by hand, favouring core site sections."""
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        return 80

    if path in ("", "/"):
        return 100
    if "/about" in path or "/contact" in path:
        return 90
    if "/docs" in path or "/api" in path:
        return 85
    if "/guide" in path:
        return 80
    if "/blog" in path:
        return 75
    return 80
