"""Feed URL normalization and validation."""
import re
from urllib.parse import urlparse

WEBCAL_PATTERN = re.compile(r'^webcal://', re.IGNORECASE)
ALLOWED_SCHEMES = ('http', 'https')


class InvalidFeedUrl(ValueError):
    """Raised when a feed URL is missing, malformed or uses another scheme."""


def normalize_feed_url(url: str) -> str:
    """
    Normalize a subscribed feed URL.

    A leading ``webcal://`` is rewritten to ``http://``; only http(s) URLs
    with a host are accepted afterwards.

    Args:
        url: URL as supplied by the caller

    Returns:
        Normalized URL

    Raises:
        InvalidFeedUrl: If the URL is empty, malformed or not http(s)
    """
    if not url or not isinstance(url, str) or not url.strip():
        raise InvalidFeedUrl('URL is required')

    normalized = WEBCAL_PATTERN.sub('http://', url.strip())

    try:
        parsed = urlparse(normalized)
    except ValueError as e:
        raise InvalidFeedUrl(f'Invalid URL format: {e}') from e

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidFeedUrl('Only HTTP and HTTPS URLs are supported')

    if not parsed.netloc:
        raise InvalidFeedUrl('Invalid URL format')

    return normalized


def feed_display_name(url: str) -> str:
    """Derive a short human-readable name for a feed URL."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url

    host = parsed.hostname
    if not host:
        return url
    if host.startswith('www.'):
        host = host[4:]

    filename = parsed.path.rstrip('/').rsplit('/', 1)[-1]
    if filename.lower().endswith('.ics') and len(filename) > 4:
        return f"{host} ({filename[:-4]})"
    return host
