"""URL validation and log-safe URL rendering."""
import hashlib
import ipaddress
from urllib.parse import urlparse

from app.core.config import settings
from app.core.logging import get_logger
from app.services.errors import InvalidUrlError

logger = get_logger(__name__)

BLOCKED_HOSTNAMES = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}


def normalize_url(url: str) -> str:
    """Normalize and validate a URL for safety.

    Args:
        url: Raw URL string from user input

    Returns:
        Normalized URL string

    Raises:
        InvalidUrlError: If URL is malformed or blocked
    """
    url = url.strip()

    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError as e:
        logger.warning(f"Failed to parse URL: {e}")
        raise InvalidUrlError("Malformed URL")

    if parsed.scheme.lower() not in settings.allowed_schemes_list:
        raise InvalidUrlError(
            f"URL scheme not allowed. Allowed schemes: "
            f"{', '.join(settings.allowed_schemes_list)}"
        )

    if not hostname:
        raise InvalidUrlError("URL must have a valid hostname")

    # SSRF protection: block private networks
    if settings.BLOCK_PRIVATE_NETWORKS:
        try:
            ip = ipaddress.ip_address(hostname)
        except ValueError:
            # Not an IP address, hostname is OK
            ip = None

        if ip is not None and (ip.is_private or ip.is_loopback or ip.is_link_local):
            logger.warning(f"Blocked private network URL: {hostname}")
            raise InvalidUrlError("Private network URLs are not allowed")

        if hostname.lower() in BLOCKED_HOSTNAMES:
            raise InvalidUrlError("Localhost URLs are not allowed")

    return url


def sanitize_url_for_logging(url: str) -> str:
    """Create a safe version of URL for logging (hide query params)."""
    try:
        parsed = urlparse(url)
        url_hash = hashlib.sha256(url.encode()).hexdigest()[:8]
        return f"{parsed.scheme}://{parsed.hostname}{parsed.path} (hash:{url_hash})"
    except ValueError:
        return "invalid-url"
