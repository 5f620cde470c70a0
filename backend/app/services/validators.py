"""URL, host and media-type validation helpers."""
import hashlib
import ipaddress
import re
from urllib.parse import urlparse

from app.core.config import settings
from app.core.logging import get_logger
from app.services.errors import HostNotAllowedError, InvalidUrlError

logger = get_logger(__name__)

BLOCKED_HOSTNAMES = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}

URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)

IMAGE_TYPES = {
    "image/jpeg", "image/png", "image/webp", "image/gif",
    "image/avif", "image/bmp", "image/tiff", "image/svg+xml",
}
VIDEO_TYPES = {
    "video/mp4", "video/webm", "video/ogg", "video/quicktime", "video/x-matroska",
}
AUDIO_TYPES = {
    "audio/mpeg", "audio/webm", "audio/ogg", "audio/aac", "audio/wav", "audio/mp4",
}

IMAGE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/avif": ".avif",
    "image/bmp": ".bmp",
    "image/tiff": ".tiff",
    "image/svg+xml": ".svg",
}

QUALITY_HEIGHTS = {
    "2160p": 2160,
    "1440p": 1440,
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
    "360p": 360,
}
DEFAULT_HEIGHT = 1080

ALLOWED_AUDIO_KBPS = (512, 320, 256, 192, 160, 128)
DEFAULT_AUDIO_KBPS = 320


def _hostname(url: str) -> str | None:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def normalize_url(url: str) -> str:
    """Normalize and validate a user-supplied source URL.

    Checks shape, scheme, SSRF exposure and the host allow-list, in that
    order, without touching the network.

    Raises:
        InvalidUrlError: If the URL is malformed or points at a private network
        HostNotAllowedError: If an allow-list is configured and the host is outside it
    """
    url = url.strip()
    if not URL_PATTERN.match(url):
        raise InvalidUrlError("Invalid URL.")

    try:
        parsed = urlparse(url)
    except ValueError as e:
        logger.warning(f"Failed to parse URL: {e}")
        raise InvalidUrlError("Malformed URL")

    if parsed.scheme.lower() not in settings.allowed_schemes_list:
        raise InvalidUrlError(
            f"URL scheme not allowed. Allowed schemes: "
            f"{', '.join(settings.allowed_schemes_list)}"
        )

    hostname = parsed.hostname
    if not hostname:
        raise InvalidUrlError("URL must have a valid hostname")

    if settings.BLOCK_PRIVATE_NETWORKS:
        if hostname.lower() in BLOCKED_HOSTNAMES:
            raise InvalidUrlError("Localhost URLs are not allowed")
        try:
            ip = ipaddress.ip_address(hostname)
        except ValueError:
            ip = None
        if ip is not None and (ip.is_private or ip.is_loopback or ip.is_link_local):
            logger.warning(f"Blocked private network URL: {hostname}")
            raise InvalidUrlError("Private network URLs are not allowed")

    if not is_allowed_host(url, settings.allowed_hosts_list):
        raise HostNotAllowedError("Host not allowed.")

    return url


def is_allowed_host(url: str, allowed_hosts: list[str]) -> bool:
    """Exact or subdomain match against *allowed_hosts*; empty list allows all."""
    if not allowed_hosts:
        return True
    host = _hostname(url)
    if host is None:
        return False
    return any(host == allowed or host.endswith("." + allowed) for allowed in allowed_hosts)


def is_video_host_url(url: str) -> bool:
    """True when the hostname belongs to a site that must go through yt-dlp."""
    host = _hostname(url)
    if host is None:
        return False
    return any(marker in host for marker in settings.video_host_markers_list)


def base_content_type(content_type: str | None) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def is_likely_image(content_type: str | None) -> bool:
    return base_content_type(content_type) in IMAGE_TYPES


def is_likely_video(content_type: str | None) -> bool:
    return base_content_type(content_type) in VIDEO_TYPES


def is_likely_audio(content_type: str | None) -> bool:
    return base_content_type(content_type) in AUDIO_TYPES


def image_extension(content_type: str | None) -> str:
    return IMAGE_EXTENSIONS.get(base_content_type(content_type), "")


def quality_to_height(quality: str | None) -> int:
    """Map a quality tier to an output height; unknown tiers mean 1080p."""
    return QUALITY_HEIGHTS.get((quality or "").lower(), DEFAULT_HEIGHT)


def audio_kbps_to_bitrate(kbps: int | str | None) -> int:
    """Clamp a requested audio bitrate to the supported set."""
    try:
        value = int(kbps)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        value = None
    if value not in ALLOWED_AUDIO_KBPS:
        logger.warning(f"Invalid bitrate {kbps}k; clamping to {DEFAULT_AUDIO_KBPS}k")
        return DEFAULT_AUDIO_KBPS
    return value


def sanitize_url_for_logging(url: str) -> str:
    """Create a safe version of URL for logging (hide query params)."""
    try:
        parsed = urlparse(url)
        url_hash = hashlib.sha256(url.encode()).hexdigest()[:8]
        return f"{parsed.scheme}://{parsed.hostname}{parsed.path} (hash:{url_hash})"
    except ValueError:
        return "invalid-url"
