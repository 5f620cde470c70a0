"""Tests for URL, host and media-type validation."""
import pytest

from app.core.config import settings
from app.services.errors import HostNotAllowedError, InvalidUrlError
from app.services.validators import (
    audio_kbps_to_bitrate,
    image_extension,
    is_allowed_host,
    is_likely_audio,
    is_likely_image,
    is_likely_video,
    is_video_host_url,
    normalize_url,
    quality_to_height,
    sanitize_url_for_logging,
)


class TestNormalizeUrl:
    """Tests for URL normalization and validation."""

    def test_normalize_url_basic(self) -> None:
        """Test basic URL normalization."""
        url = "  https://media.example.com/clip.mp4  "
        assert normalize_url(url) == "https://media.example.com/clip.mp4"

    def test_normalize_url_not_a_url(self) -> None:
        with pytest.raises(InvalidUrlError, match="Invalid URL"):
            normalize_url("just some words")

    def test_normalize_url_invalid_scheme(self) -> None:
        """Test rejection of invalid URL schemes."""
        with pytest.raises(InvalidUrlError):
            normalize_url("ftp://example.com/video")

    def test_normalize_url_localhost_blocked(self) -> None:
        """Test blocking of localhost URLs."""
        with pytest.raises(InvalidUrlError, match="Localhost"):
            normalize_url("http://localhost:8080/video")

    def test_normalize_url_private_ip_blocked(self) -> None:
        """Test blocking of private IP addresses."""
        with pytest.raises(InvalidUrlError, match="Private network"):
            normalize_url("http://192.168.1.1/video")

    def test_private_networks_allowed_when_disabled(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "BLOCK_PRIVATE_NETWORKS", False)
        assert normalize_url("http://10.0.0.5/video.mp4") == "http://10.0.0.5/video.mp4"

    def test_host_outside_allow_list(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "ALLOWED_HOSTS", "cdn.example.org, youtube.com")
        with pytest.raises(HostNotAllowedError):
            normalize_url("https://evil.example.net/a.mp4")

    def test_host_inside_allow_list(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "ALLOWED_HOSTS", "cdn.example.org, youtube.com")
        assert normalize_url("https://www.youtube.com/watch?v=x")


class TestAllowedHost:
    def test_empty_list_allows_everything(self) -> None:
        assert is_allowed_host("https://anything.example/", [])

    def test_exact_and_subdomain(self) -> None:
        allowed = ["example.com"]
        assert is_allowed_host("https://example.com/a", allowed)
        assert is_allowed_host("https://media.example.com/a", allowed)

    def test_suffix_is_not_subdomain(self) -> None:
        assert not is_allowed_host("https://notexample.com/a", ["example.com"])

    def test_case_insensitive(self) -> None:
        assert is_allowed_host("https://Media.Example.COM/a", ["example.com"])


class TestClassification:
    def test_video_host(self) -> None:
        assert is_video_host_url("https://www.youtube.com/watch?v=abc")
        assert is_video_host_url("https://youtu.be/abc")
        assert not is_video_host_url("https://cdn.example.com/youtube.mp4")

    def test_media_types(self) -> None:
        assert is_likely_image("image/PNG; charset=binary")
        assert is_likely_video("video/webm")
        assert is_likely_audio("audio/mpeg")
        assert not is_likely_image(None)
        assert not is_likely_video("application/octet-stream")

    def test_image_extension(self) -> None:
        assert image_extension("image/jpeg") == ".jpg"
        assert image_extension("image/svg+xml") == ".svg"
        assert image_extension("image/x-unknown") == ""


class TestMappings:
    @pytest.mark.parametrize(
        "quality,height",
        [("2160p", 2160), ("720p", 720), ("360p", 360), ("4k", 1080), (None, 1080)],
    )
    def test_quality_to_height(self, quality: str | None, height: int) -> None:
        assert quality_to_height(quality) == height

    @pytest.mark.parametrize(
        "kbps,expected",
        [("512", 512), (128, 128), ("192", 192), ("999", 320), ("abc", 320), (None, 320)],
    )
    def test_audio_bitrate(self, kbps: object, expected: int) -> None:
        assert audio_kbps_to_bitrate(kbps) == expected


def test_sanitize_url_for_logging_hides_query() -> None:
    safe = sanitize_url_for_logging("https://example.com/v.mp4?token=secret")
    assert "secret" not in safe
    assert safe.startswith("https://example.com/v.mp4 (hash:")
