"""Domain-specific exceptions for the services layer."""


class MediaServiceError(Exception):
    """Base exception for media download and transcode errors."""

    def __init__(self, message: str, code: str) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message
            code: Stable error code for API responses
        """
        self.message = message
        self.code = code
        super().__init__(message)


# Validation ---------------------------------------------------------------


class InvalidUrlError(MediaServiceError):
    """Raised when the provided URL is invalid or blocked."""

    def __init__(self, message: str = "The provided URL is invalid or blocked") -> None:
        super().__init__(message, "INVALID_URL")


class HostNotAllowedError(MediaServiceError):
    """Raised when the URL's host is outside the configured allow-list."""

    def __init__(self, message: str = "Host not allowed") -> None:
        super().__init__(message, "HOST_NOT_ALLOWED")


class UnsupportedFormatError(MediaServiceError):
    """Raised for a container/codec combination with no transcoder preset."""

    def __init__(self, message: str = "Unsupported format/codec combination") -> None:
        super().__init__(message, "UNSUPPORTED_FORMAT")


class UnsupportedMediaTypeError(MediaServiceError):
    """Raised when the source is not the kind of media the endpoint expects."""

    def __init__(self, message: str = "Unsupported media type") -> None:
        super().__init__(message, "UNSUPPORTED_MEDIA_TYPE")


# Resource -----------------------------------------------------------------


class PayloadTooLargeError(MediaServiceError):
    """Raised when the source exceeds the configured size ceiling."""

    def __init__(self, message: str = "Source too large") -> None:
        super().__init__(message, "PAYLOAD_TOO_LARGE")


# Upstream -----------------------------------------------------------------


class SourceUnavailableError(MediaServiceError):
    """Raised when the media is private, removed or otherwise gone."""

    def __init__(self, message: str = "Source media is unavailable") -> None:
        super().__init__(message, "SOURCE_UNAVAILABLE")


class SourceUnreachableError(MediaServiceError):
    """Raised when the source host cannot be reached at all."""

    def __init__(self, message: str = "Source could not be reached") -> None:
        super().__init__(message, "SOURCE_UNREACHABLE")


class UpstreamError(MediaServiceError):
    """Raised when the source answers with an error status."""

    def __init__(self, message: str = "Upstream returned an error") -> None:
        super().__init__(message, "UPSTREAM_ERROR")


class ProbeFailedError(MediaServiceError):
    """Raised when metadata could not be resolved.

    ``retryable`` tells the probe retry policy whether another attempt
    could plausibly succeed.
    """

    def __init__(self, message: str = "Metadata probe failed", retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message, "PROBE_FAILED")


# Subprocess ---------------------------------------------------------------


class SpawnError(MediaServiceError):
    """Raised when a helper binary cannot be started."""

    def __init__(self, message: str = "Failed to start media helper process") -> None:
        super().__init__(message, "SPAWN_FAILED")


class DownloaderFailedError(MediaServiceError):
    """Raised when yt-dlp exits with a non-zero status."""

    def __init__(self, message: str = "Source download failed") -> None:
        super().__init__(message, "DOWNLOADER_FAILED")


class EncoderFailedError(MediaServiceError):
    """Raised when ffmpeg exits with a non-zero status."""

    def __init__(self, message: str = "Encoder failed") -> None:
        super().__init__(message, "ENCODER_FAILED")
