from typing import Optional


class StreamResolverError(Exception):
    status_code = 500

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code

    @property
    def message(self) -> str:
        return str(self) or self.__class__.__name__


class ValidationError(StreamResolverError):
    status_code = 400


class RateLimitExceeded(StreamResolverError):
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded"):
        super().__init__(message)


class UpstreamUnavailable(StreamResolverError):
    """Upstream refused or never answered after all attempts."""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None,
                 last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.status = status
        self.last_error = last_error


class PayloadDecodeError(StreamResolverError):
    status_code = 500


class ChallengeBlocked(StreamResolverError):
    """Anti-bot interstitial served instead of the provider page.

    Never reaches the client: extraction turns it into a degraded source.
    """

    status_code = 503

    def __init__(self, url: str):
        super().__init__(f"challenge page at {url}")
        self.url = url


class ManifestInvalid(StreamResolverError):
    """Rewritten playlist has no #EXTM3U header; status mirrors the upstream."""

    def __init__(self, status: Optional[int], body: str = "", content_type: str = "text/plain"):
        super().__init__("upstream did not return a playlist", status_code=status or 502)
        self.body = body
        self.content_type = content_type


class ClientDisconnected(StreamResolverError):
    status_code = 499
