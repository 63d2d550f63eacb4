from __future__ import annotations

from typing import Optional


class ExternalAPIError(Exception):
    """Failure talking to a third-party service."""


class GithubAPIError(ExternalAPIError):
    def __init__(self, status_code: int, message: str, url: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.url = url
        super().__init__(f"{status_code} {message}" + (f" ({url})" if url else ""))

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code in (403, 429) and "rate limit" in self.message.lower()

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class TokenNotFoundError(ExternalAPIError):
    pass


class SharedAccessError(Exception):
    """Viewer may not see a shared item."""
