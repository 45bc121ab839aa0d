"""Configuration and environment settings for the crawler."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProviderConfig:
    """Per-board API settings.  ``request_delay`` spaces out page requests."""
    name: str
    host: str
    page_limit: int = 200
    request_delay: float = 0.1  # seconds between API requests
    rate_limit_delay: float = 5.0  # used when a 429/503 carries no Retry-After
    timeout: float = 30.0


DANBOORU = ProviderConfig(name="danbooru", host="https://danbooru.donmai.us")
SAFEBOORU = ProviderConfig(name="safebooru", host="https://safebooru.donmai.us")

PROVIDERS: dict[str, ProviderConfig] = {cfg.name: cfg for cfg in (DANBOORU, SAFEBOORU)}


@dataclass(frozen=True)
class AuthConfig:
    username: str = ""
    api_key: str = ""

    @property
    def anonymous(self) -> bool:
        return not (self.username and self.api_key)

    @classmethod
    def from_env(cls) -> AuthConfig:
        return cls(
            username=os.getenv("DANBOORU_USERNAME", ""),
            api_key=os.getenv("DANBOORU_API_KEY", ""),
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 1.0

    def delay(self, attempt: int) -> float:
        """Exponential backoff before the attempt following ``attempt``."""
        return self.backoff_base * 2 ** (attempt - 1)


@dataclass
class CrawlerConfig:
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    partition_concurrency: int = 2
    channel_size: int = 400
    show_progress: bool = True
