from silo.utils.formatting import format_bytes, to_data_url
from silo.utils.retry import (
    DEFAULT_CLOUD_RETRY_CONFIG,
    RateLimitError,
    RetryConfig,
    ServiceUnavailableError,
    retry_sync,
)

__all__ = [
    "format_bytes",
    "to_data_url",
    "RetryConfig",
    "retry_sync",
    "RateLimitError",
    "ServiceUnavailableError",
    "DEFAULT_CLOUD_RETRY_CONFIG",
]
