"""Language-model backends and the request router that spreads calls across them."""

from providers.base import (  # noqa: F401
    ChatOptions,
    ChatRequest,
    ChatResponse,
    ProviderClient,
    ProviderError,
)
from providers.router import (  # noqa: F401
    BackendHealth,
    BackendInfo,
    HealthStatus,
    RateBudget,
    RequestRouter,
)
