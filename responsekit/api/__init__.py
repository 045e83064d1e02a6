"""Remote response API client."""

from responsekit.api.client import ResponsesApiClient
from responsekit.api.errors import ApiError

__all__ = ["ResponsesApiClient", "ApiError"]
