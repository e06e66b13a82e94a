"""Provider invocation: the protocol and the HTTP implementation."""

from quorum.providers.http import HTTPChatInvoker, RoutingInvoker, is_retryable_status
from quorum.providers.protocols import ProviderInvoker

__all__ = ["HTTPChatInvoker", "ProviderInvoker", "RoutingInvoker", "is_retryable_status"]
