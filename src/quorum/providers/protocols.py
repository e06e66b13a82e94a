"""Provider invoker protocol.

An invoker performs exactly one model call. It never raises for provider
trouble: failures come back as ``ProviderFailure`` values. The executor
still guards against invokers that do raise and treats the exception as
a retryable failure.
"""

from __future__ import annotations

import threading
from typing import Protocol, runtime_checkable

from quorum.contracts.provider import InvocationResult, ProviderRequest


@runtime_checkable
class ProviderInvoker(Protocol):
    """Performs one model call for a normalized request.

    Args (of ``invoke``):
        request: The normalized request stored on the run
        timeout: Seconds the call may take
        abort: Set when the run is cancelled; long-running invokers should
            poll it and return a ``cancelled`` failure early
    """

    def invoke(
        self,
        request: ProviderRequest,
        *,
        timeout: float,
        abort: threading.Event,
    ) -> InvocationResult: ...

    def close(self) -> None: ...
