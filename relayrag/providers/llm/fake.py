from __future__ import annotations

import asyncio
from typing import AsyncIterator

from relayrag.core.errors import VendorError
from relayrag.domain.events import CompletionRequest, DoneEvent, StreamEvent, TokenEvent, TokenUsage
from relayrag.providers.llm.base import VendorAdapter, estimate_usage
from relayrag.providers.llm.catalog import Vendor


class FakeLLMProvider(VendorAdapter):
    vendor = Vendor.FAKE

    def __init__(
        self,
        response: str = "This is a fake response.",
        *,
        tokens: list[str] | None = None,
        usage: TokenUsage | None = None,
        fail_after: int | None = None,
        delay_s: float = 0.0,
    ) -> None:
        super().__init__(stream_timeout_s=60)
        # Deterministic output keeps tests stable without external calls.
        self._tokens = tokens if tokens is not None else [f"{word} " for word in response.split()]
        self._usage = usage
        self._fail_after = fail_after
        self._delay_s = delay_s
        self.calls: list[CompletionRequest] = []

    async def _stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        self.calls.append(request)
        for idx, token in enumerate(self._tokens):
            if self._fail_after is not None and idx >= self._fail_after:
                raise VendorError("fake vendor disconnected", vendor=self.vendor.value, status_code=502)
            if self._delay_s:
                await asyncio.sleep(self._delay_s)
            yield TokenEvent(token)
        if self._fail_after is not None and self._fail_after >= len(self._tokens):
            raise VendorError("fake vendor disconnected", vendor=self.vendor.value, status_code=502)
        yield DoneEvent(self._usage or estimate_usage(request, "".join(self._tokens)))
