from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Protocol

from relayrag.core.config import get_settings
from relayrag.core.errors import (
    ProviderConfigError,
    RelayError,
    VendorAuthError,
    VendorError,
    VendorTimeoutError,
)
from relayrag.domain.events import ChatTurn, CompletionRequest, DoneEvent, StreamEvent, TokenEvent, TokenUsage
from relayrag.providers.llm.base import (
    VendorAdapter,
    conversation_turns,
    estimate_usage,
    merge_system_prompt,
)
from relayrag.providers.llm.catalog import Vendor

logger = logging.getLogger(__name__)


class VertexChatClient(Protocol):
    def stream_chat(
        self,
        *,
        model: str,
        system_instruction: str | None,
        history: list[dict[str, str]],
        message: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[Any]:
        ...


def build_chat_history(turns: list[ChatTurn]) -> tuple[list[dict[str, str]], str]:
    """Rebuild alternating user/model history and pick the message to answer.

    Consecutive user turns are folded together so nothing is dropped; the
    trailing user text becomes the message sent to the chat session.
    """
    history: list[dict[str, str]] = []
    pending_user: list[str] = []
    for turn in turns:
        if turn.role == "user":
            pending_user.append(turn.content)
        elif turn.role == "assistant":
            if pending_user:
                history.append({"role": "user", "text": "\n\n".join(pending_user)})
                pending_user = []
            history.append({"role": "model", "text": turn.content})
    if pending_user:
        return history, "\n\n".join(pending_user)
    # No trailing user turn; answer the most recent user message instead.
    last_user = next((turn.content for turn in reversed(turns) if turn.role == "user"), "")
    return history, last_user


class _VertexSDKClient:
    def __init__(self, project: str, location: str) -> None:
        self._project = project
        self._location = location
        self._initialized = False

    async def stream_chat(
        self,
        *,
        model: str,
        system_instruction: str | None,
        history: list[dict[str, str]],
        message: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[Any]:
        try:
            from vertexai import init
            from vertexai.generative_models import Content, GenerationConfig, GenerativeModel, Part
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        if not self._initialized:
            init(project=self._project, location=self._location)
            self._initialized = True
        generative_model = GenerativeModel(model, system_instruction=system_instruction)
        chat = generative_model.start_chat(
            history=[Content(role=item["role"], parts=[Part.from_text(item["text"])]) for item in history]
        )
        responses = await chat.send_message_async(
            message,
            generation_config=GenerationConfig(max_output_tokens=max_tokens, temperature=temperature),
            stream=True,
        )
        async for response in responses:
            yield response


def _chunk_text(response: Any) -> str:
    # Blocked or empty candidates raise on .text; treat them as no content.
    try:
        return response.text or ""
    except (ValueError, AttributeError, IndexError):
        return ""


class GeminiVertexProvider(VendorAdapter):
    vendor = Vendor.GOOGLE

    def __init__(self, client: VertexChatClient | None = None, *, stream_timeout_s: float | None = None) -> None:
        self._settings = get_settings()
        super().__init__(stream_timeout_s=stream_timeout_s or self._settings.vendor_stream_timeout_s)
        self._client = client

    def _validate_config(self) -> tuple[str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if missing:
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        return project, location

    def _get_client(self) -> VertexChatClient:
        if self._client is None:
            project, location = self._validate_config()
            self._client = _VertexSDKClient(project, location)
        return self._client

    def _map_exception(self, exc: Exception) -> RelayError:
        if isinstance(exc, RelayError):
            return exc
        try:
            from google.api_core.exceptions import (
                DeadlineExceeded,
                GoogleAPICallError,
                PermissionDenied,
                Unauthenticated,
            )
            from google.auth.exceptions import DefaultCredentialsError, RefreshError
        except Exception:  # pragma: no cover - import errors are environment-specific
            return VendorError("vertex request failed", vendor=self.vendor.value)

        if isinstance(exc, (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated)):
            logger.warning("vertex_auth_error hint=run `gcloud auth application-default login`")
            return VendorAuthError("vertex auth failed", vendor=self.vendor.value)
        if isinstance(exc, DeadlineExceeded):
            return VendorTimeoutError("vertex request timed out", vendor=self.vendor.value)
        if isinstance(exc, GoogleAPICallError):
            return VendorError("vertex request failed", vendor=self.vendor.value, status_code=exc.code)
        return VendorError("vertex request failed", vendor=self.vendor.value)

    async def _stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        client = self._get_client()
        history, message = build_chat_history(conversation_turns(request))
        parts: list[str] = []
        usage_metadata = None
        async for response in client.stream_chat(
            model=request.model,
            system_instruction=merge_system_prompt(request),
            history=history,
            message=message,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        ):
            metadata = getattr(response, "usage_metadata", None)
            if metadata is not None and getattr(metadata, "prompt_token_count", 0):
                usage_metadata = metadata
            text = _chunk_text(response)
            if text:
                # Yield token deltas immediately to preserve streaming behavior.
                parts.append(text)
                yield TokenEvent(text)

        if usage_metadata is not None:
            yield DoneEvent(
                TokenUsage(
                    input_tokens=int(usage_metadata.prompt_token_count or 0),
                    output_tokens=int(getattr(usage_metadata, "candidates_token_count", 0) or 0),
                )
            )
        else:
            yield DoneEvent(estimate_usage(request, "".join(parts)))
