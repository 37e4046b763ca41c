"""LLM transport layer.

Supports multiple LLM providers over plain HTTP:
- OpenAI and GitHub Models (OpenAI-compatible chat completions)
- A hosted proxy that holds a shared key (OpenAI-compatible)
- Anthropic Messages API
- Azure OpenAI
- A scripted mock for tests

Transports receive the credential with every call and never keep it.
HTTP failures are raised as ProviderError classified by status code only.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Union

import httpx

from shared.config import LLMSettings
from shared.errors import ProviderError, ProviderErrorKind
from shared.logging import get_logger
from shared.models import ConversationTurn, LLMResponse, ProviderCredential, TurnRole

logger = get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GITHUB_MODELS_BASE_URL = "https://models.inference.ai.azure.com"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

# Short model names people type, mapped to ids the Anthropic API accepts
ANTHROPIC_MODEL_ALIASES = {
    "claude-3-opus": "claude-3-opus-20240229",
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-haiku": "claude-3-haiku-20240307",
    "claude-3-5-sonnet": "claude-3-5-sonnet-20241022",
    "claude-3-5-sonnet-v2": "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku": "claude-3-5-haiku-20241022",
}

NO_RESPONSE = "No response generated"


def normalize_anthropic_model(model: str) -> str:
    """Map a short Anthropic model name to a dated API model id."""
    return ANTHROPIC_MODEL_ALIASES.get(model, model)


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    LLM Integration Rules:
    - LLM receives the prompt and nothing else
    - LLM outputs either a tool reference or a final user response
    - LLM must not access the host directly or decide approvals
    """

    name = "base"

    @abstractmethod
    async def complete(
        self,
        messages: list[ConversationTurn],
        credential: ProviderCredential
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Prompt as an ordered list of turns (system prompt first)
            credential: Provider credential for this call only

        Returns:
            LLM response with content and/or tool calls

        Raises:
            ProviderError: On any transport or HTTP failure
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class HTTPProvider(LLMProvider):
    """Shared HTTP plumbing for real providers."""

    def __init__(
        self,
        settings: LLMSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client. No credentials are stored on it."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _require_key(self, credential: ProviderCredential) -> str:
        if credential.api_key is None or not credential.api_key.get_secret_value():
            raise ProviderError(
                ProviderErrorKind.UNAUTHORIZED,
                self.name,
                detail="no API key configured",
            )
        return credential.api_key.get_secret_value()

    async def _post(
        self,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        params: Optional[dict[str, str]] = None
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(url, headers=headers, json=payload, params=params)
        except httpx.TimeoutException:
            raise ProviderError(ProviderErrorKind.TRANSIENT, self.name, detail="request timed out")
        except httpx.HTTPError as e:
            raise ProviderError(ProviderErrorKind.TRANSIENT, self.name, detail=type(e).__name__)

        if response.is_error:
            raise ProviderError.from_status(response.status_code, self.name)

        try:
            data = response.json()
        except ValueError:
            raise ProviderError(ProviderErrorKind.TRANSIENT, self.name, detail="response was not JSON")
        if not isinstance(data, dict):
            raise ProviderError(ProviderErrorKind.TRANSIENT, self.name, detail="response was not a JSON object")
        return data

    @staticmethod
    def _wire_messages(messages: list[ConversationTurn]) -> list[dict[str, str]]:
        return [{"role": m.role.value, "content": m.content} for m in messages]


class OpenAICompatibleProvider(HTTPProvider):
    """OpenAI chat completions, also spoken by GitHub Models and the hosted proxy."""

    def __init__(
        self,
        settings: LLMSettings,
        name: str = "openai",
        base_url: str = OPENAI_BASE_URL,
        key_required: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        super().__init__(settings, transport)
        self.name = name
        self.base_url = base_url
        self.key_required = key_required

    async def complete(
        self,
        messages: list[ConversationTurn],
        credential: ProviderCredential
    ) -> LLMResponse:
        """Generate completion using an OpenAI-compatible endpoint."""
        headers = {"Content-Type": "application/json"}
        if self.key_required:
            headers["Authorization"] = f"Bearer {self._require_key(credential)}"
        elif credential.api_key is not None:
            headers["Authorization"] = f"Bearer {credential.api_key.get_secret_value()}"

        base_url = credential.endpoint_overrides.get("base_url", self.base_url).rstrip("/")
        data = await self._post(
            f"{base_url}/chat/completions",
            headers,
            {
                "model": credential.model,
                "messages": self._wire_messages(messages),
                "max_tokens": self.settings.max_tokens,
                "temperature": self.settings.temperature,
            },
        )
        return self._parse(data, credential.model)

    def _parse(self, data: dict[str, Any], model: str) -> LLMResponse:
        # The hosted proxy may answer with a bare {"content": ...}
        if "choices" not in data:
            return LLMResponse(
                content=data.get("content") or NO_RESPONSE,
                provider=self.name,
                model=model,
            )

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        tool_calls = message.get("tool_calls") or None
        return LLMResponse(
            content=message.get("content") or (None if tool_calls else NO_RESPONSE),
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or ("tool_calls" if tool_calls else "stop"),
            usage=data.get("usage") or {},
            provider=self.name,
            model=model,
        )


class AzureOpenAIProvider(OpenAICompatibleProvider):
    """Azure OpenAI deployment endpoint."""

    def __init__(
        self,
        settings: LLMSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        super().__init__(settings, name="azure", base_url="", transport=transport)

    async def complete(
        self,
        messages: list[ConversationTurn],
        credential: ProviderCredential
    ) -> LLMResponse:
        """Generate completion using Azure OpenAI."""
        api_key = self._require_key(credential)
        endpoint = credential.endpoint_overrides.get("base_url")
        deployment = credential.endpoint_overrides.get("deployment_name") or credential.model
        if not endpoint:
            raise ProviderError(ProviderErrorKind.NOT_FOUND, self.name, detail="no Azure endpoint configured")

        data = await self._post(
            f"{endpoint.rstrip('/')}/openai/deployments/{deployment}/chat/completions",
            {"Content-Type": "application/json", "api-key": api_key},
            {
                "messages": self._wire_messages(messages),
                "max_tokens": self.settings.max_tokens,
                "temperature": self.settings.temperature,
            },
            params={"api-version": credential.endpoint_overrides.get("api_version", "2024-02-01")},
        )
        return self._parse(data, deployment)


class AnthropicProvider(HTTPProvider):
    """Anthropic Messages API."""

    name = "anthropic"

    async def complete(
        self,
        messages: list[ConversationTurn],
        credential: ProviderCredential
    ) -> LLMResponse:
        """Generate completion using Anthropic."""
        api_key = self._require_key(credential)
        model = normalize_anthropic_model(credential.model)
        system, chat = self._split_messages(messages)

        data = await self._post(
            credential.endpoint_overrides.get("base_url", ANTHROPIC_URL),
            {
                "Content-Type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            {
                "model": model,
                "max_tokens": self.settings.max_tokens,
                "temperature": self.settings.temperature,
                "system": system,
                "messages": chat,
            },
        )

        blocks = data.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")
        usage = data.get("usage") or {}
        return LLMResponse(
            content=text or NO_RESPONSE,
            finish_reason=data.get("stop_reason") or "stop",
            usage={k: v for k, v in usage.items() if isinstance(v, int)},
            provider=self.name,
            model=model,
        )

    @staticmethod
    def _split_messages(messages: list[ConversationTurn]) -> tuple[str, list[dict[str, str]]]:
        """
        Separate the leading system prompt and fold the rest into
        strictly alternating user/assistant messages.
        """
        system_parts: list[str] = []
        chat: list[dict[str, str]] = []

        for index, msg in enumerate(messages):
            if msg.role == TurnRole.SYSTEM and not chat and index == len(system_parts):
                system_parts.append(msg.content)
                continue

            role = "assistant" if msg.role == TurnRole.ASSISTANT else "user"
            if chat and chat[-1]["role"] == role:
                chat[-1]["content"] += "\n\n" + msg.content
            else:
                chat.append({"role": role, "content": msg.content})

        if chat and chat[0]["role"] == "assistant":
            chat.insert(0, {"role": "user", "content": "(conversation continues)"})

        return "\n\n".join(system_parts), chat


Responder = Callable[[list[ConversationTurn]], Union[LLMResponse, str]]


class MockLLMProvider(LLMProvider):
    """Mock LLM provider for testing without API calls."""

    name = "mock"

    def __init__(self, settings: Optional[LLMSettings] = None) -> None:
        self.settings = settings
        self.call_history: list[dict[str, Any]] = []
        self._queue: list[Union[LLMResponse, str, Exception]] = []
        self._responder: Optional[Responder] = None

    def set_next_response(self, response: Union[LLMResponse, str, Exception]) -> None:
        """Set the next response to return (or exception to raise)."""
        self._queue.append(response)

    def queue(self, *responses: Union[LLMResponse, str, Exception]) -> None:
        """Queue several responses, returned in order."""
        self._queue.extend(responses)

    def set_responder(self, responder: Optional[Responder]) -> None:
        """Compute replies from the prompt once the queue is empty."""
        self._responder = responder

    async def complete(
        self,
        messages: list[ConversationTurn],
        credential: ProviderCredential
    ) -> LLMResponse:
        """Return mock response."""
        self.call_history.append({"messages": list(messages), "model": credential.model})

        if self._queue:
            response = self._queue.pop(0)
        elif self._responder is not None:
            response = self._responder(messages)
        else:
            response = "This is a mock response."

        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            response = LLMResponse(content=response)
        return response.model_copy(update={"provider": self.name, "model": credential.model})


def create_llm_provider(
    name: str,
    settings: LLMSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> LLMProvider:
    """
    Factory function to create the transport for a provider id.

    Supports:
    - openai: OpenAI API
    - github: GitHub Models
    - hosted: operator-run proxy holding a shared key
    - anthropic: Anthropic Messages API
    - azure: Azure OpenAI Service
    - mock: Mock provider for testing

    Raises:
        ValueError: If provider is not supported
    """
    factories: dict[str, Callable[[], LLMProvider]] = {
        "openai": lambda: OpenAICompatibleProvider(settings, "openai", OPENAI_BASE_URL, transport=transport),
        "github": lambda: OpenAICompatibleProvider(settings, "github", GITHUB_MODELS_BASE_URL, transport=transport),
        "hosted": lambda: OpenAICompatibleProvider(
            settings, "hosted", settings.hosted_url, key_required=False, transport=transport
        ),
        "anthropic": lambda: AnthropicProvider(settings, transport),
        "azure": lambda: AzureOpenAIProvider(settings, transport),
        "mock": lambda: MockLLMProvider(settings),
    }

    factory = factories.get(name)
    if not factory:
        raise ValueError(
            f"Unsupported LLM provider: {name}. "
            f"Supported: {list(factories.keys())}"
        )

    logger.debug("Creating LLM provider", provider=name)
    return factory()
