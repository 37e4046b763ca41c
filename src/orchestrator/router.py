"""Provider Router.

Resolves which LLM backend, credential and model serve a request and keeps
the retry/fallback policy independent of any one provider:

1. Transient failures are retried a bounded number of times (tenacity)
2. Any remaining failure moves on to the configured fallback, once
3. The last ProviderError propagates
"""

import asyncio
from typing import Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from shared.config import LLMSettings
from shared.errors import ProviderError, ProviderErrorKind
from shared.logging import get_logger
from shared.models import ConversationTurn, LLMResponse, ProviderCredential
from orchestrator.llm import LLMProvider, create_llm_provider

logger = get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class ProviderRouter:
    """
    Routes completions to LLM transports.

    Transports are created lazily per provider id and shared between
    sessions; credentials travel with each call and are never stored.
    """

    def __init__(
        self,
        settings: LLMSettings,
        providers: Optional[dict[str, LLMProvider]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff: float = 0.5
    ) -> None:
        """
        Initialize the router.

        Args:
            settings: LLM settings (credential chain, timeout, attempts)
            providers: Pre-built transports keyed by provider id
            transport: Optional httpx transport for created providers
            backoff: Exponential back-off multiplier in seconds
        """
        self.settings = settings
        self.backoff = backoff
        self._providers: dict[str, LLMProvider] = dict(providers or {})
        self._transport = transport

    def provider(self, provider_id: str) -> LLMProvider:
        """Get or create the transport for a provider id."""
        if provider_id not in self._providers:
            try:
                self._providers[provider_id] = create_llm_provider(
                    provider_id, self.settings, self._transport
                )
            except ValueError as e:
                raise ProviderError(ProviderErrorKind.NOT_FOUND, provider_id, detail=str(e))
        return self._providers[provider_id]

    async def complete(
        self,
        messages: list[ConversationTurn],
        credential: Optional[ProviderCredential] = None,
        fallback: Optional[ProviderCredential] = None
    ) -> LLMResponse:
        """
        Obtain a model reply.

        Args:
            messages: Prompt turns
            credential: Explicit credential; defaults to the configured chain
            fallback: Explicit fallback used with an explicit credential

        Returns:
            Raw model reply

        Raises:
            ProviderError: When every target failed
        """
        if credential is not None:
            chain = [credential] + ([fallback] if fallback else [])
        else:
            chain = self.settings.credentials()

        last_error: Optional[ProviderError] = None
        for index, target in enumerate(chain):
            if last_error is not None:
                logger.warning(
                    "Falling back to next provider",
                    provider=target.provider,
                    model=target.model,
                    after=last_error.kind.value,
                )
            try:
                return await self._complete_with_retry(messages, target)
            except ProviderError as e:
                logger.warning(
                    "Provider call failed",
                    provider=target.provider,
                    model=target.model,
                    kind=e.kind.value,
                    status_code=e.status_code,
                    attempt_target=index + 1,
                )
                last_error = e

        assert last_error is not None
        raise last_error

    async def _complete_with_retry(
        self,
        messages: list[ConversationTurn],
        credential: ProviderCredential
    ) -> LLMResponse:
        provider = self.provider(credential.provider)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=5),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                response = await self._call(provider, messages, credential)
        return response

    async def _call(
        self,
        provider: LLMProvider,
        messages: list[ConversationTurn],
        credential: ProviderCredential
    ) -> LLMResponse:
        logger.debug("Calling provider", provider=credential.provider, model=credential.model)
        try:
            return await asyncio.wait_for(
                provider.complete(messages, credential),
                timeout=self.settings.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ProviderError(
                ProviderErrorKind.TRANSIENT,
                credential.provider,
                detail=f"no reply within {self.settings.timeout_seconds}s",
            )

    async def close(self) -> None:
        """Close every transport."""
        for provider in self._providers.values():
            await provider.close()
