"""Provider construction helpers."""

import httpx

from turnloop.conversations.store import ConversationStore
from turnloop.errors import CredentialError, ErrorCode
from turnloop.providers.anthropic_messages import AnthropicMessagesAdapter
from turnloop.providers.base import ProviderAdapter
from turnloop.providers.openai_responses import OpenAIResponsesAdapter

_ALLOWED_PROVIDERS = {"openai", "anthropic"}
_NOT_CONFIGURED = {
    "openai": ErrorCode.OPENAI_NOT_CONFIGURED,
    "anthropic": ErrorCode.ANTHROPIC_NOT_CONFIGURED,
}


def resolve_provider_id(model: str) -> str:
    value = model.strip().lower()
    if value.startswith("claude") or value.startswith("anthropic/"):
        return "anthropic"
    return "openai"


def build_adapter(
    provider_id: str,
    api_key: str | None,
    store: ConversationStore,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    if provider_id not in _ALLOWED_PROVIDERS:
        raise CredentialError(f"unknown provider '{provider_id}'", code=ErrorCode.CONFIG_ERROR)
    if not api_key:
        code = _NOT_CONFIGURED[provider_id]
        raise CredentialError(f"{provider_id} API key not configured", code=code)
    if provider_id == "anthropic":
        return AnthropicMessagesAdapter(api_key, store, transport=transport)
    return OpenAIResponsesAdapter(api_key, transport=transport)
