"""
LLM provider integration (Ollama, OpenAI, Anthropic).
Each adapter translates canonical chat messages into its backend's wire format
and the backend's reply back into a ProviderReply.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type

import anthropic
import httpx
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from config import HubConfig, get_config
from errors import UpstreamError
from models import ChatMessage, FileAttachment, ProviderId

logger = logging.getLogger(__name__)

# Anthropic has no model discovery endpoint we rely on
ANTHROPIC_FALLBACK_MODELS = [
    "claude-3-5-sonnet-20241022",
    "claude-3-opus-20240229",
    "claude-3-haiku-20240307",
]
OPENAI_CHAT_MODEL_MARKER = "gpt"


@dataclass(frozen=True)
class ProviderReply:
    text: str
    model_id: str


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from either a decoded JSON dict or an SDK response object."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _last_user_index(messages: List[dict]) -> int:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].get("role") == "user":
            return index
    return len(messages) - 1


def _data_uri(attachment: FileAttachment) -> str:
    return f"data:{attachment.mime_type};base64,{attachment.data}"


def _strip_suffix(url: str, suffixes: List[str]) -> str:
    url = url.rstrip("/")
    for suffix in suffixes:
        if url.endswith(suffix):
            return url[: -len(suffix)]
    return url


def _sdk_error_message(exc: Exception) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return str(getattr(exc, "message", None) or exc)


def _http_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    text = response.text.strip()
    return text[:500] if text else response.reason_phrase


async def _aclose(client: Any) -> None:
    close = getattr(client, "close", None)
    if close is not None:
        await close()


class ProviderAdapter:
    """Base class: one subclass per ProviderId."""

    provider_id: ProviderId
    label = ""
    requires_api_key = True
    # True when PDFs can be forwarded as binary documents
    native_documents = False

    def __init__(self, config: Optional[HubConfig] = None):
        self.config = config or get_config()

    def default_endpoint(self) -> str:
        raise NotImplementedError

    async def send(
        self,
        *,
        endpoint: Optional[str],
        api_key: str,
        model: str,
        messages: List[ChatMessage],
        attachments: List[FileAttachment],
    ) -> ProviderReply:
        raise NotImplementedError

    async def list_models(self, *, endpoint: Optional[str], api_key: str) -> List[str]:
        raise NotImplementedError

    async def _bounded(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.config.llm_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"{self.provider_id.value} request timed out after {self.config.llm_timeout_seconds}s")
            raise UpstreamError(504, f"{self.label} request timed out")


class OllamaAdapter(ProviderAdapter):
    provider_id = ProviderId.OLLAMA
    label = "Ollama (Local)"
    requires_api_key = False

    def __init__(self, config: Optional[HubConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self._transport = transport

    def default_endpoint(self) -> str:
        return self.config.ollama_endpoint

    def _api_base(self, endpoint: Optional[str]) -> str:
        base = (endpoint or self.default_endpoint()).rstrip("/")
        return base if base.endswith("/api") else f"{base}/api"

    def build_payload(self, model: str, messages: List[ChatMessage], attachments: List[FileAttachment]) -> Dict[str, Any]:
        wire = [{"role": m.role, "content": m.content} for m in messages]
        images = [a.data for a in attachments if a.is_image or a.is_pdf]
        if images and wire:
            wire[_last_user_index(wire)]["images"] = images
        return {"model": model, "messages": wire, "stream": False}

    def parse_response(self, payload: Any) -> ProviderReply:
        message = _field(payload, "message") or {}
        return ProviderReply(
            text=_field(message, "content") or "",
            model_id=_field(payload, "model") or "",
        )

    async def _request_json(self, method: str, url: str, **kwargs) -> Any:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.config.llm_timeout_seconds) as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(exc.response.status_code, _http_error_message(exc.response)) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamError(504, f"Request to {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(502, str(exc) or exc.__class__.__name__) from exc
        except ValueError as exc:
            raise UpstreamError(502, "Ollama returned a non-JSON response") from exc

    async def send(self, *, endpoint, api_key, model, messages, attachments) -> ProviderReply:
        payload = self.build_payload(model, messages, attachments)
        data = await self._request_json("POST", f"{self._api_base(endpoint)}/chat", json=payload)
        reply = self.parse_response(data)
        return ProviderReply(text=reply.text, model_id=reply.model_id or model)

    async def list_models(self, *, endpoint, api_key) -> List[str]:
        data = await self._request_json("GET", f"{self._api_base(endpoint)}/tags")
        models = _field(data, "models") or []
        return [m["name"] for m in models if isinstance(m, dict) and m.get("name")]


class OpenAIAdapter(ProviderAdapter):
    provider_id = ProviderId.OPENAI
    label = "OpenAI"

    def __init__(self, config: Optional[HubConfig] = None, client_factory: Callable[..., Any] = AsyncOpenAI):
        super().__init__(config)
        self._client_factory = client_factory

    def default_endpoint(self) -> str:
        return self.config.openai_endpoint

    def _client(self, endpoint: Optional[str], api_key: str):
        if not api_key:
            raise UpstreamError(401, "OpenAI API key is required")
        base_url = _strip_suffix(endpoint or self.default_endpoint(), ["/chat/completions", "/models"])
        return self._client_factory(api_key=api_key, base_url=base_url, max_retries=0)

    def build_messages(self, messages: List[ChatMessage], attachments: List[FileAttachment]) -> List[dict]:
        wire = [{"role": m.role, "content": [{"type": "text", "text": m.content}]} for m in messages]
        images = [a for a in attachments if a.is_image]
        if images and wire:
            blocks = wire[_last_user_index(wire)]["content"]
            for image in images:
                blocks.append({"type": "image_url", "image_url": {"url": _data_uri(image)}})
        return wire

    def parse_response(self, response: Any) -> ProviderReply:
        choices = _field(response, "choices") or []
        text = ""
        if choices:
            message = _field(choices[0], "message")
            text = _field(message, "content") or ""
        return ProviderReply(text=text, model_id=_field(response, "model") or "")

    async def send(self, *, endpoint, api_key, model, messages, attachments) -> ProviderReply:
        client = self._client(endpoint, api_key)
        try:
            response = await self._bounded(
                client.chat.completions.create(model=model, messages=self.build_messages(messages, attachments))
            )
        except openai.APIStatusError as exc:
            raise UpstreamError(exc.status_code, _sdk_error_message(exc)) from exc
        except openai.APITimeoutError as exc:
            raise UpstreamError(504, "OpenAI request timed out") from exc
        except openai.APIConnectionError as exc:
            raise UpstreamError(502, _sdk_error_message(exc)) from exc
        finally:
            await _aclose(client)
        reply = self.parse_response(response)
        return ProviderReply(text=reply.text, model_id=reply.model_id or model)

    async def list_models(self, *, endpoint, api_key) -> List[str]:
        client = self._client(endpoint, api_key)
        try:
            page = await self._bounded(client.models.list())
        except openai.APIStatusError as exc:
            raise UpstreamError(exc.status_code, _sdk_error_message(exc)) from exc
        except openai.APIConnectionError as exc:
            raise UpstreamError(502, _sdk_error_message(exc)) from exc
        finally:
            await _aclose(client)
        ids = [_field(m, "id") or "" for m in (_field(page, "data") or [])]
        return [model_id for model_id in ids if OPENAI_CHAT_MODEL_MARKER in model_id]


class AnthropicAdapter(ProviderAdapter):
    provider_id = ProviderId.ANTHROPIC
    label = "Anthropic"
    native_documents = True

    def __init__(self, config: Optional[HubConfig] = None, client_factory: Callable[..., Any] = AsyncAnthropic):
        super().__init__(config)
        self._client_factory = client_factory

    def default_endpoint(self) -> str:
        return self.config.anthropic_endpoint

    def _client(self, endpoint: Optional[str], api_key: str):
        if not api_key:
            raise UpstreamError(401, "Anthropic API key is required")
        base_url = _strip_suffix(endpoint or self.default_endpoint(), ["/v1/messages", "/v1"])
        return self._client_factory(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            default_headers={"anthropic-version": self.config.anthropic_version},
        )

    def build_messages(self, messages: List[ChatMessage], attachments: List[FileAttachment]) -> List[dict]:
        wire = [{"role": m.role, "content": [{"type": "text", "text": m.content}]} for m in messages]
        if not wire:
            return wire
        blocks = wire[_last_user_index(wire)]["content"]
        for attachment in attachments:
            if attachment.is_image:
                blocks.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": attachment.mime_type, "data": attachment.data},
                })
            elif attachment.is_pdf:
                blocks.append({
                    "type": "document",
                    "source": {"type": "base64", "media_type": "application/pdf", "data": attachment.data},
                })
        return wire

    def parse_response(self, response: Any) -> ProviderReply:
        blocks = _field(response, "content") or []
        texts = [_field(block, "text") or "" for block in blocks if _field(block, "type") == "text"]
        return ProviderReply(text="\n".join(texts), model_id=_field(response, "model") or "")

    async def send(self, *, endpoint, api_key, model, messages, attachments) -> ProviderReply:
        client = self._client(endpoint, api_key)
        try:
            response = await self._bounded(
                client.messages.create(
                    model=model,
                    max_tokens=self.config.anthropic_max_tokens,
                    messages=self.build_messages(messages, attachments),
                )
            )
        except anthropic.APIStatusError as exc:
            raise UpstreamError(exc.status_code, _sdk_error_message(exc)) from exc
        except anthropic.APITimeoutError as exc:
            raise UpstreamError(504, "Anthropic request timed out") from exc
        except anthropic.APIConnectionError as exc:
            raise UpstreamError(502, _sdk_error_message(exc)) from exc
        finally:
            await _aclose(client)
        reply = self.parse_response(response)
        return ProviderReply(text=reply.text, model_id=reply.model_id or model)

    async def list_models(self, *, endpoint, api_key) -> List[str]:
        return list(ANTHROPIC_FALLBACK_MODELS)


PROVIDER_ADAPTERS: Dict[ProviderId, Type[ProviderAdapter]] = {
    ProviderId.OLLAMA: OllamaAdapter,
    ProviderId.OPENAI: OpenAIAdapter,
    ProviderId.ANTHROPIC: AnthropicAdapter,
}


def get_adapter(provider_id, config: Optional[HubConfig] = None) -> ProviderAdapter:
    """Instantiate the adapter for a provider id (raises ValueError for unknown ids)."""
    return PROVIDER_ADAPTERS[ProviderId(provider_id)](config=config)


def available_providers() -> List[Dict[str, Any]]:
    config = get_config()
    return [
        {
            "id": provider_id.value,
            "label": adapter_cls.label,
            "requires_api_key": adapter_cls.requires_api_key,
            "endpoint": adapter_cls(config=config).default_endpoint(),
        }
        for provider_id, adapter_cls in PROVIDER_ADAPTERS.items()
    ]


async def list_models(provider_id, endpoint: Optional[str], api_key: str) -> List[str]:
    adapter = get_adapter(provider_id)
    models = await adapter.list_models(endpoint=endpoint, api_key=api_key)
    logger.info(f"Listed {len(models)} models for provider={adapter.provider_id.value}")
    return models
