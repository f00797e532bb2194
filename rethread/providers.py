"""Translation provider abstractions."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Sequence

from .errors import (
    BackendError,
    ErrorCategory,
    TranslationProviderConfigurationError,
)

if TYPE_CHECKING:
    from .configuration import RethreadConfig

logger = logging.getLogger(__name__)


class TranslationProvider(ABC):
    """Abstract adapter for translation backends.

    Capability attributes steer batch planning: ``preferred_strategy`` is used
    when no strategy is configured, ``optimal_batch_size`` and
    ``max_complexity`` size smart batches.
    """

    name = "base"
    preferred_strategy = "smart"
    optimal_batch_size = 25
    max_complexity = 400

    @abstractmethod
    async def translate_batch(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
        mode: str = "standard",
    ) -> List[Any]:
        """Translate texts and return one item per text in submission order.

        Items are ``{"id": ..., "text": ...}`` dictionaries or plain strings.
        Failures raise :class:`BackendError` tagged with an error category.
        """


class EchoTranslationProvider(TranslationProvider):
    """A provider that returns the original text (useful for testing)."""

    name = "echo"

    async def translate_batch(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
        mode: str = "standard",
    ) -> List[Any]:
        return [{"id": index, "text": text} for index, text in enumerate(texts)]


def classify_backend_exception(exc: Exception) -> BackendError:
    """Map an OpenAI SDK exception onto a categorised BackendError."""

    if isinstance(exc, BackendError):
        return exc

    import openai

    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        category = ErrorCategory.AUTH
    elif isinstance(exc, openai.RateLimitError):
        category = ErrorCategory.QUOTA
    elif isinstance(exc, openai.APITimeoutError):
        category = ErrorCategory.TIMEOUT
    elif isinstance(exc, (openai.APIConnectionError, openai.APIStatusError)):
        category = ErrorCategory.NETWORK
    else:
        category = ErrorCategory.OTHER
    return BackendError(f"Translation service unavailable: {exc}", category=category)


class OpenAITranslationProvider(TranslationProvider):
    """Translation provider that uses the OpenAI Responses API."""

    name = "openai"
    DEFAULT_MODEL = "gpt-5-mini"

    def __init__(
        self,
        *,
        settings: "RethreadConfig | None" = None,
        model: str | None = None,
        debug: bool = False,
        client: Any = None,
    ) -> None:
        from .configuration import get_settings, validate_provider_settings

        self.debug = debug
        self.settings = settings if settings is not None else get_settings()
        self.provider_kind = self.settings.LLM_PROVIDER
        if client is not None:
            self._client, self._default_model = client, self.DEFAULT_MODEL
        else:
            validate_provider_settings(self.settings)
            self._client, self._default_model = self._build_client()
        self.model = model or self._default_model

    def _build_client(self) -> tuple[Any, str]:
        if self.provider_kind == "azure_openai":
            return self._build_azure_client()

        return self._build_openai_client()

    def _build_openai_client(self) -> tuple[Any, str]:
        try:
            from openai import AsyncOpenAI
        except ImportError as exc:  # pragma: no cover - import guard
            raise TranslationProviderConfigurationError(
                "OpenAI Python SDK not installed. Install with `pip install openai`."
            ) from exc

        return AsyncOpenAI(api_key=self.settings.OPENAI_API_KEY), self.DEFAULT_MODEL

    def _build_azure_client(self) -> tuple[Any, str]:
        try:
            from openai import AsyncAzureOpenAI
        except ImportError as exc:  # pragma: no cover - import guard
            raise TranslationProviderConfigurationError(
                "OpenAI Python SDK not installed. Install with `pip install openai`."
            ) from exc

        client = AsyncAzureOpenAI(
            api_key=self.settings.AZURE_OPENAI_API_KEY,
            api_version=self.settings.AZURE_OPENAI_API_VERSION,
            azure_endpoint=self.settings.AZURE_OPENAI_ENDPOINT,
        )
        return client, self.settings.AZURE_OPENAI_DEPLOYMENT_NAME  # type: ignore[return-value]

    def build_prompts(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
        mode: str,
    ) -> tuple[str, Dict[str, Any]]:
        system_prompt = (
            "Translate each numbered line segment into the target language. "
            "Segments are single lines cut from longer texts, so a segment may "
            "end mid-sentence. Keep placeholders, numbers, URLs and markup as they are. "
            "Reply with JSON only, shaped as "
            '{"translations": [{"id": 0, "text": "..."}]}, '
            "with exactly one entry per input segment and the same ids. "
            "Do not merge or split segments. "
            "Do not add commentary. Do not wrap the JSON in markdown code fences."
        )
        if mode == "select_element":
            system_prompt += (
                " The segments are consecutive pieces of one page element; keep "
                "their order and translate each one on its own."
            )
        user_payload = {
            "target_language": target_language,
            "source_language": source_language,
            "segments": [{"id": index, "text": text} for index, text in enumerate(texts)],
        }
        return system_prompt, user_payload

    async def translate_batch(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
        mode: str = "standard",
    ) -> List[Any]:
        if not texts:
            return []

        system_prompt, user_payload = self.build_prompts(
            texts,
            source_language=source_language,
            target_language=target_language,
            mode=mode,
        )
        self._log_debug("provider.request.system_prompt", system_prompt)
        self._log_debug("provider.request.payload", user_payload)

        items = await self._invoke_model(
            system_prompt=system_prompt,
            user_payload=user_payload,
            model=self.model,
        )
        self._log_debug("provider.response.items", items)
        return items

    async def _invoke_model(
        self,
        *,
        system_prompt: str,
        user_payload: dict,
        model: str,
    ) -> list[Any]:
        """Call the OpenAI Responses API and return structured JSON data."""

        try:
            response = await self._client.responses.create(
                model=model,
                input=[
                    {
                        "role": "system",
                        "content": [
                            {"type": "input_text", "text": system_prompt},
                        ],
                    },
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "input_text",
                                "text": json.dumps(user_payload, ensure_ascii=False),
                            }
                        ],
                    },
                ],
            )
        except Exception as exc:  # pragma: no cover - network call
            raise classify_backend_exception(exc) from exc
        self._log_debug("provider.response.raw", self._safe_dump_response(response))
        return self._extract_translations(response)

    def _log_debug(self, label: str, payload: Any) -> None:
        """Log full payloads when provider debugging is enabled."""

        if not self.debug:
            return
        try:
            if isinstance(payload, (dict, list)):
                message = json.dumps(payload, ensure_ascii=False, indent=2)
            else:
                message = str(payload)
        except (TypeError, ValueError):
            message = repr(payload)
        logger.debug("%s:\n%s", label, message)

    def _safe_dump_response(self, response: Any) -> Any:
        """Best-effort conversion of SDK response objects into JSON-friendly data."""

        dump = getattr(response, "model_dump", None)
        if callable(dump):
            try:
                return dump()
            except (TypeError, ValueError):
                pass
        return str(response)

    def _strip_code_fence(self, text: str) -> str:
        """Remove leading/trailing markdown code fences if present."""

        stripped = text.strip()
        if not stripped.startswith("```"):
            return stripped

        first_newline = stripped.find("\n")
        if first_newline == -1:
            return stripped
        body = stripped[first_newline + 1 :]
        closing_index = body.rfind("```")
        if closing_index != -1:
            body = body[:closing_index]
        return body.strip()

    def _extract_translations(self, response: Any) -> list[Any]:
        """Extract the structured translation list from a Responses API result."""

        for item in getattr(response, "output", None) or []:
            for part in getattr(item, "content", None) or []:
                text_value = getattr(part, "text", None)
                if text_value:
                    return self._normalise_translations(str(text_value))

        output_text = getattr(response, "output_text", None)
        if output_text:
            return self._normalise_translations(str(output_text))

        raise BackendError(
            "Translation provider response empty or unrecognised.",
            category=ErrorCategory.MALFORMED_RESPONSE,
        )

    def _normalise_translations(self, payload: Any) -> list[Any]:
        """Normalise raw payloads into a list of translation items."""

        if isinstance(payload, str):
            payload = self._strip_code_fence(payload)
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise BackendError(
                    f"Translation provider returned invalid JSON: {exc}",
                    category=ErrorCategory.MALFORMED_RESPONSE,
                ) from exc

        if isinstance(payload, dict):
            translations = payload.get("translations")
            if isinstance(translations, list):
                return translations

        if isinstance(payload, list):
            return payload

        raise BackendError(
            "Translation provider response malformed: could not find translations list.",
            category=ErrorCategory.MALFORMED_RESPONSE,
        )


class LegacyOpenAITranslationProvider(OpenAITranslationProvider):
    """Translation provider that uses the Chat Completions API for compatibility."""

    name = "legacy-openai"

    async def _invoke_model(
        self,
        *,
        system_prompt: str,
        user_payload: dict,
        model: str,
    ) -> list[Any]:
        """Call the Chat Completions API and return structured JSON data."""

        try:
            response = await self._client.chat.completions.create(
                model=model,
                temperature=0,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {
                        "role": "user",
                        "content": json.dumps(user_payload, ensure_ascii=False),
                    },
                ],
            )
        except Exception as exc:  # pragma: no cover - network call
            raise classify_backend_exception(exc) from exc
        self._log_debug("provider.response.raw", self._safe_dump_response(response))

        content: str | None = None
        for choice in getattr(response, "choices", None) or []:
            message = getattr(choice, "message", None)
            message_content = getattr(message, "content", None) if message else None
            if message_content:
                content = str(message_content)
                break

        if content is None:
            raise BackendError(
                "Translation provider response empty or unrecognised.",
                category=ErrorCategory.MALFORMED_RESPONSE,
            )
        return self._normalise_translations(content)


def build_provider(
    name: str | None,
    *,
    settings: "RethreadConfig | None" = None,
    model: str | None = None,
    debug: bool = False,
) -> TranslationProvider:
    """Factory to create providers by name."""

    normalized = (name or "openai").strip().lower()
    if normalized in {"openai", "gpt", "default"}:
        return OpenAITranslationProvider(settings=settings, model=model, debug=debug)
    if normalized in {"legacy-openai", "legacy_openai", "legacy", "openai-legacy"}:
        return LegacyOpenAITranslationProvider(settings=settings, model=model, debug=debug)
    if normalized in {"echo", "noop", "mock"}:
        return EchoTranslationProvider()
    raise TranslationProviderConfigurationError(
        f"Unknown translation provider '{name}'."
    )
