import json
import logging
from types import SimpleNamespace

import httpx
import openai
import pytest

from rethread.configuration import RethreadConfig
from rethread.errors import BackendError, ErrorCategory, TranslationProviderConfigurationError
from rethread.providers import (
    EchoTranslationProvider,
    LegacyOpenAITranslationProvider,
    OpenAITranslationProvider,
    build_provider,
    classify_backend_exception,
)


class FakeEndpoint:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def responses_client(text):
    response = SimpleNamespace(
        output=[SimpleNamespace(content=[SimpleNamespace(text=text)])]
    )
    return SimpleNamespace(responses=FakeEndpoint(response))


def chat_client(content):
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
    )
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeEndpoint(response)))


@pytest.mark.asyncio
async def test_echo_provider_returns_texts_unchanged():
    items = await EchoTranslationProvider().translate_batch(
        ["a", "b"], source_language=None, target_language="de"
    )

    assert items == [{"id": 0, "text": "a"}, {"id": 1, "text": "b"}]


@pytest.mark.asyncio
async def test_responses_provider_sends_ids_and_parses_translations():
    client = responses_client('{"translations": [{"id": 0, "text": "Hallo"}, {"id": 1, "text": "Welt"}]}')
    provider = OpenAITranslationProvider(settings=RethreadConfig(), client=client, model="test-model")

    items = await provider.translate_batch(
        ["Hello", "World"], source_language="en", target_language="de"
    )

    assert items == [{"id": 0, "text": "Hallo"}, {"id": 1, "text": "Welt"}]
    request = client.responses.requests[0]
    assert request["model"] == "test-model"
    payload = json.loads(request["input"][1]["content"][0]["text"])
    assert payload["segments"] == [{"id": 0, "text": "Hello"}, {"id": 1, "text": "World"}]
    assert payload["target_language"] == "de"


@pytest.mark.asyncio
async def test_legacy_provider_strips_code_fences():
    client = chat_client('```json\n[{"id": 0, "text": "Hallo"}]\n```')
    provider = LegacyOpenAITranslationProvider(settings=RethreadConfig(), client=client)

    items = await provider.translate_batch(["Hello"], source_language=None, target_language="de")

    assert items == [{"id": 0, "text": "Hallo"}]
    assert client.chat.completions.requests[0]["temperature"] == 0


@pytest.mark.asyncio
async def test_invalid_json_is_a_malformed_response():
    provider = OpenAITranslationProvider(settings=RethreadConfig(), client=responses_client("not json"))

    with pytest.raises(BackendError) as excinfo:
        await provider.translate_batch(["Hello"], source_language=None, target_language="de")

    assert excinfo.value.category is ErrorCategory.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_empty_response_is_a_malformed_response():
    client = SimpleNamespace(responses=FakeEndpoint(SimpleNamespace(output=[], output_text="")))
    provider = OpenAITranslationProvider(settings=RethreadConfig(), client=client)

    with pytest.raises(BackendError) as excinfo:
        await provider.translate_batch(["Hello"], source_language=None, target_language="de")

    assert excinfo.value.category is ErrorCategory.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_sdk_errors_are_classified():
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")
    client = SimpleNamespace(responses=FakeEndpoint(error=openai.APITimeoutError(request=request)))
    provider = OpenAITranslationProvider(settings=RethreadConfig(), client=client)

    with pytest.raises(BackendError) as excinfo:
        await provider.translate_batch(["Hello"], source_language=None, target_language="de")

    assert excinfo.value.category is ErrorCategory.TIMEOUT


def test_classify_keeps_backend_errors_and_tags_unknown_ones():
    original = BackendError("quota", category=ErrorCategory.QUOTA)

    assert classify_backend_exception(original) is original
    assert classify_backend_exception(ValueError("odd")).category is ErrorCategory.OTHER


@pytest.mark.asyncio
async def test_debug_mode_logs_payloads(caplog):
    provider = OpenAITranslationProvider(
        settings=RethreadConfig(),
        client=responses_client('[{"id": 0, "text": "Hallo"}]'),
        debug=True,
    )

    with caplog.at_level(logging.DEBUG, logger="rethread.providers"):
        await provider.translate_batch(["Hello"], source_language=None, target_language="de")

    assert "provider.request.payload" in caplog.text
    assert "provider.response.items" in caplog.text


def test_select_element_mode_adjusts_the_prompt():
    provider = OpenAITranslationProvider(settings=RethreadConfig(), client=responses_client("[]"))

    standard, _ = provider.build_prompts(["a"], source_language=None, target_language="de", mode="standard")
    selected, _ = provider.build_prompts(["a"], source_language=None, target_language="de", mode="select_element")

    assert selected.startswith(standard)
    assert selected != standard


def test_build_provider_by_name():
    assert isinstance(build_provider("echo"), EchoTranslationProvider)

    with pytest.raises(TranslationProviderConfigurationError):
        build_provider("carrier-pigeon")


def test_openai_provider_requires_credentials():
    with pytest.raises(TranslationProviderConfigurationError) as excinfo:
        build_provider("openai", settings=RethreadConfig())

    assert "OPENAI_API_KEY" in str(excinfo.value)


def test_azure_provider_lists_missing_settings():
    settings = RethreadConfig(LLM_PROVIDER="azure-openai", AZURE_OPENAI_API_KEY="key")

    with pytest.raises(TranslationProviderConfigurationError) as excinfo:
        build_provider("openai", settings=settings)

    assert "AZURE_OPENAI_ENDPOINT" in str(excinfo.value)
