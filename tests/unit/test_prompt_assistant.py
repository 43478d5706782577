import json

import httpx
import pytest
from conftest import make_png_bytes

from imageflow.application.use_cases.prompt_assistant import PromptAssistantUseCase
from imageflow.domain.entities.pipeline import UploadedFile
from imageflow.domain.errors import ExternalServiceError, NotFoundError
from imageflow.infrastructure.ai.openrouter_client import OpenRouterClient, extract_text


def completion(content, model="vision-model"):
    return {
        "model": model,
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def make_llm(handler):
    return OpenRouterClient(api_key="key", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_generate_prompt_sends_both_images():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=completion("  Turn the head further right.  "))

    suggestion = await make_llm(handler).generate_prompt(
        "data:image/png;base64,AA", "data:image/jpeg;base64,BB", [90], "keep the smile"
    )

    assert suggestion.prompt == "Turn the head further right."
    assert suggestion.model == "vision-model"
    assert suggestion.usage["total_tokens"] == 15
    body = seen[0]
    assert body["temperature"] == 0.4
    assert body["max_tokens"] == 320
    assert body["top_p"] == 0.9
    user_parts = body["messages"][1]["content"]
    assert [p["type"] for p in user_parts] == ["text", "image_url", "image_url"]
    assert user_parts[1]["image_url"]["url"] == "data:image/png;base64,AA"
    assert "90 degrees" in user_parts[0]["text"]
    assert "keep the smile" in user_parts[0]["text"]


@pytest.mark.asyncio
async def test_missing_key():
    client = OpenRouterClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    client.api_key = ""
    with pytest.raises(ExternalServiceError) as info:
        await client.generate_prompt("a", "b")
    assert info.value.status_code == 500


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler,status",
    [
        (lambda r: httpx.Response(429, text="rate limited"), 429),
        (lambda r: httpx.Response(200, json=completion("")), 502),
    ],
)
async def test_upstream_failures(handler, status):
    with pytest.raises(ExternalServiceError) as info:
        await make_llm(handler).generate_prompt("a", "b")
    assert info.value.status_code == status


@pytest.mark.asyncio
async def test_timeout_and_connect_errors():
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ExternalServiceError) as info:
        await make_llm(timeout).generate_prompt("a", "b")
    assert info.value.status_code == 504

    with pytest.raises(ExternalServiceError) as info:
        await make_llm(refused).generate_prompt("a", "b")
    assert info.value.status_code == 503


def test_extract_text_shapes():
    assert extract_text("plain") == "plain"
    assert extract_text([{"type": "text", "text": "a"}, "b", {"type": "image"}]) == "a b"
    assert extract_text({"text": "c"}) == "c"
    assert extract_text(None) == ""


@pytest.mark.asyncio
async def test_use_case_reads_original_and_version(service):
    original = service.upload("alice", UploadedFile("cat.png", make_png_bytes(), "image/png"))
    version = await service.process("alice", original.id, "nano-banana-edit", angles=[90])
    calls = []

    class StubLLM:
        async def generate_prompt(self, original_uri, reference_uri, **kwargs):
            calls.append((original_uri, reference_uri, kwargs))
            return type(
                "Suggestion", (), {"prompt": "fix", "model": "m", "latency_ms": 5, "usage": {}}
            )()

    use_case = PromptAssistantUseCase(service.storage, service.repository, StubLLM())
    result = await use_case.execute("alice", original.id, version.id, [90], "notes")

    assert result.prompt == "fix"
    assert result.reference_version_id == version.id
    original_uri, reference_uri, kwargs = calls[0]
    assert original_uri.startswith("data:image/png;base64,")
    assert reference_uri.startswith("data:image/jpeg;base64,")
    assert kwargs["target_angles"] == [90]

    with pytest.raises(NotFoundError):
        await use_case.execute("alice", original.id, "missing-version")
    with pytest.raises(NotFoundError):
        await use_case.execute("mallory", original.id, version.id)
