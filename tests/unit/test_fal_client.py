import json

import httpx
import pytest

from imageflow.domain.errors import (
    ExternalServiceError,
    MalformedResponseError,
    UnsupportedOperationError,
    ValidationError,
)
from imageflow.domain.services.retry_policy import RetryPolicy
from imageflow.infrastructure.ai.base import is_retryable_ai_error
from imageflow.infrastructure.ai.fal_client import FalAIClient, extract_image_url

RESULT_URL = "https://cdn.test/result.jpg"


class FalStub:
    """Records requests and answers like the fal.run endpoint plus its CDN."""

    def __init__(self, status=200, payload=None, download_statuses=(200,), download_error=None):
        self.status = status
        self.payload = payload if payload is not None else {"images": [{"url": RESULT_URL}]}
        self.download_statuses = list(download_statuses)
        self.download_error = download_error
        self.requests: list[httpx.Request] = []
        self.downloads = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            return httpx.Response(
                self.status, json=self.payload, headers={"x-fal-request-id": "req-42"}
            )
        self.downloads += 1
        if self.download_error is not None:
            raise self.download_error(request)
        status = self.download_statuses.pop(0) if len(self.download_statuses) > 1 else self.download_statuses[0]
        return httpx.Response(status, content=b"jpeg-bytes" if status == 200 else b"")


def make_client(stub, **kwargs):
    return FalAIClient(
        api_key="secret",
        base_url="https://fal.test",
        transport=httpx.MockTransport(stub),
        download_policy=RetryPolicy(max_attempts=5, base_delay=0.0),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_nano_banana_request_shape():
    stub = FalStub()
    client = make_client(stub)

    result = await client.transform(
        b"src", "nano-banana-edit", {"prompt": "rotate", "angle": 90, "seed": "7", "guidance": 3}
    )

    post = stub.requests[0]
    assert str(post.url) == "https://fal.test/fal-ai/nano-banana/edit"
    assert post.headers["Authorization"] == "Key secret"
    body = json.loads(post.content)
    assert body["prompt"] == "rotate"
    assert body["num_images"] == 1
    assert body["image_urls"][0].startswith("data:image/jpeg;base64,")
    # non-integer seed and unknown keys are dropped for this endpoint
    assert "seed" not in body and "guidance" not in body and "angle" not in body

    assert result.data == b"jpeg-bytes"
    assert result.request_id == "req-42"
    assert result.metadata["original_size"] == 3
    assert result.metadata["processed_size"] == len(b"jpeg-bytes")


@pytest.mark.asyncio
async def test_flux_passes_extra_keys_through():
    stub = FalStub(payload={"image": {"url": RESULT_URL}})
    await make_client(stub).transform(b"src", "flux-pro-kontext", {"prompt": "p", "guidance_scale": 4})
    body = json.loads(stub.requests[0].content)
    assert body["guidance_scale"] == 4
    assert body["image_url"].startswith("data:image/jpeg;base64,")


@pytest.mark.asyncio
async def test_upscale_needs_no_prompt():
    stub = FalStub(payload={"url": RESULT_URL})
    result = await make_client(stub).transform(b"src", "topaz-upscale", {})
    assert result.data == b"jpeg-bytes"


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [{}, {"prompt": "   "}, {"prompt": None}])
async def test_prompt_required_for_edit_operations(params):
    stub = FalStub()
    with pytest.raises(ValidationError):
        await make_client(stub).transform(b"src", "seedream-edit", params)
    assert stub.requests == []


@pytest.mark.asyncio
async def test_unknown_operation():
    with pytest.raises(UnsupportedOperationError):
        await make_client(FalStub()).transform(b"src", "dall-e", {"prompt": "p"})


@pytest.mark.asyncio
async def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("FAL_KEY", raising=False)
    monkeypatch.delenv("FAL_SUBSCRIBER_KEY", raising=False)
    client = FalAIClient(transport=httpx.MockTransport(FalStub()))
    with pytest.raises(ExternalServiceError) as info:
        await client.transform(b"src", "seedream-edit", {"prompt": "p"})
    assert info.value.status_code == 500


@pytest.mark.asyncio
async def test_forbidden_is_annotated_and_not_retryable():
    stub = FalStub(status=403, payload={"detail": "Forbidden"})
    with pytest.raises(ExternalServiceError) as info:
        await make_client(stub).transform(b"src", "nano-banana-edit", {"prompt": "abc"})
    error = info.value
    assert error.upstream_status == 403
    assert "content policy" in error.message
    assert "prompt length: 3" in error.message
    assert is_retryable_ai_error(error) is False


@pytest.mark.asyncio
async def test_server_errors_are_retryable():
    stub = FalStub(status=503, payload={"detail": "busy"})
    with pytest.raises(ExternalServiceError) as info:
        await make_client(stub).transform(b"src", "nano-banana-edit", {"prompt": "abc"})
    assert info.value.upstream_status == 503
    assert is_retryable_ai_error(info.value) is True


@pytest.mark.asyncio
async def test_download_retries_while_not_ready():
    stub = FalStub(download_statuses=(404, 404, 200))
    result = await make_client(stub).transform(b"src", "nano-banana-edit", {"prompt": "p"})
    assert result.data == b"jpeg-bytes"
    assert stub.downloads == 3


@pytest.mark.asyncio
async def test_download_gives_up_after_five_attempts():
    stub = FalStub(download_statuses=(404,))
    with pytest.raises(ExternalServiceError):
        await make_client(stub).transform(b"src", "nano-banana-edit", {"prompt": "p"})
    assert stub.downloads == 5


@pytest.mark.asyncio
async def test_download_timeout_is_not_retried():
    def timeout(request):
        return httpx.ReadTimeout("too slow", request=request)

    stub = FalStub(download_error=timeout)
    with pytest.raises(ExternalServiceError) as info:
        await make_client(stub).transform(b"src", "nano-banana-edit", {"prompt": "p"})
    assert info.value.status_code == 504
    assert stub.downloads == 1


@pytest.mark.asyncio
async def test_result_as_data_uri_is_decoded_without_download():
    stub = FalStub(payload={"images": [{"url": "data:image/jpeg;base64,aGVsbG8="}]})
    result = await make_client(stub).transform(b"src", "nano-banana-edit", {"prompt": "p"})
    assert result.data == b"hello"
    assert stub.downloads == 0


def test_extract_image_url_order():
    assert extract_image_url({"images": [{"url": "a"}], "image": {"url": "b"}, "url": "c"}) == "a"
    assert extract_image_url({"image": {"url": "b"}, "url": "c"}) == "b"
    assert extract_image_url({"url": "c"}) == "c"
    for payload in ({}, {"images": []}, {"image": {}}, [], None):
        with pytest.raises(MalformedResponseError):
            extract_image_url(payload)


def test_list_operations():
    assert set(make_client(FalStub()).list_operations()) == {
        "seedream-edit",
        "flux-pro-kontext",
        "nano-banana-edit",
        "topaz-upscale",
    }
