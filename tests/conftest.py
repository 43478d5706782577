import io
import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Ensure project root is on sys.path so 'imageflow' is importable during tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("SUPABASE_DISABLED", "1")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="imageflow-uploads-"))
os.environ.setdefault("BASE_URL", "http://testserver")

from imageflow.domain.errors import ExternalServiceError  # noqa: E402
from imageflow.domain.services.retry_policy import RetryPolicy  # noqa: E402
from imageflow.infrastructure.ai.base import AITransformClient, TransformResult  # noqa: E402


def make_png_bytes(w=4, h=4, color=(128, 64, 32)) -> bytes:
    img = Image.new("RGB", (w, h), color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class FakeAIClient(AITransformClient):
    """Returns a fixed JPEG after raising any queued errors, one per call."""

    def __init__(self, errors=None, data: bytes | None = None) -> None:
        self.errors = list(errors or [])
        self.data = data or make_png_bytes(2, 2, (10, 20, 30))
        self.calls: list[tuple[str, dict]] = []

    async def transform(self, image_bytes, operation, parameters):
        self.calls.append((operation, dict(parameters)))
        if self.errors:
            raise self.errors.pop(0)
        return TransformResult(data=self.data, metadata={"operation": operation}, request_id="req-1")

    def list_operations(self):
        return ["nano-banana-edit", "seedream-edit"]


def transient_error() -> ExternalServiceError:
    return ExternalServiceError("fal.ai request failed: 503 Service Unavailable", upstream_status=503)


def forbidden_error() -> ExternalServiceError:
    return ExternalServiceError(
        "fal.ai API Forbidden (403): content policy violation", status_code=403, upstream_status=403
    )


@pytest.fixture()
def storage(tmp_path):
    from imageflow.infrastructure.storage.local_storage import LocalFileStorage

    return LocalFileStorage(tmp_path / "uploads", "http://testserver")


@pytest.fixture()
def repository(storage):
    from imageflow.infrastructure.database.repositories.memory_pipeline_repository import (
        InMemoryPipelineRepository,
    )

    # private arena per test
    return InMemoryPipelineRepository(storage, store={})


@pytest.fixture()
def ai_client() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture()
def service(storage, repository, ai_client):
    from imageflow.application.use_cases.pipeline_service import PipelineService

    return PipelineService(
        storage=storage,
        repository=repository,
        ai_client=ai_client,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
    )


@pytest.fixture(scope="session")
def fake_ai() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture(scope="session")
def client(fake_ai) -> TestClient:
    # lazy import after env configured
    from imageflow.infrastructure.api.dependencies import get_ai_client
    from imageflow.main import create_app

    app = create_app()
    app.dependency_overrides[get_ai_client] = lambda: fake_ai
    return TestClient(app)


@pytest.fixture()
def auth_header() -> dict[str, str]:
    # any token is accepted in disabled mode
    return {"Authorization": "Bearer test-token"}


@pytest.fixture()
def other_auth_header() -> dict[str, str]:
    return {"Authorization": "Bearer someone-else"}
