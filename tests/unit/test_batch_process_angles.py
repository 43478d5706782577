import pytest
from conftest import FakeAIClient, forbidden_error, make_png_bytes

from imageflow.application.use_cases.batch_process_angles import BatchAngleProcessUseCase
from imageflow.application.use_cases.pipeline_service import PipelineService
from imageflow.domain.entities.pipeline import UploadedFile
from imageflow.domain.errors import ProcessingFailedError
from imageflow.domain.services.retry_policy import RetryPolicy


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def upload(service):
    return service.upload("alice", UploadedFile("cat.png", make_png_bytes(), "image/png"))


@pytest.mark.asyncio
async def test_processes_angles_sequentially_with_pause(service, ai_client):
    original = upload(service)
    sleep = RecordingSleep()
    use_case = BatchAngleProcessUseCase(service, sleep=sleep)

    result = await use_case.execute("alice", original.id, "nano-banana-edit", [0, 90, 180])

    assert [v.parameters["angle"] for v in result.versions] == [0, 90, 180]
    assert result.failures == []
    assert sleep.delays == [0.5, 0.5]
    assert [call[1]["angle"] for call in ai_client.calls] == [0, 90, 180]
    result.raise_for_failures()


@pytest.mark.asyncio
async def test_failed_angle_does_not_stop_the_batch(storage, repository):
    # second angle hits a non-retryable error
    client = FakeAIClient()
    service = PipelineService(storage, repository, client, retry_policy=RetryPolicy(3, 0.0))
    original = upload(service)
    sleep = RecordingSleep()

    original_transform = client.transform

    async def transform(image_bytes, operation, parameters):
        if parameters.get("angle") == 90:
            raise forbidden_error()
        return await original_transform(image_bytes, operation, parameters)

    client.transform = transform
    use_case = BatchAngleProcessUseCase(service, sleep=sleep)

    result = await use_case.execute("alice", original.id, "nano-banana-edit", [45, 90, 270])

    assert [v.parameters["angle"] for v in result.versions] == [45, 270]
    assert [f.angle for f in result.failures] == [90]
    assert result.failures[0].status_code == 500
    with pytest.raises(ProcessingFailedError, match="1 of 3 angles failed"):
        result.raise_for_failures()
    assert len(service.get("alice", original.id).versions) == 2


@pytest.mark.asyncio
async def test_missing_pipeline_fails_every_angle(service):
    use_case = BatchAngleProcessUseCase(service, inter_request_delay=0)
    result = await use_case.execute("alice", "missing", "nano-banana-edit", [0, 45])
    assert result.versions == []
    assert [f.status_code for f in result.failures] == [404, 404]
