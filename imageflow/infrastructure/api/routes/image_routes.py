from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status

from imageflow.application.dtos.common_dto import SuccessResponse
from imageflow.application.dtos.pipeline_dto import (
    AngleFailureResponse,
    BatchAngleRequest,
    BatchAngleResponse,
    ListPipelinesResponse,
    ListProcessedVersionsResponse,
    OperationsResponse,
    PipelineResponse,
    PipelineTreeResponse,
    ProcessedVersionResponse,
    ProcessRequest,
    ProcessResponse,
    PromptAssistantRequest,
    PromptAssistantResponse,
    TreeLevelResponse,
    UploadManyResponse,
    UploadResponse,
    VersionResponse,
)
from imageflow.application.use_cases.batch_process_angles import BatchAngleProcessUseCase
from imageflow.application.use_cases.pipeline_service import PipelineService
from imageflow.application.use_cases.prompt_assistant import PromptAssistantUseCase
from imageflow.domain.entities.pipeline import UploadedFile, UploadOptions
from imageflow.domain.errors import PipelineError
from imageflow.infrastructure.ai.base import AITransformClient
from imageflow.infrastructure.api.dependencies import (
    get_ai_client,
    get_batch_angle_use_case,
    get_current_user,
    get_pipeline_service,
    get_prompt_assistant,
)

router = APIRouter(
    prefix="/api/images",
    tags=["Image Pipelines"],
    responses={
        401: {"description": "Unauthorized - Invalid or missing authentication token"},
        404: {"description": "Not Found - Image does not exist or user doesn't have access"},
        422: {"description": "Validation Error - Invalid request format"},
    },
)


def _http_error(exc: PipelineError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _upload_options(tags: str | None, description: str | None, is_public: bool) -> UploadOptions:
    tag_list = [t.strip() for t in (tags or "").split(",") if t.strip()]
    return UploadOptions(tags=tag_list, description=description or "", is_public=is_public)


async def _read_upload(file: UploadFile) -> UploadedFile:
    return UploadedFile(
        filename=file.filename or "upload",
        content=await file.read(),
        mime_type=file.content_type or "application/octet-stream",
    )


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload Image",
    description="""
    Upload an original image and start a new pipeline for it.

    **Supported formats**: JPEG, PNG, WEBP, GIF
    **Maximum file size**: MAX_UPLOAD_BYTES (10 MiB by default)
    **Authentication required**: Yes (Bearer token)
    """,
    responses={400: {"description": "Bad Request - Invalid file, tags or description"}},
)
async def upload_image(
    file: UploadFile = File(..., description="Image file to upload"),
    tags: str | None = Form(None, description="Comma separated tags"),
    description: str | None = Form(None, description="Free text description"),
    is_public: bool = Form(False),
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
):
    """Upload a new original image."""
    try:
        pipeline = service.upload(
            user.id, await _read_upload(file), _upload_options(tags, description, is_public)
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return UploadResponse(image=PipelineResponse.from_entity(pipeline))


@router.post(
    "/upload-multiple",
    response_model=UploadManyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload Several Images",
    description="Upload several originals at once. Files that fail are skipped; "
    "the response lists only the stored ones.",
)
async def upload_images(
    files: list[UploadFile] = File(..., description="Image files to upload"),
    tags: str | None = Form(None),
    description: str | None = Form(None),
    is_public: bool = Form(False),
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
):
    uploads = [await _read_upload(f) for f in files]
    pipelines = service.upload_many(
        user.id, uploads, _upload_options(tags, description, is_public)
    )
    if uploads and not pipelines:
        raise HTTPException(status_code=400, detail="None of the files could be uploaded")
    return UploadManyResponse(
        images=[PipelineResponse.from_entity(p) for p in pipelines], count=len(pipelines)
    )


@router.get(
    "",
    response_model=ListPipelinesResponse,
    summary="List User Images",
    description="Paginated list of the caller's pipelines, newest first, "
    "optionally filtered by a case-insensitive match on name or MIME type.",
)
async def list_images(
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
    page: int = Query(1, description="Page number, starting at 1"),
    limit: int = Query(10, description="Items per page"),
    search: str | None = Query(None, description="Filter on filename or MIME type"),
):
    result = service.list(user.id, page=page, limit=limit, search=search)
    return ListPipelinesResponse(
        images=[PipelineResponse.from_entity(p) for p in result.items],
        total=result.total,
        page=result.page,
        total_pages=result.total_pages,
    )


@router.get(
    "/processed",
    response_model=ListProcessedVersionsResponse,
    summary="List Processed Versions",
    description="Every version across all pipelines, newest first, filterable by "
    "model name and processing time bounds.",
)
async def list_processed_versions(
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
    page: int = Query(1),
    limit: int = Query(10),
    ai_model: str | None = Query(None, description="Exact model display name"),
    min_processing_time: int | None = Query(None, ge=0, description="Milliseconds"),
    max_processing_time: int | None = Query(None, ge=0, description="Milliseconds"),
):
    result = service.list_processed_versions(
        user.id,
        page=page,
        limit=limit,
        ai_model=ai_model,
        min_ms=min_processing_time,
        max_ms=max_processing_time,
    )
    return ListProcessedVersionsResponse(
        versions=[
            ProcessedVersionResponse(
                **VersionResponse.from_entity(item.version).model_dump(),
                original_name=item.original_name,
                pipeline_id=item.source_image_id,
            )
            for item in result.items
        ],
        total=result.total,
        page=result.page,
        total_pages=result.total_pages,
    )


@router.get(
    "/operations",
    response_model=OperationsResponse,
    summary="List AI Operations",
)
async def list_operations(
    user=Depends(get_current_user),
    ai_client: AITransformClient = Depends(get_ai_client),
):
    return OperationsResponse(operations=ai_client.list_operations())


@router.post(
    "/process/{image_id}",
    response_model=ProcessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Process Image",
    description="""
    Run one AI operation on the original or on a previous version.

    When `angles` is given only the first angle is used and the prompt is
    generated from it (plus `custom_prompt`, if any). Use the batch endpoint
    for several angles.
    """,
    responses={
        400: {"description": "Bad Request - Missing prompt or unknown operation"},
        500: {"description": "Processing failed after retries"},
    },
)
async def process_image(
    image_id: str,
    body: ProcessRequest,
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        version = await service.process(
            user.id,
            image_id,
            body.operation,
            body.parameters,
            source_version_id=body.source_version_id,
            angles=body.angles,
            custom_prompt=body.custom_prompt,
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return ProcessResponse(version=VersionResponse.from_entity(version))


@router.post(
    "/process/{image_id}/batch",
    response_model=BatchAngleResponse,
    summary="Process Several Angles",
    description="One version per angle, generated sequentially. Failed angles are "
    "reported next to the successful versions; the request fails only when no angle succeeded.",
)
async def process_angles(
    image_id: str,
    body: BatchAngleRequest,
    user=Depends(get_current_user),
    use_case: BatchAngleProcessUseCase = Depends(get_batch_angle_use_case),
):
    result = await use_case.execute(
        user.id,
        image_id,
        body.operation,
        body.angles,
        parameters=body.parameters,
        source_version_id=body.source_version_id,
        custom_prompt=body.custom_prompt,
    )
    if not result.versions:
        try:
            result.raise_for_failures()
        except PipelineError as exc:
            # a shared failure status (e.g. 400 for a missing prompt) is kept
            statuses = {f.status_code for f in result.failures}
            status_code = statuses.pop() if len(statuses) == 1 else exc.status_code
            raise HTTPException(status_code=status_code, detail=exc.message) from exc
    return BatchAngleResponse(
        versions=[VersionResponse.from_entity(v) for v in result.versions],
        failures=[
            AngleFailureResponse(angle=f.angle, message=f.message, status_code=f.status_code)
            for f in result.failures
        ],
    )


@router.post(
    "/{image_id}/prompt-assistant",
    response_model=PromptAssistantResponse,
    summary="Suggest Correction Prompt",
    description="Compare a generated version with its original and ask a vision LLM "
    "for a short correction prompt.",
)
async def prompt_assistant(
    image_id: str,
    body: PromptAssistantRequest,
    user=Depends(get_current_user),
    use_case: PromptAssistantUseCase = Depends(get_prompt_assistant),
):
    try:
        result = await use_case.execute(
            user.id, image_id, body.version_id, body.target_angles, body.user_notes
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return PromptAssistantResponse(
        prompt=result.prompt,
        model=result.model,
        latency_ms=result.latency_ms,
        usage=result.usage,
        reference_version_id=result.reference_version_id,
    )


@router.get(
    "/{image_id}",
    response_model=PipelineResponse,
    summary="Get Image Pipeline",
)
async def get_image(
    image_id: str,
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        return PipelineResponse.from_entity(service.get(user.id, image_id))
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.get(
    "/{image_id}/tree",
    response_model=PipelineTreeResponse,
    summary="Get Lineage Tree",
    description="Versions grouped by parent, with `level` counting the depth from the original.",
)
async def get_image_tree(
    image_id: str,
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        tree = service.get_tree(user.id, image_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return PipelineTreeResponse(
        image=PipelineResponse.from_entity(tree.pipeline),
        levels=[TreeLevelResponse.from_level(level) for level in tree.levels],
    )


@router.delete(
    "/{image_id}/versions/{version_id}",
    response_model=SuccessResponse,
    summary="Delete Version",
)
async def delete_version(
    image_id: str,
    version_id: str,
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        service.delete_version(user.id, image_id, version_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return SuccessResponse(message="Processed version deleted")


@router.delete(
    "/{image_id}",
    response_model=SuccessResponse,
    summary="Delete Image",
    description="Delete the original, every version and their files. Cannot be undone.",
)
async def delete_image(
    image_id: str,
    user=Depends(get_current_user),
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        service.delete(user.id, image_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return SuccessResponse(message="Image deleted")
