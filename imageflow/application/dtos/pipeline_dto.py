from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from imageflow.domain.entities.pipeline import PipelineEntity, VersionEntity
from imageflow.domain.services.angle_prompts import extract_angle
from imageflow.domain.services.pipeline_tree import TreeLevel


class VersionResponse(BaseModel):
    """A version produced by one AI transform."""
    id: str = Field(..., description="Unique identifier of the version")
    operation: str = Field(..., description="AI operation key", examples=["nano-banana-edit"])
    ai_model: str = Field(..., description="Display name of the model", examples=["nano-banana"])
    parameters: dict[str, Any] = Field(default_factory=dict, description="Parameters sent to the model")
    angle: float | None = Field(None, description="Angle the version was generated for, if any")
    storage_name: str = Field(..., description="Name of the stored blob")
    url: str = Field(..., description="URL to access the image")
    byte_size: int = Field(..., description="Size of the image in bytes", ge=0)
    created_at: datetime = Field(..., description="When the version was created")
    processing_time_ms: int = Field(..., description="Duration of the AI call, retries included", ge=0)
    source_image_id: str | None = Field(None, description="Set when the parent is the original")
    source_processed_version_id: str | None = Field(
        None, description="Set when the parent is another version"
    )

    @classmethod
    def from_entity(cls, version: VersionEntity) -> VersionResponse:
        return cls(
            id=version.id,
            operation=version.operation,
            ai_model=version.ai_model,
            parameters=version.parameters,
            angle=extract_angle(version.parameters),
            storage_name=version.storage_name,
            url=version.url,
            byte_size=version.byte_size,
            created_at=version.created_at,
            processing_time_ms=version.processing_time_ms,
            source_image_id=version.source_image_id,
            source_processed_version_id=version.source_processed_version_id,
        )


class PipelineResponse(BaseModel):
    """An original image with every version derived from it."""
    id: str = Field(..., description="Unique identifier of the image")
    user_id: str = Field(..., description="ID of the user who owns this image")
    original_name: str = Field(..., description="Filename when uploaded", examples=["photo.jpg"])
    storage_name: str = Field(..., description="Name of the stored blob")
    mime_type: str = Field(..., description="MIME type of the image", examples=["image/png"])
    byte_size: int = Field(..., description="Size of the image in bytes", ge=0)
    width: int = Field(0, description="Width in pixels, 0 when unknown", ge=0)
    height: int = Field(0, description="Height in pixels, 0 when unknown", ge=0)
    uploaded_at: datetime = Field(..., description="When the image was uploaded")
    tags: list[str] = Field(default_factory=list)
    description: str = Field("")
    is_public: bool = Field(False)
    url: str | None = Field(None, description="URL to access the image")
    processed_version_count: int = Field(0, ge=0)
    versions: list[VersionResponse] = Field(default_factory=list)

    @classmethod
    def from_entity(cls, pipeline: PipelineEntity) -> PipelineResponse:
        return cls(
            id=pipeline.id,
            user_id=pipeline.user_id,
            original_name=pipeline.original_name,
            storage_name=pipeline.storage_name,
            mime_type=pipeline.mime_type,
            byte_size=pipeline.byte_size,
            width=pipeline.width,
            height=pipeline.height,
            uploaded_at=pipeline.uploaded_at,
            tags=pipeline.tags,
            description=pipeline.description,
            is_public=pipeline.is_public,
            url=pipeline.url,
            processed_version_count=pipeline.processed_version_count,
            versions=[VersionResponse.from_entity(v) for v in pipeline.versions],
        )


class UploadResponse(BaseModel):
    image: PipelineResponse


class UploadManyResponse(BaseModel):
    """Only the files that were stored successfully are listed."""
    images: list[PipelineResponse]
    count: int = Field(..., ge=0)


class ListPipelinesResponse(BaseModel):
    images: list[PipelineResponse]
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=1)


class ProcessedVersionResponse(VersionResponse):
    original_name: str = Field(..., description="Filename of the original the version belongs to")
    pipeline_id: str = Field(..., description="ID of the original image")


class ListProcessedVersionsResponse(BaseModel):
    versions: list[ProcessedVersionResponse]
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=1)


class ProcessRequest(BaseModel):
    """Run one AI operation on the original or on a previous version."""
    operation: str = Field(..., description="AI operation key", examples=["nano-banana-edit"])
    parameters: dict[str, Any] = Field(default_factory=dict, description="Model parameters")
    source_version_id: str | None = Field(
        None, description="Version to use as input instead of the original"
    )
    angles: list[float] | None = Field(
        None, description="Rotation angles in degrees; only the first one is used", examples=[[90]]
    )
    custom_prompt: str | None = Field(None, description="Free text appended to the rotation prompt")


class ProcessResponse(BaseModel):
    version: VersionResponse


class BatchAngleRequest(BaseModel):
    """One version per angle, processed sequentially."""
    operation: str = Field(..., examples=["nano-banana-edit"])
    angles: list[float] = Field(..., min_length=1, examples=[[45, 90, 180]])
    parameters: dict[str, Any] = Field(default_factory=dict)
    source_version_id: str | None = None
    custom_prompt: str | None = None


class AngleFailureResponse(BaseModel):
    angle: float
    message: str
    status_code: int


class BatchAngleResponse(BaseModel):
    versions: list[VersionResponse]
    failures: list[AngleFailureResponse] = Field(default_factory=list)


class TreeSourceResponse(BaseModel):
    id: str
    name: str
    url: str


class TreeLevelResponse(BaseModel):
    source: TreeSourceResponse
    children: list[VersionResponse]
    level: int = Field(..., ge=0, description="Depth from the original, 0 = direct children")

    @classmethod
    def from_level(cls, level: TreeLevel) -> TreeLevelResponse:
        return cls(
            source=TreeSourceResponse(
                id=level.source.id, name=level.source.name, url=level.source.url
            ),
            children=[VersionResponse.from_entity(v) for v in level.children],
            level=level.level,
        )


class PipelineTreeResponse(BaseModel):
    image: PipelineResponse
    levels: list[TreeLevelResponse]


class OperationsResponse(BaseModel):
    operations: list[str] = Field(..., examples=[["seedream-edit", "nano-banana-edit"]])


class PromptAssistantRequest(BaseModel):
    version_id: str = Field(..., description="Generated version to correct")
    target_angles: list[int] | None = Field(None, description="Requested rotation in degrees")
    user_notes: str | None = Field(None, max_length=1000)


class PromptAssistantResponse(BaseModel):
    prompt: str
    model: str
    latency_ms: int
    usage: dict[str, Any] = Field(default_factory=dict)
    reference_version_id: str
