from __future__ import annotations

import os
from typing import Annotated

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from imageflow.application.use_cases.batch_process_angles import BatchAngleProcessUseCase
from imageflow.application.use_cases.pipeline_service import PipelineService
from imageflow.application.use_cases.prompt_assistant import PromptAssistantUseCase
from imageflow.domain.errors import UnauthorizedError
from imageflow.infrastructure.ai.base import AITransformClient
from imageflow.infrastructure.ai.fal_client import FalAIClient
from imageflow.infrastructure.ai.openrouter_client import OpenRouterClient
from imageflow.infrastructure.database.postgres_client import get_postgres_client
from imageflow.infrastructure.database.repositories.base import PipelineRepository
from imageflow.infrastructure.database.repositories.memory_pipeline_repository import (
    InMemoryPipelineRepository,
)
from imageflow.infrastructure.database.repositories.postgres_pipeline_repository import (
    PostgresPipelineRepository,
)
from imageflow.infrastructure.database.repositories.supabase_pipeline_repository import (
    SupabasePipelineRepository,
)
from imageflow.infrastructure.database.supabase_client import (
    SupabaseAuthAdapter,
    UserInfo,
    get_supabase_client,
)
from imageflow.infrastructure.storage.base import StoragePort
from imageflow.infrastructure.storage.local_storage import LocalFileStorage
from imageflow.infrastructure.storage.supabase_storage import SupabaseStorage

_bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_adapter() -> SupabaseAuthAdapter:
    return SupabaseAuthAdapter()


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(_bearer_scheme)] = None,
    auth: Annotated[SupabaseAuthAdapter, Depends(get_auth_adapter)] = None,
) -> UserInfo:
    if not credentials or not credentials.scheme or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = credentials.credentials
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    try:
        return auth.validate_token(token)
    except UnauthorizedError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message)


def get_storage() -> StoragePort:
    client = get_supabase_client()
    if client is not None and os.getenv("USE_SUPABASE_STORAGE", "0") == "1":
        return SupabaseStorage(client)
    return LocalFileStorage()


def get_pipeline_repo(storage: StoragePort = Depends(get_storage)) -> PipelineRepository:
    pg = get_postgres_client()
    if pg is not None:
        return PostgresPipelineRepository(pg, storage)
    client = get_supabase_client()
    if client is None:
        return InMemoryPipelineRepository(storage)
    return SupabasePipelineRepository(client, storage)


def get_ai_client() -> AITransformClient:
    return FalAIClient()


def get_llm_client() -> OpenRouterClient:
    return OpenRouterClient()


def get_pipeline_service(
    storage: StoragePort = Depends(get_storage),
    repository: PipelineRepository = Depends(get_pipeline_repo),
    ai_client: AITransformClient = Depends(get_ai_client),
) -> PipelineService:
    return PipelineService(storage=storage, repository=repository, ai_client=ai_client)


def get_batch_angle_use_case(
    service: PipelineService = Depends(get_pipeline_service),
) -> BatchAngleProcessUseCase:
    return BatchAngleProcessUseCase(service=service)


def get_prompt_assistant(
    storage: StoragePort = Depends(get_storage),
    repository: PipelineRepository = Depends(get_pipeline_repo),
    llm: OpenRouterClient = Depends(get_llm_client),
) -> PromptAssistantUseCase:
    return PromptAssistantUseCase(storage=storage, repository=repository, llm=llm)
