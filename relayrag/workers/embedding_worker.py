from __future__ import annotations

import logging

from arq.connections import RedisSettings

from relayrag.core.config import get_settings
from relayrag.core.logging import configure_logging
from relayrag.services.embedding_jobs import EmbeddingJobPayload, process_embedding_job


logger = logging.getLogger(__name__)


async def generate_embeddings(ctx, payload: dict) -> dict:
    # Validate in the worker to enforce the job schema contract.
    job_payload = EmbeddingJobPayload.model_validate(payload)
    settings = get_settings()
    job_id = ctx.get("job_id") or job_payload.request_id
    attempt = ctx.get("job_try", 1)
    return await process_embedding_job(
        job_payload,
        job_id=job_id,
        attempt=attempt,
        max_retries=settings.embedding_max_retries,
    )


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("embedding_worker_started queue=%s", get_settings().embedding_queue_name)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.embedding_queue_name
    max_tries = settings.embedding_max_retries
    functions = [generate_embeddings]
    on_startup = _startup
