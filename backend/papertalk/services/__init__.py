"""
Service wiring.

``build_services`` is the composition root: it creates the single AI processing
queue for the process and hands the same instance to every ingestion entry point.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from papertalk import config
from papertalk.services.ai_queue import AIProcessingQueue
from papertalk.services.background import BackgroundTaskRunner
from papertalk.services.drafts import DraftService
from papertalk.services.finalize import AudioFeedbackGenerator, GradeFinalizer
from papertalk.services.grading import AIGradingClient
from papertalk.services.image_merge import ImageMerger
from papertalk.services.ingestion import SubmissionIngestionService
from papertalk.services.storage import ObjectStore


@dataclass
class Services:
    db: object
    http_client: httpx.AsyncClient
    runner: BackgroundTaskRunner
    queue: AIProcessingQueue
    drafts: DraftService
    ingestion: SubmissionIngestionService
    finalizer: GradeFinalizer
    store: Optional[ObjectStore] = None

    async def aclose(self):
        await self.queue.shutdown()
        await self.runner.shutdown()
        await self.http_client.aclose()


def build_services(
    db,
    fs=None,
    http_client: Optional[httpx.AsyncClient] = None,
    grading_client: Optional[AIGradingClient] = None,
    max_concurrent: int = config.AI_MAX_CONCURRENT,
    max_queue_size: int = config.AI_MAX_QUEUE_SIZE,
    full_retry_delay: float = config.AI_QUEUE_FULL_RETRY_DELAY,
    overload_retry_delay: float = config.AI_QUEUE_OVERLOAD_RETRY_DELAY,
    max_requeues: Optional[int] = config.AI_QUEUE_MAX_REQUEUES,
    elevenlabs_api_key: Optional[str] = config.ELEVENLABS_API_KEY,
) -> Services:
    http_client = http_client or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT, follow_redirects=True)
    runner = BackgroundTaskRunner()
    store = ObjectStore(fs) if fs is not None else None

    grading_client = grading_client or AIGradingClient(
        api_key=config.get_llm_api_key(), http_client=http_client
    )
    drafts = DraftService(db, grading_client)

    queue = AIProcessingQueue(
        handler=drafts.generate_draft_internal,
        max_concurrent=max_concurrent,
        max_queue_size=max_queue_size,
        full_retry_delay=full_retry_delay,
        overload_retry_delay=overload_retry_delay,
        max_requeues=max_requeues,
        runner=runner,
    )

    merger = ImageMerger(store, http_client) if store is not None else None
    ingestion = SubmissionIngestionService(db, queue, merger)
    queue.on_dropped = ingestion.handle_dropped_job

    audio = None
    if elevenlabs_api_key and elevenlabs_api_key.strip() and store is not None:
        audio = AudioFeedbackGenerator(
            elevenlabs_api_key.strip(), store, http_client, llm_api_key=config.get_llm_api_key()
        )
    finalizer = GradeFinalizer(db, runner, audio, default_voice_id=config.ELEVENLABS_VOICE_ID)

    return Services(
        db=db,
        http_client=http_client,
        runner=runner,
        queue=queue,
        drafts=drafts,
        ingestion=ingestion,
        finalizer=finalizer,
        store=store,
    )
