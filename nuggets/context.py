"""
Service container.

Wires the pipeline services from settings. Everything is created lazily on
first access so commands only build what they use; ``aclose()`` releases
watchers, workers, HTTP clients and the database pool.
"""

from __future__ import annotations

import httpx
from loguru import logger

from nuggets.config import Settings, get_settings
from nuggets.db.database import Database
from nuggets.jobs.payloads import JobKind
from nuggets.jobs.policy import RetryPolicy
from nuggets.jobs.worker import JobHandler, WorkerPool


class ServiceContainer:
    """
    Dependency injection container for the pipeline.

    Example:
        >>> async with ServiceContainer() as services:
        ...     await services.orchestrator.enqueue("ingestion", payload)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        db: Database | None = None,
        embedding_provider=None,
        http_client: httpx.AsyncClient | None = None,
        watch_source=None,
    ):
        self.settings = settings or get_settings()
        self._db = db
        self._owns_db = db is None
        self._embedding_provider = embedding_provider
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._watch_source = watch_source

        self._orchestrator = None
        self._assembler = None
        self._embeddings = None
        self._image_generator = None
        self._audio_generator = None
        self._slide_generator = None
        self._node_generator = None
        self._choice_generator = None
        self._mastery = None
        self._sessions = None
        self._file_watcher = None
        self._url_monitor = None
        self._worker_pool = None

    async def __aenter__(self) -> ServiceContainer:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ========================================
    # Infrastructure
    # ========================================

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = Database(settings=self.settings)
        return self._db

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Shared client for page fetches (User-Agent from settings)."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.url_fetch_timeout,
                headers={"User-Agent": self.settings.url_user_agent},
                follow_redirects=True,
            )
        return self._http_client

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy.from_settings(self.settings)

    # ========================================
    # Services
    # ========================================

    @property
    def orchestrator(self):
        """Lazy load JobOrchestrator."""
        if self._orchestrator is None:
            from nuggets.jobs.orchestrator import JobOrchestrator

            self._orchestrator = JobOrchestrator(self.db, self.policy)
        return self._orchestrator

    @property
    def assembler(self):
        """Lazy load NuggetAssembler."""
        if self._assembler is None:
            from nuggets.ingestion.assembler import NuggetAssembler
            from nuggets.ingestion.chunker import SemanticChunker
            from nuggets.ingestion.metadata_extractor import MetadataExtractor

            self._assembler = NuggetAssembler(
                self.db,
                self.orchestrator,
                chunker=SemanticChunker(
                    max_chunk_chars=self.settings.chunk_max_chars,
                    min_chunk_chars=self.settings.chunk_min_chars,
                ),
                extractor=MetadataExtractor(reading_rate_wpm=self.settings.reading_rate_wpm),
                generate_images=self.settings.generate_images,
                generate_audio=self.settings.generate_audio,
                generate_slides=self.settings.generate_slides,
            )
        return self._assembler

    @property
    def embedding_provider(self):
        """Lazy load the configured embedding provider."""
        if self._embedding_provider is None:
            from nuggets.semantic.providers import create_embedding_provider

            self._embedding_provider = create_embedding_provider(self.settings)
        return self._embedding_provider

    @property
    def embeddings(self):
        """Lazy load EmbeddingService."""
        if self._embeddings is None:
            from nuggets.semantic.embedding_service import EmbeddingService

            self._embeddings = EmbeddingService(
                self.db,
                self.embedding_provider,
                dimension=self.settings.embedding_dimension,
                default_threshold=self.settings.similarity_threshold,
                default_limit=self.settings.similarity_limit,
            )
        return self._embeddings

    @property
    def image_generator(self):
        """Lazy load ImageGenerator."""
        if self._image_generator is None:
            from nuggets.authoring.image_generator import ImageGenerator

            self._image_generator = ImageGenerator(
                self.settings.openai_api_key,
                storage_path=self.settings.storage_path,
                model=self.settings.image_model,
                size=self.settings.image_size,
                http_client=self.http_client,
            )
        return self._image_generator

    @property
    def audio_generator(self):
        """Lazy load AudioGenerator."""
        if self._audio_generator is None:
            from nuggets.authoring.audio_generator import AudioGenerator

            self._audio_generator = AudioGenerator(
                self.settings.openai_api_key,
                storage_path=self.settings.storage_path,
                model=self.settings.tts_model,
                voice=self.settings.tts_voice,
            )
        return self._audio_generator

    @property
    def slide_generator(self):
        """Lazy load SlideGenerator."""
        if self._slide_generator is None:
            from nuggets.authoring.slide_generator import SlideGenerator

            self._slide_generator = SlideGenerator(self.settings.gemini_api_key, model=self.settings.slide_model)
        return self._slide_generator

    @property
    def node_generator(self):
        """Lazy load NodeGenerator."""
        if self._node_generator is None:
            from nuggets.narrative.node_generator import NodeGenerator

            self._node_generator = NodeGenerator(
                self.db,
                width=self.settings.canvas_width,
                height=self.settings.canvas_height,
                cell_size=self.settings.canvas_cell_size,
            )
        return self._node_generator

    @property
    def choice_generator(self):
        """Lazy load ChoiceGenerator."""
        if self._choice_generator is None:
            from nuggets.narrative.choice_generator import ChoiceGenerator

            self._choice_generator = ChoiceGenerator(self.db, max_choices=self.settings.max_choices)
        return self._choice_generator

    @property
    def mastery(self):
        """Lazy load MasteryTracker."""
        if self._mastery is None:
            from nuggets.learning.mastery_tracker import MasteryTracker

            self._mastery = MasteryTracker(self.db, **self.settings.get_mastery_config())
        return self._mastery

    @property
    def sessions(self):
        """Lazy load SessionService."""
        if self._sessions is None:
            from nuggets.learning.session_service import SessionService

            self._sessions = SessionService(
                self.db,
                self.mastery,
                self.choice_generator,
                entry_threshold=self.settings.mastery_entry_threshold,
            )
        return self._sessions

    @property
    def file_watcher(self):
        """Lazy load FileWatcher."""
        if self._file_watcher is None:
            from nuggets.ingestion.file_watcher import FileWatcher

            self._file_watcher = FileWatcher(
                self.db,
                self.orchestrator,
                stability_threshold=self.settings.watcher_stability_threshold,
                poll_interval=self.settings.watcher_poll_interval,
                default_file_types=self.settings.watcher_default_file_types,
                watch_source=self._watch_source,
            )
        return self._file_watcher

    @property
    def url_monitor(self):
        """Lazy load URLMonitor."""
        if self._url_monitor is None:
            from nuggets.ingestion.url_monitor import URLMonitor

            self._url_monitor = URLMonitor(
                self.db,
                self.orchestrator,
                http_client=self.http_client,
                user_agent=self.settings.url_user_agent,
                timeout=self.settings.url_fetch_timeout,
            )
        return self._url_monitor

    # ========================================
    # Workers
    # ========================================

    def build_handlers(self) -> dict[JobKind, JobHandler]:
        """One handler per job kind."""
        from nuggets.jobs.handlers import (
            AudioHandler,
            EmbeddingHandler,
            ImageHandler,
            IngestionHandler,
            NarrativeHandler,
            SlideHandler,
        )

        return {
            JobKind.INGESTION: IngestionHandler(self.db, self.orchestrator, self.assembler, self.http_client),
            JobKind.EMBEDDING: EmbeddingHandler(self.orchestrator, self.embeddings),
            JobKind.IMAGE_GENERATION: ImageHandler(self.db, self.image_generator),
            JobKind.AUDIO_GENERATION: AudioHandler(self.db, self.audio_generator),
            JobKind.SLIDE_GENERATION: SlideHandler(self.db, self.slide_generator),
            JobKind.NARRATIVE_PLANNING: NarrativeHandler(
                self.db,
                self.node_generator,
                self.choice_generator,
                self.mastery,
                self.embeddings,
            ),
        }

    @property
    def worker_pool(self) -> WorkerPool:
        if self._worker_pool is None:
            config = self.settings.get_queue_config()
            self._worker_pool = WorkerPool(
                self.db,
                self.build_handlers(),
                concurrency=config["concurrency"],
                poll_interval=config["poll_interval"],
                lease_seconds=config["lease_seconds"],
            )
        return self._worker_pool

    async def aclose(self) -> None:
        """Release everything this container created."""
        if self._worker_pool is not None:
            await self._worker_pool.stop()
        if self._file_watcher is not None:
            await self._file_watcher.stop_all()
        if self._url_monitor is not None:
            await self._url_monitor.stop_all()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        if self._owns_db and self._db is not None:
            await self._db.dispose()
        logger.debug("Service container closed")
