"""
Nugget assembly.

Turns the extracted text of one ingestion job into nuggets:
chunk -> metadata -> Nugget (pending) -> embedding job (and, when enabled,
image, audio and slide jobs). Creation is keyed by ``(source_job_id, chunk_index)``
so re-running a job never duplicates nuggets or their follow-up jobs.
"""

from __future__ import annotations

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nuggets.db.database import Database
from nuggets.db.models import Nugget, NuggetStatus
from nuggets.ingestion.chunker import SemanticChunker, TextChunk
from nuggets.ingestion.metadata_extractor import MetadataExtractor, NuggetMetadata
from nuggets.jobs.orchestrator import JobOrchestrator
from nuggets.jobs.payloads import EmbeddingPayload, JobKind, MediaGenerationPayload


class NuggetAssembler:
    """Create nuggets from extracted source text."""

    def __init__(
        self,
        db: Database,
        orchestrator: JobOrchestrator,
        chunker: SemanticChunker | None = None,
        extractor: MetadataExtractor | None = None,
        generate_images: bool = False,
        generate_audio: bool = False,
        generate_slides: bool = False,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.chunker = chunker or SemanticChunker()
        self.extractor = extractor or MetadataExtractor()
        self.generate_images = generate_images
        self.generate_audio = generate_audio
        self.generate_slides = generate_slides

    async def assemble(
        self,
        text: str,
        organization_id: str,
        source_type: str,
        source_path: str,
        job_id: str,
    ) -> list[Nugget]:
        """
        Create (or find) one nugget per chunk of ``text``.

        Returns:
            Nuggets for every chunk, in chunk order.
        """
        chunks = self.chunker.chunk_text(text)
        logger.info("Assembling {} chunks from {} for organization {}", len(chunks), source_path, organization_id)

        async with self.db.session_scope() as session:
            known_topics = await self._known_topics(session, organization_id, job_id)

        nuggets: list[Nugget] = []
        for chunk in chunks:
            metadata = self.extractor.extract_metadata(chunk.text, known_topics)
            for topic in metadata.topics:
                known_topics[topic] = min(known_topics.get(topic, metadata.difficulty), metadata.difficulty)
            nugget = await self._create_if_absent(chunk, metadata, organization_id, source_type, source_path, job_id)
            nuggets.append(nugget)

        logger.info("Nuggets assembled: {} for job {}", len(nuggets), job_id)
        return nuggets

    async def _create_if_absent(
        self,
        chunk: TextChunk,
        metadata: NuggetMetadata,
        organization_id: str,
        source_type: str,
        source_path: str,
        job_id: str,
    ) -> Nugget:
        existing = await self._find(job_id, chunk.index)
        if existing is not None:
            logger.debug("Nugget for job {} chunk {} already exists", job_id, chunk.index)
            return existing

        try:
            async with self.db.session_scope() as session:
                nugget = Nugget(
                    organization_id=organization_id,
                    content=chunk.text,
                    metadata_=metadata.model_dump(),
                    status=NuggetStatus.PENDING,
                    source_type=source_type,
                    source_path=source_path,
                    source_job_id=job_id,
                    chunk_index=chunk.index,
                )
                session.add(nugget)
                await session.flush()
                await self._enqueue_enrichment(session, nugget)
        except IntegrityError:
            # A concurrent delivery of the same job created it first
            existing = await self._find(job_id, chunk.index)
            if existing is None:
                raise
            return existing
        return nugget

    async def _enqueue_enrichment(self, session: AsyncSession, nugget: Nugget) -> None:
        """Queue follow-up jobs in the nugget's own transaction."""
        await self.orchestrator.enqueue(
            JobKind.EMBEDDING,
            EmbeddingPayload(nugget_id=nugget.id, content=nugget.content, organization_id=nugget.organization_id),
            session=session,
        )
        media = MediaGenerationPayload(nugget_id=nugget.id, organization_id=nugget.organization_id)
        if self.generate_images:
            await self.orchestrator.enqueue(JobKind.IMAGE_GENERATION, media, session=session)
        if self.generate_audio:
            await self.orchestrator.enqueue(JobKind.AUDIO_GENERATION, media, session=session)
        if self.generate_slides:
            await self.orchestrator.enqueue(JobKind.SLIDE_GENERATION, media, session=session)

    async def _find(self, job_id: str, chunk_index: int) -> Nugget | None:
        async with self.db.session_scope() as session:
            return (
                await session.execute(
                    select(Nugget).where(Nugget.source_job_id == job_id, Nugget.chunk_index == chunk_index)
                )
            ).scalar_one_or_none()

    async def _known_topics(self, session: AsyncSession, organization_id: str, job_id: str) -> dict[str, int]:
        """Topics of the organization's other nuggets, mapped to the lowest difficulty seen."""
        rows = await session.execute(
            select(Nugget.metadata_).where(
                Nugget.organization_id == organization_id,
                (Nugget.source_job_id != job_id) | Nugget.source_job_id.is_(None),
            )
        )
        known: dict[str, int] = {}
        for raw in rows.scalars().all():
            if not raw:
                continue
            difficulty = int(raw.get("difficulty") or 1)
            for topic in raw.get("topics") or []:
                known[topic] = min(known.get(topic, difficulty), difficulty)
        return known
