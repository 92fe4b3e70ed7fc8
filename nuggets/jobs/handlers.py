"""
Job handlers.

One handler per job kind. Every handler is idempotent with respect to its
primary side effect, so a redelivered or retried entry never duplicates work:

- ingestion: nuggets are create-if-absent per (job, chunk)
- embedding: the stored vector is overwritten
- image / audio / slides: skipped when the nugget already has the asset
- narrative planning: nodes are create-if-absent, choices are replaced
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
from loguru import logger
from sqlalchemy import select

from nuggets.authoring.audio_generator import AudioGenerator
from nuggets.authoring.image_generator import ImageGenerator
from nuggets.authoring.slide_generator import SlideGenerator
from nuggets.db.database import Database
from nuggets.db.models import MonitoredURL, NarrativeNode, Nugget, NuggetStatus
from nuggets.exceptions import NotFoundError, ValidationError
from nuggets.ingestion.assembler import NuggetAssembler
from nuggets.ingestion.text_extractor import extract_file, extract_html
from nuggets.ingestion.url_monitor import fetch_page
from nuggets.jobs.orchestrator import JobOrchestrator
from nuggets.jobs.payloads import (
    EmbeddingPayload,
    IngestionPayload,
    JobKind,
    MediaGenerationPayload,
    NarrativePlanningPayload,
)
from nuggets.jobs.worker import JobContext
from nuggets.learning.mastery_tracker import MasteryTracker
from nuggets.narrative.choice_generator import ChoiceGenerator
from nuggets.narrative.node_generator import NodeGenerator
from nuggets.semantic.embedding_service import EmbeddingService


class BaseHandler:
    """Default no-op failure hook."""

    async def on_failure(self, payload: Any, error: Exception) -> None:
        logger.error("{} gave up on {}: {}", type(self).__name__, payload, error)


class IngestionHandler(BaseHandler):
    """Extract a file or URL and assemble its nuggets."""

    def __init__(
        self,
        db: Database,
        orchestrator: JobOrchestrator,
        assembler: NuggetAssembler,
        http_client: httpx.AsyncClient,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.assembler = assembler
        self.http_client = http_client

    async def handle(self, payload: IngestionPayload, context: JobContext) -> dict[str, Any]:
        if payload.job_id is None:
            raise ValidationError("Ingestion payload has no job_id")

        if not await self.orchestrator.begin_ingestion(payload.job_id):
            return {"job_id": payload.job_id, "skipped": True}

        logger.info("Processing {} ingestion job {}: {} (attempt {})", payload.type, payload.job_id, payload.source, context.attempt)
        text = await self.load_text(payload)
        nuggets = await self.assembler.assemble(
            text,
            organization_id=payload.organization_id,
            source_type=payload.type,
            source_path=payload.source,
            job_id=payload.job_id,
        )
        await self.orchestrator.finish_ingestion(payload.job_id, len(nuggets))
        return {"job_id": payload.job_id, "nugget_count": len(nuggets)}

    async def on_failure(self, payload: IngestionPayload, error: Exception) -> None:
        if payload.job_id:
            await self.orchestrator.fail_ingestion(payload.job_id, str(error) or error.__class__.__name__)

    async def load_text(self, payload: IngestionPayload) -> str:
        if payload.type == "file":
            return await extract_file(Path(payload.source))

        html = await fetch_page(self.http_client, payload.source)
        return extract_html(html, await self._selector_for(payload))

    async def _selector_for(self, payload: IngestionPayload) -> str | None:
        """CSS selector of the monitored URL that produced the job, if any."""
        url_id = payload.metadata.url_id if payload.metadata else None
        if not url_id:
            return None
        async with self.db.session_scope() as session:
            monitored = await session.get(MonitoredURL, url_id)
            return monitored.content_selector if monitored else None


class EmbeddingHandler(BaseHandler):
    """Embed a nugget, then plan its narrative node."""

    def __init__(self, orchestrator: JobOrchestrator, embeddings: EmbeddingService):
        self.orchestrator = orchestrator
        self.embeddings = embeddings

    async def handle(self, payload: EmbeddingPayload, context: JobContext) -> dict[str, Any]:
        nugget = await self.embeddings.generate_and_store(payload.nugget_id, payload.content)
        handle = await self.orchestrator.enqueue(
            JobKind.NARRATIVE_PLANNING,
            NarrativePlanningPayload(organization_id=payload.organization_id, nugget_ids=[nugget.id]),
        )
        return {"nugget_id": nugget.id, "status": nugget.status, "narrative_entry_id": handle.entry_id}


class ImageHandler(BaseHandler):
    """Illustrate a nugget once."""

    def __init__(self, db: Database, generator: ImageGenerator):
        self.db = db
        self.generator = generator

    async def handle(self, payload: MediaGenerationPayload, context: JobContext) -> dict[str, Any]:
        nugget = await _load_nugget(self.db, payload.nugget_id)
        if nugget.image_url:
            logger.debug("Nugget {} already has an image", nugget.id)
            return {"nugget_id": nugget.id, "image_url": nugget.image_url, "skipped": True}

        topics = list((nugget.metadata_ or {}).get("topics") or [])
        prompt = self.generator.build_prompt(nugget.content, topics)
        image_url = await self.generator.generate_image(prompt, nugget.id, nugget.organization_id)

        async with self.db.session_scope() as session:
            stored = await session.get(Nugget, nugget.id)
            if stored is None:
                raise NotFoundError("Nugget", nugget.id)
            stored.image_url = image_url
        return {"nugget_id": nugget.id, "image_url": image_url}


class AudioHandler(BaseHandler):
    """Narrate a nugget once."""

    def __init__(self, db: Database, generator: AudioGenerator):
        self.db = db
        self.generator = generator

    async def handle(self, payload: MediaGenerationPayload, context: JobContext) -> dict[str, Any]:
        nugget = await _load_nugget(self.db, payload.nugget_id)
        if nugget.audio_url:
            logger.debug("Nugget {} already has audio", nugget.id)
            return {"nugget_id": nugget.id, "audio_url": nugget.audio_url, "skipped": True}

        script = self.generator.build_script(nugget.content)
        audio_url = await self.generator.generate_audio(script.script, nugget.id, nugget.organization_id)

        async with self.db.session_scope() as session:
            stored = await session.get(Nugget, nugget.id)
            if stored is None:
                raise NotFoundError("Nugget", nugget.id)
            stored.audio_url = audio_url
        return {"nugget_id": nugget.id, "audio_url": audio_url, "duration": script.estimated_duration}


class SlideHandler(BaseHandler):
    """Build a slide deck for a nugget once; stored in its metadata."""

    def __init__(self, db: Database, generator: SlideGenerator):
        self.db = db
        self.generator = generator

    async def handle(self, payload: MediaGenerationPayload, context: JobContext) -> dict[str, Any]:
        nugget = await _load_nugget(self.db, payload.nugget_id)
        metadata = dict(nugget.metadata_ or {})
        if metadata.get("slides"):
            logger.debug("Nugget {} already has slides", nugget.id)
            return {"nugget_id": nugget.id, "slide_count": len(metadata["slides"]), "skipped": True}

        deck = await self.generator.generate_slides(
            nugget.content,
            nugget.organization_id,
            topics=list(metadata.get("topics") or []),
            difficulty=metadata.get("difficulty"),
        )

        async with self.db.session_scope() as session:
            stored = await session.get(Nugget, nugget.id)
            if stored is None:
                raise NotFoundError("Nugget", nugget.id)
            stored.metadata_ = {
                **(stored.metadata_ or {}),
                "slides": [slide.model_dump() for slide in deck.slides],
                "slide_metadata": {"total_slides": deck.total_slides, "estimated_minutes": deck.estimated_minutes},
            }
        logger.info("Stored {} slides for nugget {}", deck.total_slides, nugget.id)
        return {"nugget_id": nugget.id, "slide_count": deck.total_slides}


class NarrativeHandler(BaseHandler):
    """
    Create nodes for ready nuggets and regenerate their choices.

    Candidates are all other nodes of the organization; ranking uses the
    union of the organization's unresolved gaps and embedding similarity.
    """

    def __init__(
        self,
        db: Database,
        nodes: NodeGenerator,
        choices: ChoiceGenerator,
        mastery: MasteryTracker,
        embeddings: EmbeddingService,
    ):
        self.db = db
        self.nodes = nodes
        self.choices = choices
        self.mastery = mastery
        self.embeddings = embeddings

    async def handle(self, payload: NarrativePlanningPayload, context: JobContext) -> dict[str, Any]:
        async with self.db.session_scope() as session:
            rows = await session.execute(
                select(Nugget).where(
                    Nugget.id.in_(payload.nugget_ids),
                    Nugget.organization_id == payload.organization_id,
                    Nugget.status == NuggetStatus.READY,
                )
            )
            nuggets = list(rows.scalars().all())

        skipped = sorted(set(payload.nugget_ids) - {n.id for n in nuggets})
        if skipped:
            logger.warning("Skipping nuggets that are missing or not ready: {}", ", ".join(skipped))
        if not nuggets:
            return {"node_ids": [], "skipped": skipped}

        created = await self.nodes.generate_nodes(nuggets)
        all_nodes = await self.nodes.list_nodes(payload.organization_id)
        gaps = await self.mastery.unresolved_gaps(payload.organization_id)
        by_nugget = await self._nuggets_by_id(payload.organization_id)

        # New nodes plus older ones that still have room for more choices
        created_ids = {n.id for n in created}
        targets = [
            n for n in all_nodes
            if n.id in created_ids or len(n.choices or []) < self.choices.max_choices
        ]
        for node in targets:
            candidates = [n for n in all_nodes if n.id != node.id]
            similarity = self._node_similarity(node, candidates, by_nugget)
            await self.choices.generate_choices(node, candidates, gaps=gaps, similarity=similarity)

        return {"node_ids": [n.id for n in created], "updated_node_ids": [n.id for n in targets], "skipped": skipped}

    async def _nuggets_by_id(self, organization_id: str) -> dict[str, Nugget]:
        async with self.db.session_scope() as session:
            rows = await session.execute(
                select(Nugget).where(Nugget.organization_id == organization_id, Nugget.embedding.is_not(None))
            )
            return {n.id: n for n in rows.scalars().all()}

    def _node_similarity(
        self,
        node: NarrativeNode,
        candidates: list[NarrativeNode],
        by_nugget: dict[str, Nugget],
    ) -> dict[str, float]:
        source = by_nugget.get(node.nugget_id)
        if source is None:
            return {}
        node_for_nugget = {c.nugget_id: c.id for c in candidates}
        scores = self.embeddings.similarities(
            source, [by_nugget[nid] for nid in node_for_nugget if nid in by_nugget]
        )
        return {node_for_nugget[nugget_id]: score for nugget_id, score in scores.items()}


async def _load_nugget(db: Database, nugget_id: str) -> Nugget:
    async with db.session_scope() as session:
        nugget = await session.get(Nugget, nugget_id)
        if nugget is None:
            raise NotFoundError("Nugget", nugget_id)
        return nugget
