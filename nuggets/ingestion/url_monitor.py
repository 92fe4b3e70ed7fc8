"""
Web page change monitoring.

Each enabled monitored URL gets a polling task: an immediate check, then one
check per ``check_interval`` seconds. A check fetches the page, extracts text
(optionally limited to a CSS selector) and compares its SHA-256 hash with the
stored one. A first check or a changed hash stores the new hash and, when
``auto_process`` is set, enqueues a ``url`` ingestion job.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass

import httpx
from loguru import logger
from sqlalchemy import select

from nuggets.db.database import Database
from nuggets.db.models import MonitoredURL
from nuggets.db.models.base import utcnow
from nuggets.exceptions import NotFoundError, TransientError
from nuggets.ingestion.text_extractor import extract_html
from nuggets.jobs.orchestrator import JobOrchestrator
from nuggets.jobs.payloads import IngestionPayload, IngestionSourceMetadata, JobKind

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; NuggetsLMS/1.0)"


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


async def fetch_page(client: httpx.AsyncClient, url: str) -> str:
    """
    GET a page and return its body.

    Raises:
        TransientError: network failure or non-2xx status.
    """
    try:
        response = await client.get(url)
    except httpx.HTTPError as e:
        raise TransientError(f"Failed to fetch {url}: {e}") from e
    if not response.is_success:
        raise TransientError(f"Failed to fetch {url}: HTTP {response.status_code}")
    return response.text


@dataclass
class URLCheckResult:
    """Outcome of one URL check."""

    url_id: str
    changed: bool = False
    content_hash: str | None = None
    job_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class URLMonitor:
    """Registry of per-URL polling tasks."""

    def __init__(
        self,
        db: Database,
        orchestrator: JobOrchestrator,
        http_client: httpx.AsyncClient | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.user_agent = user_agent
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_events: dict[str, asyncio.Event] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-load the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
        return self._client

    @property
    def monitored_url_ids(self) -> list[str]:
        return list(self._tasks)

    def is_monitoring(self, url_id: str) -> bool:
        return url_id in self._tasks

    # ========================================
    # Registry
    # ========================================

    async def start_monitoring(self, url: MonitoredURL) -> None:
        """Start (or restart) polling a URL. Disabled URLs are only released."""
        await self.stop_monitoring(url.id)
        if not url.enabled:
            logger.info("URL {} is disabled, not monitoring", url.id)
            return

        stop_event = asyncio.Event()
        self._stop_events[url.id] = stop_event
        self._tasks[url.id] = asyncio.create_task(
            self._monitor_loop(url.id, max(1, url.check_interval), stop_event),
            name=f"monitor-{url.id}",
        )
        logger.info("Started monitoring URL {} ({}, every {}s)", url.id, url.url, url.check_interval)

    async def stop_monitoring(self, url_id: str) -> None:
        """Release a URL's polling task. Unknown ids are a no-op."""
        task = self._tasks.pop(url_id, None)
        stop_event = self._stop_events.pop(url_id, None)
        if task is None:
            return
        if stop_event is not None:
            stop_event.set()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Stopped monitoring URL {}", url_id)

    async def stop_all(self) -> None:
        for url_id in list(self._tasks):
            await self.stop_monitoring(url_id)

    async def aclose(self) -> None:
        await self.stop_all()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def initialize_monitors(self) -> int:
        """Start polling all enabled URLs. Returns the count started."""
        async with self.db.session_scope() as session:
            urls = (await session.execute(select(MonitoredURL).where(MonitoredURL.enabled.is_(True)))).scalars().all()
        for url in urls:
            await self.start_monitoring(url)
        logger.info("Initialized URL monitors: {}", len(urls))
        return len(urls)

    async def register_url(
        self,
        organization_id: str,
        url: str,
        check_interval: int = 3600,
        content_selector: str | None = None,
        auto_process: bool = True,
        enabled: bool = True,
        start: bool = True,
    ) -> MonitoredURL:
        """Persist a monitored URL and optionally start polling it."""
        async with self.db.session_scope() as session:
            monitored = MonitoredURL(
                organization_id=organization_id,
                url=url,
                check_interval=check_interval,
                content_selector=content_selector,
                auto_process=auto_process,
                enabled=enabled,
            )
            session.add(monitored)
        if start:
            await self.start_monitoring(monitored)
        return monitored

    async def _monitor_loop(self, url_id: str, interval: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.check_url(url_id)
            except NotFoundError:
                logger.warning("Monitored URL {} no longer exists, stopping", url_id)
                return
            except Exception:  # Intentionally broad - one failed check must not end polling
                logger.exception("URL check crashed for {}, retrying in {}s", url_id, interval)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # ========================================
    # Checks
    # ========================================

    async def trigger_check(self, url_id: str) -> URLCheckResult:
        """Check a URL now, outside its schedule."""
        return await self.check_url(url_id)

    async def check_url(self, url_id: str) -> URLCheckResult:
        """
        Fetch a URL and enqueue ingestion when its content changed.

        Fetch failures are logged and reported in the result; the stored hash
        and last-checked time are left untouched.

        Raises:
            NotFoundError: unknown URL id.
        """
        async with self.db.session_scope() as session:
            monitored = await session.get(MonitoredURL, url_id)
            if monitored is None:
                raise NotFoundError("MonitoredURL", url_id)

        try:
            html = await fetch_page(self.client, monitored.url)
        except TransientError as e:
            logger.warning("URL check failed for {}: {}", monitored.url, e)
            return URLCheckResult(url_id=url_id, error=str(e))

        text = extract_html(html, monitored.content_selector)
        digest = content_hash(text)
        result = URLCheckResult(url_id=url_id, content_hash=digest)

        async with self.db.session_scope() as session:
            monitored = await session.get(MonitoredURL, url_id)
            if monitored is None:
                raise NotFoundError("MonitoredURL", url_id)
            monitored.last_checked = utcnow()
            if monitored.last_content_hash == digest:
                logger.debug("No change detected for {}", monitored.url)
                return result

            first_check = monitored.last_content_hash is None
            monitored.last_content_hash = digest
            result.changed = True
            if monitored.auto_process:
                payload = IngestionPayload(
                    type="url",
                    source=monitored.url,
                    organization_id=monitored.organization_id,
                    metadata=IngestionSourceMetadata(url_id=monitored.id),
                )
                handle = await self.orchestrator.enqueue(JobKind.INGESTION, payload, session=session)
                result.job_id = handle.job_id

        logger.info(
            "{} for {}{}",
            "Initial content captured" if first_check else "Content change detected",
            monitored.url,
            f", queued job {result.job_id}" if result.job_id else "",
        )
        return result
