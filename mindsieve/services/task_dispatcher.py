"""Card generation dispatch.

On Cloud Run, card generation is queued as a Cloud Task that calls back
into ``POST /api/tasks/cards``. Locally, or when queueing fails, the card
is generated inline.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from google.cloud import tasks_v2

from mindsieve.config import GCPConfig, TasksConfig, get_settings
from mindsieve.core.cards import CardGenerator, CardRequest, CardResult, card_id

logger = logging.getLogger(__name__)


class TaskQueue(ABC):
    """Abstract base class for HTTP task queues."""

    @abstractmethod
    async def enqueue(self, url: str, body: Dict[str, Any], audience: Optional[str] = None) -> str:
        """Queue a POST of ``body`` to ``url`` and return the task name."""
        pass


class CloudTasksQueue(TaskQueue):
    """Task queue backed by Cloud Tasks."""

    def __init__(
        self,
        config: Optional[TasksConfig] = None,
        gcp: Optional[GCPConfig] = None,
        client: Optional[tasks_v2.CloudTasksAsyncClient] = None,
    ):
        settings = get_settings()
        self.config = config or settings.tasks
        self.gcp = gcp or settings.gcp
        self._client = client

    def _ensure_initialized(self):
        """Lazy initialization of the Cloud Tasks client."""
        if self._client is None:
            self._client = tasks_v2.CloudTasksAsyncClient()

    async def enqueue(self, url: str, body: Dict[str, Any], audience: Optional[str] = None) -> str:
        self._ensure_initialized()
        parent = self._client.queue_path(self.gcp.project_id, self.config.location, self.config.queue)

        http_request = tasks_v2.HttpRequest(
            http_method=tasks_v2.HttpMethod.POST,
            url=url,
            headers={"Content-Type": "application/json"},
            body=json.dumps(body).encode("utf-8"),
        )
        if self.config.service_account_email:
            http_request.oidc_token = tasks_v2.OidcToken(
                service_account_email=self.config.service_account_email,
                audience=audience or url,
            )

        task = await self._client.create_task(parent=parent, task=tasks_v2.Task(http_request=http_request))
        return task.name


@dataclass
class DispatchResult:
    """How a card request was handled.

    ``mode`` is ``async`` with ``task_name`` and the precomputed ``card_id``,
    or ``sync`` with the generated ``result``.
    """
    mode: str
    card_id: str
    task_name: Optional[str] = None
    result: Optional[CardResult] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.mode == "async":
            return {"ok": True, "mode": self.mode, "id": self.card_id, "name": self.task_name}
        return {
            "ok": True,
            "mode": self.mode,
            "id": self.result.id,
            "cached": self.result.cached,
            "card": self.result.card,
        }


class TaskDispatcher:
    """Routes card requests to the task queue or to inline generation."""

    def __init__(
        self,
        generator: CardGenerator,
        queue: Optional[TaskQueue] = None,
        config: Optional[TasksConfig] = None,
    ):
        """Initialize the dispatcher.

        Args:
            generator: Card generator for inline generation
            queue: Task queue for deferred generation
            config: Queueing configuration
        """
        self.generator = generator
        self.config = config or get_settings().tasks
        self.queue = queue

    @property
    def queueing_enabled(self) -> bool:
        return self.config.enabled and not self.config.force_sync and self.queue is not None

    async def dispatch(self, request: CardRequest, force_sync: bool = False) -> DispatchResult:
        """Queue or generate a card.

        Args:
            request: The card request
            force_sync: Generate inline even when queueing is enabled

        Returns:
            DispatchResult describing what happened
        """
        cid = card_id(request.session_id, request.turn_id, request.answer, request.sources)

        if self.queueing_enabled and not force_sync:
            try:
                if not self.config.handler_url:
                    raise ValueError("Task handler URL not configured")
                name = await self.queue.enqueue(self.config.handler_url, request.to_payload())
                logger.info(f"Queued card {cid} as task {name}")
                return DispatchResult(mode="async", card_id=cid, task_name=name)
            except Exception as e:
                logger.warning(f"Card enqueue failed, generating inline: {e}")

        result = await self.generator.generate_card(request)
        return DispatchResult(mode="sync", card_id=result.id, result=result)
