"""Optional embedding generation for migrated case text and messages."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from openai import AsyncOpenAI

from .target_store import TargetStore
from ..errors import TargetStoreError
from ..models.record import TargetRecord

logger = logging.getLogger(__name__)

EMBEDDINGS_TABLE = "ai_embeddings"

# which columns hold text worth embedding, per target table
TEXT_FIELDS = {
    "cases": ("title", "description"),
    "case_messages": ("subject", "body"),
}

MAX_CONTENT_CHARS = 8000


@dataclass
class EmbeddingItem:
    entity_type: str
    entity_id: str
    content: str

    @property
    def embedding_id(self) -> str:
        """Stable id so re-runs upsert the same ai_embeddings row."""
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{self.entity_type}:{self.entity_id}"))


@dataclass
class EmbeddingResult:
    """Counts for one embedding pass."""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "batches": self.batches,
            "errors": self.errors[:20],
        }


def collect_items(records: List[TargetRecord]) -> List[EmbeddingItem]:
    """Non-empty text from case descriptions and message bodies."""
    items: List[EmbeddingItem] = []
    for record in records:
        fields = TEXT_FIELDS.get(record.table)
        if not fields:
            continue
        parts = [str(record.data.get(f)).strip() for f in fields if record.data.get(f)]
        content = "\n\n".join(p for p in parts if p)
        if content:
            items.append(EmbeddingItem(record.table, record.id, content[:MAX_CONTENT_CHARS]))
    return items


class EmbeddingGenerator:
    """
    Requests embeddings for a list of items and stores them in ai_embeddings.

    Items in a batch are requested concurrently and awaited together; one
    failed item never fails the others. Batches run one after another with a
    fixed delay between them.
    """

    def __init__(
        self,
        target_store: Optional[TargetStore],
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        batch_size: int = 10,
        max_retries: int = 3,
        inter_batch_delay: float = 1.0,
        dry_run: bool = False,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        """
        Args:
            target_store: Where ai_embeddings rows are written
            api_key: OpenAI API key
            model: Embedding model name
            batch_size: Concurrent requests per batch
            max_retries: Retries per request, handled by the OpenAI client
            inter_batch_delay: Seconds to wait between batches
            dry_run: Request embeddings but do not store them
            client_factory: Builds the async client for one pass (default AsyncOpenAI)
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.target_store = target_store
        self.model = model
        self.batch_size = batch_size
        self.inter_batch_delay = inter_batch_delay
        self.dry_run = dry_run
        self.api_key = api_key
        self.max_retries = max_retries
        self._client_factory = client_factory

    def _make_client(self) -> Any:
        if self._client_factory is not None:
            return self._client_factory()
        return AsyncOpenAI(api_key=self.api_key, max_retries=self.max_retries)

    async def _embed(self, client: Any, item: EmbeddingItem) -> List[float]:
        response = await client.embeddings.create(model=self.model, input=item.content)
        return list(response.data[0].embedding)

    def _store(self, rows: List[Dict[str, Any]]) -> None:
        if self.dry_run or self.target_store is None or not rows:
            return
        self.target_store.upsert(EMBEDDINGS_TABLE, rows, conflict_policy="overwrite")

    async def generate_async(self, items: List[EmbeddingItem]) -> EmbeddingResult:
        """
        Embed items batch by batch.

        The client is opened and closed inside this call, so its connection
        pool belongs to the running event loop.
        """
        async with self._make_client() as client:
            return await self._embed_batches(client, items)

    async def _embed_batches(self, client: Any, items: List[EmbeddingItem]) -> EmbeddingResult:
        result = EmbeddingResult()

        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            result.batches += 1
            result.attempted += len(batch)

            outcomes = await asyncio.gather(
                *(self._embed(client, item) for item in batch),
                return_exceptions=True,
            )

            rows: List[Dict[str, Any]] = []
            stored_items: List[EmbeddingItem] = []
            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    result.failed += 1
                    result.errors.append({"entity_id": item.entity_id, "error": str(outcome)})
                    logger.warning(f"Embedding failed for {item.entity_type} {item.entity_id}: {outcome}")
                    continue
                rows.append({
                    "id": item.embedding_id,
                    "entity_type": item.entity_type,
                    "entity_id": item.entity_id,
                    "content": item.content,
                    "embedding": outcome,
                    "metadata": {"model": self.model, "source": "migration"},
                })
                stored_items.append(item)

            try:
                self._store(rows)
                result.succeeded += len(stored_items)
            except TargetStoreError as e:
                result.failed += len(stored_items)
                result.errors.append({"batch": result.batches, "error": str(e)})
                logger.error(f"Storing embedding batch {result.batches} failed: {e}")

            logger.info(
                f"Embedding batch {result.batches}: {len(stored_items)}/{len(batch)} embedded"
            )

            if start + self.batch_size < len(items) and self.inter_batch_delay > 0:
                await asyncio.sleep(self.inter_batch_delay)

        return result

    def generate(self, records: List[TargetRecord]) -> EmbeddingResult:
        """Embed every record with usable text. Records without text are skipped."""
        items = collect_items(records)
        skipped = len(records) - len(items)
        if not items:
            return EmbeddingResult(skipped=skipped)
        logger.info(f"Generating embeddings for {len(items)} records with {self.model}")
        result = asyncio.run(self.generate_async(items))
        result.skipped = skipped
        return result
