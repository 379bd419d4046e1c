from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from statsgoblin.common.errors import StoreError
from statsgoblin.events.schema import SearchMetricEvent
from statsgoblin.storage.opensearch import OpenSearchStore

log = logging.getLogger(__name__)

_KEYWORD_SUBFIELD = {"keyword": {"type": "keyword"}}


def index_name_for(prefix: str, timestamp: datetime) -> str:
    """Daily partition holding an event, keyed on its UTC calendar date."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return f"{prefix}-{timestamp.astimezone(timezone.utc):%Y-%m-%d}"


def build_index_template(prefix: str, shards: int = 1, replicas: int = 1, policy_id: str | None = None) -> dict[str, Any]:
    index_settings: dict[str, Any] = {
        "number_of_shards": shards,
        "number_of_replicas": replicas,
    }
    if policy_id:
        index_settings["plugins.index_state_management.policy_id"] = policy_id

    return {
        "index_patterns": [f"{prefix}-*"],
        "template": {
            "settings": index_settings,
            "mappings": {
                "properties": {
                    "requestId": {"type": "keyword"},
                    "query": {"type": "text", "fields": _KEYWORD_SUBFIELD},
                    "offset": {"type": "integer"},
                    "executionTimeMs": {"type": "integer"},
                    "totalResults": {"type": "integer"},
                    "hitsCount": {"type": "integer"},
                    "timestamp": {"type": "date"},
                    "userAgent": {"type": "text", "fields": _KEYWORD_SUBFIELD},
                    "hits": {
                        "type": "nested",
                        "properties": {
                            "documentId": {"type": "keyword"},
                            "urlHost": {"type": "keyword"},
                            "urlPath": {"type": "text", "fields": _KEYWORD_SUBFIELD},
                            "score": {"type": "float"},
                        },
                    },
                }
            },
        },
    }


class IndexWriter:
    def __init__(
        self,
        store: OpenSearchStore,
        index_prefix: str,
        shards: int = 1,
        replicas: int = 1,
        policy_id: str | None = None,
    ):
        self.store = store
        self.index_prefix = index_prefix
        self.shards = shards
        self.replicas = replicas
        self.policy_id = policy_id
        self._schema_result: bool | None = None
        self._schema_lock = asyncio.Lock()

    @property
    def template_name(self) -> str:
        return f"{self.index_prefix}-template"

    async def ensure_schema(self) -> bool:
        """Install the partition template once; failures are logged, not raised.

        Partitions still accept writes against dynamic mappings when the
        template is missing, so a failure here only degrades query quality.
        """
        if self._schema_result is not None:
            return self._schema_result
        async with self._schema_lock:
            if self._schema_result is not None:
                return self._schema_result
            body = build_index_template(self.index_prefix, self.shards, self.replicas, self.policy_id)
            try:
                await self.store.put_index_template(self.template_name, body)
            except StoreError as e:
                log.warning("index_template_failed", extra={"index": self.template_name, "error": str(e)})
                self._schema_result = False
            else:
                log.info("index_template_ready", extra={"index": self.template_name})
                self._schema_result = True
        return self._schema_result

    def partition_for(self, event: SearchMetricEvent) -> str:
        return index_name_for(self.index_prefix, event.timestamp)

    async def write(self, event: SearchMetricEvent) -> None:
        index = self.partition_for(event)
        if event.hits_count != len(event.hits):
            log.debug(
                "hits_count_mismatch",
                extra={"request_id": event.request_id, "count": event.hits_count},
            )

        try:
            await self.store.index_document(index, event.request_id, event.to_document())
        except StoreError as e:
            log.error("index_metric_failed", extra={"request_id": event.request_id, "index": index, "error": str(e)})
            raise

        log.debug("metric_indexed", extra={"request_id": event.request_id, "index": index})

    index_metric = write
