"""DirectMutationConnector: applies an Action's patch through the DataSourceAdapter."""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Callable, List, Optional

from governance_engine.adapters import DataSourceAdapter
from governance_engine.db import utcnow
from governance_engine.errors import DataSourceUnavailableError, ExecutionError, InvalidInputError
from governance_engine.schemas import Action, ExecutionOutcome

logger = logging.getLogger(__name__)


class DirectMutationConnector:
    """
    Payload:
        collection: target collection
        filter: documents to patch
        patch: {"$set": {...}, "$unset": {...}}
        timestamp_field: optional field set to the execution time
    """

    name = "direct_mutation"

    def __init__(
        self,
        data_source: Optional[DataSourceAdapter],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.data_source = data_source
        self._clock = clock

    @property
    def configured(self) -> bool:
        return self.data_source is not None

    def missing_configuration(self) -> List[str]:
        return [] if self.configured else ["data_source"]

    async def execute(self, action: Action) -> ExecutionOutcome:
        payload = action.payload
        collection = payload.get("collection")
        filter = payload.get("filter")
        if not collection or not isinstance(filter, dict) or not filter:
            raise InvalidInputError("update_document payload needs 'collection' and a non-empty 'filter'")

        patch = copy.deepcopy(payload.get("patch") or {})
        timestamp_field = payload.get("timestamp_field")
        if timestamp_field:
            patch.setdefault("$set", {})[timestamp_field] = self._clock()

        try:
            result = await self.data_source.update(collection, filter, patch)
        except DataSourceUnavailableError as e:
            raise ExecutionError(f"Update on {collection} failed: {e.detail}", retryable=True) from e

        if result.matched_count == 0:
            logger.warning("No document in %s matches %s (action=%s)", collection, filter, action.id)
            raise ExecutionError(f"No document found in {collection} matching {filter}", retryable=False)

        logger.info(
            "Patched %d document(s) in %s (matched=%d, action=%s)",
            result.modified_count, collection, result.matched_count, action.id,
        )
        return ExecutionOutcome(
            success=True,
            result={
                "collection": collection,
                "matched_count": result.matched_count,
                "modified_count": result.modified_count,
            },
            message=f"Updated {result.matched_count} document(s) in {collection}.",
        )
