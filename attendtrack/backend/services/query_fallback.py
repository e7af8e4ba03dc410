import logging
from typing import Any, Dict, List, Tuple

from ..db.redis_client import Query, RedisDocumentStore, finalize_results
from ..db.store_errors import IndexUnavailableError
from ..logging.logging_config import log_once

logger = logging.getLogger(__name__)


def equality_only(query: Query) -> Query:
    """The same query without range filters, ordering or limit."""
    return Query(query.collection, filters=tuple(f for f in query.filters if f[1] in ("==", "in")))


async def get_with_index_fallback(store: RedisDocumentStore, query: Query) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Runs `query`; if its compound index is not available, runs the equality
    part only and applies ranges, ordering and limit locally. The returned
    documents are the same either way. The flag tells whether the fallback ran.
    """
    try:
        return await store.get(query), False
    except IndexUnavailableError as e:
        log_once(
            logger,
            f"index-fallback:{e.index_name}",
            f"Index '{e.index_name}' is not available; filtering and ordering {query.collection} locally.",
        )
        return await get_local(store, query), True


async def get_local(store: RedisDocumentStore, query: Query) -> List[Dict[str, Any]]:
    return finalize_results(query, await store.get(equality_only(query)))
