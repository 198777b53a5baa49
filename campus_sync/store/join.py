"""
Fetch-then-join enrichment.

The backend has no foreign-key embedding for author profiles, so views fetch
the primary rows, then fetch the related rows for the distinct keys in one
``in`` query, then attach them in O(n + m).
"""

import logging
from typing import Dict, List

from campus_sync.models.query import Filter, FilterOp, ListQuery
from campus_sync.remote.contract import FetchError, RemoteCollectionClient

logger = logging.getLogger(__name__)


def attach_related(
    rows: List[dict],
    related_rows: List[dict],
    local_key: str,
    as_field: str,
    related_key: str = "id",
) -> List[dict]:
    """
    Attach the related row matching ``row[local_key]`` under ``as_field``
    (``None`` when there is no match). Returns new dicts; inputs are untouched.
    """
    index: Dict[str, dict] = {}
    for related in related_rows:
        key = related.get(related_key)
        if key is not None:
            index.setdefault(str(key), related)

    joined = []
    for row in rows:
        key = row.get(local_key)
        match = index.get(str(key)) if key is not None else None
        enriched = dict(row)
        enriched[as_field] = match
        joined.append(enriched)
    return joined


async def fetch_related(
    client: RemoteCollectionClient,
    rows: List[dict],
    table: str,
    local_key: str,
    as_field: str,
    columns: str = "*",
    related_key: str = "id",
) -> List[dict]:
    """
    Second step of the join: one query for all distinct keys, then attach.

    A failed lookup leaves ``as_field`` as ``None`` on every row; the primary
    rows are still worth showing.
    """
    keys = _distinct_keys(rows, local_key)
    if not keys:
        return attach_related(rows, [], local_key, as_field, related_key)

    query = ListQuery(
        table=table,
        columns=columns,
        filters=[Filter(field=related_key, op=FilterOp.IN, value=keys)],
        order_by=related_key,
    )
    try:
        related = await client.fetch(query)
    except FetchError as e:
        logger.warning("Fetching %s for %d rows failed: %s", table, len(rows), e)
        related = []
    return attach_related(rows, related, local_key, as_field, related_key)


def profile_enricher(
    client: RemoteCollectionClient,
    local_key: str = "user_id",
    as_field: str = "profiles",
    columns: str = "id, full_name, email",
):
    """An ``enrich`` hook for stores whose rows carry an author id."""
    async def _enrich(rows: List[dict]) -> List[dict]:
        return await fetch_related(
            client, rows, "profiles", local_key, as_field, columns=columns
        )
    return _enrich


def _distinct_keys(rows: List[dict], local_key: str) -> List[str]:
    return list(dict.fromkeys(
        str(row[local_key]) for row in rows if row.get(local_key) is not None
    ))
