"""
Relevance predicates — does an inbound change event belong to this view?

A predicate only sees what the feed delivered. Rows missing the fields a
predicate needs are treated as irrelevant.
"""

from typing import Any, Callable

from campus_sync.models.query import ListQuery
from campus_sync.models.record import ChangeEvent

RelevancePredicate = Callable[[ChangeEvent], bool]


def broadcast() -> RelevancePredicate:
    """Public feeds: every event is relevant."""
    def _relevant(event: ChangeEvent) -> bool:
        return True
    return _relevant


def between_participants(
    a: str,
    b: str,
    sender_field: str = "sender_id",
    receiver_field: str = "receiver_id",
) -> RelevancePredicate:
    """Direct messages exchanged between ``a`` and ``b``, in either direction."""
    pair = {str(a), str(b)}

    def _relevant(event: ChangeEvent) -> bool:
        row = event.row
        sender = row.get(sender_field)
        receiver = row.get(receiver_field)
        if sender is None or receiver is None:
            return False
        sender, receiver = str(sender), str(receiver)
        if a == b:
            return sender == receiver == str(a)
        return sender != receiver and {sender, receiver} == pair
    return _relevant


def involving(
    user_id: str,
    fields: tuple = ("sender_id", "receiver_id"),
) -> RelevancePredicate:
    """Rows where ``user_id`` appears in any of ``fields``."""
    def _relevant(event: ChangeEvent) -> bool:
        row = event.row
        return any(str(row.get(f)) == str(user_id) for f in fields if row.get(f) is not None)
    return _relevant


def field_equals(field: str, value: Any) -> RelevancePredicate:
    """Rows whose ``field`` equals ``value`` (e.g. comments on one item)."""
    def _relevant(event: ChangeEvent) -> bool:
        actual = event.row.get(field)
        return actual is not None and str(actual) == str(value)
    return _relevant


def query_predicate(query: ListQuery) -> RelevancePredicate:
    """Reuse a store's own query filters as its relevance test."""
    def _relevant(event: ChangeEvent) -> bool:
        return event.table == query.table and query.matches(event.row)
    return _relevant


def all_of(*predicates: RelevancePredicate) -> RelevancePredicate:
    def _relevant(event: ChangeEvent) -> bool:
        return all(p(event) for p in predicates)
    return _relevant
