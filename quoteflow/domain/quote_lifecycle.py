# quoteflow/domain/quote_lifecycle.py
from __future__ import annotations

from enum import Enum

from ..errors import InvalidTransitionError


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    ARCHIVED = "archived"


# from -> allowed targets. Checked before every status write.
QUOTE_TRANSITIONS: dict[QuoteStatus, frozenset[QuoteStatus]] = {
    QuoteStatus.DRAFT: frozenset({QuoteStatus.SENT}),
    QuoteStatus.SENT: frozenset(
        {QuoteStatus.VIEWED, QuoteStatus.ACCEPTED, QuoteStatus.DECLINED, QuoteStatus.ARCHIVED}
    ),
    QuoteStatus.VIEWED: frozenset({QuoteStatus.ACCEPTED, QuoteStatus.DECLINED, QuoteStatus.ARCHIVED}),
    QuoteStatus.ACCEPTED: frozenset({QuoteStatus.ARCHIVED}),
    QuoteStatus.DECLINED: frozenset({QuoteStatus.ARCHIVED}),
    QuoteStatus.ARCHIVED: frozenset(),
}

EDITABLE_STATUSES = frozenset({QuoteStatus.DRAFT})
# statuses after which a customer view has nothing left to record
PAST_VIEW = frozenset({QuoteStatus.VIEWED, QuoteStatus.ACCEPTED, QuoteStatus.DECLINED, QuoteStatus.ARCHIVED})


def parse_quote_status(raw: str) -> QuoteStatus:
    try:
        return QuoteStatus((raw or "").strip().lower())
    except ValueError:
        raise InvalidTransitionError(str(raw), "?", entity="quote") from None


def can_transition(current: QuoteStatus, target: QuoteStatus) -> bool:
    return target in QUOTE_TRANSITIONS.get(current, frozenset())


def assert_quote_transition(current: QuoteStatus, target: QuoteStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value, entity="quote")
