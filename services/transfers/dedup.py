"""Content-key deduplication for transfer events."""

from typing import Iterable, List, Tuple

from .models import TransferEvent

EventKey = Tuple[str, str, str, str]


def event_key(event: TransferEvent) -> EventKey:
    """Key mirrored by the store's uniqueness constraint."""
    return (event.digest, event.recipient, event.amount, event.kind.value)


def deduplicate(events: Iterable[TransferEvent]) -> List[TransferEvent]:
    """Remove events sharing a content key, keeping the first occurrence."""
    seen = set()
    unique = []

    for event in events:
        key = event_key(event)
        if key not in seen:
            seen.add(key)
            unique.append(event)

    return unique
