"""
Subscription bus over the donation change feed.

A subscriber gets a lazy, unbounded stream of ChangeEvents, filtered through
the read policy, and resumable from ``Subscription.position``:

    sub = subscribe(actor)                 # tail from now
    for event in sub: ...                  # blocks between polls
    sub.poll()                             # or: whatever is there, no wait

    records, position = resync(actor)      # after a reconnect
    sub = subscribe(actor, after=position)

A position is ``"<seq>"`` or ``"<seq>:<gap>,<gap>..."``. Sequence numbers are
handed out at insert but commit in any order, so the gaps are the numbers
below ``seq`` (within the lookback window) that had not committed yet when
the position was taken. Resuming from a position fetches those again, so a
late commit is delivered instead of skipped. A bare integer means "no gaps".

Writers never wait on subscribers. After commit they call ``publish`` which
only pokes a condition so in-process subscribers stop sleeping early.
"""
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Set, Tuple, Union

from django.conf import settings
from django.db import OperationalError
from django.db.models import Max, Q

from .exceptions import UnavailableError, ValidationError
from .models import Donation, DonationEvent
from .policy import Actor, can_read

logger = logging.getLogger(__name__)

_wakeup = threading.Condition()
_published = 0


def publish(event_id: int) -> None:
    """Wake waiting subscribers; called after a change event commits."""
    global _published
    with _wakeup:
        _published = max(_published, event_id)
        _wakeup.notify_all()


def latest_seq() -> int:
    try:
        return DonationEvent.objects.aggregate(m=Max("id"))["m"] or 0
    except OperationalError as exc:
        raise UnavailableError("change feed unavailable") from exc


# ---------- positions ----------

def format_position(seq: int, gaps: Iterable[int] = ()) -> str:
    gaps = sorted(gaps)
    if not gaps:
        return str(seq)
    return f"{seq}:{','.join(str(g) for g in gaps)}"


def parse_position(value: Union[int, str]) -> Tuple[int, Set[int]]:
    if isinstance(value, int) and not isinstance(value, bool):
        return max(0, value), set()
    head, _, tail = str(value).strip().partition(":")
    try:
        seq = int(head)
        gaps = {int(g) for g in tail.split(",") if g}
    except ValueError:
        raise ValidationError("malformed feed position", fields={"after": "position"})
    if seq < 0 or any(g <= 0 or g >= seq for g in gaps):
        raise ValidationError("malformed feed position", fields={"after": "position"})
    return seq, gaps


def missing_seqs(floor: int, upto: int) -> Set[int]:
    """Sequence numbers in ``(floor, upto]`` with no committed event."""
    floor = max(0, floor)
    if upto <= floor:
        return set()
    try:
        present = set(
            DonationEvent.objects.filter(pk__gt=floor, pk__lte=upto).values_list("pk", flat=True)
        )
    except OperationalError as exc:
        raise UnavailableError("change feed unavailable") from exc
    return set(range(floor + 1, upto + 1)) - present


def current_position(lookback: Optional[int] = None) -> Tuple[int, Set[int]]:
    lookback = settings.DONATION_FEED_LOOKBACK if lookback is None else lookback
    seq = latest_seq()
    return seq, missing_seqs(seq - lookback, seq)


@dataclass(frozen=True)
class ChangeEvent:
    seq: int
    kind: str
    record: Donation
    prior_status: Optional[str] = None

    @classmethod
    def from_row(cls, row: DonationEvent) -> "ChangeEvent":
        return cls(seq=row.pk, kind=row.kind, record=row.record, prior_status=row.prior_status)

    @property
    def donation_id(self) -> uuid.UUID:
        return self.record.pk

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "kind": self.kind,
            "prior_status": self.prior_status,
            "record": self.record.snapshot(),
        }


class Subscription:
    """
    Cursor over the change feed for one actor.

    ``cursor`` is the highest sequence number fetched; ``pending`` holds the
    numbers below it, no older than ``lookback``, that were still missing.
    Every poll fetches both, so each event is emitted once. Events of one
    donation commit in version order (the row update serializes them), so
    emitting by sequence number keeps per-donation order.
    """

    def __init__(self, actor: Actor, after: Optional[Union[int, str]] = None,
                 poll_interval: Optional[float] = None, lookback: Optional[int] = None,
                 batch_size: Optional[int] = None):
        self.actor = actor
        self.poll_interval = settings.DONATION_FEED_POLL_INTERVAL if poll_interval is None else poll_interval
        self.lookback = settings.DONATION_FEED_LOOKBACK if lookback is None else lookback
        self.batch_size = settings.DONATION_FEED_BATCH_SIZE if batch_size is None else batch_size
        if after is None:
            self.cursor, self.pending = current_position(self.lookback)
        else:
            self.cursor, self.pending = parse_position(after)
        self._forget_old_gaps()
        self._closed = False

    @property
    def position(self) -> str:
        return format_position(self.cursor, self.pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
        with _wakeup:
            _wakeup.notify_all()

    def poll(self) -> List[ChangeEvent]:
        if self._closed:
            return []

        rows = self._fetch(self.cursor, self.pending, limit=self.batch_size + len(self.pending))
        delivered = []
        ahead = self.cursor
        for row in rows:
            if row.pk > self.cursor:
                ahead = max(ahead, row.pk)
            else:
                self.pending.discard(row.pk)
            event = ChangeEvent.from_row(row)
            if can_read(self.actor, event.record):
                delivered.append(event)

        if ahead > self.cursor:
            # rows come back in id order, so every committed id up to ``ahead`` is in ``rows``
            seen = {row.pk for row in rows}
            floor = max(self.cursor, ahead - self.lookback)
            self.pending.update(pk for pk in range(floor + 1, ahead + 1) if pk not in seen)
            self.cursor = ahead
        self._forget_old_gaps()
        return delivered

    def __iter__(self) -> Iterator[ChangeEvent]:
        while not self._closed:
            batch = self.poll()
            for event in batch:
                if self._closed:
                    return
                yield event
            if not batch:
                self._wait()

    def _wait(self) -> None:
        with _wakeup:
            if _published <= self.cursor and not self._closed:
                _wakeup.wait(timeout=self.poll_interval)

    def _forget_old_gaps(self) -> None:
        # a sequence number this far back is a rolled-back insert, not a slow one
        self.pending = {pk for pk in self.pending if pk > self.cursor - self.lookback}

    @staticmethod
    def _fetch(after: int, pending: Set[int], limit: int) -> List[DonationEvent]:
        where = Q(pk__gt=after)
        if pending:
            where |= Q(pk__in=sorted(pending))
        try:
            return list(DonationEvent.objects.filter(where).order_by("id")[:limit])
        except OperationalError as exc:
            logger.warning("change feed read failed: %s", exc)
            raise UnavailableError("change feed unavailable") from exc


def subscribe(actor: Actor, after: Optional[Union[int, str]] = None, **options) -> Subscription:
    return Subscription(actor, after=after, **options)


def resync(actor: Actor) -> Tuple[List[Donation], str]:
    """
    Fresh full read for a reconnecting subscriber. The position is taken
    first, so resuming from it may repeat a change already in ``records``
    but never skips one.
    """
    seq, gaps = current_position()
    try:
        records = list(Donation.objects.visible_to(actor).order_by("-created_at"))
    except OperationalError as exc:
        raise UnavailableError("donation ledger unavailable") from exc
    return records, format_position(seq, gaps)
