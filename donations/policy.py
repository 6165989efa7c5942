"""
Who may read or write a donation.

The rules live here twice: as a predicate over a loaded record
(``is_allowed``) and as ``Q`` filters the database evaluates
(``readable_filter`` / ``writable_filter``). The coordinator checks the
first; the ledger ANDs the second into every read and conditional write, so
a caller that skips the coordinator still cannot see or move what it
shouldn't. Keep the two in step.
"""
import uuid
from dataclasses import dataclass
from typing import Union

from django.db.models import Q

from .exceptions import AuthenticationError
from .models import Donation, Profile, Role, Status

READ = "read"
ACCEPT = "accept"
COMPLETE = "complete"
OPERATIONS = (READ, ACCEPT, COMPLETE)


@dataclass(frozen=True)
class Actor:
    """An authenticated identity plus the role stored on its profile."""

    id: uuid.UUID
    role: str

    @classmethod
    def from_profile(cls, profile: Profile) -> "Actor":
        return cls(id=profile.pk, role=profile.role)

    @classmethod
    def resolve(cls, identity: Union[str, uuid.UUID]) -> "Actor":
        """
        Turn a validated identity into an Actor. The role always comes from
        the stored profile, never from the caller.
        """
        try:
            pk = identity if isinstance(identity, uuid.UUID) else uuid.UUID(str(identity))
        except (TypeError, ValueError, AttributeError):
            raise AuthenticationError("malformed actor identity")

        role = Profile.objects.filter(pk=pk).values_list("role", flat=True).first()
        if role is None:
            raise AuthenticationError("no profile for this identity")
        return cls(id=pk, role=role)


def can_read(actor: Actor, donation: Donation) -> bool:
    if donation.donor_id == actor.id:
        return True
    if actor.role == Role.SHELTER:
        # open requests, plus whatever this shelter accepted
        return donation.status == Status.PENDING or donation.shelter_id == actor.id
    if actor.role == Role.VOLUNTEER:
        return donation.status in (Status.ACCEPTED, Status.COMPLETED)
    return False


def is_allowed(actor: Actor, donation: Donation, operation: str) -> bool:
    if operation == READ:
        return can_read(actor, donation)
    if operation == ACCEPT:
        return actor.role == Role.SHELTER and donation.status == Status.PENDING
    if operation == COMPLETE:
        return actor.role == Role.VOLUNTEER and donation.status == Status.ACCEPTED
    raise ValueError(f"unknown operation {operation!r}")


def readable_filter(actor: Actor) -> Q:
    q = Q(donor_id=actor.id)
    if actor.role == Role.SHELTER:
        q |= Q(status=Status.PENDING) | Q(shelter_id=actor.id)
    elif actor.role == Role.VOLUNTEER:
        q |= Q(status__in=[Status.ACCEPTED, Status.COMPLETED])
    return q


def writable_filter(actor: Actor, operation: str) -> Q:
    if operation == ACCEPT and actor.role == Role.SHELTER:
        return Q(status=Status.PENDING)
    if operation == COMPLETE and actor.role == Role.VOLUNTEER:
        return Q(status=Status.ACCEPTED)
    if operation not in OPERATIONS:
        raise ValueError(f"unknown operation {operation!r}")
    # matches no row
    return Q(pk__in=[])
