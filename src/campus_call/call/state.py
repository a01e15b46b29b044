"""Per-call state machine.

Two finite-state values describe one participant's view of a call:

``CallStatus`` (mirrors the persisted session status)::

    idle → ringing → accepted → ended      (caller)
    idle → accepted → ended                (callee)
    any  → ended

``Negotiation`` (session-description exchange, replaces ad hoc guard flags)::

    caller:  new → awaiting-answer → stable
    callee:  new → awaiting-offer → answering → stable
                          ↑            │
                          └── retry ───┘   (first answer failure only)

Transitions not listed in the tables below are rejected, so redelivered or
out-of-order signaling cannot move either value backwards.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum

logger = logging.getLogger(__name__)


class CallStatus(StrEnum):
    IDLE = "idle"
    RINGING = "ringing"
    ACCEPTED = "accepted"
    ENDED = "ended"


class Role(StrEnum):
    CALLER = "caller"
    CALLEE = "callee"


class Negotiation(StrEnum):
    NEW = "new"
    AWAITING_ANSWER = "awaiting-answer"  # caller: local offer set and published
    AWAITING_OFFER = "awaiting-offer"  # callee: listening, no offer taken yet
    ANSWERING = "answering"  # callee: an offer is being answered
    STABLE = "stable"  # descriptions exchanged
    FAILED = "failed"


_STATUS_TRANSITIONS: dict[CallStatus, frozenset[CallStatus]] = {
    CallStatus.IDLE: frozenset(
        {CallStatus.RINGING, CallStatus.ACCEPTED, CallStatus.ENDED}
    ),
    CallStatus.RINGING: frozenset({CallStatus.ACCEPTED, CallStatus.ENDED}),
    CallStatus.ACCEPTED: frozenset({CallStatus.ENDED}),
    CallStatus.ENDED: frozenset(),
}

_NEGOTIATION_TRANSITIONS: dict[Negotiation, frozenset[Negotiation]] = {
    Negotiation.NEW: frozenset(
        {Negotiation.AWAITING_ANSWER, Negotiation.AWAITING_OFFER}
    ),
    Negotiation.AWAITING_ANSWER: frozenset({Negotiation.STABLE, Negotiation.FAILED}),
    Negotiation.AWAITING_OFFER: frozenset({Negotiation.ANSWERING}),
    Negotiation.ANSWERING: frozenset(
        {Negotiation.STABLE, Negotiation.AWAITING_OFFER, Negotiation.FAILED}
    ),
    Negotiation.STABLE: frozenset(),
    Negotiation.FAILED: frozenset(),
}

# Roles may only enter the negotiation branch that belongs to them
_ROLE_ENTRY: dict[Role, Negotiation] = {
    Role.CALLER: Negotiation.AWAITING_ANSWER,
    Role.CALLEE: Negotiation.AWAITING_OFFER,
}

MAX_ANSWER_RETRIES = 1


class CallStateMachine:
    """Status and negotiation state for one participant of one call."""

    def __init__(
        self,
        role: Role,
        on_status: Callable[[CallStatus, CallStatus], None] | None = None,
    ) -> None:
        self.role = role
        self.status = CallStatus.IDLE
        self.negotiation = Negotiation.NEW
        self._on_status = on_status
        self._answer_failures = 0

    @property
    def ended(self) -> bool:
        return self.status == CallStatus.ENDED

    def transition(self, target: CallStatus) -> bool:
        """Move to *target* if allowed. Returns False (and changes nothing) if not."""
        if target not in _STATUS_TRANSITIONS[self.status]:
            logger.debug(
                "%s: ignoring status %s -> %s", self.role, self.status, target
            )
            return False
        if self.role == Role.CALLEE and target == CallStatus.RINGING:
            logger.debug("callee never rings")
            return False
        previous, self.status = self.status, target
        logger.info("%s: call %s -> %s", self.role, previous, target)
        if self._on_status is not None:
            self._on_status(previous, target)
        return True

    def _advance(self, target: Negotiation) -> bool:
        if self.ended or target not in _NEGOTIATION_TRANSITIONS[self.negotiation]:
            return False
        if self.negotiation == Negotiation.NEW and target != _ROLE_ENTRY[self.role]:
            return False
        logger.debug("%s: negotiation %s -> %s", self.role, self.negotiation, target)
        self.negotiation = target
        return True

    # Caller side

    def offer_published(self) -> bool:
        return self._advance(Negotiation.AWAITING_ANSWER)

    def take_answer(self) -> bool:
        """Claim an incoming answer. Only the first one while an offer is
        outstanding is honored; later deliveries return False."""
        return self._advance(Negotiation.STABLE)

    # Callee side

    def await_offer(self) -> bool:
        return self._advance(Negotiation.AWAITING_OFFER)

    def take_offer(self) -> bool:
        """Claim an incoming offer. Redeliveries return False."""
        return self._advance(Negotiation.ANSWERING)

    def answer_published(self) -> bool:
        return self._advance(Negotiation.STABLE)

    def answer_failed(self) -> bool:
        """Record a failed answer step. Returns True if one more offer
        delivery may be processed, False if negotiation has failed."""
        if self.negotiation != Negotiation.ANSWERING:
            return False
        self._answer_failures += 1
        if self._answer_failures <= MAX_ANSWER_RETRIES:
            return self._advance(Negotiation.AWAITING_OFFER)
        self._advance(Negotiation.FAILED)
        return False

    def negotiation_failed(self) -> None:
        self._advance(Negotiation.FAILED)
