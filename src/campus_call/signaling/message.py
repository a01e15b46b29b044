"""Signaling message types and boundary validation.

Relay payloads arrive as untyped JSON objects keyed by an event name. They are
converted into one of the frozen dataclasses below by :func:`parse_message`
before any handler sees them; anything that does not validate raises
:class:`InvalidMessage` and is dropped by the channel.

Wire shapes (shared with the browser clients)::

    offer          {"offer": {"type": "offer", "sdp": ...}, "from": ...}
    answer         {"answer": {"type": "answer", "sdp": ...}, "from": ...}
    ice-candidate  {"candidate": {"candidate": ..., "sdpMid": ...,
                                  "sdpMLineIndex": ...}, "from": ...}
    hangup         {"from": ...}
    matched        {"matchedUserId": ..., "matchedName": ...,
                    "matchedInstitution": ..., "callSessionId": ...}
"""

from __future__ import annotations

import dataclasses
from enum import StrEnum
from typing import Any, ClassVar

from campus_call.errors import InvalidMessage


class MessageType(StrEnum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    HANGUP = "hangup"
    MATCHED = "matched"


@dataclasses.dataclass(frozen=True)
class Offer:
    type: ClassVar[MessageType] = MessageType.OFFER

    sdp: str
    sender: str


@dataclasses.dataclass(frozen=True)
class Answer:
    type: ClassVar[MessageType] = MessageType.ANSWER

    sdp: str
    sender: str


@dataclasses.dataclass(frozen=True)
class Candidate:
    """One connectivity candidate in its browser ``RTCIceCandidateInit`` form."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None


@dataclasses.dataclass(frozen=True)
class IceCandidate:
    type: ClassVar[MessageType] = MessageType.ICE_CANDIDATE

    candidate: Candidate
    sender: str


@dataclasses.dataclass(frozen=True)
class Hangup:
    type: ClassVar[MessageType] = MessageType.HANGUP

    sender: str


@dataclasses.dataclass(frozen=True)
class Matched:
    """Pairing notification pushed to a waiting user's matchmaking inbox."""

    type: ClassVar[MessageType] = MessageType.MATCHED

    peer_id: str
    session_id: str
    peer_name: str = "Peer"
    peer_institution: str | None = None


SignalingMessage = Offer | Answer | IceCandidate | Hangup
Message = SignalingMessage | Matched


def _require_str(payload: dict[str, Any], key: str, event: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidMessage(f"{event}: missing or non-string {key!r}")
    return value


def _parse_description(payload: dict[str, Any], event: str) -> str:
    desc = payload.get(event)
    if not isinstance(desc, dict):
        raise InvalidMessage(f"{event}: missing session description")
    if desc.get("type") != event:
        raise InvalidMessage(f"{event}: description type {desc.get('type')!r}")
    return _require_str(desc, "sdp", event)


def _parse_candidate(payload: dict[str, Any]) -> Candidate:
    raw = payload.get("candidate")
    if not isinstance(raw, dict):
        raise InvalidMessage("ice-candidate: missing candidate object")
    candidate = raw.get("candidate")
    if not isinstance(candidate, str):
        raise InvalidMessage("ice-candidate: non-string candidate line")
    sdp_mid = raw.get("sdpMid")
    if sdp_mid is not None and not isinstance(sdp_mid, str):
        raise InvalidMessage("ice-candidate: non-string sdpMid")
    index = raw.get("sdpMLineIndex")
    # bool is an int subclass; reject it explicitly
    if index is not None and (not isinstance(index, int) or isinstance(index, bool)):
        raise InvalidMessage("ice-candidate: non-integer sdpMLineIndex")
    return Candidate(candidate=candidate, sdp_mid=sdp_mid, sdp_mline_index=index)


def parse_message(event: str, payload: Any) -> Message:
    """Validate a relay event and payload into a typed message."""
    if not isinstance(payload, dict):
        raise InvalidMessage(f"{event}: payload is not an object")
    try:
        kind = MessageType(event)
    except ValueError:
        raise InvalidMessage(f"unknown event {event!r}") from None

    match kind:
        case MessageType.OFFER:
            return Offer(
                sdp=_parse_description(payload, event),
                sender=_require_str(payload, "from", event),
            )
        case MessageType.ANSWER:
            return Answer(
                sdp=_parse_description(payload, event),
                sender=_require_str(payload, "from", event),
            )
        case MessageType.ICE_CANDIDATE:
            return IceCandidate(
                candidate=_parse_candidate(payload),
                sender=_require_str(payload, "from", event),
            )
        case MessageType.HANGUP:
            return Hangup(sender=_require_str(payload, "from", event))
        case MessageType.MATCHED:
            institution = payload.get("matchedInstitution")
            name = payload.get("matchedName")
            return Matched(
                peer_id=_require_str(payload, "matchedUserId", event),
                session_id=_require_str(payload, "callSessionId", event),
                peer_name=name if isinstance(name, str) and name else "Peer",
                peer_institution=institution if isinstance(institution, str) else None,
            )


def encode_message(message: Message) -> tuple[str, dict[str, Any]]:
    """Return the (event, payload) pair to publish for *message*."""
    match message:
        case Offer(sdp=sdp, sender=sender):
            return message.type, {
                "offer": {"type": "offer", "sdp": sdp},
                "from": sender,
            }
        case Answer(sdp=sdp, sender=sender):
            return message.type, {
                "answer": {"type": "answer", "sdp": sdp},
                "from": sender,
            }
        case IceCandidate(candidate=c, sender=sender):
            return message.type, {
                "candidate": {
                    "candidate": c.candidate,
                    "sdpMid": c.sdp_mid,
                    "sdpMLineIndex": c.sdp_mline_index,
                },
                "from": sender,
            }
        case Hangup(sender=sender):
            return message.type, {"from": sender}
        case Matched():
            return message.type, {
                "matchedUserId": message.peer_id,
                "matchedName": message.peer_name,
                "matchedInstitution": message.peer_institution,
                "callSessionId": message.session_id,
            }
    raise TypeError(f"not a signaling message: {message!r}")
