"""
Reply rule engine

Rules pair a matcher with a responder:

- Exact(opcode, payload): matched by (opcode, canonical payload) lookup,
  last registration for a key wins
- Predicate(fn): fn(opcode, payload) -> bool, evaluated in registration
  order after exact lookup missed, first True wins

- Static(frame): reply with a fixed frame
- Transform(fn): fn(opcode, payload) returns the reply (frame, opcode pair
  or bare payload for text; None for no reply)
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .protocol import (
    Frame, Opcode, coerce_frame, normalize_match_frame, prepare_outbound
)
from .exceptions import InvalidPayloadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Exact:
    """Matcher keyed by opcode and canonical payload"""
    opcode: Opcode
    payload: Any

    def __post_init__(self):
        object.__setattr__(self, "opcode", Opcode.parse(self.opcode))

    def to_frame(self) -> Frame:
        return normalize_match_frame(Frame(self.opcode, self.payload))


@dataclass(frozen=True)
class Predicate:
    """Matcher evaluated against the decoded inbound frame"""
    fn: Callable[[Opcode, Any], bool]

    def matches(self, frame: Frame) -> bool:
        return bool(self.fn(frame.opcode, frame.payload))


@dataclass(frozen=True)
class Static:
    """Responder that always replies with the same frame"""
    frame: Frame

    def respond(self, frame: Frame) -> Optional[Frame]:
        return self.frame


@dataclass(frozen=True)
class Transform:
    """Responder computed from the matched inbound frame"""
    fn: Callable[[Opcode, Any], Any]

    def respond(self, frame: Frame) -> Optional[Frame]:
        result = self.fn(frame.opcode, frame.payload)
        if result is None:
            return None
        return prepare_outbound(result)


Matcher = Union[Exact, Predicate]
Responder = Union[Static, Transform]


def to_matcher(value: Any) -> Matcher:
    """Normalize a matcher: callables become predicates, everything else exact

    Bare bytes match binary frames; other bare values match text frames.
    """
    if isinstance(value, (Exact, Predicate)):
        return value
    if callable(value):
        return Predicate(value)
    if isinstance(value, (bytes, bytearray)):
        return Exact(Opcode.BINARY, bytes(value))
    frame = coerce_frame(value)
    return Exact(frame.opcode, frame.payload)


def to_responder(value: Any) -> Responder:
    """Normalize a responder: callables become transforms, everything else static"""
    if isinstance(value, (Static, Transform)):
        return value
    if callable(value):
        return Transform(value)
    return Static(prepare_outbound(value))


class ReplyRuleStore:
    """Per-instance store of exact and predicate reply rules"""

    def __init__(self):
        self._exact: Dict[Tuple[Opcode, Union[str, bytes]], Responder] = {}
        self._filters: List[Tuple[Predicate, Responder]] = []
        self._lock = threading.Lock()

    def store(self, matcher: Any, responder: Any) -> None:
        """Register a rule; raises InvalidPayloadError for unserializable values"""
        matcher = to_matcher(matcher)
        responder = to_responder(responder)

        if isinstance(matcher, Predicate):
            with self._lock:
                self._filters.append((matcher, responder))
            logger.debug(f"Stored filter rule #{len(self._filters)}")
            return

        key = matcher.to_frame().match_key()
        with self._lock:
            replaced = key in self._exact
            self._exact[key] = responder
        logger.debug(f"{'Replaced' if replaced else 'Stored'} exact rule for {key[0].value} {key[1]!r}")

    def match(self, frame: Frame) -> Optional[Frame]:
        """Compute the auto-reply for an inbound frame, or None"""
        try:
            key = frame.match_key()
        except InvalidPayloadError:
            key = None

        with self._lock:
            responder = self._exact.get(key) if key is not None else None
            filters = list(self._filters)

        if responder is not None:
            return responder.respond(frame)

        for predicate, responder in filters:
            if predicate.matches(frame):
                return responder.respond(frame)
        return None

    def clear(self) -> None:
        with self._lock:
            self._exact.clear()
            self._filters.clear()

    @property
    def exact_count(self) -> int:
        with self._lock:
            return len(self._exact)

    @property
    def filter_count(self) -> int:
        with self._lock:
            return len(self._filters)

    def __len__(self) -> int:
        with self._lock:
            return len(self._exact) + len(self._filters)
