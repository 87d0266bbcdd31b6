"""Named multi-subscriber events on top of blinker signals.

Every engine component (socket, channel, board, painter) owns one
``EventBus`` and publishes its notifications through it.  Receivers are
called synchronously in registration order with ``(sender, **payload)``.

A receiver that raises is logged and skipped; the remaining receivers
still run and the emitter's own state is never affected, since emitters
only call ``emit`` after their state is consistent.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from blinker import Signal

logger = logging.getLogger(__name__)

Receiver = Callable[..., Any]


class EventBus:
    """Map of event name to blinker ``Signal``.

    Parameters
    ----------
    owner : object, optional
        Object passed as ``sender`` to receivers.  Defaults to the bus.
    """

    def __init__(self, owner: Any = None) -> None:
        self._owner = owner if owner is not None else self
        self._signals: dict[str, Signal] = {}
        self._once: dict[str, list[Receiver]] = {}

    def subscribe(self, name: str, fn: Receiver, *, once: bool = False) -> None:
        """Register *fn* for event *name*.

        With ``once=True`` the receiver is removed after its first call.
        """
        sig = self._signals.setdefault(name, Signal(name))
        # Strong refs: bound methods of short-lived helpers must still fire.
        sig.connect(fn, weak=False)
        if once:
            self._once.setdefault(name, []).append(fn)

    def unsubscribe(self, name: str, fn: Receiver) -> None:
        sig = self._signals.get(name)
        if sig is not None:
            sig.disconnect(fn)
        pending = self._once.get(name)
        if pending and fn in pending:
            pending.remove(fn)

    def clear(self) -> None:
        """Drop every receiver."""
        self._signals.clear()
        self._once.clear()

    def has_receivers(self, name: str) -> bool:
        sig = self._signals.get(name)
        return sig is not None and bool(sig.receivers)

    def emit(self, name: str, **payload: Any) -> None:
        """Deliver *payload* to every receiver of *name*."""
        sig = self._signals.get(name)
        if sig is None or not sig.receivers:
            return
        once = self._once.get(name, [])
        for receiver in list(sig.receivers_for(self._owner)):
            if receiver in once:
                once.remove(receiver)
                sig.disconnect(receiver)
            try:
                receiver(self._owner, **payload)
            except Exception:  # noqa: BLE001
                logger.exception("Receiver for %r raised", name)
