"""Scheduling core: pending pool and the multi-actor painter."""

from luogu_painter.painter.pending import Claim, PendingPool
from luogu_painter.painter.scheduler import Painter, dedupe_targets

__all__ = ["Claim", "PendingPool", "Painter", "dedupe_targets"]
