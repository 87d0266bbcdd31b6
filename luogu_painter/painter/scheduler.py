"""Paint scheduler: drives N rate-limited actors toward the target image.

Each actor runs one loop as an ``asyncio.Task``::

    stagger (i * cooldown / n)
    loop:
        wait for work (board READY and an unclaimed pending pixel)
        claim -> board already correct? skip : board.set(...)
        release claim
        sleep cooldown            # after success, failure or skip alike

The pending pool is rebuilt on every board ``load`` from the targets that
fall inside the board (shuffled when ``randomize`` is set) and kept
current from ``update`` events.  ``reconnect`` pauses dispatch until the
next ``load``.

Events: ``load`` (board, pixels, remaining), ``update`` (pixel,
remaining; only when remaining changed), ``paint`` (actor, pixel),
``error`` (actor, error), ``close``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Iterable, Sequence

from luogu_painter.model import Actor, BoardImage, Pixel
from luogu_painter.net.board import BoardState, PaintBoard, PaintBoardError
from luogu_painter.painter.pending import Claim, PendingPool
from luogu_painter.utils.events import EventBus
from luogu_painter.utils.logging_config import push_context

logger = logging.getLogger(__name__)


def dedupe_targets(pixels: Iterable[Pixel]) -> list[Pixel]:
    """One target per coordinate; a later pixel replaces an earlier one."""
    by_key: dict[tuple[int, int], Pixel] = {}
    for pixel in pixels:
        by_key[pixel.key] = pixel
    return list(by_key.values())


class Painter:
    """Coordinates actors painting *pixels* onto *board*.

    Parameters
    ----------
    board : PaintBoard
        Board mirror; ``run()`` starts it.
    pixels : sequence of Pixel
        Quantized targets, possibly reaching outside the board.
    actors : sequence of Actor
        Paint identities.  Empty means watch mode.
    cooldown_s : float
        Minimum spacing between two requests of the same actor.
    randomize : bool
        Shuffle the relevant pixels after every load.
    rng : random.Random, optional
        Source for the shuffle.
    """

    def __init__(
        self,
        board: PaintBoard,
        pixels: Sequence[Pixel],
        actors: Sequence[Actor],
        *,
        cooldown_s: float,
        randomize: bool = False,
        rng: random.Random | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        if cooldown_s < 0:
            raise ValueError(f"cooldown_s must be >= 0, got {cooldown_s}")
        self.board = board
        self.targets = dedupe_targets(pixels)
        self.actors = list(actors)
        self.cooldown_s = cooldown_s
        self.randomize = randomize
        self.events = EventBus(self)
        self.pool = PendingPool()

        self._rng = rng or random.Random()
        self._sleep = sleep
        self._work = asyncio.Event()
        self._stopped = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._remaining: int | None = None
        self._closed = False

        board.events.subscribe("load", self._on_load)
        board.events.subscribe("update", self._on_update)
        board.events.subscribe("reconnect", self._on_reconnect)
        board.events.subscribe("close", self._on_close)

    @property
    def remaining(self) -> int | None:
        """Pending pixel count; ``None`` until the first load."""
        return self._remaining

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until the board closes or ``close()`` is called."""
        if self.actors:
            logger.info(
                "Starting %d actor(s), cooldown %.1fs", len(self.actors), self.cooldown_s,
            )
        else:
            logger.info("No actors; watching the board only")
        self._tasks = [
            asyncio.create_task(self._actor_loop(i, actor), name=f"actor-{actor.id}")
            for i, actor in enumerate(self.actors)
        ]
        try:
            await self.board.start()
            await self._stopped.wait()
        finally:
            await self._shutdown()

    async def close(self) -> None:
        """Stop all actors and close the board."""
        self._stopped.set()
        await self._shutdown()

    async def _shutdown(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.board.state is not BoardState.CLOSED:
            await self.board.close()
        self._stopped.set()
        if not self._closed:
            self._closed = True
            logger.info("Painter stopped")
            self.events.emit("close")

    # ------------------------------------------------------------------
    # Board receivers
    # ------------------------------------------------------------------

    def _on_load(self, sender, board: BoardImage) -> None:
        relevant = [
            p for p in self.targets
            if 0 <= p.x < board.width and 0 <= p.y < board.height
        ]
        if self.randomize:
            self._rng.shuffle(relevant)
        self.pool.reset(relevant, lambda p: board.get(p.x, p.y) != p.color)
        self._remaining = self.pool.remaining
        logger.info(
            "%d of %d target pixels on board, %d to paint",
            len(relevant), len(self.targets), self._remaining,
        )
        self.events.emit("load", board=board, pixels=relevant, remaining=self._remaining)
        self._refresh_work()

    def _on_update(self, sender, x: int, y: int, color: int) -> None:
        self.pool.observe(x, y, color)
        remaining = self.pool.remaining
        if remaining != self._remaining:
            self._remaining = remaining
            self.events.emit("update", pixel=Pixel(x, y, color), remaining=remaining)
        self._refresh_work()

    def _on_reconnect(self, sender, reason: str = "") -> None:
        self._work.clear()
        self.pool.clear()

    def _on_close(self, sender) -> None:
        self._work.clear()
        self._stopped.set()

    def _refresh_work(self) -> None:
        if self.board.state is BoardState.READY and self.pool.has_work():
            self._work.set()
        else:
            self._work.clear()

    # ------------------------------------------------------------------
    # Actors
    # ------------------------------------------------------------------

    async def _actor_loop(self, index: int, actor: Actor) -> None:
        push_context(actor=actor.id)
        delay = index * self.cooldown_s / len(self.actors)
        if delay > 0:
            logger.debug("Staggering first paint by %.2fs", delay)
            await self._sleep(delay)
        while True:
            await self._work.wait()
            # a waiter woken by load can run after a reconnect
            if self.board.state is not BoardState.READY:
                self._refresh_work()
                continue
            claim = self.pool.claim()
            if claim is None:
                self._refresh_work()
                continue
            try:
                await self._paint(actor, claim)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Unexpected error while painting %s", claim.pixel)
                self.events.emit("error", actor=actor, error=exc)
            finally:
                self.pool.release(claim)
                self._refresh_work()
            await self._sleep(self.cooldown_s)

    async def _paint(self, actor: Actor, claim: Claim) -> None:
        pixel = claim.pixel
        current = self.board.get(pixel.x, pixel.y)
        if current is None:
            logger.debug("Board not ready; dropping claim on (%d, %d)", pixel.x, pixel.y)
            return
        if current == pixel.color:
            logger.debug("(%d, %d) already shows %d; skipping", pixel.x, pixel.y, pixel.color)
            return
        try:
            await self.board.set(pixel.x, pixel.y, pixel.color, actor)
        except PaintBoardError as exc:
            logger.warning("Paint (%d, %d) failed: %s", pixel.x, pixel.y, exc)
            self.events.emit("error", actor=actor, error=exc)
            return
        logger.info("(%d, %d) <- %d", pixel.x, pixel.y, pixel.color)
        self.events.emit("paint", actor=actor, pixel=pixel)
