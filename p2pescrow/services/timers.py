"""Cancellable per-trade timers.

Each trade gets a :class:`TradeRuntime` that holds the APScheduler job handles
for its pending timers, keyed by kind. Job bodies run in their own session and
re-check the trade before acting, since a user action may have moved it on
after the timer was armed.
"""
from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Callable

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from sqlalchemy import select
from sqlalchemy.orm import Session

from p2pescrow.config import get_settings
from p2pescrow.db import get_sessionmaker
from p2pescrow.models.escrow import TERMINAL_STATUSES, EscrowStatus, EscrowTrade
from p2pescrow.services.collaborators import Notifier, notify_safely
from p2pescrow.services.escrow import has_funds_history
from p2pescrow.services.rooms import release_room
from p2pescrow.utils.audit import log_audit
from p2pescrow.utils.time import seconds_from_now

logger = logging.getLogger(__name__)

INVITE_TIMEOUT = "invite-timeout"
ROOM_RECYCLE = "room-recycle"

SessionFactory = Callable[[], AbstractContextManager[Session]]


def _default_session() -> Session:
    return get_sessionmaker()()


@dataclass
class TradeRuntime:
    """Transient, non-persisted state of one trade: its armed timers."""

    trade_id: str
    jobs: dict[str, Job] = field(default_factory=dict)

    def has(self, kind: str) -> bool:
        return kind in self.jobs


class TradeTimers:
    def __init__(
        self,
        scheduler: Any | None = None,
        *,
        session_factory: SessionFactory | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.notifier = notifier
        self._session_factory = session_factory or _default_session
        self._runtimes: dict[str, TradeRuntime] = {}

    @property
    def active(self) -> bool:
        """True while a started scheduler is bound."""

        return self.scheduler is not None and bool(getattr(self.scheduler, "running", True))

    def runtime(self, trade_id: str) -> TradeRuntime | None:
        return self._runtimes.get(trade_id)

    def _schedule(self, trade_id: str, kind: str, func: Callable, delay: int, args: list[Any]) -> Job | None:
        if self.scheduler is None:
            logger.debug("Scheduler inactive, timer not armed", extra={"trade_id": trade_id, "kind": kind})
            return None
        self.cancel(trade_id, kind)
        job = self.scheduler.add_job(
            func,
            "date",
            run_date=seconds_from_now(delay),
            id=f"{kind}:{trade_id}",
            replace_existing=True,
            args=args,
        )
        runtime = self._runtimes.setdefault(trade_id, TradeRuntime(trade_id=trade_id))
        runtime.jobs[kind] = job
        logger.info("Timer armed", extra={"trade_id": trade_id, "kind": kind, "delay": delay})
        return job

    def _forget(self, trade_id: str, kind: str) -> None:
        runtime = self._runtimes.get(trade_id)
        if runtime is None:
            return
        runtime.jobs.pop(kind, None)
        if not runtime.jobs:
            self._runtimes.pop(trade_id, None)

    def cancel(self, trade_id: str, kind: str | None = None) -> None:
        """Cancel one timer kind, or every timer of the trade when ``kind`` is omitted."""

        runtime = self._runtimes.get(trade_id)
        if runtime is None:
            return
        kinds = [kind] if kind is not None else list(runtime.jobs)
        for each in kinds:
            job = runtime.jobs.get(each)
            if job is None:
                continue
            try:
                job.remove()
            except JobLookupError:
                logger.debug("Timer already gone", extra={"trade_id": trade_id, "kind": each})
            self._forget(trade_id, each)

    # --- invite timeout ------------------------------------------------------

    def schedule_invite_timeout(self, trade_id: str) -> Job | None:
        delay = get_settings().INVITE_TIMEOUT_SECONDS
        return self._schedule(trade_id, INVITE_TIMEOUT, self.expire_invite, delay, [trade_id])

    def cancel_invite_timeout(self, trade_id: str) -> None:
        self.cancel(trade_id, INVITE_TIMEOUT)

    async def expire_invite(self, trade_id: str) -> bool:
        """Drop a trade whose counterparty never joined. Returns whether it was removed."""

        self._forget(trade_id, INVITE_TIMEOUT)
        with self._session_factory() as db:
            trade = db.scalars(select(EscrowTrade).where(EscrowTrade.trade_id == trade_id)).first()
            if trade is None:
                return False
            if trade.status != EscrowStatus.DRAFT or has_funds_history(trade):
                logger.info(
                    "Invite timeout ignored, trade moved on",
                    extra={"trade_id": trade_id, "status": trade.status.value},
                )
                return False
            log_audit(
                db,
                actor="system:timers",
                action="TRADE_EXPIRED",
                entity="EscrowTrade",
                entity_id=trade.id,
                data={"trade_id": trade_id, "reason": "invite_timeout"},
            )
            release_room(db, trade.group_id, trade_id)
            db.delete(trade)
            db.commit()
        logger.info("Trade expired before both parties joined", extra={"trade_id": trade_id})
        await notify_safely(self.notifier, trade, "invite_expired")
        return True

    # --- room recycling ------------------------------------------------------

    def schedule_room_recycle(self, trade_id: str, group_id: str) -> Job | None:
        delay = get_settings().ROOM_RECYCLE_DELAY_SECONDS
        return self._schedule(trade_id, ROOM_RECYCLE, self.recycle_room, delay, [trade_id, group_id])

    async def recycle_room(self, trade_id: str, group_id: str) -> bool:
        """Return a finished trade's room to the pool if nobody closed it yet."""

        self._forget(trade_id, ROOM_RECYCLE)
        with self._session_factory() as db:
            trade = db.scalars(select(EscrowTrade).where(EscrowTrade.trade_id == trade_id)).first()
            if trade is not None and trade.status not in TERMINAL_STATUSES:
                logger.info(
                    "Room recycle skipped, trade still active",
                    extra={"trade_id": trade_id, "status": trade.status.value},
                )
                return False
            room = release_room(db, group_id, trade_id)
            if room is None:
                return False
            db.commit()
        return True


_default_timers = TradeTimers()


def bind_scheduler(scheduler: Any | None, notifier: Notifier | None = None) -> TradeTimers:
    """Attach the process scheduler to the shared timers (``None`` disarms them)."""

    _default_timers.scheduler = scheduler
    if notifier is not None:
        _default_timers.notifier = notifier
    return _default_timers


def get_timers() -> TradeTimers:
    return _default_timers


__all__ = ["INVITE_TIMEOUT", "ROOM_RECYCLE", "TradeRuntime", "TradeTimers", "bind_scheduler", "get_timers"]
