from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable

from sqlalchemy import delete, desc, distinct, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..api.models import TamperingEvent, TamperingStatistics, TargetedPlan
from ..errors import AuditWriteError
from .store import TamperingEventRow

security_log = logging.getLogger("pricing_integrity.security")

TIMEFRAMES = {"hour": 3600, "day": 86400, "week": 7 * 86400}


class TamperAuditLog:
    """Append-only evidentiary record of client price tampering.

    Every event is inserted as its own row, so concurrent writers never contend
    on a shared counter. Failed inserts are retried; if the store stays down the
    event goes to a local JSONL spool instead of being dropped, and
    ``replay_spool`` moves it into the store later.
    """

    def __init__(
        self,
        engine: Engine,
        spool_path: Path,
        write_attempts: int = 3,
        retry_wait_max: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.spool_path = spool_path
        self.write_attempts = write_attempts
        self.retry_wait_max = retry_wait_max
        self._clock = clock
        self._spool_lock = threading.Lock()

    @property
    def rejected_path(self) -> Path:
        return self.spool_path.with_name(self.spool_path.name + ".rejected")

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.write_attempts),
            wait=wait_exponential(multiplier=0.05, max=self.retry_wait_max),
            retry=retry_if_exception_type(SQLAlchemyError),
            reraise=True,
        )

    def _insert(self, events: list[TamperingEvent]) -> None:
        with Session(self.engine) as session, session.begin():
            session.add_all(TamperingEventRow(**e.model_dump()) for e in events)

    def record(self, event: TamperingEvent) -> None:
        security_log.warning(
            "Pricing tampering detected plan=%s actor=%s tenant=%s attempted=%s canonical=%s delta=%s %s",
            event.plan_id,
            event.actor_id,
            event.tenant_id,
            event.attempted_amount,
            event.canonical_amount,
            event.delta,
            event.currency,
        )
        try:
            for attempt in self._retrying():
                with attempt:
                    self._insert([event])
            return
        except SQLAlchemyError:
            logging.exception("Tamper audit store unavailable; spooling event for plan %s", event.plan_id)
        self._spool(event)

    def _spool(self, event: TamperingEvent) -> None:
        try:
            with self._spool_lock:
                self.spool_path.parent.mkdir(parents=True, exist_ok=True)
                with self.spool_path.open("a", encoding="utf-8") as fh:
                    fh.write(event.model_dump_json() + "\n")
        except OSError as e:
            raise AuditWriteError("tampering event could not be stored or spooled") from e

    def replay_spool(self) -> int:
        """Insert spooled events into the store; returns how many were moved."""
        with self._spool_lock:
            if not self.spool_path.exists():
                return 0
            lines = [ln for ln in self.spool_path.read_text(encoding="utf-8").splitlines() if ln.strip()]
            events = []
            rejected = []
            for ln in lines:
                try:
                    events.append(TamperingEvent.model_validate_json(ln))
                except ValueError:
                    rejected.append(ln)
            if events:
                for attempt in self._retrying():
                    with attempt:
                        self._insert(events)
            if rejected:
                with self.rejected_path.open("a", encoding="utf-8") as f:
                    f.writelines(ln + "\n" for ln in rejected)
                logging.warning(
                    "Moved %d unparseable spool line(s) from %s to %s",
                    len(rejected),
                    self.spool_path,
                    self.rejected_path,
                )
            self.spool_path.unlink()
            return len(events)

    def _window(self, timeframe: str | None, since_ms: int | None, until_ms: int | None) -> tuple[str, int, int]:
        now_ms = int(self._clock() * 1000)
        if since_ms is not None or until_ms is not None:
            start = since_ms if since_ms is not None else 0
            end = until_ms if until_ms is not None else now_ms + 1
            if end < start:
                raise ValueError("until_ms must not precede since_ms")
            return "range", start, end
        timeframe = timeframe or "day"
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"timeframe must be one of {sorted(TIMEFRAMES)}")
        return timeframe, now_ms - TIMEFRAMES[timeframe] * 1000, now_ms + 1

    def statistics(
        self,
        timeframe: str | None = "day",
        *,
        since_ms: int | None = None,
        until_ms: int | None = None,
        top_n: int = 5,
    ) -> TamperingStatistics:
        label, start, end = self._window(timeframe, since_ms, until_ms)
        in_window = (TamperingEventRow.ts_ms >= start, TamperingEventRow.ts_ms < end)
        with Session(self.engine) as session:
            total, users, avg_delta = session.execute(
                select(
                    func.count(TamperingEventRow.id),
                    func.count(distinct(TamperingEventRow.actor_id)),
                    func.avg(TamperingEventRow.delta),
                ).where(*in_window)
            ).one()
            attempts = func.count(TamperingEventRow.id).label("attempts")
            last = func.max(TamperingEventRow.ts_ms).label("last_attempt_ms")
            top_rows = session.execute(
                select(TamperingEventRow.plan_id, attempts, last)
                .where(*in_window)
                .group_by(TamperingEventRow.plan_id)
                .order_by(desc(attempts), desc(last), TamperingEventRow.plan_id)
                .limit(top_n)
            ).all()
        return TamperingStatistics(
            timeframe=label,
            since_ms=start,
            until_ms=end,
            total_attempts=total or 0,
            unique_users=users or 0,
            average_delta=float(avg_delta or 0.0),
            top_targeted_plans=[
                TargetedPlan(plan_id=r.plan_id, attempts=r.attempts, last_attempt_ms=r.last_attempt_ms)
                for r in top_rows
            ],
        )

    def cleanup(self, older_than_days: int) -> int:
        """Retention: delete events older than the cutoff. Never called per request."""
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        cutoff = int(self._clock() * 1000) - older_than_days * 86400 * 1000
        with Session(self.engine) as session, session.begin():
            result = session.execute(delete(TamperingEventRow).where(TamperingEventRow.ts_ms < cutoff))
            deleted = result.rowcount or 0
        logging.info("Tamper audit retention removed %d events older than %d days", deleted, older_than_days)
        return deleted
