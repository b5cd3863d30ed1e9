import pytest
from sqlalchemy.exc import OperationalError

from pricing_integrity.api.models import TamperingEvent
from pricing_integrity.audit.store import create_audit_engine
from pricing_integrity.audit.tamper_log import TamperAuditLog
from pricing_integrity.errors import AuditWriteError

HOUR_MS = 3600 * 1000


@pytest.fixture
def log(tmp_path, clock):
    engine = create_audit_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    return TamperAuditLog(engine, tmp_path / "spool.jsonl", write_attempts=2, retry_wait_max=0.01, clock=clock)


def _event(clock, plan="premium-tier", actor="a1", delta=10.0, age_ms=0, **kw):
    return TamperingEvent(
        actor_id=actor,
        tenant_id="t1",
        plan_id=plan,
        attempted_amount=649 - delta,
        canonical_amount=649,
        delta=delta,
        currency="INR",
        ts_ms=int(clock.now * 1000) - age_ms,
        **kw,
    )


def _break_store(log, monkeypatch):
    def down(events):
        raise OperationalError("INSERT", {}, Exception("database is down"))

    monkeypatch.setattr(log, "_insert", down)


def test_statistics_windows(log, clock):
    log.record(_event(clock, age_ms=10))
    log.record(_event(clock, age_ms=2 * HOUR_MS, actor="a2"))
    log.record(_event(clock, age_ms=3 * 24 * HOUR_MS, actor="a3"))
    log.record(_event(clock, age_ms=30 * 24 * HOUR_MS, actor="a4"))
    assert log.statistics("hour").total_attempts == 1
    assert log.statistics("day").total_attempts == 2
    week = log.statistics("week")
    assert week.total_attempts == 3 and week.unique_users == 3 and week.timeframe == "week"


def test_explicit_range(log, clock):
    now_ms = int(clock.now * 1000)
    log.record(_event(clock, age_ms=5 * HOUR_MS))
    log.record(_event(clock, age_ms=1 * HOUR_MS))
    stats = log.statistics(since_ms=now_ms - 6 * HOUR_MS, until_ms=now_ms - 2 * HOUR_MS)
    assert stats.timeframe == "range"
    assert stats.total_attempts == 1
    with pytest.raises(ValueError):
        log.statistics(since_ms=now_ms, until_ms=now_ms - 1)


def test_unknown_timeframe(log):
    with pytest.raises(ValueError):
        log.statistics("month")


def test_aggregates_and_top_plan_ordering(log, clock):
    log.record(_event(clock, plan="paid-standard-tier", delta=4, age_ms=50))
    log.record(_event(clock, plan="paid-standard-tier", delta=8, age_ms=40, actor=None))
    log.record(_event(clock, plan="premium-tier", delta=12, age_ms=30))
    log.record(_event(clock, plan="free-tier", delta=100, age_ms=20))
    log.record(_event(clock, plan="premium-tier", delta=16, age_ms=10, actor="a2"))
    stats = log.statistics("day", top_n=3)
    assert stats.total_attempts == 5
    assert stats.unique_users == 2  # anonymous attempts are counted but have no actor
    assert stats.average_delta == pytest.approx(28.0)
    # premium and paid-standard tie on count; premium was hit most recently
    assert [p.plan_id for p in stats.top_targeted_plans] == ["premium-tier", "paid-standard-tier", "free-tier"]
    assert stats.top_targeted_plans[0].attempts == 2
    assert log.statistics("day", top_n=1).top_targeted_plans[0].plan_id == "premium-tier"


def test_empty_statistics(log):
    stats = log.statistics("day")
    assert stats.total_attempts == 0 and stats.average_delta == 0.0 and stats.top_targeted_plans == []


def test_context_fields_are_stored(log, clock):
    from sqlalchemy import select
    from sqlalchemy.orm import Session

    from pricing_integrity.audit.store import TamperingEventRow

    log.record(_event(clock, ip_address="203.0.113.7", user_agent="curl/8.0"))
    with Session(log.engine) as s:
        row = s.execute(select(TamperingEventRow)).scalar_one()
    assert row.ip_address == "203.0.113.7" and row.user_agent == "curl/8.0"


def test_store_outage_spools_then_replays(log, clock, monkeypatch):
    original = log._insert
    _break_store(log, monkeypatch)
    log.record(_event(clock))
    log.record(_event(clock, actor="a2"))
    assert len(log.spool_path.read_text().splitlines()) == 2

    monkeypatch.setattr(log, "_insert", original)
    assert log.statistics("day").total_attempts == 0
    assert log.replay_spool() == 2
    assert not log.spool_path.exists()
    assert log.statistics("day").total_attempts == 2
    assert log.replay_spool() == 0


def test_replay_sets_aside_unparseable_lines(log, clock):
    good = _event(clock).model_dump_json()
    log.spool_path.write_text(good + "\n{\"plan_id\": \"premium\n\n" + good + "\n", encoding="utf-8")
    assert log.replay_spool() == 2
    assert not log.spool_path.exists()
    assert log.rejected_path.read_text(encoding="utf-8").splitlines() == ['{"plan_id": "premium']
    assert log.statistics("day").total_attempts == 2


def test_failed_replay_keeps_spool(log, clock, monkeypatch):
    log.spool_path.write_text(_event(clock).model_dump_json() + "\n", encoding="utf-8")
    _break_store(log, monkeypatch)
    with pytest.raises(OperationalError):
        log.replay_spool()
    assert log.spool_path.exists()
    assert not log.rejected_path.exists()


def test_transient_failure_is_retried(log, clock, monkeypatch):
    original = log._insert
    calls = []

    def flaky(events):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, Exception("locked"))
        original(events)

    monkeypatch.setattr(log, "_insert", flaky)
    log.record(_event(clock))
    assert len(calls) == 2
    assert not log.spool_path.exists()
    assert log.statistics("day").total_attempts == 1


def test_unwritable_spool_raises(tmp_path, clock, monkeypatch):
    engine = create_audit_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    log = TamperAuditLog(engine, tmp_path, write_attempts=1, clock=clock)  # spool path is a directory
    _break_store(log, monkeypatch)
    with pytest.raises(AuditWriteError):
        log.record(_event(clock))


def test_cleanup_removes_only_old_events(log, clock):
    log.record(_event(clock, age_ms=100 * 24 * HOUR_MS))
    log.record(_event(clock, age_ms=10 * 24 * HOUR_MS))
    log.record(_event(clock))
    assert log.cleanup(90) == 1
    assert log.statistics(since_ms=0).total_attempts == 2
    with pytest.raises(ValueError):
        log.cleanup(-1)
