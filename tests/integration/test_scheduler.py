import sys
import threading
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quotesync.publisher.scheduler import SyncScheduler


class StubRealtime:
    def __init__(self):
        self.published = {}

    def current(self, market):
        return self.published.get(market)


class StubService:
    def __init__(self, markets=("sse",)):
        self.built_days = set()
        self.calls = []
        self.realtime = StubRealtime()
        self.realtime_markets = list(markets)
        self.rebuild_result = True

    def full_rebuild_done_on(self, day):
        return day in self.built_days

    def rebuild_all(self):
        self.calls.append("all")
        return self.rebuild_result

    def rebuild_family(self, market):
        self.calls.append(f"family:{market}")
        return True

    def rebuild_realtime(self, market):
        self.calls.append(f"realtime:{market}")
        path = Path(f"/sync/{market}/MIN1_TODAY.20240401.1031")
        self.realtime.published[market] = path
        return path


class StubPuller:
    def __init__(self, succeed=True):
        self.succeed = succeed
        self.runs = 0

    def run(self):
        self.runs += 1
        return self.succeed


class StubCalendar:
    def __init__(self, trading=True):
        self.trading = trading

    def is_trading_day(self, check_date):
        return self.trading


class MutableClock:
    def __init__(self, moment):
        self.moment = moment

    def __call__(self):
        return self.moment


def make_scheduler(service, clock, **kwargs):
    options = dict(build_time=180000, calendar=StubCalendar(), realtime_ticks=3, clock=clock)
    options.update(kwargs)
    return SyncScheduler(service, **options)


def test_full_rebuild_runs_once_after_build_time():
    service = StubService(markets=())
    clock = MutableClock(datetime(2024, 4, 1, 17, 59, 0))
    scheduler = make_scheduler(service, clock)

    scheduler.tick()
    assert service.calls == []

    clock.moment = datetime(2024, 4, 1, 18, 0, 15)
    scheduler.tick()
    assert service.calls == ["all"]

    service.built_days.add(clock.moment.date())
    scheduler.tick()
    assert service.calls == ["all"]


def test_failed_full_rebuild_is_retried_next_tick():
    service = StubService(markets=())
    service.rebuild_result = False
    scheduler = make_scheduler(service, MutableClock(datetime(2024, 4, 1, 18, 30, 0)))

    scheduler.tick()
    scheduler.tick()

    assert service.calls == ["all", "all"]


def test_pull_window_runs_once_per_day():
    service = StubService(markets=())
    service.built_days.add(datetime(2024, 4, 1).date())
    clock = MutableClock(datetime(2024, 4, 1, 6, 41, 0))
    puller = StubPuller()
    scheduler = make_scheduler(service, clock, puller=puller)

    scheduler.tick()
    clock.moment = datetime(2024, 4, 1, 6, 45, 0)
    scheduler.tick()
    clock.moment = datetime(2024, 4, 1, 9, 6, 0)
    scheduler.tick()

    assert puller.runs == 2
    assert service.calls == ["family:hkse", "family:hkse"]


def test_failed_pull_skips_the_window():
    service = StubService(markets=())
    service.built_days.add(datetime(2024, 4, 1).date())
    clock = MutableClock(datetime(2024, 4, 1, 6, 41, 0))
    puller = StubPuller(succeed=False)
    scheduler = make_scheduler(service, clock, puller=puller)

    scheduler.tick()
    clock.moment = datetime(2024, 4, 1, 6, 42, 0)
    scheduler.tick()

    assert puller.runs == 1
    assert service.calls == []


def test_realtime_runs_every_n_ticks_during_session():
    service = StubService()
    service.built_days.add(datetime(2024, 4, 1).date())
    scheduler = make_scheduler(service, MutableClock(datetime(2024, 4, 1, 10, 0, 0)))

    for _ in range(7):
        scheduler.tick()

    assert service.calls == ["realtime:sse"] * 3


def test_realtime_outside_session_only_fills_missing_publications():
    service = StubService(markets=("sse", "szse"))
    service.built_days.add(datetime(2024, 4, 1).date())
    service.realtime.published["sse"] = Path("/sync/sse/MIN1_TODAY.20240401.1500")
    scheduler = make_scheduler(service, MutableClock(datetime(2024, 4, 1, 20, 0, 0)), realtime_ticks=1)

    scheduler.tick()
    scheduler.tick()

    assert service.calls == ["realtime:szse"]


def test_non_trading_day_counts_as_outside_session():
    service = StubService()
    service.built_days.add(datetime(2024, 4, 6).date())
    service.realtime.published["sse"] = Path("/sync/sse/MIN1_TODAY.20240401.1500")
    scheduler = make_scheduler(
        service,
        MutableClock(datetime(2024, 4, 6, 10, 0, 0)),
        calendar=StubCalendar(trading=False),
        realtime_ticks=1,
    )

    scheduler.tick()

    assert service.calls == []


def test_run_survives_failing_ticks_until_stopped():
    service = StubService(markets=())
    stop = threading.Event()
    ticks = []

    def exploding_rebuild():
        ticks.append(1)
        if len(ticks) >= 3:
            stop.set()
        raise RuntimeError("boom")

    service.rebuild_all = exploding_rebuild
    scheduler = make_scheduler(service, MutableClock(datetime(2024, 4, 1, 18, 30, 0)), tick_seconds=0.01)

    scheduler.run(stop)

    assert len(ticks) == 3
