import sys
from datetime import date, datetime
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quotesync.archive_codec import iter_archive
from quotesync.config import DataSource, ServerConfig
from quotesync.publisher.compactor import Compactor
from quotesync.publisher.manifest_store import ManifestStore
from quotesync.publisher.realtime import RealtimePublications, realtime_uri
from quotesync.publisher.service import SyncService
from quotesync.publisher.transport import SingleAccountAuthenticator, create_app


class StubTimer:
    created = []

    def __init__(self, interval, function, args=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.daemon = False
        self.started = False
        self.cancelled = False
        StubTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def is_alive(self):
        return self.started and not self.cancelled

    def fire(self):
        self.function(*self.args)


class MutableClock:
    def __init__(self, moment):
        self.moment = moment

    def __call__(self):
        return self.moment


@pytest.fixture
def workspace(tmp_path):
    StubTimer.created = []
    day_folder = tmp_path / "src" / "sse_day"
    day_folder.mkdir(parents=True)
    (day_folder / "DAY600000.csv").write_text(
        "20230105,10,11,9,10,0,100,10,0,1,10\n"
        "20240328,12,13,11,12,0,120,12,0,1,12\n"
    )
    real_folder = tmp_path / "src" / "sse_real"
    real_folder.mkdir(parents=True)
    (real_folder / "MIN600000_2024.csv").write_text(
        "20240328,150000,1,1,1,1,0,1,1,0,1,1\n"
        "20240401,093100,2,2,2,2,0,2,2,0,2,2\n"
        "20240401,093200,3,3,3,3,0,3,3,0,3,3\n"
    )
    (real_folder / "MIN600000_2023.csv").write_text("20231229,150000,1,1,1,1,0,1,1,0,1,1\n")

    config = ServerConfig(
        sync_folder=tmp_path / "SyncFolder",
        sources={"sse.d1": DataSource("sse", "d1", day_folder)},
        realtime_folders={"sse": real_folder},
    )
    clock = MutableClock(datetime(2024, 4, 1, 10, 31, 0))
    service = SyncService(
        config,
        store=ManifestStore(tmp_path / "restable.dat"),
        realtime=RealtimePublications(30, timer_factory=StubTimer),
        compactor=Compactor(config.sync_folder, clock=clock),
        status_path=tmp_path / "status.dat",
        clock=clock,
    )
    return service, clock, tmp_path


def test_full_rebuild_publishes_manifest_and_status(workspace):
    service, _, tmp_path = workspace

    assert service.last_full_rebuild() is None
    assert service.rebuild_all() is True

    assert [entry.uri for entry in service.store.entries()] == ["SSE/DAY/DAY.20230000", "SSE/DAY/DAY.20240328"]
    assert (tmp_path / "status.dat").read_text() == "2024-04-01 10:31:00"
    assert service.full_rebuild_done_on(date(2024, 4, 1))
    assert not service.full_rebuild_done_on(date(2024, 4, 2))

    restored = ManifestStore(tmp_path / "restable.dat")
    assert restored.load()
    assert restored.entries() == service.store.entries()


def test_failed_rebuild_keeps_previous_manifest(workspace):
    service, _, tmp_path = workspace
    service.rebuild_all()
    before = service.store.snapshot()
    (tmp_path / "status.dat").unlink()

    service.config.sources["sse.m5"] = DataSource("sse", "m5", tmp_path / "src" / "missing")

    assert service.rebuild_all() is False
    assert service.store.snapshot() == before
    assert not (tmp_path / "status.dat").exists()


def test_realtime_rebuild_publishes_todays_rows(workspace):
    service, _, _ = workspace

    published = service.rebuild_realtime("sse")

    assert published == service.sync_root / "SSE" / "MIN1_TODAY" / "MIN1_TODAY.20240401.1031"
    assert not (service.sync_root / "SSE" / "MIN1_TODAY" / "MIN1_TODAY.20240401").exists()
    assert service.realtime.current("sse") == published

    members = [(member.name, stream.read()) for member, stream in iter_archive(published)]
    assert members == [
        (
            "MIN1_TODAY/MIN600000_2024.csv",
            b"20240401,093100,2,2,2,2,0,2,2,0,2,2\n20240401,093200,3,3,3,3,0,3,3,0,3,3\n",
        )
    ]

    entry = service.store.entries()[-1]
    assert (entry.data_type, entry.uri) == ("sse.real_m1", realtime_uri("sse"))


def test_republishing_retires_previous_archive_after_grace(workspace):
    service, clock, _ = workspace
    first = service.rebuild_realtime("sse")
    clock.moment = datetime(2024, 4, 1, 10, 36, 0)

    second = service.rebuild_realtime("sse")

    assert second.name == "MIN1_TODAY.20240401.1036"
    assert first.exists()
    assert len(StubTimer.created) == 1
    timer = StubTimer.created[0]
    assert timer.interval == 30
    assert timer.daemon and timer.started

    timer.fire()
    assert not first.exists()
    assert second.exists()
    assert [entry.uri for entry in service.store.entries()].count(realtime_uri("sse")) == 1


def test_full_rebuild_keeps_realtime_entry(workspace):
    service, _, _ = workspace
    service.rebuild_realtime("sse")

    service.rebuild_all()

    uris = [entry.uri for entry in service.store.entries()]
    assert uris[-1] == realtime_uri("sse")
    assert len(uris) == 3


def test_realtime_without_todays_rows_publishes_nothing(workspace):
    service, clock, _ = workspace
    clock.moment = datetime(2024, 4, 2, 10, 31, 0)

    assert service.rebuild_realtime("sse") is None
    assert service.realtime.current("sse") is None
    assert service.rebuild_realtime("szse") is None


def test_same_minute_on_another_day_gets_a_new_name(workspace):
    service, clock, _ = workspace
    with (service.config.realtime_folders["sse"] / "MIN600000_2024.csv").open("a") as handle:
        handle.write("20240402,093100,4,4,4,4,0,4,4,0,4,4\n")
    first = service.rebuild_realtime("sse")
    clock.moment = datetime(2024, 4, 2, 10, 31, 0)

    second = service.rebuild_realtime("sse")

    assert second.name == "MIN1_TODAY.20240402.1031"
    assert second != first
    StubTimer.created[-1].fire()
    assert not first.exists()
    assert service.realtime.current("sse") == second


def restart(service, clock):
    store = ManifestStore(service.store.path)
    assert store.load()
    restarted = SyncService(
        service.config,
        store=store,
        realtime=RealtimePublications(30, timer_factory=StubTimer),
        compactor=Compactor(service.config.sync_folder, clock=clock),
        status_path=service.status_path,
        clock=clock,
    )
    restarted.restore_realtime()
    return restarted


def test_restart_serves_the_last_realtime_archive(workspace):
    service, clock, _ = workspace
    published = service.rebuild_realtime("sse")
    timers_before = len(StubTimer.created)
    clock.moment = datetime(2024, 4, 2, 8, 0, 0)

    restarted = restart(service, clock)

    assert restarted.realtime.current("sse") == published
    assert len(StubTimer.created) == timers_before
    app = create_app(
        restarted.store,
        restarted.realtime,
        restarted.sync_root,
        SingleAccountAuthenticator("alice", "secret"),
        secret_key=b"test-key",
    )
    app.testing = True
    client = app.test_client()
    client.post("/login", data={"account": "alice", "password": "secret"})
    response = client.get("/get", query_string={"uri": realtime_uri("sse")})
    assert response.status_code == 200
    assert response.data == published.read_bytes()
    response.close()


def test_restart_keeps_only_the_newest_realtime_archive(workspace):
    service, clock, _ = workspace
    first = service.rebuild_realtime("sse")
    clock.moment = datetime(2024, 4, 1, 10, 36, 0)
    second = service.rebuild_realtime("sse")

    restarted = restart(service, clock)

    assert restarted.realtime.current("sse") == second
    assert not first.exists()
    assert second.exists()


def test_restart_drops_realtime_entry_without_archive(workspace):
    service, clock, _ = workspace
    service.rebuild_all()
    service.rebuild_realtime("sse").unlink()

    restarted = restart(service, clock)

    assert restarted.realtime.current("sse") is None
    uris = [entry.uri for entry in restarted.store.entries()]
    assert uris == ["SSE/DAY/DAY.20230000", "SSE/DAY/DAY.20240328"]
    restarted.rebuild_all()
    assert realtime_uri("sse") not in [entry.uri for entry in restarted.store.entries()]
