import shlex
import sys
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quotesync.cli import DEFAULT_PORT, build_client_parser, build_server_parser, server_main
from quotesync.client.progress import ProgressReporter
from quotesync.publisher.puller import ExternalPuller


def test_progress_file_tracks_fraction(tmp_path):
    path = tmp_path / "state" / "progress.xml"
    reporter = ProgressReporter(path, clock=lambda: datetime(2024, 4, 1, 18, 5, 0))

    reporter.start(4)
    reporter.advance(1)
    reporter.advance(0)

    node = ET.parse(path).getroot().find("percentage")
    assert node.attrib == {"taskcount": "4", "taskprogress": "0.250000", "update": "2024-04-01 18:05:00"}

    reporter.advance(10)
    assert reporter.fraction == 1.0


def test_progress_without_path_only_counts():
    reporter = ProgressReporter()
    reporter.start(2)
    reporter.advance(1)
    reporter.dump()
    assert reporter.fraction == 0.5


def test_client_parser_defaults():
    args = build_client_parser().parse_args([])
    assert args.port == DEFAULT_PORT
    assert args.dir == "./Data"
    assert args.stopflagfile is None


def test_server_parser_accepts_overrides():
    args = build_server_parser().parse_args(["--port", "8080", "--cfg", "/etc/quotesync/cfg.xml", "--dumplog"])
    assert args.port == 8080
    assert args.cfg == "/etc/quotesync/cfg.xml"
    assert args.dumplog


def test_server_exits_on_unreadable_config(tmp_path):
    assert server_main(["--cfg", str(tmp_path / "missing.xml")]) == 1


def test_external_puller_reports_exit_status(tmp_path):
    assert ExternalPuller(f"{shlex.quote(sys.executable)} -c pass").run()
    assert not ExternalPuller(f"{shlex.quote(sys.executable)} -c 'raise SystemExit(3)'").run()
    assert not ExternalPuller(str(tmp_path / "no-such-command")).run()
