import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quotesync.config import (
    CodeRange,
    ConfigError,
    DEFAULT_SKIP_DATES,
    load_server_config,
    parse_server_config,
)


SAMPLE_CFG = """<?xml version="1.0" encoding="utf-8"?>
<cfg version="2.1">
    <setting name="buildtime" value="180000"/>
    <setting name="syncfolder" value="D:\\Sync\\Folder"/>
    <setting name="sse.coderange" value="609999~600000"/>
    <setting name="sse.coderange" value="000001~000999"/>
    <setting name="sse.d1" value="/data/sse/DAY"/>
    <setting name="sse.m5" value="/data/sse/MIN"/>
    <setting name="sse.real_m1" value="/data/sse/REAL"/>
    <setting name="hkse.shsz_idx" value="/data/hk/SHSZ_IDX"/>
    <setting name="grace" value="45"/>
    <setting name="realtimeticks" value="4"/>
    <setting name="ftpcommand" value="pull-hk --all"/>
    <setting name="mystery" value="1"/>
</cfg>
"""


def test_parse_server_config_reads_every_setting():
    config = parse_server_config(SAMPLE_CFG)

    assert config.version == "2.1"
    assert config.build_time == 180000
    assert config.sync_folder == Path("D:/Sync/Folder")
    assert config.grace_seconds == 45.0
    assert config.realtime_ticks == 4
    assert config.ftp_command == "pull-hk --all"
    assert config.skip_dates == set(DEFAULT_SKIP_DATES)

    assert sorted(config.sources) == ["hkse.shsz_idx", "sse.d1", "sse.m5"]
    assert config.sources["sse.m5"].folder == Path("/data/sse/MIN")
    assert config.sources["hkse.shsz_idx"].resource_type == "hkse.shsz_idx"
    assert config.realtime_folders == {"sse": Path("/data/sse/REAL")}


def test_code_ranges_accept_reversed_bounds():
    config = parse_server_config(SAMPLE_CFG)

    assert config.code_ranges["sse"] == [CodeRange(600000, 609999), CodeRange(1, 999)]
    code_filter = config.code_filter("sse")
    assert code_filter.code_in_range("600519")
    assert code_filter.code_in_range("000001")
    assert not code_filter.code_in_range("300750")
    assert not code_filter.code_in_range("60A000")
    assert config.code_filter("szse") is None


def test_explicit_skip_dates_replace_default():
    config = parse_server_config(
        '<cfg><setting name="skipdate" value="20200101"/><setting name="skipdate" value="20210105"/></cfg>'
    )
    assert config.skip_dates == {20200101, 20210105}


def test_malformed_code_range_is_ignored():
    config = parse_server_config('<cfg><setting name="szse.coderange" value="300000"/></cfg>')
    assert config.code_filter("szse") is None


@pytest.mark.parametrize(
    "payload",
    [
        "<cfg><setting name='buildtime' value='six pm'/></cfg>",
        "<config/>",
        "<cfg><setting",
    ],
)
def test_invalid_configuration_raises(payload):
    with pytest.raises(ConfigError):
        parse_server_config(payload)


def test_load_server_config_reports_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_server_config(tmp_path / "absent.xml")


def test_load_server_config_reads_file(tmp_path):
    path = tmp_path / "cfg.xml"
    path.write_text(SAMPLE_CFG, encoding="utf-8")
    assert load_server_config(path).build_time == 180000
