import logging

import pytest

from brush_config import (
    BrushConfig,
    ClientConfig,
    ConfigDefaults,
    ConfigError,
    SiteConfig,
    fmt_duration,
    fmt_size,
    fmt_speed,
    parse_size,
    setup_logging,
)

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB

SAMPLE_CONFIG = """
logLevel: debug
clients:
  - name: local
    type: qbittorrent
    url: http://localhost:8080/
    brushMinDiskSpace: 20GiB
    brushSlowUploadSpeedTier: 200KiB
    brushMaxDownloadingTorrents: 3
    brushMaxTorrents: 200
    brushMinRatio: 0.3
  - name: remote
    url: http://seedbox:8080/
sites:
  - name: mteam
    type: mtorrent
    torrentUploadSpeedLimit: 20MiB
    brushTorrentMaxSizeLimit: 100GiB
    brushAllowHr: true
    brushExcludes:
      - REMUX
      - DIY
  - name: hdsky
    brushExcludes: "x265, DoVi"
"""


@pytest.mark.parametrize("value,expected", [
    ("5GiB", 5 * GiB),
    ("100KiB", 100 * KiB),
    ("10M", 10 * MiB),
    ("10mb", 10 * MiB),
    ("1.5g", int(1.5 * GiB)),
    ("2 TiB", 2 * 1024 * GiB),
    ("512", 512),
    ("-1", -1),
    (42, 42),
])
def test_parse_size(value, expected):
    assert parse_size(value) == expected


@pytest.mark.parametrize("value", ["", "abc", "5XB", "ib", "-5GiB", True])
def test_parse_size_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_size(value)


def test_formatters():
    assert fmt_size(-1) == "-"
    assert fmt_size(512) == "512.0 B"
    assert fmt_size(5 * GiB) == "5.0 GiB"
    assert fmt_speed(0) == "0 B/s"
    assert fmt_speed(100 * KiB) == "100.0 KiB/s"
    assert fmt_duration(45) == "45秒"
    assert fmt_duration(125) == "2分5秒"
    assert fmt_duration(3 * 3600 + 120) == "3时2分"


def test_load_yaml_config(tmp_path):
    path = tmp_path / "brush.yaml"
    path.write_text(SAMPLE_CONFIG, encoding="utf-8")

    config = BrushConfig.load(str(path))

    assert config.log_level == "DEBUG"
    assert list(config.clients) == ["local", "remote"]

    local = config.get_client("local")
    assert local.url == "http://localhost:8080/"
    assert local.brush_min_disk_space == 20 * GiB
    assert local.brush_slow_upload_speed_tier == 200 * KiB
    assert local.brush_max_downloading_torrents == 3
    assert local.brush_max_torrents == 200
    assert local.brush_min_ratio == pytest.approx(0.3)

    mteam = config.get_site("mteam")
    assert mteam.type == "mtorrent"
    assert mteam.torrent_upload_speed_limit == 20 * MiB
    assert mteam.brush_torrent_max_size_limit == 100 * GiB
    assert mteam.brush_allow_hr is True
    assert mteam.brush_excludes == ["REMUX", "DIY"]

    assert config.get_site("hdsky").brush_excludes == ["x265", "DoVi"]


def test_defaults_applied():
    client = ClientConfig.from_dict({"name": "local"})
    site = SiteConfig.from_dict({"name": "mteam"})

    assert client.brush_min_disk_space == ConfigDefaults.CLIENT_BRUSH_MIN_DISK_SPACE
    assert client.brush_slow_upload_speed_tier == 100 * KiB
    assert client.brush_max_downloading_torrents == 6
    assert client.brush_max_torrents == 9999
    assert client.brush_min_ratio == pytest.approx(0.2)
    assert client.brush_default_upload_speed_limit == 10 * MiB
    assert site.type == "nexusphp"
    assert site.torrent_upload_speed_limit == 10 * MiB
    assert site.brush_torrent_min_size_limit == 0
    assert site.brush_torrent_max_size_limit == 1024 ** 5
    assert site.brush_excludes == []


def test_non_positive_values_fall_back_to_defaults():
    client = ClientConfig.from_dict({"name": "local", "brushMaxDownloadingTorrents": 0, "brushMinRatio": -1})
    site = SiteConfig.from_dict({"name": "mteam", "torrentUploadSpeedLimit": "-1"})

    assert client.brush_max_downloading_torrents == 6
    assert client.brush_min_ratio == pytest.approx(0.2)
    assert site.torrent_upload_speed_limit == 10 * MiB


def test_invalid_size_logs_warning_and_uses_default(caplog):
    with caplog.at_level(logging.WARNING, logger="brush_config"):
        client = ClientConfig.from_dict({"name": "local", "brushMinDiskSpace": "lots"})

    assert client.brush_min_disk_space == 5 * GiB
    assert "brushMinDiskSpace" in caplog.text


@pytest.mark.parametrize("data", [
    {"clients": [{"url": "http://localhost:8080/"}]},
    {"sites": [{"name": ""}]},
    {"clients": [{"name": "a"}, {"name": "a"}]},
    {"sites": [{"name": "s"}, {"name": "s"}]},
    {"clients": [{"name": "a", "brushMaxTorrents": "many"}]},
    {"clients": [{"name": "a", "brushMinRatio": "low"}]},
])
def test_invalid_config_raises(data):
    with pytest.raises(ConfigError):
        BrushConfig.from_dict(data)


def test_top_level_must_be_mapping():
    with pytest.raises(ConfigError):
        BrushConfig.from_dict(["clients"])


def test_load_errors(tmp_path):
    with pytest.raises(ConfigError):
        BrushConfig.load(str(tmp_path / "missing.yaml"))

    path = tmp_path / "broken.yaml"
    path.write_text("clients: [\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        BrushConfig.load(str(path))


def test_empty_file_gives_empty_config(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    config = BrushConfig.load(str(path))

    assert config.clients == {}
    assert config.sites == {}
    assert config.log_level == "INFO"


def test_unknown_names_raise():
    config = BrushConfig.from_dict({"clients": [{"name": "local"}]})
    with pytest.raises(ConfigError):
        config.get_client("remote")
    with pytest.raises(ConfigError):
        config.get_site("mteam")


def test_setup_logging_writes_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    log_file = tmp_path / "brush.log"
    try:
        setup_logging("info", str(log_file))
        logging.getLogger("brush_engine").info("刷流决策测试")
        for handler in root.handlers:
            handler.flush()
        content = log_file.read_text(encoding="utf-8")
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)

    assert "[brush_engine] INFO: 刷流决策测试" in content


def test_unrecognized_keys_are_ignored():
    config = BrushConfig.from_dict({
        "brushEnableStats": True,
        "sites": [{"name": "mteam", "globalHnR": True, "brushAllowHr": False}],
    })

    site = config.get_site("mteam")
    assert site.brush_allow_hr is False
    assert not hasattr(site, "global_hnr")
    assert not hasattr(config, "brush_enable_stats")
