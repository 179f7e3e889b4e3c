import logging

from brush_applier import ApplyReport, BrushApplier, BrushClient
from brush_engine import BrushConst
from brush_models import (
    AlgorithmAddTorrent,
    AlgorithmModifyTorrent,
    AlgorithmOperationTorrent,
    AlgorithmResult,
    ClientTorrent,
)

NOW = 1_700_000_000


class FakeClient(BrushClient):
    name = "local"

    def __init__(self, fail=None, raise_on=None):
        self.calls = []
        self.fail = set(fail or [])
        self.raise_on = set(raise_on or [])

    def _result(self, key):
        if key in self.raise_on:
            raise ConnectionError(f"connection reset while handling {key}")
        if key in self.fail:
            return False, f"{key} rejected"
        return True, "ok"

    def delete_torrents(self, info_hashes):
        self.calls.append(("delete", list(info_hashes)))
        return self._result(info_hashes[0])

    def modify_torrent(self, info_hash, meta, download_speed_limit=None):
        self.calls.append(("modify", info_hash, meta, download_speed_limit))
        return self._result(info_hash)

    def resume_torrents(self, info_hashes):
        self.calls.append(("resume", list(info_hashes)))
        return self._result(info_hashes[0])

    def add_torrent(self, download_url, name, meta, category="", tags=None, upload_speed_limit=0, paused=False):
        self.calls.append(("add", download_url, name, meta, category, tags, upload_speed_limit, paused))
        return self._result(download_url)


def _result():
    return AlgorithmResult(
        delete_torrents=[AlgorithmOperationTorrent(info_hash="d1", name="old", msg="slow uploading speed")],
        stall_torrents=[AlgorithmModifyTorrent(info_hash="s1", name="dl", meta={"stt": NOW},
                                               msg="discount time ends")],
        resume_torrents=[AlgorithmOperationTorrent(info_hash="r1", name="err", msg="resume")],
        modify_torrents=[AlgorithmModifyTorrent(info_hash="m1", name="seed", meta={"sct": NOW, "sctu": 5},
                                                msg="set slow check time mark")],
        add_torrents=[AlgorithmAddTorrent(download_url="https://pt.example.org/dl/1", name="new",
                                          meta={"dcet": NOW + 7200}, msg="new torrent of score 500")],
    )


def test_apply_runs_actions_in_order():
    client = FakeClient()
    applier = BrushApplier(client, site_name="mteam", upload_speed_limit=5 * 1024 * 1024)

    report = applier.apply(_result())

    assert [call[0] for call in client.calls] == ["delete", "modify", "resume", "modify", "add"]
    assert client.calls[1] == ("modify", "s1", {"stt": NOW}, BrushConst.STALL_DOWNLOAD_SPEED)
    assert client.calls[3] == ("modify", "m1", {"sct": NOW, "sctu": 5}, None)
    assert client.calls[4] == ("add", "https://pt.example.org/dl/1", "new", {"dcet": NOW + 7200},
                               "_brush", ["site:mteam"], 5 * 1024 * 1024, False)
    assert report == ApplyReport(deleted=1, stalled=1, resumed=1, modified=1, added=1)
    assert report.ok


def test_failures_do_not_stop_remaining_actions(caplog):
    client = FakeClient(fail=["d1"], raise_on=["r1"])
    applier = BrushApplier(client)

    with caplog.at_level(logging.ERROR, logger="brush_applier"):
        report = applier.apply(_result())

    assert len(client.calls) == 5
    assert report.deleted == 0
    assert report.resumed == 0
    assert report.added == 1
    assert not report.ok
    assert [(f.action, f.target) for f in report.failures] == [("delete", "d1"), ("resume", "r1")]
    assert "connection reset" in report.failures[1].error
    assert "d1 rejected" in caplog.text
    # 没有站点名时不打站点标签
    assert client.calls[4][5] == []


def test_dry_run_makes_no_client_calls(caplog):
    client = FakeClient()
    applier = BrushApplier(client, dry_run=True)

    with caplog.at_level(logging.INFO, logger="brush_applier"):
        report = applier.apply(_result())

    assert client.calls == []
    assert report == ApplyReport()
    assert "[DRY RUN] 删除 [local] old (d1): slow uploading speed" in caplog.text


def test_deleted_torrent_lifespan_logged(caplog):
    torrent = ClientTorrent(info_hash="d1", name="old", uploaded=3600 * 1024, downloaded=1800 * 1024,
                            atime=NOW - 3600)

    with caplog.at_level(logging.INFO, logger="brush_applier"):
        BrushApplier(FakeClient()).apply(_result(), client_torrents=[torrent], now=NOW)

    assert "存活 1时0分" in caplog.text
    assert "1.0 KiB/s" in caplog.text


def test_added_torrents_can_start_paused():
    client = FakeClient()

    BrushApplier(client, paused=True).apply(AlgorithmResult(add_torrents=_result().add_torrents))

    assert client.calls[0][7] is True
