#!/usr/bin/env python3
"""
刷流结果执行器

按 删除 -> 暂停下载 -> 恢复 -> 修改meta -> 添加 的顺序把 AlgorithmResult 应用到客户端。
单个种子的操作失败只记录，不中断后续操作；下一轮决策会基于新的客户端数据自行纠正。
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from brush_config import fmt_duration, fmt_size
from brush_engine import BrushConst
from brush_models import AlgorithmResult, ClientTorrent, generate_torrent_tag_from_site
from qb_mapping import BRUSH_CATEGORY


class BrushClient(ABC):
    """刷流执行需要的客户端操作，返回 (成功, 信息)"""

    name: str = ""

    @abstractmethod
    def delete_torrents(self, info_hashes: List[str]) -> Tuple[bool, str]:
        ...

    @abstractmethod
    def modify_torrent(self, info_hash: str, meta: Dict[str, int],
                       download_speed_limit: Optional[int] = None) -> Tuple[bool, str]:
        """写回 meta；download_speed_limit 不为 None 时同时设置下载限速"""

    @abstractmethod
    def resume_torrents(self, info_hashes: List[str]) -> Tuple[bool, str]:
        ...

    @abstractmethod
    def add_torrent(self, download_url: str, name: str, meta: Dict[str, int], category: str = "",
                    tags: Optional[List[str]] = None, upload_speed_limit: int = 0,
                    paused: bool = False) -> Tuple[bool, str]:
        ...


@dataclass
class ApplyFailure:
    action: str
    target: str  # info_hash 或下载链接
    name: str
    error: str


@dataclass
class ApplyReport:
    deleted: int = 0
    stalled: int = 0
    resumed: int = 0
    modified: int = 0
    added: int = 0
    failures: List[ApplyFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class BrushApplier:
    """把决策结果应用到一个客户端"""

    def __init__(self, client: BrushClient, site_name: str = "", dry_run: bool = False,
                 paused: bool = False, upload_speed_limit: int = 0, logger=None):
        self.client = client
        self.site_name = site_name
        self.dry_run = dry_run
        self.paused = paused
        self.upload_speed_limit = upload_speed_limit
        self.logger = logger or logging.getLogger("brush_applier")

    def _call(self, report: ApplyReport, action: str, target: str, name: str, func, *args, **kwargs) -> bool:
        try:
            ok, message = func(*args, **kwargs)
        except Exception as e:
            ok, message = False, str(e)
        if not ok:
            self.logger.error(f"[{self.client.name}] {action} 失败: {name} ({target}): {message}")
            report.failures.append(ApplyFailure(action=action, target=target, name=name, error=message))
        return ok

    def apply(self, result: AlgorithmResult,
              client_torrents: Optional[List[ClientTorrent]] = None, now: int = 0) -> ApplyReport:
        report = ApplyReport()
        torrents = {t.info_hash: t for t in client_torrents or []}
        prefix = "[DRY RUN] " if self.dry_run else ""
        client_name = self.client.name

        for torrent in result.delete_torrents:
            self.logger.info(f"{prefix}删除 [{client_name}] {torrent.name} ({torrent.info_hash}): {torrent.msg}")
            self._log_lifespan(torrents.get(torrent.info_hash), now)
            if self.dry_run:
                continue
            if self._call(report, "delete", torrent.info_hash, torrent.name,
                          self.client.delete_torrents, [torrent.info_hash]):
                report.deleted += 1

        for torrent in result.stall_torrents:
            self.logger.info(f"{prefix}暂停下载 [{client_name}] {torrent.name} ({torrent.info_hash}): {torrent.msg}")
            if self.dry_run:
                continue
            if self._call(report, "stall", torrent.info_hash, torrent.name,
                          self.client.modify_torrent, torrent.info_hash, dict(torrent.meta),
                          download_speed_limit=BrushConst.STALL_DOWNLOAD_SPEED):
                report.stalled += 1

        for torrent in result.resume_torrents:
            self.logger.info(f"{prefix}恢复 [{client_name}] {torrent.name} ({torrent.info_hash}): {torrent.msg}")
            if self.dry_run:
                continue
            if self._call(report, "resume", torrent.info_hash, torrent.name,
                          self.client.resume_torrents, [torrent.info_hash]):
                report.resumed += 1

        for torrent in result.modify_torrents:
            self.logger.info(f"{prefix}修改 [{client_name}] {torrent.name} ({torrent.info_hash}): "
                             f"{torrent.msg} {torrent.meta}")
            if self.dry_run:
                continue
            if self._call(report, "modify", torrent.info_hash, torrent.name,
                          self.client.modify_torrent, torrent.info_hash, dict(torrent.meta)):
                report.modified += 1

        tags = [generate_torrent_tag_from_site(self.site_name)] if self.site_name else []
        for torrent in result.add_torrents:
            self.logger.info(f"{prefix}添加 [{client_name}] {self.site_name} 种子 {torrent.name}: "
                             f"{torrent.msg} {torrent.meta}")
            if self.dry_run:
                continue
            if self._call(report, "add", torrent.download_url, torrent.name,
                          self.client.add_torrent, torrent.download_url, torrent.name, dict(torrent.meta),
                          category=BRUSH_CATEGORY, tags=list(tags),
                          upload_speed_limit=self.upload_speed_limit, paused=self.paused):
                report.added += 1

        self.logger.info(
            f"{prefix}[{client_name}] 执行完成: 删除 {report.deleted}, 暂停下载 {report.stalled}, "
            f"恢复 {report.resumed}, 修改 {report.modified}, 添加 {report.added}, 失败 {len(report.failures)}"
        )
        return report

    def _log_lifespan(self, torrent: Optional[ClientTorrent], now: int):
        if not torrent or now <= torrent.atime:
            return
        duration = now - torrent.atime
        self.logger.info(
            f"下载 / 上传: {fmt_size(torrent.downloaded)} / {fmt_size(torrent.uploaded)}; "
            f"存活 {fmt_duration(duration)}; 平均下载 / 上传速度: {fmt_size(torrent.downloaded / duration)}/s / "
            f"{fmt_size(torrent.uploaded / duration)}/s"
        )
