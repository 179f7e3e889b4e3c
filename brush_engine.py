#!/usr/bin/env python3
"""
刷流决策引擎

输入一个客户端的状态快照、客户端内的刷流种子、站点候选种子以及刷流选项，
输出本轮需要 删除 / 暂停下载(stall) / 恢复 / 修改meta / 添加 的种子列表。

- 纯计算：不做任何 I/O，不修改调用方传入的对象（meta 修改均为复制后写入）
- 跨轮次状态只保存在种子 meta 中（dcet / sct / sctu / stt）
- 各步骤共享同一个 DecisionContext，按顺序执行，后面的步骤依赖前面步骤留下的预估值
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from brush_config import fmt_size, fmt_speed
from brush_models import (
    AlgorithmAddTorrent,
    AlgorithmModifyTorrent,
    AlgorithmOperationTorrent,
    AlgorithmResult,
    BrushClientOption,
    BrushSiteOption,
    ClientStatus,
    ClientTorrent,
    SiteTorrent,
    TorrentMeta,
)

logger = logging.getLogger(__name__)

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB


# ════════════════════════════════════════════════════════════════════════════════
# 常量（行为的一部分，调整需谨慎）
# ════════════════════════════════════════════════════════════════════════════════
class BrushConst:
    # 新添加的种子在这段时间内完全不检查
    NEW_TORRENTS_TIMESPAN = 15 * 60
    # 新添加的种子在这段时间内不会因为分享率低被暂停下载
    NEW_TORRENTS_STALL_EXEMPTION_TIMESPAN = 30 * 60
    NO_PROCESS_TORRENT_DELETEION_TIMESPAN = 30 * 60
    STALL_DOWNLOAD_SPEED = 10 * KiB
    SLOW_UPLOAD_SPEED = 100 * KiB
    RATIO_CHECK_MIN_DOWNLOAD_SPEED = 100 * KiB
    SLOW_TORRENTS_CHECK_TIMESPAN = 15 * 60
    # 暂停下载的未完成种子超过这段时间后删除
    STALL_TORRENT_DELETEION_TIMESPAN = 30 * 60
    BANDWIDTH_FULL_PERCENT = 0.8
    BANDWIDTH_MIN_UPLOAD_LIMIT = 100 * KiB
    DELETE_TORRENT_IMMEDIATELY_SCORE = 99999.0
    RESUME_TORRENTS_FREE_DISK_SPACE_TIER = 5 * GiB
    DELETE_TORRENTS_FREE_DISK_SPACE_TIER = 10 * GiB
    RESUME_UPLOAD_SPEED_FACTOR = 4
    DELETE_CANDIDATE_MAX_AGE_BONUS = 86400

    # 候选种子评分
    DISCOUNT_END_MIN_REMAINING = 3600
    RELISTED_TORRENT_AGE = 86400 * 30
    FRESH_TORRENT_MAX_AGE = 86400
    POPULAR_TORRENT_AGE = 7200
    POPULAR_TORRENT_MIN_LEECHERS = 500
    LEECHER_UPLOAD_SPEED = 100 * KiB


def safe_div(a: float, b: float, default: float = 0) -> float:
    if b == 0:
        return default
    return a / b


def count_as_downloading(torrent: ClientTorrent, now: int) -> bool:
    return (not torrent.is_complete() and torrent.meta_view.stall_time == 0 and
            (torrent.download_speed >= BrushConst.STALL_DOWNLOAD_SPEED or
             now - torrent.atime <= BrushConst.NEW_TORRENTS_TIMESPAN))


def can_stall_torrent(torrent: ClientTorrent) -> bool:
    return torrent.state == "downloading" and torrent.meta_view.stall_time == 0


def is_torrent_stalled(torrent: ClientTorrent) -> bool:
    return not torrent.is_complete() and torrent.meta_view.stall_time > 0


def is_upload_bandwidth_full(status: ClientStatus) -> bool:
    """上传带宽已满（或限速过低）时不必再抓取站点新种"""
    limit = status.upload_speed_limit
    if 0 < limit < BrushConst.BANDWIDTH_MIN_UPLOAD_LIMIT:
        return True
    return (limit > 0 and status.upload_speed > 0 and
            status.upload_speed / limit >= BrushConst.BANDWIDTH_FULL_PERCENT)


# ════════════════════════════════════════════════════════════════════════════════
# 候选种子评分
# ════════════════════════════════════════════════════════════════════════════════
def rate_site_torrent(site_torrent: SiteTorrent, site_option: BrushSiteOption) -> Tuple[float, int, str]:
    """
    评估站点种子的刷流价值

    Returns:
        (score, predicted_upload_speed, note)，score 为 0 表示不可用
    """
    score, speed, note = _rate_site_torrent(site_torrent, site_option)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            f"rate_site_torrent score={score:.0f} name={site_torrent.name}, "
            f"free={site_torrent.download_multiplier == 0}, rtime={site_option.now - site_torrent.time}, "
            f"seeders={site_torrent.seeders}, leechers={site_torrent.leechers}, note={note}"
        )
    return score, speed, note


def _rate_site_torrent(t: SiteTorrent, opt: BrushSiteOption) -> Tuple[float, int, str]:
    if t.is_active:
        return 0.0, 0, "already active"
    if t.upload_multiplier == 0:
        return 0.0, 0, "no upload credit"
    if not opt.allow_hr and t.has_hnr:
        return 0.0, 0, "hnr"
    if not opt.allow_none_free and t.download_multiplier != 0:
        return 0.0, 0, "not free"
    if not opt.allow_paid and t.paid and not t.bought:
        return 0.0, 0, "paid"
    if t.size < opt.torrent_min_size_limit or t.size > opt.torrent_max_size_limit:
        return 0.0, 0, "size out of limits"
    if t.discount_end_time > 0 and t.discount_end_time - opt.now < BrushConst.DISCOUNT_END_MIN_REMAINING:
        return 0.0, 0, "discount ends soon"
    if not opt.allow_zero_seeders and t.seeders == 0:
        return 0.0, 0, "no seeders"
    if t.leechers <= t.seeders:
        return 0.0, 0, "not enough leechers"
    if t.match_filters_or(opt.excludes):
        return 0.0, 0, "brush excludes matches"

    # 部分站点定期将旧种重新置顶免费，这类种子仍然可以获得很好的上传速度
    age = opt.now - t.time
    if age <= BrushConst.RELISTED_TORRENT_AGE:
        if age >= BrushConst.FRESH_TORRENT_MAX_AGE:
            return 0.0, 0, "too old"
        if age >= BrushConst.POPULAR_TORRENT_AGE and t.leechers < BrushConst.POPULAR_TORRENT_MIN_LEECHERS:
            return 0.0, 0, "not fresh and not popular"

    predicted = min(t.leechers * BrushConst.LEECHER_UPLOAD_SPEED, opt.torrent_upload_speed_limit)

    if t.seeders <= 1:
        score = 50.0
    elif t.seeders <= 3:
        score = 30.0
    else:
        score = 10.0
    score += t.leechers

    score *= t.upload_multiplier
    if t.download_multiplier != 0:
        score *= 0.5

    if t.size <= 1 * GiB:
        score *= 10
    elif t.size <= 10 * GiB:
        score *= 2
    elif t.size <= 20 * GiB:
        score *= 1
    elif t.size <= 50 * GiB:
        score *= 0.5
    elif t.size <= 100 * GiB:
        score *= 0.1
    else:
        # 大包特殊处理
        if t.leechers >= 1000:
            score *= 100
        elif t.leechers >= 500:
            score *= 50
        elif t.leechers >= 100:
            score *= 10
        else:
            score *= 0
    return score, predicted, ""


# ════════════════════════════════════════════════════════════════════════════════
# 决策上下文
# ════════════════════════════════════════════════════════════════════════════════
@dataclass
class CandidateTorrent:
    name: str
    download_url: str
    size: int
    predicted_upload_speed: int
    score: float
    meta: Dict[str, int] = field(default_factory=dict)


@dataclass
class DeleteCandidate:
    info_hash: str
    score: float
    msg: str = ""


@dataclass
class TorrentFlags:
    torrent: ClientTorrent
    modify: bool = False
    stall: bool = False
    resume: bool = False
    delete_candidate: bool = False
    delete: bool = False


@dataclass
class DecisionContext:
    """各步骤共享的可变预估状态"""
    client_torrents: List[ClientTorrent]
    site_option: BrushSiteOption
    client_option: BrushClientOption
    free_space: int = -1
    free_space_change: int = 0
    free_space_target: int = 0
    estimate_upload_speed: int = 0
    target_upload_speed: int = 0
    cnt_torrents: int = 0
    cnt_downloading_torrents: int = 0
    candidates: List[CandidateTorrent] = field(default_factory=list)
    delete_candidates: List[DeleteCandidate] = field(default_factory=list)
    stall_torrents: List[AlgorithmModifyTorrent] = field(default_factory=list)
    modify_torrents: List[AlgorithmModifyTorrent] = field(default_factory=list)
    resume_torrents: List[AlgorithmOperationTorrent] = field(default_factory=list)
    flags: Dict[str, TorrentFlags] = field(default_factory=dict)
    result: AlgorithmResult = field(default_factory=AlgorithmResult)

    @classmethod
    def create(cls, status: ClientStatus, client_torrents: List[ClientTorrent],
               site_option: BrushSiteOption, client_option: BrushClientOption) -> "DecisionContext":
        target_upload_speed = status.upload_speed_limit
        if target_upload_speed <= 0:
            target_upload_speed = client_option.default_upload_speed_limit
        ctx = cls(
            client_torrents=list(client_torrents),
            site_option=site_option,
            client_option=client_option,
            free_space=status.free_space_on_disk,
            free_space_target=min(client_option.min_disk_space * 2,
                                  client_option.min_disk_space + BrushConst.DELETE_TORRENTS_FREE_DISK_SPACE_TIER),
            estimate_upload_speed=status.upload_speed,
            target_upload_speed=target_upload_speed,
            cnt_torrents=len(client_torrents),
        )
        for torrent in ctx.client_torrents:
            ctx.flags[torrent.info_hash] = TorrentFlags(torrent=torrent)
        return ctx

    @property
    def now(self) -> int:
        return self.site_option.now

    @property
    def disk_known(self) -> bool:
        return self.free_space >= 0

    @property
    def projected_free_space(self) -> int:
        return self.free_space + self.free_space_change

    def needs_disk_space(self) -> bool:
        """剩余空间不足，且本轮释放的空间还没达到目标"""
        return (self.disk_known and self.free_space <= self.client_option.min_disk_space and
                self.projected_free_space <= self.free_space_target)

    def disk_allows_add(self) -> bool:
        return not self.disk_known or self.projected_free_space > self.client_option.min_disk_space

    def can_admit(self) -> bool:
        return (self.cnt_downloading_torrents < self.client_option.max_downloading_torrents and
                self.estimate_upload_speed <= self.target_upload_speed * 2 and
                self.disk_allows_add() and
                self.cnt_torrents < self.client_option.max_torrents)


def _stall(ctx: DecisionContext, torrent: ClientTorrent, msg: str):
    info = ctx.flags[torrent.info_hash]
    if info.stall:
        return
    meta = torrent.meta_view.replace(stall_time=ctx.now)
    ctx.stall_torrents.append(AlgorithmModifyTorrent(
        info_hash=torrent.info_hash, name=torrent.name, meta=meta.to_dict(), msg=msg))
    info.stall = True


def _modify(ctx: DecisionContext, torrent: ClientTorrent, meta: TorrentMeta, msg: str):
    ctx.modify_torrents.append(AlgorithmModifyTorrent(
        info_hash=torrent.info_hash, name=torrent.name, meta=meta.to_dict(), msg=msg))
    ctx.flags[torrent.info_hash].modify = True


def _add_delete_candidate(ctx: DecisionContext, torrent: ClientTorrent, score: float, msg: str):
    ctx.delete_candidates.append(DeleteCandidate(
        info_hash=torrent.info_hash, score=score, msg=msg))
    ctx.flags[torrent.info_hash].delete_candidate = True


def _delete(ctx: DecisionContext, torrent: ClientTorrent, msg: str):
    ctx.result.delete_torrents.append(AlgorithmOperationTorrent(
        info_hash=torrent.info_hash, name=torrent.name, msg=msg))
    ctx.free_space_change += torrent.size_completed
    ctx.estimate_upload_speed -= torrent.upload_speed
    ctx.flags[torrent.info_hash].delete = True
    if count_as_downloading(torrent, ctx.now):
        ctx.cnt_downloading_torrents -= 1
    ctx.cnt_torrents -= 1


# ════════════════════════════════════════════════════════════════════════════════
# 决策步骤
# ════════════════════════════════════════════════════════════════════════════════
def score_candidates(ctx: DecisionContext, site_torrents: List[SiteTorrent]):
    for site_torrent in site_torrents:
        score, predicted, _ = rate_site_torrent(site_torrent, ctx.site_option)
        if score <= 0:
            continue
        meta = {}
        if site_torrent.discount_end_time > 0:
            meta["dcet"] = site_torrent.discount_end_time
        ctx.candidates.append(CandidateTorrent(
            name=site_torrent.name,
            download_url=site_torrent.download_url,
            size=site_torrent.size,
            predicted_upload_speed=predicted,
            score=score,
            meta=meta,
        ))
    ctx.candidates.sort(key=lambda c: c.score, reverse=True)


def mark_client_torrents(ctx: DecisionContext):
    """统计下载中的种子，并标记 暂停下载 / 删除候选 / meta 修改"""
    now = ctx.now
    tier = ctx.client_option.slow_upload_speed_tier
    for torrent in ctx.client_torrents:
        meta = torrent.meta_view
        if count_as_downloading(torrent, now):
            ctx.cnt_downloading_torrents += 1

        # 优惠即将结束的未完成种子
        if (meta.discount_end_time > 0 and
                meta.discount_end_time - now <= BrushConst.DISCOUNT_END_MIN_REMAINING and
                torrent.ctime <= 0 and can_stall_torrent(torrent)):
            _stall(ctx, torrent, "discount time ends")

        if now - torrent.atime <= BrushConst.NEW_TORRENTS_TIMESPAN:
            continue

        # 有可替换的候选种子时才立即删除出错的种子，否则按普通种子继续检查
        if torrent.state == "error" and (
                torrent.upload_speed < tier or
                (torrent.upload_speed < tier * 2 and ctx.free_space == 0)) and ctx.candidates:
            _add_delete_candidate(ctx, torrent, BrushConst.DELETE_TORRENT_IMMEDIATELY_SCORE,
                                  "torrent in error state")
        elif torrent.download_speed == 0 and torrent.size_completed == 0:
            if now - torrent.atime > BrushConst.NO_PROCESS_TORRENT_DELETEION_TIMESPAN:
                _add_delete_candidate(ctx, torrent, BrushConst.DELETE_TORRENT_IMMEDIATELY_SCORE,
                                      "torrent has no download progress")
        elif torrent.upload_speed < tier:
            if meta.slow_check_time <= 0:
                # 第一次发现上传慢：记录检查起点
                _modify(ctx, torrent, meta.replace(slow_check_time=now, slow_check_uploaded=torrent.uploaded),
                        "set slow check time mark")
                continue
            if now - meta.slow_check_time < BrushConst.SLOW_TORRENTS_CHECK_TIMESPAN:
                continue
            average_upload_speed = safe_div(torrent.uploaded - meta.slow_check_uploaded,
                                            now - meta.slow_check_time)
            if average_upload_speed >= tier:
                _modify(ctx, torrent, meta.replace(slow_check_time=now, slow_check_uploaded=torrent.uploaded),
                        "reset slow check time mark")
                continue
            if (can_stall_torrent(torrent) and
                    torrent.download_speed >= BrushConst.RATIO_CHECK_MIN_DOWNLOAD_SPEED and
                    torrent.upload_speed / torrent.download_speed < ctx.client_option.min_ratio and
                    now - torrent.atime >= BrushConst.NEW_TORRENTS_STALL_EXEMPTION_TIMESPAN):
                _stall(ctx, torrent, "low upload / download ratio")
            score = -float(torrent.upload_speed)
            if torrent.ctime <= 0:
                if meta.stall_time > 0:
                    score += now - meta.stall_time
            else:
                score += min(now - torrent.ctime, BrushConst.DELETE_CANDIDATE_MAX_AGE_BONUS)
            _add_delete_candidate(ctx, torrent, score, "slow uploading speed")
        elif meta.slow_check_time > 0:
            _modify(ctx, torrent, meta.replace(slow_check_time=0, slow_check_uploaded=0),
                    "remove slow check time mark")


def sort_delete_candidates(ctx: DecisionContext):
    ctx.delete_candidates.sort(key=lambda c: c.score, reverse=True)


def apply_deletions(ctx: DecisionContext):
    # TODO: 用动态规划挑选释放空间与上传损失更合适的组合，目前是按分数贪心
    for candidate in ctx.delete_candidates:
        torrent = ctx.flags[candidate.info_hash].torrent
        stall_time = torrent.meta_view.stall_time
        if (candidate.score >= BrushConst.DELETE_TORRENT_IMMEDIATELY_SCORE or
                ctx.needs_disk_space() or
                (torrent.ctime <= 0 and stall_time > 0 and
                 ctx.now - stall_time >= BrushConst.STALL_TORRENT_DELETEION_TIMESPAN)):
            _delete(ctx, torrent, candidate.msg)


def delete_stalled_for_disk_space(ctx: DecisionContext):
    """空间仍然不足：删除所有已暂停下载的未完成种子"""
    if not ctx.needs_disk_space():
        return
    for torrent in ctx.client_torrents:
        if ctx.flags[torrent.info_hash].delete or not is_torrent_stalled(torrent):
            continue
        _delete(ctx, torrent, "delete stalled incomplete torrents due to insufficient disk space")


def delete_for_max_torrents(ctx: DecisionContext):
    """种子数超过上限且有可替换的候选种子时，按删除优先级继续删除"""
    excess = ctx.cnt_torrents - ctx.client_option.max_torrents
    if excess <= 0 or not ctx.candidates:
        return
    remaining = min(excess, len(ctx.candidates))
    for candidate in ctx.delete_candidates:
        info = ctx.flags[candidate.info_hash]
        if info.delete:
            continue
        _delete(ctx, info.torrent, candidate.msg + " (delete due to max torrents limit)")
        remaining -= 1
        if remaining == 0:
            break


def stall_for_disk_space(ctx: DecisionContext):
    """空间仍然不足：暂停所有下载中的种子"""
    if not ctx.disk_known or ctx.projected_free_space >= ctx.client_option.min_disk_space:
        return
    for torrent in ctx.client_torrents:
        info = ctx.flags[torrent.info_hash]
        if info.delete or info.stall:
            continue
        if can_stall_torrent(torrent):
            _stall(ctx, torrent, "stall all torrents due to insufficient free disk space")


def mark_resume(ctx: DecisionContext):
    if ctx.disk_known and ctx.projected_free_space < max(
            ctx.client_option.min_disk_space, BrushConst.RESUME_TORRENTS_FREE_DISK_SPACE_TIER):
        return
    min_upload_speed = ctx.client_option.slow_upload_speed_tier * BrushConst.RESUME_UPLOAD_SPEED_FACTOR
    for torrent in ctx.client_torrents:
        info = ctx.flags[torrent.info_hash]
        if (torrent.state != "error" or torrent.upload_speed < min_upload_speed or
                is_torrent_stalled(torrent) or info.resume):
            continue
        ctx.resume_torrents.append(AlgorithmOperationTorrent(
            info_hash=torrent.info_hash, name=torrent.name, msg="resume fast uploading errored torrent"))
        info.resume = True


def materialize_actions(ctx: DecisionContext):
    """生成最终的 stall / resume / modify 列表，已删除的种子不再有其它操作"""
    now = ctx.now
    for stall in ctx.stall_torrents:
        info = ctx.flags[stall.info_hash]
        if info.delete:
            continue
        ctx.result.stall_torrents.append(stall)
        if count_as_downloading(info.torrent, now):
            ctx.cnt_downloading_torrents -= 1

    for resume in ctx.resume_torrents:
        info = ctx.flags[resume.info_hash]
        if info.delete or info.stall:
            continue
        ctx.result.resume_torrents.append(resume)
        if not count_as_downloading(info.torrent, now):
            ctx.cnt_downloading_torrents += 1

    for modify in ctx.modify_torrents:
        info = ctx.flags[modify.info_hash]
        if info.delete or info.stall:
            continue
        ctx.result.modify_torrents.append(modify)


def admit_candidates(ctx: DecisionContext):
    while ctx.candidates and ctx.can_admit():
        candidate = ctx.candidates.pop(0)
        ctx.result.add_torrents.append(AlgorithmAddTorrent(
            download_url=candidate.download_url,
            name=candidate.name,
            meta=dict(candidate.meta),
            msg=f"new torrent of score {candidate.score:.0f}",
        ))
        ctx.cnt_torrents += 1
        ctx.cnt_downloading_torrents += 1
        ctx.estimate_upload_speed += candidate.predicted_upload_speed


def finalize(ctx: DecisionContext) -> AlgorithmResult:
    ctx.result.free_space_change = ctx.free_space_change
    ctx.result.can_add_more = ctx.can_admit()
    return ctx.result


def decide(status: ClientStatus, client_torrents: List[ClientTorrent], site_torrents: List[SiteTorrent],
           site_option: BrushSiteOption, client_option: BrushClientOption) -> AlgorithmResult:
    """
    计算一个客户端 + 一个站点的刷流操作

    删除：上传慢且空间不足 / 出错 / 长时间无下载进度 / 暂停下载后长时间未完成 / 超过种子数上限
    暂停下载：优惠到期 / 分享率过低 / 空间不足
    添加：上传带宽、下载数、空间、种子数均有余量时按评分从高到低添加
    """
    logger.info(
        f"刷流选项: 最小剩余空间={fmt_size(client_option.min_disk_space)}, "
        f"慢速上传阈值={fmt_speed(client_option.slow_upload_speed_tier)}, "
        f"单种上传限速={fmt_speed(site_option.torrent_upload_speed_limit)}, "
        f"最大下载数={client_option.max_downloading_torrents}, 最大种子数={client_option.max_torrents}, "
        f"最小分享率={client_option.min_ratio}"
    )
    ctx = DecisionContext.create(status, client_torrents, site_option, client_option)
    score_candidates(ctx, site_torrents or [])
    mark_client_torrents(ctx)
    sort_delete_candidates(ctx)
    apply_deletions(ctx)
    delete_stalled_for_disk_space(ctx)
    delete_for_max_torrents(ctx)
    stall_for_disk_space(ctx)
    mark_resume(ctx)
    materialize_actions(ctx)
    admit_candidates(ctx)
    result = finalize(ctx)

    logger.info(
        f"刷流决策: 种子 {len(client_torrents)} 个, 候选 {len(site_torrents or [])} 个, "
        f"剩余空间 {fmt_size(status.free_space_on_disk)}, 上传 {fmt_speed(status.upload_speed)} / "
        f"{fmt_speed(ctx.target_upload_speed)} -> {result.summary()}, "
        f"空间变化 {fmt_size(result.free_space_change)}, 可继续添加: {result.can_add_more}"
    )
    return result


# ════════════════════════════════════════════════════════════════════════════════
# 选项构造
# ════════════════════════════════════════════════════════════════════════════════
def get_brush_site_options(site_config, now: int) -> BrushSiteOption:
    return BrushSiteOption(
        allow_none_free=site_config.brush_allow_none_free,
        allow_paid=site_config.brush_allow_paid,
        allow_hr=site_config.brush_allow_hr,
        allow_zero_seeders=site_config.brush_allow_zero_seeders,
        torrent_upload_speed_limit=site_config.torrent_upload_speed_limit,
        torrent_min_size_limit=site_config.brush_torrent_min_size_limit,
        torrent_max_size_limit=site_config.brush_torrent_max_size_limit,
        now=now,
        excludes=list(site_config.brush_excludes),
    )


def get_brush_client_options(client_config) -> BrushClientOption:
    return BrushClientOption(
        min_disk_space=client_config.brush_min_disk_space,
        slow_upload_speed_tier=client_config.brush_slow_upload_speed_tier,
        max_downloading_torrents=client_config.brush_max_downloading_torrents,
        max_torrents=client_config.brush_max_torrents,
        min_ratio=client_config.brush_min_ratio,
        default_upload_speed_limit=client_config.brush_default_upload_speed_limit,
    )
