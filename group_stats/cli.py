"""
CLI 命令行界面
使用 Click + Rich 提供统计查询、维护与服务启动命令
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import load_config, validate_config
from .errors import GroupStatsError
from .runtime import Runtime
from .stats import TimeRange

console = Console()


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def run_async(coro):
    """统一的异步运行入口"""
    return asyncio.run(coro)


async def _with_runtime(cfg, fn):
    """启动一个不带调度器的运行时执行 fn(runtime)，结束后关闭数据库"""
    runtime = Runtime(cfg)
    await runtime.start(with_scheduler=False)
    try:
        return await fn(runtime)
    finally:
        await runtime.stop()


def _fmt_ts(ts: int, offset_minutes: int) -> str:
    tz = timezone(timedelta(minutes=offset_minutes))
    return datetime.fromtimestamp(ts, tz).strftime("%Y-%m-%d %H:%M")


def _run_or_exit(coro):
    try:
        return run_async(coro)
    except GroupStatsError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise SystemExit(1)


# ═══════════════════════════════════════════════════════
# CLI 主入口
# ═══════════════════════════════════════════════════════


@click.group()
@click.option("--config", "-c", default=None, help="配置文件路径")
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
@click.pass_context
def cli(ctx, config, verbose):
    """📊 Group Stats — QQ 群聊消息统计"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config)
    except FileNotFoundError as e:
        console.print(f"[red]❌ {e}[/red]")
        console.print(
            "[yellow]💡 请复制 config.yaml.example 为 config.yaml 并填写配置[/yellow]"
        )
        raise SystemExit(1)
    if cfg.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    ctx.obj["config"] = cfg


# ═══════════════════════════════════════════════════════
# serve — 启动上报入口 + 统计 API + 定时任务
# ═══════════════════════════════════════════════════════


@cli.command()
@click.option("--host", default=None, help="绑定地址（默认取配置 server.host）")
@click.option("--port", "-p", default=None, type=int, help="端口号（默认取配置 server.port）")
@click.pass_context
def serve(ctx, host, port):
    """🚀 启动服务（OneBot 上报 + 统计 API + 定时报告）"""
    cfg = ctx.obj["config"]

    errors = validate_config(cfg)
    if errors:
        for e in errors:
            console.print(f"[red]❌ {e}[/red]")
        raise SystemExit(1)

    import uvicorn
    from .api import create_app

    host = host or cfg.server.host
    port = port or cfg.server.port
    app = create_app(Runtime(cfg))
    console.print(f"[green]🌐 服务已启动: http://{host}:{port}  (上报地址 /onebot/event)[/green]")
    uvicorn.run(app, host=host, port=port, log_level="info")


# ═══════════════════════════════════════════════════════
# stats — 统计查询
# ═══════════════════════════════════════════════════════


@cli.group(name="stats")
def stats_cmd():
    """📈 统计查询"""
    pass


@stats_cmd.command(name="total")
@click.argument("group_id")
@click.option("--days", "-d", default=None, type=float, help="最近 N 天（默认取统计周期）")
@click.option("--user", "-u", default=None, help="只统计指定用户")
@click.pass_context
def stats_total(ctx, group_id, days, user):
    """群（或用户）消息总数"""
    cfg = ctx.obj["config"]

    async def _query(rt: Runtime):
        rng = TimeRange(days=days)
        if user:
            return (
                await rt.stats.get_user_total_messages(group_id, user, rng),
                await rt.stats.get_user_total_messages_without_recall(group_id, user, rng),
            )
        return (
            await rt.stats.get_group_total_messages(group_id, rng),
            await rt.stats.get_group_total_messages_without_recall(group_id, rng),
        )

    total, without_recall = _run_or_exit(_with_runtime(cfg, _query))
    period = days or cfg.stat_period_days
    title = f"群 {group_id}" + (f" / 用户 {user}" if user else "")
    console.print(Panel(
        f"消息总数: [bold]{total}[/bold]\n"
        f"不含撤回: [bold]{without_recall}[/bold]\n"
        f"撤回: {total - without_recall}",
        title=f"📊 {title} · 最近 {period:g} 天",
        border_style="cyan",
    ))


@stats_cmd.command(name="top")
@click.argument("group_id")
@click.option("--limit", "-l", default=10, help="显示前 N 名")
@click.option("--days", "-d", default=None, type=float, help="最近 N 天")
@click.option("--with-recall", is_flag=True, help="计入已撤回消息")
@click.pass_context
def stats_top(ctx, group_id, limit, days, with_recall):
    """群活跃用户排行"""
    cfg = ctx.obj["config"]

    async def _query(rt: Runtime):
        rng = TimeRange(days=days)
        if with_recall:
            return await rt.stats.get_group_top_users(group_id, limit, rng)
        return await rt.stats.get_group_top_users_without_recall(group_id, limit, rng)

    rows = _run_or_exit(_with_runtime(cfg, _query))
    if not rows:
        console.print("[yellow]暂无统计数据[/yellow]")
        return

    table = Table(title=f"🏆 群 {group_id} 活跃排行", box=box.ROUNDED)
    table.add_column("#", style="dim", justify="right")
    table.add_column("用户", style="cyan")
    table.add_column("消息数", style="green", justify="right")
    for i, r in enumerate(rows, 1):
        table.add_row(str(i), str(r["user_id"]), str(r["count"]))
    console.print(table)


@stats_cmd.command(name="heatmap")
@click.argument("group_id")
@click.option("--days", "-d", default=None, type=float, help="最近 N 天")
@click.pass_context
def stats_heatmap(ctx, group_id, days):
    """按小时 / 星期的消息分布"""
    cfg = ctx.obj["config"]

    async def _query(rt: Runtime):
        return await rt.stats.get_group_heatmap_without_recall(group_id, TimeRange(days=days))

    data = _run_or_exit(_with_runtime(cfg, _query))
    hourly, weekly = data["hourly"], data["weekly"]
    peak = max(hourly) or 1

    table = Table(title=f"🕐 群 {group_id} 活跃时段", box=box.SIMPLE)
    table.add_column("小时", style="dim")
    table.add_column("消息数", justify="right")
    table.add_column("", style="green")
    for h in range(24):
        table.add_row(f"{h:02d}:00", str(hourly[h]), "█" * round(hourly[h] / peak * 30))
    console.print(table)

    names = ["周一", "周二", "周三", "周四", "周五", "周六", "周日"]
    console.print("  ".join(f"{names[i]} [bold]{weekly[i]}[/bold]" for i in range(7)))


@stats_cmd.command(name="keywords")
@click.argument("group_id")
@click.option("--limit", "-l", default=20, help="显示前 N 个关键词")
@click.option("--days", "-d", default=None, type=float, help="最近 N 天")
@click.option("--user", "-u", default=None, help="只统计指定用户")
@click.pass_context
def stats_keywords(ctx, group_id, limit, days, user):
    """群（或用户）热词"""
    cfg = ctx.obj["config"]

    async def _query(rt: Runtime):
        rng = TimeRange(days=days)
        if user:
            return await rt.stats.get_user_keyword_stats(group_id, user, limit, rng)
        return await rt.stats.get_group_keyword_stats_without_recall(group_id, limit, rng)

    rows = _run_or_exit(_with_runtime(cfg, _query))
    if not rows:
        console.print("[yellow]暂无关键词（或关键词统计已关闭）[/yellow]")
        return

    table = Table(title=f"🔤 群 {group_id} 热词", box=box.ROUNDED)
    table.add_column("关键词", style="cyan")
    table.add_column("次数", style="green", justify="right")
    for r in rows:
        table.add_row(r["keyword"], str(r["count"]))
    console.print(table)


@stats_cmd.command(name="burst")
@click.argument("group_id")
@click.option("--days", "-d", default=None, type=float, help="最近 N 天（默认取 burst.lookback_days）")
@click.pass_context
def stats_burst(ctx, group_id, days):
    """消息突增检测"""
    cfg = ctx.obj["config"]

    async def _query(rt: Runtime):
        rng = TimeRange(days=days) if days else None
        return await rt.stats.get_group_burst_events(group_id, rng)

    events = _run_or_exit(_with_runtime(cfg, _query))
    if not events:
        console.print("[green]✅ 没有检测到消息突增[/green]")
        return

    table = Table(title=f"🔥 群 {group_id} 消息突增", box=box.ROUNDED)
    table.add_column("窗口开始", style="cyan")
    table.add_column("消息数", style="red", justify="right")
    table.add_column("参与人数", justify="right")
    for e in events:
        table.add_row(
            _fmt_ts(e["window_start"], cfg.timezone_offset_minutes),
            str(e["count"]),
            str(len(e["participants"])),
        )
    console.print(table)


@stats_cmd.command(name="silent")
@click.argument("group_id")
@click.pass_context
def stats_silent(ctx, group_id):
    """冷群检测"""
    cfg = ctx.obj["config"]

    async def _query(rt: Runtime):
        return await rt.stats.get_group_silent_events(group_id)

    events = _run_or_exit(_with_runtime(cfg, _query))
    if not events:
        console.print("[green]✅ 群活跃度正常[/green]")
        return

    e = events[0]
    cold = ", ".join(e["cold_users"][:30]) or "-"
    console.print(Panel(
        f"时间: {_fmt_ts(e['start'], cfg.timezone_offset_minutes)} ~ "
        f"{_fmt_ts(e['end'], cfg.timezone_offset_minutes)}\n"
        f"消息数: [bold]{e['message_count']}[/bold]\n"
        f"沉默成员 ({len(e['cold_users'])}): {cold}",
        title=f"🧊 群 {group_id} 已冷清",
        border_style="blue",
    ))


# ═══════════════════════════════════════════════════════
# clean — 清理历史数据
# ═══════════════════════════════════════════════════════


@cli.command()
@click.argument("days", type=int)
@click.option("--yes", "-y", is_flag=True, help="跳过确认")
@click.pass_context
def clean(ctx, days, yes):
    """🧹 删除 N 天前的消息与事件"""
    cfg = ctx.obj["config"]
    if not yes:
        click.confirm(f"确认删除 {max(1, days)} 天前的所有数据?", abort=True)

    async def _clean(rt: Runtime):
        return await rt.stats.clean_data(days)

    deleted = _run_or_exit(_with_runtime(cfg, _clean))
    console.print(f"[green]✅ 已清理 {max(1, days)} 天前数据，删除消息 {deleted} 条[/green]")


# ═══════════════════════════════════════════════════════
# schedule — 定时报告
# ═══════════════════════════════════════════════════════


@cli.group(name="schedule")
def schedule_cmd():
    """⏰ 管理群定时报告"""
    pass


@schedule_cmd.command(name="list")
@click.argument("group_id")
@click.pass_context
def schedule_list(ctx, group_id):
    """列出群的定时任务"""
    cfg = ctx.obj["config"]

    async def _query(rt: Runtime):
        return await rt.stats.list_group_schedules(group_id)

    jobs = _run_or_exit(_with_runtime(cfg, _query))
    if not jobs:
        console.print("[yellow]本群暂无定时任务[/yellow]")
        return

    table = Table(title=f"⏰ 群 {group_id} 定时任务", box=box.ROUNDED)
    table.add_column("ID", style="dim", justify="right")
    table.add_column("时间", style="cyan")
    table.add_column("功能", style="green")
    table.add_column("状态")
    table.add_column("上次执行", style="dim")
    for j in jobs:
        table.add_row(
            str(j["id"]),
            f"{j['hour']:02d}:{j['minute']:02d}",
            j["feature"],
            "✅" if j["enabled"] else "⏸️",
            _fmt_ts(j["last_run_at"], cfg.timezone_offset_minutes) if j["last_run_at"] else "-",
        )
    console.print(table)


@schedule_cmd.command(name="add")
@click.argument("group_id")
@click.argument("hour", type=click.IntRange(0, 23))
@click.argument("minute", type=click.IntRange(0, 59))
@click.argument("feature")
@click.pass_context
def schedule_add(ctx, group_id, hour, minute, feature):
    """添加（或重新启用）定时任务"""
    cfg = ctx.obj["config"]

    async def _add(rt: Runtime):
        return await rt.stats.upsert_group_schedule(group_id, hour, minute, feature)

    job = _run_or_exit(_with_runtime(cfg, _add))
    console.print(f"[green]✅ 任务已设置: #{job['id']} {hour:02d}:{minute:02d} {feature}[/green]")


@schedule_cmd.command(name="remove")
@click.argument("group_id")
@click.argument("job_id", type=int)
@click.pass_context
def schedule_remove(ctx, group_id, job_id):
    """删除定时任务"""
    cfg = ctx.obj["config"]

    async def _remove(rt: Runtime):
        return await rt.stats.remove_group_schedule(group_id, job_id)

    if _run_or_exit(_with_runtime(cfg, _remove)):
        console.print(f"[green]✅ 任务 {job_id} 已删除[/green]")
    else:
        console.print(f"[yellow]任务 {job_id} 不存在[/yellow]")
        raise SystemExit(1)


# ═══════════════════════════════════════════════════════
# tick — 手动执行一轮定时任务扫描
# ═══════════════════════════════════════════════════════


@cli.command()
@click.pass_context
def tick(ctx):
    """▶️ 立即执行一轮到期任务扫描"""
    cfg = ctx.obj["config"]

    async def _tick(rt: Runtime):
        return await rt.scheduler.run_due_jobs()

    attempted = _run_or_exit(_with_runtime(cfg, _tick))
    console.print(f"[green]✅ 本轮执行了 {attempted} 个任务[/green]")


# ═══════════════════════════════════════════════════════
# config — 查看当前配置
# ═══════════════════════════════════════════════════════


@cli.command(name="config")
@click.pass_context
def config_cmd(ctx):
    """⚙️ 查看当前配置并校验"""
    cfg = ctx.obj["config"]

    table = Table(title="⚙️ 当前配置", box=box.ROUNDED)
    table.add_column("配置项", style="cyan")
    table.add_column("值", style="green")
    table.add_row("数据库", cfg.database.path)
    table.add_row("OneBot API", cfg.onebot.api_url or "-")
    table.add_row("命令前缀", cfg.command_prefix)
    table.add_row("时区偏移(分钟)", str(cfg.timezone_offset_minutes))
    table.add_row("统计周期(天)", str(cfg.stat_period_days))
    table.add_row("采集私聊", "是" if cfg.collect_private_messages else "否")
    table.add_row("采集群文件", "是" if cfg.collect_group_files else "否")
    table.add_row("保存消息内容", "是" if cfg.store_message_content else "否")
    flags = cfg.feature_flags.model_dump()
    table.add_row("功能开关", ", ".join(f"{k}={'on' if v else 'off'}" for k, v in flags.items()))
    table.add_row("定时任务", f"{'开启' if cfg.scheduler.enabled else '关闭'} / 每 {cfg.scheduler.scan_interval_seconds}s")
    console.print(table)

    errors = validate_config(cfg)
    for e in errors:
        console.print(f"[yellow]⚠️ {e}[/yellow]")
    if not errors:
        console.print("[green]✅ 配置校验通过[/green]")


if __name__ == "__main__":
    cli()
