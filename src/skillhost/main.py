"""
skillhost CLI 入口

使用 Typer 和 Rich 提供运维命令行:
- list: 列出已加载的技能及加载错误
- validate: 校验技能包
- catalog: 输出技能清单
- match: 查看请求的匹配结果
- dispatch: 分发请求并显示响应信封
- serve: 启动 HTTP API
"""

import asyncio
import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from .config import settings
from .dispatch import AmbiguousMatch, NoMatch
from .engine import DispatchEngine
from .errors import RegistryUnavailableError, SkillError
from .logging import setup_logging
from .skills import SkillLoader

# 配置日志系统
setup_logging(
    log_dir=settings.log_dir_path,
    log_level=settings.log_level,
    log_format=settings.log_format,
    log_file_prefix=settings.log_file_prefix,
    log_max_size_mb=settings.log_max_size_mb,
    log_backup_count=settings.log_backup_count,
    log_to_console=settings.log_to_console,
    log_to_file=settings.log_to_file,
)
logger = logging.getLogger(__name__)

# Typer 应用
app = typer.Typer(
    name="skillhost",
    help="skillhost - 技能注册与分发引擎",
    add_completion=False,
)

# Rich 控制台
console = Console()


def _load_engine() -> DispatchEngine:
    """创建引擎并同步加载技能，注册中心不可用时退出"""
    engine = DispatchEngine(settings)
    try:
        engine.load()
    except RegistryUnavailableError as e:
        console.print(f"[red]错误: {e.message}[/red]")
        for err in e.details.get("errors", []):
            console.print(f"  [dim]{err.get('location')}: {err.get('message')}[/dim]")
        raise typer.Exit(2)
    return engine


@app.command(name="list")
def list_skills():
    """列出已加载的技能"""
    engine = _load_engine()
    snapshot = engine.snapshot()

    table = Table(title=f"Skills (snapshot v{snapshot.version})")
    table.add_column("名称", style="cyan")
    table.add_column("描述")
    table.add_column("触发短语", style="yellow")
    table.add_column("脚本", style="green")

    for package in snapshot:
        table.add_row(
            package.name,
            package.description.split("\n")[0][:80],
            ", ".join(package.manifest.triggers),
            package.manifest.script or "-",
        )
    console.print(table)

    if snapshot.load_errors:
        console.print(f"\n[yellow]{len(snapshot.load_errors)} 个技能包被排除:[/yellow]")
        for error in snapshot.load_errors:
            console.print(f"  [red]✗[/red] {error.location}: {error.error.message}")


@app.command()
def validate(
    paths: list[Path] = typer.Argument(None, help="技能包或技能目录（默认所有配置目录）"),
):
    """校验技能包，存在错误时以非零状态退出"""
    loader = SkillLoader()
    if paths:
        locations = list(paths)
    else:
        locations = loader.discover_skill_directories(settings.project_root, settings.skill_directories)

    report = loader.load(locations)

    for package in report.packages:
        warnings = loader.parser.validate(package)
        console.print(f"[green]✓[/green] {package.name} ({package.skill_dir})")
        for warning in warnings:
            console.print(f"    [yellow]! {warning}[/yellow]")

    for error in report.errors:
        console.print(f"[red]✗[/red] {error.location}")
        console.print(f"    [red]{error.error.error_type.value}: {error.error.message}[/red]")

    console.print(f"\n{report.loaded_count} valid, {len(report.errors)} rejected")
    if report.errors or not report.packages:
        raise typer.Exit(1)


@app.command()
def catalog(
    compact: bool = typer.Option(False, "--compact", "-c", help="只列出名称"),
):
    """输出技能清单（用于系统提示）"""
    engine = _load_engine()
    console.print(Markdown(engine.get_catalog(compact=compact)))


@app.command()
def match(
    text: str = typer.Argument(..., help="请求文本"),
):
    """显示请求的匹配候选与选择结果"""
    engine = _load_engine()
    outcome = engine.select(text)

    table = Table(title="Candidates")
    table.add_column("#", style="dim")
    table.add_column("技能", style="cyan")
    table.add_column("分数", style="yellow", justify="right")
    for i, result in enumerate(outcome.ranked[: settings.match_top_k], 1):
        table.add_row(str(i), result.skill_name, f"{result.score:.3f}")
    console.print(table)

    if isinstance(outcome, NoMatch):
        console.print("[yellow]No match[/yellow]")
    elif isinstance(outcome, AmbiguousMatch):
        names = ", ".join(c.skill_name for c in outcome.candidates)
        console.print(f"[yellow]Ambiguous:[/yellow] {names}")
    else:
        console.print(f"[green]Selected:[/green] {outcome.skill_name}")


@app.command()
def dispatch(
    text: str = typer.Argument(..., help="请求文本"),
    skill: str | None = typer.Option(None, "--skill", "-s", help="显式指定技能"),
    timeout: float | None = typer.Option(None, "--timeout", "-t", help="截止时间（秒）"),
    as_json: bool = typer.Option(False, "--json", help="输出 JSON 格式的响应信封"),
):
    """分发请求并显示响应信封"""
    engine = _load_engine()
    envelope = asyncio.run(engine.dispatch(text, skill=skill, timeout=timeout))

    if as_json:
        console.print_json(envelope.model_dump_json())
    else:
        _print_envelope(envelope)

    if envelope.status == "failed":
        raise typer.Exit(1)


def _print_envelope(envelope) -> None:
    style = {"completed": "green", "failed": "red"}.get(envelope.status, "yellow")
    title = f"[{style}]{envelope.status}[/{style}]"
    if envelope.selected_skill:
        title += f" · {envelope.selected_skill}"

    if envelope.instructions:
        console.print(Panel(Markdown(envelope.instructions), title=title, border_style=style))
    else:
        console.print(Panel("(no instructions)", title=title, border_style=style))

    if envelope.candidates and not envelope.selected_skill:
        names = ", ".join(f"{c.skill_name} ({c.score:.2f})" for c in envelope.candidates)
        console.print(f"Candidates: {names}")

    for warning in envelope.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")

    for artifact in envelope.artifacts:
        label = "truncated" if artifact.truncated else f"exit {artifact.exit_code}"
        console.print(
            Panel(
                artifact.stdout or artifact.stderr or "(no output)",
                title=f"{Path(artifact.script).name} · {label} · {artifact.elapsed_ms}ms",
                border_style="dim",
            )
        )

    if envelope.error:
        console.print(f"[red]{envelope.error['error_type']}: {envelope.error['message']}[/red]")
        if envelope.error.get("hint"):
            console.print(f"[dim]{envelope.error['hint']}[/dim]")


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="绑定地址（默认 API_HOST）"),
    port: int = typer.Option(None, "--port", help="端口（默认 API_PORT）"),
):
    """启动 HTTP API 服务"""
    import uvicorn

    from .api import create_app

    host = host or settings.api_host
    port = port or settings.api_port

    try:
        engine = DispatchEngine(settings)
        app_ = create_app(engine)
    except SkillError as e:
        console.print(f"[red]错误: {e.message}[/red]")
        raise typer.Exit(2)

    console.print(f"[bold]skillhost[/bold] serving on http://{host}:{port}")
    uvicorn.run(app_, host=host, port=port, log_level="warning", log_config=None)


@app.command()
def version():
    """显示版本"""
    from skillhost import __version__

    console.print(json.dumps({"skillhost": __version__}))


if __name__ == "__main__":
    app()
