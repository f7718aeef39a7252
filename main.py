# main.py
"""
dirmap - entry point

Keeps a markdown map of each project's directory structure up to date:
- watch: register projects, generate once, then regenerate on change
- generate: one-shot generation
- clear-cache: drop fingerprint store and snapshot
- status: snapshot statistics
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import threading
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dirmap.config.settings import cfg, load_project_config
from dirmap.services.errors import ConfigError
from dirmap.services.project_registry import ProjectRegistry, project_id_for
from dirmap.services.structure_generator import GenerationResult, StructureGenerator


# ============================================================================
# LOGGING
# ============================================================================

LOG_DIR = Path("logs")


class DetailedFormatter(logging.Formatter):
    """Formatter that sets the full traceback of records with exc_info apart"""

    def formatException(self, ei):
        banner = "=" * 60
        return f"{banner}\nFULL TRACEBACK:\n{banner}\n" + "".join(traceback.format_exception(*ei)).rstrip("\n")


def setup_logging(verbose: bool = False) -> None:
    LOG_DIR.mkdir(exist_ok=True)

    formatter = DetailedFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_file = LOG_DIR / f"dirmap_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))

    logging.basicConfig(
        level=logging.DEBUG,
        handlers=[file_handler, console_handler],
        force=True,
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)

console = Console()

COLORS = {
    "primary": "cyan",
    "secondary": "blue",
    "success": "green",
    "warning": "yellow",
    "error": "red",
    "info": "white",
    "muted": "dim white",
}


# ============================================================================
# OUTPUT
# ============================================================================

def print_error(message: str, title: str = "Error"):
    console.print(Panel(f"[bold red]{message}[/]", title=title, border_style=COLORS['error']))


def print_success(message: str, title: str = "Done"):
    console.print(Panel(f"[bold green]{message}[/]", title=title, border_style=COLORS['success']))


def print_info(message: str, title: str = "Info"):
    console.print(Panel(message, title=title, border_style=COLORS['info']))


def print_warning(message: str, title: str = "Warning"):
    console.print(Panel(f"[yellow]{message}[/]", title=title, border_style=COLORS['warning']))


def print_result(result: GenerationResult) -> None:
    if result.skipped:
        print_warning(f"Generation skipped for [bold]{result.project_id}[/]: path is missing or unreadable")
        return

    table = Table(title=f"Generation: {result.project_id}", show_header=True, box=box.ROUNDED)
    table.add_column("Metric", style=COLORS['primary'])
    table.add_column("Value", justify="right")

    table.add_row("Changes", result.changes)
    table.add_row("Files scanned", str(result.files_scanned))
    table.add_row("Files updated", str(result.files_updated))
    table.add_row("Functions", f"{result.functions_found} ({result.functions_reused} cached)")
    table.add_row("Entities", f"{result.entities_cached} cached, {result.entities_rescanned} rescanned")
    table.add_row("Description calls", str(result.descriptions_requested))
    table.add_row("Descriptions reused", str(result.descriptions_reused))
    if result.file_changes:
        changes = result.file_changes
        table.add_row(
            "Since last run",
            f"{changes.get('new', 0)} new, {changes.get('modified', 0)} modified, {changes.get('removed', 0)} removed",
        )
    table.add_row("Duration", f"{result.duration_sec:.2f}s")
    if result.errors:
        table.add_row("Errors", f"[red]{len(result.errors)}[/]")

    console.print(table)
    if result.artifact_path:
        console.print(f"[dim]Written to {result.artifact_path}[/]")


def print_cache_stats(project_id: str, stats: Dict[str, Any]) -> None:
    table = Table(title=f"Cache: {project_id}", show_header=True, box=box.ROUNDED)
    table.add_column("Key", style=COLORS['primary'])
    table.add_column("Value", justify="right")

    table.add_row("Cached entities", str(stats.get("hits", 0)))
    table.add_row("Cached descriptions", str(stats.get("cached_descriptions", 0)))
    table.add_row("Estimated time saved", str(stats.get("saved_time", "0s")))
    table.add_row("Last generated", str(stats.get("last_generated_at") or "-"))
    table.add_row("Last reference", str(stats.get("last_reference_id") or "-"))
    console.print(table)


def print_projects(registry: ProjectRegistry) -> None:
    rows = registry.status()
    if not rows:
        console.print("[dim]No projects registered[/]")
        return

    table = Table(title="Projects", show_header=True, box=box.ROUNDED)
    table.add_column("ID", style=f"bold {COLORS['primary']}")
    table.add_column("Path")
    table.add_column("Auto")
    table.add_column("State")
    table.add_column("Last update")
    table.add_column("Runs", justify="right")

    for row in rows:
        table.add_row(
            row["id"],
            row["path"],
            "[green]on[/]" if row["auto_update"] else "[dim]off[/]",
            row["state"],
            row["last_update"] or "-",
            str(row["regenerations"]),
        )
    console.print(table)


def print_watch_help() -> None:
    help_table = Table(show_header=False, box=None, padding=(0, 2))
    help_table.add_column("Command", style=f"bold {COLORS['primary']}")
    help_table.add_column("Action")

    help_table.add_row("add PATH", "Watch another project")
    help_table.add_row("remove ID", "Stop watching a project")
    help_table.add_row("list", "Show watched projects")
    help_table.add_row("auto ID on|off", "Toggle auto-update")
    help_table.add_row("generate ID", "Regenerate now")
    help_table.add_row("quit", "Stop watching and exit")

    console.print(Panel(help_table, title="[bold]Commands[/]", border_style=COLORS['secondary']))


# ============================================================================
# ONE-SHOT COMMANDS
# ============================================================================

def _generator_for(path: str) -> StructureGenerator:
    root = Path(path).expanduser().resolve()
    return StructureGenerator(root, project_id_for(root))


def cmd_generate(args: argparse.Namespace) -> int:
    generator = _generator_for(args.path)
    if args.full:
        generator.snapshot_cache.clear()

    result = asyncio.run(generator.generate())
    logger.debug(f"Generation result: {result.to_dict()}")
    if generator.describer.enabled:
        logger.info(f"Description provider: {generator.describer.stats.to_dict()}")
    print_result(result)
    if result.skipped:
        return 1

    print_cache_stats(generator.project_id, generator.cache_stats())
    return 0


def cmd_clear_cache(args: argparse.Namespace) -> int:
    generator = _generator_for(args.path)
    generator.clear_project_cache()
    print_success(f"Cache cleared for [bold]{generator.project_id}[/]")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    generator = _generator_for(args.path)
    print_cache_stats(generator.project_id, generator.cache_stats())
    return 0


# ============================================================================
# WATCH MODE
# ============================================================================

def _collect_projects(args: argparse.Namespace) -> List[Dict[str, Any]]:
    """Project entries from PATH arguments, or from config.json."""
    if args.paths:
        return [
            {
                "name": project_id_for(path),
                "project_path": str(Path(path).expanduser().resolve()),
                "update_interval": cfg.UPDATE_INTERVAL,
                "max_depth": cfg.MAX_DEPTH,
            }
            for path in args.paths
        ]

    config_path = Path(args.config) if args.config else None
    return load_project_config(config_path, strict=config_path is not None)["projects"]


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[Optional[str]]") -> None:
    # Daemon thread so a blocked readline never holds up shutdown
    def reader():
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.strip())
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=reader, name="dirmap-stdin", daemon=True).start()


async def handle_command(registry: ProjectRegistry, line: str, max_depth: int) -> bool:
    """Run one interactive command. Returns False on quit."""
    parts = line.split()
    if not parts:
        return True

    command, rest = parts[0].lower(), parts[1:]

    if command in ("quit", "exit", "q"):
        return False

    if command == "list":
        print_projects(registry)

    elif command == "add" and rest:
        path = " ".join(rest)
        if not Path(path).expanduser().is_dir():
            print_warning(f"Not a directory: {path}")
            return True
        project_id = registry.add_project(path, max_depth=max_depth)
        print_result(await registry.generate(project_id) or GenerationResult(project_id, skipped=True))

    elif command == "remove" and rest:
        if registry.remove_project(rest[0]):
            console.print(f"[green]Removed[/] {rest[0]}")
        else:
            print_warning(f"Unknown project: {rest[0]}")

    elif command == "auto" and len(rest) == 2 and rest[1].lower() in ("on", "off"):
        if registry.set_auto_update(rest[0], rest[1].lower() == "on"):
            console.print(f"Auto-update for {rest[0]}: [bold]{rest[1].lower()}[/]")
        else:
            print_warning(f"Unknown project: {rest[0]}")

    elif command == "generate" and rest:
        if registry.get_session(rest[0]) is None:
            print_warning(f"Unknown project: {rest[0]}")
            return True
        result = await registry.generate(rest[0])
        if result is not None:
            print_result(result)

    else:
        print_watch_help()

    return True


async def run_watch(args: argparse.Namespace, projects: List[Dict[str, Any]]) -> int:
    loop = asyncio.get_running_loop()
    registry = ProjectRegistry(
        loop=loop,
        debounce_seconds=args.debounce,
        auto_update=not args.no_auto_update,
    )

    stop_event = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    except (NotImplementedError, RuntimeError):
        # Windows: KeyboardInterrupt is handled in main()
        pass

    try:
        for project in projects:
            interval = args.interval if args.interval is not None else project["update_interval"]
            project_id = registry.add_project(
                project["project_path"],
                project["name"],
                max_depth=project["max_depth"],
                minimum_interval=interval,
            )
            result = await registry.generate(project_id)
            if result is not None:
                print_result(result)

        print_projects(registry)
        print_watch_help()

        queue: asyncio.Queue = asyncio.Queue()
        _start_stdin_reader(loop, queue)
        stdin_open = True
        stop_wait = asyncio.ensure_future(stop_event.wait())

        while not stop_event.is_set():
            if not stdin_open:
                await stop_wait
                break

            line_wait = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({line_wait, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
            if line_wait not in done:
                line_wait.cancel()
                break

            line = line_wait.result()
            if line is None:
                # stdin closed: keep watching until a signal
                stdin_open = False
                continue
            try:
                if not await handle_command(registry, line, cfg.MAX_DEPTH):
                    break
            except Exception as e:
                logger.error(f"Command failed: {line!r}: {e}", exc_info=True)
                print_error(str(e))

        stop_wait.cancel()
    finally:
        registry.stop_all()
        console.print("[dim]Stopped watching. Bye.[/]")

    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    try:
        projects = _collect_projects(args)
    except ConfigError as e:
        logger.error(f"Startup failed: {e}")
        print_error(str(e), title="Configuration")
        return 1

    valid = []
    for project in projects:
        if Path(project["project_path"]).is_dir():
            valid.append(project)
        else:
            logger.warning(f"[{project['name']}] Project path does not exist: {project['project_path']}")
            print_warning(f"Skipping missing path: {project['project_path']}")

    if not valid:
        print_info("No valid project paths, nothing to do.")
        return 0

    try:
        return asyncio.run(run_watch(args, valid))
    except KeyboardInterrupt:
        return 0


# ============================================================================
# ENTRY POINT
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dirmap", description="Keep a directory structure map up to date")
    parser.add_argument("--verbose", "-v", action="store_true", help="log INFO to the console")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch = subparsers.add_parser("watch", help="watch projects and regenerate on change")
    watch.add_argument("paths", nargs="*", metavar="PATH")
    watch.add_argument("--config", help="config.json with a projects list")
    watch.add_argument("--no-auto-update", action="store_true", help="register projects with auto-update off")
    watch.add_argument("--debounce", type=float, default=cfg.DEBOUNCE_SECONDS, help="debounce window in seconds")
    watch.add_argument("--interval", type=float, default=None, help="minimum seconds between regenerations")
    watch.add_argument("--verbose", "-v", action="store_true", default=argparse.SUPPRESS)
    watch.set_defaults(handler=cmd_watch)

    generate = subparsers.add_parser("generate", help="generate once")
    generate.add_argument("path", metavar="PATH")
    generate.add_argument("--full", action="store_true", help="discard the snapshot first")
    generate.set_defaults(handler=cmd_generate)

    clear = subparsers.add_parser("clear-cache", help="clear fingerprint store and snapshot")
    clear.add_argument("path", metavar="PATH")
    clear.set_defaults(handler=cmd_clear_cache)

    status = subparsers.add_parser("status", help="show snapshot statistics")
    status.add_argument("path", metavar="PATH")
    status.set_defaults(handler=cmd_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        return args.handler(args)
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logger.error(f"Critical error: {e}", exc_info=True)
        print_error(f"Critical error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
