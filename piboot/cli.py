"""Command line entry points: ``piboot`` and ``docker-update-images``."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from .converge.runner import SetupRunner
from .deploy import StateDeployer, deploy_many, select_image_tag
from .envfile import read_env
from .errors import ConfigurationError, PibootError
from .fleet import FleetUpdater
from .logs import configure_logging
from .models import Settings
from .runtime.docker import ComposeController, detect_compose_command
from .storage import ServiceStore, load_settings
from .system import OpenRCInstaller, require_root
from .watch.manager import WatcherManager, run_watchers
from .watch.reconciler import ConfigReconciler

log = logging.getLogger("piboot")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


class Context:
    """Objects shared by subcommands; the compose command is detected once."""

    def __init__(self, settings: Settings, config_path: Optional[Path]) -> None:
        self.settings = settings
        self.config_path = config_path
        self.store = ServiceStore(settings)
        self._controller: Optional[ComposeController] = None

    @property
    def controller(self) -> ComposeController:
        if self._controller is None:
            self._controller = ComposeController(
                detect_compose_command(), timeout=self.settings.command_timeout
            )
        return self._controller

    def manager(self) -> WatcherManager:
        return WatcherManager(self.store, self.controller, self.settings)

    def installer(self) -> OpenRCInstaller:
        return OpenRCInstaller(self.settings, config_path=self.config_path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="piboot", description="Deploy and hot-reload compose services")
    parser.add_argument("--config", type=Path, help="settings YAML (default: $PIBOOT_CONFIG or /etc/piboot/config.yaml)")
    parser.add_argument("--compose-root", type=Path)
    parser.add_argument("--data-root", type=Path)
    parser.add_argument("--source-root", type=Path)
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="list deployed and available services")

    deploy = sub.add_parser("deploy", help="copy source definitions into the live tree")
    deploy.add_argument("services", nargs="+")

    tag = sub.add_parser("select-tag", help="choose and persist a service's image tag")
    tag.add_argument("service")
    tag.add_argument("--tag", help="tag to use instead of prompting")
    tag.add_argument("--yes", action="store_true", help="take the default without prompting")

    for name, help_text in (("start", "pull and start"), ("stop", "tear down"), ("reload", "stop then start")):
        command = sub.add_parser(name, help=f"{help_text} a service")
        command.add_argument("service")

    status = sub.add_parser("status", help="show container and watcher state")
    status.add_argument("services", nargs="*")

    setup = sub.add_parser("setup", help="deploy, start and watch services")
    setup.add_argument("services", nargs="*")
    setup.add_argument("--all", action="store_true", help="every available source service")
    setup.add_argument("--yes", action="store_true", help="answer prompts with defaults")
    setup.add_argument("--no-watcher", action="store_true", help="do not install watcher services")

    watch = sub.add_parser("watch", help="run watchers in the foreground")
    watch.add_argument("services", nargs="*", help="default: every deployed service")

    sub.add_parser("update", help="pull, recreate and prune every deployed service")

    serve = sub.add_parser("serve", help="run watchers behind the HTTP control API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8765)

    sub.add_parser("install-update-job", help="install the daily update job")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    configure_logging(level)
    try:
        settings = load_settings(
            args.config,
            compose_root=args.compose_root,
            data_root=args.data_root,
            source_root=args.source_root,
        )
    except ConfigurationError as exc:
        log.error("%s", exc)
        return EXIT_CONFIG
    if args.command == "update":
        configure_logging(level, settings.update_log_file)
    elif settings.log_file is not None:
        configure_logging(level, settings.log_file)

    ctx = Context(settings, args.config)
    handler = COMMANDS[args.command]
    try:
        return handler(ctx, args)
    except ConfigurationError as exc:
        log.error("%s", exc)
        return EXIT_CONFIG
    except PibootError as exc:
        log.error("%s", exc)
        return EXIT_FAILED


def update_main() -> int:
    """Zero-argument fleet update, suitable for cron."""
    return main(["update"])


# ---------------------------------------------------------------------- commands


def cmd_list(ctx: Context, args: argparse.Namespace) -> int:
    deployed = {d.name for d in ctx.store.list_known_services()}
    available = set(ctx.store.list_available_services())
    for name in sorted(deployed | available):
        marks = []
        if name in deployed:
            marks.append("deployed")
        if name in available:
            marks.append("available")
        print(f"{name}\t{', '.join(marks)}")
    return EXIT_OK


def cmd_deploy(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "deploy")
    failed = deploy_many(StateDeployer(ctx.store), ctx.store, args.services)
    return EXIT_FAILED if failed else EXIT_OK


def cmd_select_tag(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "select-tag")
    service = ctx.store.require_deployed(args.service)
    options = ctx.settings.options_for(service.name).image_tags
    if args.tag:
        options = [args.tag] + [option for option in options if option != args.tag]
    select_image_tag(
        service,
        options,
        interactive=False if (args.yes or args.tag) else None,
        timeout=ctx.settings.options_for(service.name).tag_prompt_timeout,
        key=ctx.settings.image_tag_key,
    )
    return EXIT_OK


def cmd_start(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "start")
    service = ctx.store.require_deployed(args.service)
    log.info("[%s] Starting", service.name)
    ctx.controller.up(service.compose_path)
    log.info("[%s] started", service.name)
    return EXIT_OK


def cmd_stop(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "stop")
    service = ctx.store.descriptor(args.service)
    log.info("[%s] Stopping", service.name)
    ctx.controller.down(service.compose_path)
    log.info("[%s] stopped", service.name)
    return EXIT_OK


def cmd_reload(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "reload")
    service = ctx.store.require_deployed(args.service)
    reconciler = ConfigReconciler(service, ctx.controller, lock_timeout=ctx.settings.lock_timeout)
    reconciler.reconcile_once()
    return EXIT_OK if reconciler.last_reload_ok else EXIT_FAILED


def cmd_status(ctx: Context, args: argparse.Namespace) -> int:
    names = args.services or [d.name for d in ctx.store.list_known_services()]
    manager = ctx.manager()
    any_down = False
    for name in names:
        service = ctx.store.descriptor(name)
        running = ctx.controller.status(service.compose_path)
        any_down = any_down or not running
        tag = read_env(service.env_path).get(ctx.settings.image_tag_key, "-")
        print(f"{name}\t{'running' if running else 'stopped'}\twatcher={manager.status(name).value}\ttag={tag}")
    return EXIT_FAILED if any_down else EXIT_OK


def cmd_setup(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "setup")
    names = ctx.store.list_available_services() if args.all else args.services
    if not names:
        raise ConfigurationError("No services given; name them or pass --all")
    if args.all and not args.yes and sys.stdin.isatty():
        names = [name for name in names if _confirm(f"Set up {name}? [Y/n] ")]
        if not names:
            log.info("Nothing selected")
            return EXIT_OK
    hook = None
    if not args.no_watcher:
        installer = ctx.installer()
        installer.stop_all_watchers()
        hook = installer.install_watcher
    runner = SetupRunner(
        store=ctx.store,
        deployer=StateDeployer(ctx.store),
        controller=ctx.controller,
        settings=ctx.settings,
        enable_watcher=hook,
        interactive=False if args.yes else None,
    )
    records = runner.run_many(names)
    for record in records:
        print(f"{record.service}\t{'ok' if record.ok else 'FAILED'}")
    return EXIT_OK if all(record.ok for record in records) else EXIT_FAILED


def _confirm(prompt: str) -> bool:
    try:
        answer = input(prompt).strip().lower()
    except EOFError:
        return False
    return answer in ("", "y", "yes")


def cmd_watch(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "watch")
    names = args.services or [d.name for d in ctx.store.list_known_services()]
    if not names:
        raise ConfigurationError("No deployed services to watch")
    stop_event = threading.Event()

    def _stop(signum, _frame) -> None:
        log.info("Received signal %d, stopping watchers", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    started = run_watchers(ctx.manager(), names, stop_event)
    return EXIT_OK if started else EXIT_FAILED


def cmd_update(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "update")
    run = FleetUpdater(ctx.store, ctx.controller, ctx.settings).run_update()
    return EXIT_OK if run.ok else EXIT_FAILED


def cmd_serve(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "serve")
    import uvicorn

    from .app import create_app

    manager = ctx.manager()
    app = create_app(
        store=ctx.store,
        controller=ctx.controller,
        manager=manager,
        deployer=StateDeployer(ctx.store),
        updater=FleetUpdater(ctx.store, ctx.controller, ctx.settings),
        watch_on_start=[d.name for d in ctx.store.list_known_services()],
    )
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return EXIT_OK


def cmd_install_update_job(ctx: Context, args: argparse.Namespace) -> int:
    require_root(ctx.settings, "install-update-job")
    target = ctx.installer().install_update_job()
    print(target)
    return EXIT_OK


COMMANDS = {
    "list": cmd_list,
    "deploy": cmd_deploy,
    "select-tag": cmd_select_tag,
    "start": cmd_start,
    "stop": cmd_stop,
    "reload": cmd_reload,
    "status": cmd_status,
    "setup": cmd_setup,
    "watch": cmd_watch,
    "update": cmd_update,
    "serve": cmd_serve,
    "install-update-job": cmd_install_update_job,
}


if __name__ == "__main__":
    sys.exit(main())
