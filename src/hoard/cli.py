"""hoard CLI: sync, search, install, upgrade, remove, list, info, pin, unpin, reconcile, inspect."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from hoard.config import Settings
from hoard.errors import EXIT_OK, EXIT_UNEXPECTED, HoardError
from hoard.logging_config import bind_operation_context, clear_operation_context, configure_logging
from hoard.manager import PackageManager
from hoard.models.enums import InstallAction
from hoard.models.package import InstallOptions
from hoard.services.installer import InstallReport

Action = Callable[[PackageManager, argparse.Namespace], Awaitable[int]]


def _print_report(report: InstallReport) -> int:
    if not report.outcomes:
        print("Nothing to do.")
    for outcome in report.outcomes:
        line = f"{outcome.action.value:<12} {outcome.package} [{outcome.profile}]"
        if outcome.previous_version and outcome.action == InstallAction.UPGRADED:
            line += f" (was {outcome.previous_version})"
        print(line)
    errors = report.errors()
    for error in errors:
        print(f"error: {error.describe()}", file=sys.stderr)
    return errors[0].exit_code if errors else EXIT_OK


async def cmd_sync(manager: PackageManager, args: argparse.Namespace) -> int:
    snapshot = await manager.sync(force=True)
    for repo in snapshot.repos:
        if repo in snapshot.unavailable:
            state = "unavailable"
        elif repo in snapshot.stale:
            state = "stale"
        else:
            state = "ok"
        fetched = snapshot.synced_at.get(repo)
        if fetched is not None:
            state += f" (fetched {fetched:%Y-%m-%d %H:%M} UTC)"
        print(f"{repo:<20} {len(snapshot.by_repo(repo)):>6} packages  {state}")
    return EXIT_OK


async def cmd_search(manager: PackageManager, args: argparse.Namespace) -> int:
    results = await manager.search(args.term, case_sensitive=args.case_sensitive, limit=args.limit)
    if not results:
        print(f"No packages match '{args.term}'.")
        return EXIT_OK
    for entry in results:
        description = f"  {entry.description}" if entry.description else ""
        print(f"{entry.repo_name}/{entry.pkg_id}@{entry.version}  ({entry.pkg_name}){description}")
    return EXIT_OK


async def cmd_install(manager: PackageManager, args: argparse.Namespace) -> int:
    options = InstallOptions(
        portable=args.portable,
        portable_home=args.portable_home,
        portable_config=args.portable_config,
        force=args.force,
    )
    report = await manager.install(args.packages, profile=args.profile, options=options, family=args.family)
    return _print_report(report)


async def cmd_upgrade(manager: PackageManager, args: argparse.Namespace) -> int:
    report = await manager.upgrade(args.package, profile=args.profile)
    return _print_report(report)


async def cmd_remove(manager: PackageManager, args: argparse.Namespace) -> int:
    code = EXIT_OK
    for spec in args.packages:
        try:
            report = await manager.remove(spec, profile=args.profile)
        except HoardError as exc:
            print(f"error: {exc.describe()}", file=sys.stderr)
            code = code or exc.exit_code
            continue
        for label in report.removed:
            print(f"removed      {label}")
    return code


async def cmd_list(manager: PackageManager, args: argparse.Namespace) -> int:
    rows = await manager.list(args.profile)
    if not rows:
        print("No packages installed.")
    for row in rows:
        flags = []
        if row.pinned:
            flags.append("pinned")
        if row.installed_with_family:
            flags.append(f"family {row.family_id}")
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        print(f"{row.id:>4}  {row.profile:<10} {row.repo_name}/{row.pkg_id}@{row.version}{suffix}")
    return EXIT_OK


async def cmd_info(manager: PackageManager, args: argparse.Namespace) -> int:
    info = await manager.info(args.package, profile=args.profile)
    for row in info.installed:
        print(f"Installed:  {row.label}  (id {row.id})")
        print(f"  Path:     {row.installed_path}")
        print(f"  Binary:   {row.bin_path or '-'}")
        print(f"  Checksum: {row.checksum}")
        print(f"  Size:     {row.size}")
        print(f"  Date:     {row.installed_date.isoformat() if row.installed_date else '-'}")
        print(f"  Pinned:   {'yes' if row.pinned else 'no'}")
        if row.family_id:
            print(f"  Family:   {row.family_id}")
        portable = info.portable.get(row.id)
        if portable is not None:
            for path in portable.recorded_paths():
                print(f"  Portable: {path}")
    for entry in info.available:
        description = f" - {entry.description}" if entry.description else ""
        print(f"Available:  {entry.label}{description}")
    return EXIT_OK


async def cmd_pin(manager: PackageManager, args: argparse.Namespace) -> int:
    row = await manager.pin(args.package, profile=args.profile)
    print(f"pinned       {row.label}")
    return EXIT_OK


async def cmd_unpin(manager: PackageManager, args: argparse.Namespace) -> int:
    row = await manager.unpin(args.package, profile=args.profile)
    print(f"unpinned     {row.label}")
    return EXIT_OK


async def cmd_reconcile(manager: PackageManager, args: argparse.Namespace) -> int:
    report = await manager.reconcile(repair=args.repair)
    if report.clean:
        print("Store and filesystem agree.")
    for action, subject in report.actions:
        print(f"{action.value:<12} {subject}")
    for error in report.errors:
        print(f"error: {error}", file=sys.stderr)
    return EXIT_UNEXPECTED if report.errors else EXIT_OK


async def cmd_inspect(manager: PackageManager, args: argparse.Namespace) -> int:
    print(await manager.inspect(args.package, profile=args.profile))
    return EXIT_OK


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings()
    updates = {}
    if args.config:
        updates["config_file"] = Path(args.config)
    if args.verbose:
        updates["log_level"] = "debug"
    if args.json_logs:
        updates["json_logs"] = True
    return settings.model_copy(update=updates) if updates else settings


def run(args: argparse.Namespace, action: Action) -> int:
    settings = _settings(args)
    configure_logging(settings.log_level, settings.json_logs)

    async def _main() -> int:
        bind_operation_context(args.command, getattr(args, "profile", None))
        try:
            async with PackageManager.from_settings(settings) as manager:
                return await action(manager, args)
        finally:
            clear_operation_context()

    try:
        return asyncio.run(_main())
    except HoardError as exc:
        print(f"error: {exc.describe()}", file=sys.stderr)
        return exc.exit_code
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hoard",
        description="Install and manage portable Linux application bundles",
    )
    parser.add_argument("-c", "--config", help="Repository file (default: ~/.config/hoard/config.toml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Log JSON lines to stderr")
    sub = parser.add_subparsers(dest="command")

    def profiled(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("-p", "--profile", help="Profile (default: from config)")
        return p

    # sync
    sub.add_parser("sync", help="Refresh every repository index")

    # search
    p_search = sub.add_parser("search", help="Search package names")
    p_search.add_argument("term")
    p_search.add_argument("--case-sensitive", action="store_true")
    p_search.add_argument("--limit", type=int, default=None)

    # install
    p_install = profiled(sub.add_parser("install", help="Install packages: [repo/]name[@version]"))
    p_install.add_argument("packages", nargs="+")
    p_install.add_argument("--family", action="store_true", help="Install all given packages as one unit")
    p_install.add_argument("--force", action="store_true", help="Re-place even if already installed")
    p_install.add_argument("--portable", nargs="?", const="", default=None, metavar="DIR",
                           help="Create a portable data dir (default location if DIR omitted)")
    p_install.add_argument("--portable-home", nargs="?", const="", default=None, metavar="DIR")
    p_install.add_argument("--portable-config", nargs="?", const="", default=None, metavar="DIR")

    # upgrade
    p_upgrade = profiled(sub.add_parser("upgrade", help="Upgrade one package, or every unpinned one"))
    p_upgrade.add_argument("package", nargs="?")

    # remove
    p_remove = profiled(sub.add_parser("remove", help="Remove installed packages"))
    p_remove.add_argument("packages", nargs="+")

    # list
    profiled(sub.add_parser("list", help="List installed packages"))

    # info
    p_info = profiled(sub.add_parser("info", help="Show installed and available versions"))
    p_info.add_argument("package")

    # pin / unpin
    p_pin = profiled(sub.add_parser("pin", help="Exclude a package from upgrade sweeps"))
    p_pin.add_argument("package")
    p_unpin = profiled(sub.add_parser("unpin", help="Include a package in upgrade sweeps again"))
    p_unpin.add_argument("package")

    # reconcile
    p_reconcile = sub.add_parser("reconcile", help="Repair or purge records that disagree with the filesystem")
    p_reconcile.add_argument("--repair", action="store_true", help="Re-place missing artifacts when possible")

    # inspect
    p_inspect = profiled(sub.add_parser("inspect", help="Print a package's build log"))
    p_inspect.add_argument("package")

    return parser


COMMANDS: dict[str, Action] = {
    "sync": cmd_sync,
    "search": cmd_search,
    "install": cmd_install,
    "upgrade": cmd_upgrade,
    "remove": cmd_remove,
    "list": cmd_list,
    "info": cmd_info,
    "pin": cmd_pin,
    "unpin": cmd_unpin,
    "reconcile": cmd_reconcile,
    "inspect": cmd_inspect,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_UNEXPECTED)

    sys.exit(run(args, COMMANDS[args.command]))


if __name__ == "__main__":
    main()
