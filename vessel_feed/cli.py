from __future__ import annotations

import argparse
import os
import sys
from dataclasses import fields
from typing import Any

from .config import Config, _is_field_type
from .partition import load_mmsi_list, split_groups
from .snapshot import load_snapshot, render_snapshot
from .tracker import run_tracker


def _str2bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"invalid bool: {value}")


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        name = field.name.replace("_", "-")
        if _is_field_type(field.type, bool, "bool"):
            group = parser.add_mutually_exclusive_group()
            group.add_argument(f"--{name}", dest=field.name, action="store_true")
            group.add_argument(f"--no-{name}", dest=field.name, action="store_false")
            parser.set_defaults(**{field.name: None})
        else:
            parser.add_argument(f"--{name}", dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is None:
            continue
        if _is_field_type(field.type, bool, "bool"):
            overrides[field.name] = _str2bool(value)
        elif _is_field_type(field.type, int, "int"):
            overrides[field.name] = int(value)
        elif _is_field_type(field.type, float, "float"):
            overrides[field.name] = float(value)
        else:
            overrides[field.name] = value
    return overrides


def _print_groups(config: Config) -> int:
    mmsi_ids = load_mmsi_list(config.mmsi_config_path)
    groups = split_groups(mmsi_ids, config.group_size)
    for index, group in enumerate(groups):
        print(f"{index}\t{len(group)}\t{','.join(str(mmsi) for mmsi in group)}")
    print(f"{len(mmsi_ids)} vessels in {len(groups)} groups")
    return 0


def _print_snapshot(config: Config) -> int:
    entries = load_snapshot(config.snapshot_path)
    sys.stdout.write(render_snapshot(entries))
    print(f"{len(entries)} vessels in {config.snapshot_path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="vessel-feed")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    _add_config_args(common)

    run = subparsers.add_parser("run", parents=[common])
    run.add_argument("--duration-seconds", type=float, default=None)

    subparsers.add_parser("groups", parents=[common])
    subparsers.add_parser("snapshot", parents=[common])

    args = parser.parse_args(argv)
    overrides = _cli_overrides(args)

    try:
        config = Config.from_env_and_cli(overrides, os.environ)
        if args.command == "run":
            return run_tracker(config, duration_seconds=args.duration_seconds)
        if args.command == "groups":
            return _print_groups(config)
        if args.command == "snapshot":
            return _print_snapshot(config)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
