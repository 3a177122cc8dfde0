"""si command-line interface."""

from __future__ import annotations

import argparse
import json
import logging
import sys

import httpx
from pydantic import ValidationError

from si_models import __version__
from si_models.config import Settings, get_settings
from si_models.errors import ModelRegistryError


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command != "model" or args.action is None:
        parser.print_help()
        return 0

    try:
        settings = _apply_overrides(get_settings(), args)
    except ValidationError as exc:
        print(f"error[Config]: {exc}", file=sys.stderr)
        return 2

    try:
        return args.handler(args, settings)
    except ModelRegistryError as exc:
        print(f"error[{exc.kind}]: {exc}", file=sys.stderr)
        return 1
    except httpx.HTTPError as exc:
        print(f"error[DownloadFailed]: {exc}", file=sys.stderr)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="si",
        description="Manage locally downloaded models for the si image generator.",
    )
    parser.add_argument("--version", action="version", version=f"si {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument(
        "--models-dir",
        default=None,
        help="Model storage root  [env: SI_MODELS_DIR]",
    )
    parser.add_argument(
        "--lock-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the index lock  [env: SI_LOCK_TIMEOUT]",
    )
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Fail immediately if another process holds the index lock.",
    )

    sub = parser.add_subparsers(dest="command")
    model = sub.add_parser("model", help="Model-related operations.")
    actions = model.add_subparsers(dest="action")

    # -- list ---------------------------------------------------------------
    p = actions.add_parser("list", help="List registered models.")
    p.add_argument("--json", action="store_true", help="Print the index as JSON.")
    p.set_defaults(handler=_cmd_list)

    # -- show ---------------------------------------------------------------
    p = actions.add_parser("show", help="Show model details.")
    p.add_argument("model_id")
    p.set_defaults(handler=_cmd_show)

    # -- download -----------------------------------------------------------
    p = actions.add_parser("download", help="Download and register models from the hub.")
    p.add_argument("model_ids", nargs="+", metavar="MODEL_ID")
    p.add_argument("--overwrite", action="store_true", help="Download again and replace.")
    p.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Parallel downloads  [env: SI_DOWNLOAD_WORKERS]",
    )
    p.set_defaults(handler=_cmd_download)

    # -- register -----------------------------------------------------------
    p = actions.add_parser(
        "register", help="Register files already present in the model directory."
    )
    p.add_argument("model_id")
    p.add_argument("--overwrite", action="store_true", help="Replace an existing entry.")
    p.set_defaults(handler=_cmd_register)

    # -- verify -------------------------------------------------------------
    p = actions.add_parser("verify", help="Check a model's files against the index.")
    p.add_argument("model_id")
    p.add_argument("--hashes", action="store_true", help="Also compare sha256 hashes.")
    p.set_defaults(handler=_cmd_verify)

    # -- remove -------------------------------------------------------------
    p = actions.add_parser("remove", aliases=["delete"], help="Unregister and delete a model.")
    p.add_argument("model_id")
    p.set_defaults(handler=_cmd_remove)

    return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    updates = {}
    if args.models_dir is not None:
        updates["models_dir"] = args.models_dir
    if args.lock_timeout is not None:
        updates["lock_timeout"] = args.lock_timeout
    if getattr(args, "workers", None) is not None:
        updates["download_workers"] = args.workers
    if not updates:
        return settings
    return Settings.model_validate({**settings.model_dump(), **updates})


def _open(settings: Settings):
    from si_models.models import ModelManager

    return ModelManager.open(
        settings.models_dir,
        lock_timeout=settings.lock_timeout,
        verify_hashes=settings.verify_hashes,
    )


# ---------------------------------------------------------------------------
# Subcommand implementations
# ---------------------------------------------------------------------------


def _cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    manager = _open(settings)
    models = manager.list()

    if args.json:
        print(json.dumps(manager.index.to_records(), indent=2))
        return 0

    if not models:
        print("No models registered. Run 'si model download MODEL_ID' to add one.")
        return 0

    for m in models:
        print(f"Model: {m.model_id}  ({_format_size(m.total_size)})")
        print("  Files:")
        for f in m.files:
            print(f"    - {f.path} ({_format_size(f.size)})")
    return 0


def _cmd_show(args: argparse.Namespace, settings: Settings) -> int:
    manager = _open(settings)
    info = manager.lookup(args.model_id)

    print(f"Model:     {info.model_id}")
    print(f"Directory: {manager.model_dir(info.model_id)}")
    print(f"Files:     {len(info.files)}")
    print(f"Size:      {_format_size(info.total_size)}")
    for f in info.files:
        digest = f"  sha256:{f.sha256[:12]}" if f.sha256 else ""
        print(f"  {f.path:<40s} {_format_size(f.size):>10s}{digest}")
    return 0


def _cmd_download(args: argparse.Namespace, settings: Settings) -> int:
    from si_models.models import HubClient, download_models

    manager = _open(settings)
    with HubClient(
        endpoint=settings.hub_endpoint,
        revision=settings.hub_revision,
        token=settings.hub_token,
    ) as hub:
        results = download_models(
            manager,
            args.model_ids,
            hub,
            workers=settings.download_workers,
            overwrite=args.overwrite,
            blocking=not args.no_wait,
        )

    status = 0
    for r in results:
        if r.ok:
            print(f"Model {r.model_id} downloaded successfully.")
            continue
        status = 1
        if isinstance(r.error, ModelRegistryError):
            print(f"error[{r.error.kind}]: {r.error}", file=sys.stderr)
        else:
            print(f"error[DownloadFailed]: {r.model_id}: {r.error}", file=sys.stderr)
    return status


def _cmd_register(args: argparse.Namespace, settings: Settings) -> int:
    manager = _open(settings)
    info = manager.register(args.model_id, overwrite=args.overwrite, blocking=not args.no_wait)
    print(f"Registered {info.model_id}: {len(info.files)} files, {_format_size(info.total_size)}")
    return 0


def _cmd_verify(args: argparse.Namespace, settings: Settings) -> int:
    manager = _open(settings)
    mismatches = manager.verify(args.model_id, check_hashes=args.hashes or None)
    if not mismatches:
        print(f"{args.model_id}: OK")
        return 0
    print(f"{args.model_id}: {len(mismatches)} file(s) do not match the index")
    for m in mismatches:
        print(f"  {m.describe()}")
    print(f"Run 'si model download --overwrite {args.model_id}' to repair.")
    return 1


def _cmd_remove(args: argparse.Namespace, settings: Settings) -> int:
    manager = _open(settings)
    manager.remove(args.model_id, blocking=not args.no_wait)
    print(f"Model {args.model_id} removed.")
    return 0


def _format_size(size: int) -> str:
    """Format *size* bytes with decimal units (``1.02 kB``)."""
    value = float(size)
    for unit in ("B", "kB", "MB", "GB"):
        if value < 1000:
            return f"{size} B" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1000
    return f"{value:.2f} TB"


if __name__ == "__main__":
    sys.exit(main())
