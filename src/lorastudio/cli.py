"""Command-line interface for lora-studio.

Provides subcommands for scanning, duplicate detection, AI captioning, tag
editing, rating and export.  Each command opens the project folder, runs one
engine operation and returns a process exit code.
"""
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from typing import List, Optional

from tqdm import tqdm

from lorastudio.captioning.batch import BatchHandle, select_batch_entries
from lorastudio.captioning.prompts import (
    DEFAULT_EXTRA_OPTIONS,
    DEFAULT_PROMPT_TEMPLATES,
    build_effective_prompt,
    template_by_id,
)
from lorastudio.captioning.providers import create_provider
from lorastudio.config import StudioConfig, load_config
from lorastudio.data.captions import parse_tags
from lorastudio.data.export import CaptionFormat, ExportFilter, ExportLayout, ExportSpec
from lorastudio.data.project import Project
from lorastudio.data.schema import Rating
from lorastudio.errors import DatasetError, InvalidArgument
from lorastudio.log import setup_logging

logger = logging.getLogger(__name__)

RATING_CHOICES = [r.value for r in Rating]


def _path_type(path_str: str) -> pathlib.Path:
    return pathlib.Path(path_str).expanduser().resolve()


def _open(args: argparse.Namespace) -> Project:
    return Project.open(args.root, recursive=not args.no_recursive, progress=True)


def _dump(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def cmd_scan(args: argparse.Namespace, cfg: StudioConfig) -> int:
    project = _open(args)
    entries = project.entries
    if args.json:
        _dump([e.to_dict() for e in entries])
        return 0
    captioned = sum(1 for e in entries if e.has_caption)
    print(f"Project root : {project.root}")
    print(f"Images       : {len(entries)}")
    print(f"Captioned    : {captioned}")
    for rating in (Rating.GOOD, Rating.BAD, Rating.NEEDS_EDIT):
        print(f"{rating.value:<13}: {sum(1 for e in entries if e.rating is rating)}")
    return 0


def cmd_dupes(args: argparse.Namespace, cfg: StudioConfig) -> int:
    project = Project(args.root, recursive=not args.no_recursive)
    report = project.find_duplicates(
        workers=args.workers or cfg.hashing.workers,
        chunk_size=cfg.hashing.chunk_size,
        progress=True,
    )
    if args.json:
        _dump(report.to_dict())
        return 0
    print(f"Scanned {report.scanned} images: {len(report.groups)} duplicate groups")
    for group in report.groups:
        print(f"  {group.fingerprint[:12]}  " + "  ".join(group.paths))
    if report.errors:
        print(f"  ⚠ {len(report.errors)} files could not be read:", file=sys.stderr)
        for rel, err in report.errors:
            print(f"    - {rel}: {err}", file=sys.stderr)
    return 0


def _resolve_prompt(args: argparse.Namespace, cfg: StudioConfig) -> str:
    if args.prompt:
        base = args.prompt
    elif args.template:
        base = template_by_id(args.template).prompt
    else:
        base = cfg.batch.prompt
    return build_effective_prompt(
        base,
        word_count=args.word_count,
        length=args.length,
        character_name=args.character_name or "",
        extra_option_ids=args.extra or (),
    )


def _drive_batch(handle: BatchHandle) -> None:
    with tqdm(total=handle.total, desc="Captioning", unit="img", dynamic_ncols=True) as bar:
        try:
            for snapshot in handle.events():
                bar.update(snapshot.completed - bar.n)
        except KeyboardInterrupt:
            skipped = handle.cancel()
            logger.warning("Interrupted: %d pending images skipped, waiting for in-flight requests", skipped)
            handle.wait()
            bar.update(handle.total - bar.n)


def cmd_caption(args: argparse.Namespace, cfg: StudioConfig) -> int:
    pcfg = cfg.provider
    name = args.provider or pcfg.name
    if args.provider and args.provider != pcfg.name:
        provider = create_provider(name, timeout=pcfg.timeout)
    else:
        provider = create_provider(name, **pcfg.provider_kwargs())
    endpoint = args.endpoint or pcfg.endpoint or provider.default_endpoint
    model = args.model or pcfg.model
    if not model and name != "joycaption":
        raise InvalidArgument("A model is required (--model or provider.model in the config)")
    prompt = _resolve_prompt(args, cfg)

    project = _open(args)
    entries = select_batch_entries(
        project.entries,
        ratings=args.rating or cfg.batch.ratings or None,
        only_uncaptioned=args.only_uncaptioned or cfg.batch.only_uncaptioned,
    )
    if not entries:
        print("✗ No images match the batch filter.", file=sys.stderr)
        return 1

    handle = project.start_batch(
        entries,
        provider,
        endpoint,
        model,
        prompt,
        concurrency=args.concurrency or cfg.batch.concurrency,
    )
    _drive_batch(handle)
    summary = handle.result()

    print(f"\nCaptioned {len(summary.done_ids)} of {handle.total} images")
    if summary.skipped_ids:
        print(f"  {len(summary.skipped_ids)} skipped (cancelled)")
    errors = summary.errors()
    if errors:
        print(f"  ⚠ {len(errors)} failed:", file=sys.stderr)
        for entry_id, err in list(errors.items())[:10]:
            print(f"    - {summary.items[entry_id].entry.relative_path}: {err}", file=sys.stderr)
        if len(errors) > 10:
            print(f"    ... and {len(errors) - 10} more", file=sys.stderr)
    return 0 if not errors and not summary.cancelled else 1


def cmd_export(args: argparse.Namespace, cfg: StudioConfig) -> int:
    project = _open(args)
    ecfg = cfg.export
    selected = None
    if args.image:
        selected = {project.find_by_path(rel).id for rel in args.image}
    spec = ExportSpec(
        destination=args.dest,
        layout=ExportLayout(args.layout),
        filter=ExportFilter(args.filter) if not selected else ExportFilter.SELECTED,
        selected_ids=selected,
        rating=Rating.parse(args.rating) if args.rating else None,
        only_captioned=args.only_captioned,
        sequential_naming=args.sequential or ecfg.sequential_naming,
        trigger_word=args.trigger if args.trigger is not None else ecfg.trigger_word,
        kohya_repeats=args.repeats if args.repeats is not None else ecfg.kohya_repeats,
        kohya_concept=args.concept,
        caption_format=CaptionFormat(args.caption_format or ecfg.caption_format),
    )
    result = project.export(spec, progress=True)
    if not result.success:
        print(f"✗ Export failed ({result.error_kind}): {result.error}", file=sys.stderr)
        return 1
    print(f"Exported {result.exported_count} image+caption pairs to {result.output_path}")
    if result.errors:
        print(f"  ⚠ {result.skipped_count} skipped:", file=sys.stderr)
        for rel, err in result.errors[:10]:
            print(f"    - {rel}: {err}", file=sys.stderr)
    return 0


def cmd_rate(args: argparse.Namespace, cfg: StudioConfig) -> int:
    project = _open(args)
    for rel in args.image:
        entry = project.find_by_path(rel)
        stored = project.set_rating(entry.id, args.rating)
        print(f"{entry.relative_path}: {stored.value}")
    return 0


def cmd_tags(args: argparse.Namespace, cfg: StudioConfig) -> int:
    project = _open(args)
    ids: Optional[List[str]] = None
    if args.image:
        ids = [project.find_by_path(rel).id for rel in args.image]

    if args.set is not None:
        for entry_id in ids or [e.id for e in project.entries]:
            project.set_tags(entry_id, parse_tags(args.set))
    elif args.add:
        changes = project.add_tag_to_all(args.add, ids=ids, front=not args.back)
        print(f"Added '{args.add}' to {len(changes)} images")
    elif args.remove:
        changed = 0
        for entry in [project.get(i) for i in ids] if ids else project.entries:
            before = list(entry.tags)
            if project.remove_tag(entry.id, args.remove) != before:
                changed += 1
        print(f"Removed '{args.remove}' from {changed} images")
    elif args.replace:
        find, repl = args.replace
        changes = project.search_replace(find, repl, ids=ids, whole_tag=not args.substring)
        print(f"Replaced '{find}' -> '{repl}' in {len(changes)} images")

    if args.show or not (args.set is not None or args.add or args.remove or args.replace):
        for entry in [project.get(i) for i in ids] if ids else project.entries:
            print(f"{entry.relative_path}: {', '.join(entry.tags)}")
    return 0


def cmd_clear_captions(args: argparse.Namespace, cfg: StudioConfig) -> int:
    if not args.yes:
        print("✗ Refusing to clear every caption without --yes.", file=sys.stderr)
        return 1
    project = _open(args)
    cleared = project.clear_all_captions()
    print(f"Cleared {cleared} captions")
    return 0


def cmd_models(args: argparse.Namespace, cfg: StudioConfig) -> int:
    name = args.provider or cfg.provider.name
    provider = create_provider(name, **(cfg.provider.provider_kwargs() if name == cfg.provider.name else {}))
    endpoint = args.endpoint or cfg.provider.endpoint or provider.default_endpoint
    status = provider.test_connection(endpoint)
    if not status.connected:
        print(f"✗ {name} at {endpoint}: {status.error}", file=sys.stderr)
        return 1
    print(f"{name} at {endpoint}: connected")
    for model in status.models:
        print(f"  {model}")
    return 0


def cmd_templates(args: argparse.Namespace, cfg: StudioConfig) -> int:
    for template in DEFAULT_PROMPT_TEMPLATES:
        print(f"{template.id:<12} {template.prompt}")
    print("\nExtra options:")
    for option in DEFAULT_EXTRA_OPTIONS:
        print(f"  {option.id:<14} {option.text}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=_path_type, required=False, help="Settings file (YAML/JSON)")
    common.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    common.add_argument("--no-recursive", action="store_true", help="Only look at the top-level folder")

    parser = argparse.ArgumentParser(description="LoRA dataset studio CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # scan
    scan = subparsers.add_parser("scan", parents=[common], help="List images, captions and ratings")
    scan.add_argument("root", type=_path_type)
    scan.add_argument("--json", action="store_true", help="Print entries as JSON")
    scan.set_defaults(func=cmd_scan)

    # dupes
    dupes = subparsers.add_parser("dupes", parents=[common], help="Find byte-identical images")
    dupes.add_argument("root", type=_path_type)
    dupes.add_argument("--workers", type=int, default=None)
    dupes.add_argument("--json", action="store_true")
    dupes.set_defaults(func=cmd_dupes)

    # caption
    cap = subparsers.add_parser("caption", parents=[common], help="Batch-caption images with a vision model")
    cap.add_argument("root", type=_path_type)
    cap.add_argument("--provider", choices=["lm_studio", "ollama", "openai", "joycaption"], default=None)
    cap.add_argument("--endpoint", default=None)
    cap.add_argument("--model", default=None)
    cap.add_argument("--prompt", default=None, help="Prompt text ({name} and {length} are substituted)")
    cap.add_argument("--template", choices=[t.id for t in DEFAULT_PROMPT_TEMPLATES], default=None)
    cap.add_argument("--word-count", type=int, default=None)
    cap.add_argument("--length", default=None, help="Value for the {length} placeholder, e.g. 'short'")
    cap.add_argument("--character-name", default=None)
    cap.add_argument("--extra", action="append", choices=[o.id for o in DEFAULT_EXTRA_OPTIONS])
    cap.add_argument("--concurrency", type=int, default=None)
    cap.add_argument("--rating", action="append", choices=RATING_CHOICES, help="Only caption images with this rating")
    cap.add_argument("--only-uncaptioned", action="store_true")
    cap.set_defaults(func=cmd_caption)

    # export
    exp = subparsers.add_parser("export", parents=[common], help="Export a training-ready copy of the dataset")
    exp.add_argument("root", type=_path_type)
    exp.add_argument("--dest", type=_path_type, required=True, help="Output folder, or .zip path for --layout zip")
    exp.add_argument("--layout", choices=[m.value for m in ExportLayout], default="folder")
    exp.add_argument("--filter", choices=[m.value for m in ExportFilter if m is not ExportFilter.SELECTED], default="all")
    exp.add_argument("--rating", choices=RATING_CHOICES, default=None, help="Rating for --filter rating")
    exp.add_argument("--image", action="append", help="Export only these relative paths")
    exp.add_argument("--only-captioned", action="store_true")
    exp.add_argument("--sequential", action="store_true", help="Rename to 0001.png, 0002.png, ...")
    exp.add_argument("--trigger", default=None, help="Trigger word placed first in every caption")
    exp.add_argument("--repeats", type=int, default=None, help="Kohya repeat count")
    exp.add_argument("--concept", default=None, help="Kohya concept folder name")
    exp.add_argument("--caption-format", choices=[m.value for m in CaptionFormat], default=None)
    exp.set_defaults(func=cmd_export)

    # rate
    rate = subparsers.add_parser("rate", parents=[common], help="Set the rating of one or more images")
    rate.add_argument("root", type=_path_type)
    rate.add_argument("rating", choices=RATING_CHOICES)
    rate.add_argument("image", nargs="+", help="Relative image paths")
    rate.set_defaults(func=cmd_rate)

    # tags
    tags = subparsers.add_parser("tags", parents=[common], help="Show or edit caption tags")
    tags.add_argument("root", type=_path_type)
    tags.add_argument("--image", action="append", help="Limit to these relative paths (default: all images)")
    action = tags.add_mutually_exclusive_group()
    action.add_argument("--set", default=None, help="Replace the caption with this comma-separated text")
    action.add_argument("--add", default=None)
    action.add_argument("--remove", default=None)
    action.add_argument("--replace", nargs=2, metavar=("FIND", "REPLACE"))
    tags.add_argument("--back", action="store_true", help="With --add, append instead of prepend")
    tags.add_argument("--substring", action="store_true", help="With --replace, match inside tags")
    tags.add_argument("--show", action="store_true")
    tags.set_defaults(func=cmd_tags)

    # clear-captions
    clear = subparsers.add_parser("clear-captions", parents=[common], help="Empty every caption sidecar")
    clear.add_argument("root", type=_path_type)
    clear.add_argument("--yes", action="store_true")
    clear.set_defaults(func=cmd_clear_captions)

    # models
    models = subparsers.add_parser("models", parents=[common], help="Test a provider and list its models")
    models.add_argument("--provider", choices=["lm_studio", "ollama", "openai", "joycaption"], default=None)
    models.add_argument("--endpoint", default=None)
    models.set_defaults(func=cmd_models)

    # templates
    templates = subparsers.add_parser("templates", parents=[common], help="List built-in prompt templates")
    templates.set_defaults(func=cmd_templates)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        cfg = load_config(args.config)
    except DatasetError as exc:
        print(f"✗ {exc}", file=sys.stderr)
        return 1
    log_file = pathlib.Path(cfg.log_file) if cfg.log_file else None
    setup_logging(args.log_level or cfg.log_level, log_file)
    try:
        return args.func(args, cfg)
    except DatasetError as exc:
        logger.error("%s failed (%s): %s", args.command, exc.kind, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
