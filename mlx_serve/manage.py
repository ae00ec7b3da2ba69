# Copyright © 2026 Apple Inc.

import argparse
import json
import logging
import sys
from pathlib import Path

from .model_spec import ModelSpecBuilder, ModelSpecError, import_spec, load_model_spec
from .model_store import (
    FileModelStore,
    ModelManifest,
    ModelStoreError,
    ModelTag,
    default_store_root,
)


def _store(args) -> FileModelStore:
    return FileModelStore(Path(args.root) if args.root else default_store_root())


def _parse_tag(string: str) -> ModelTag:
    tag = ModelTag.parse(string)
    if tag is None:
        raise ValueError(f"Invalid tag format: {string}")
    return tag


def _print_digests(manifest: ModelManifest):
    print(f"  artifact digest: {manifest.digest}")
    tokenizer = (manifest.additional_blobs or {}).get("tokenizer")
    if tokenizer is not None:
        print(f"  tokenizer digest: {tokenizer}")


def list_models(args):
    for manifest in _store(args).list():
        print(
            f"{manifest.tag.display_name}\t{manifest.size_bytes} bytes\t{manifest.digest}"
        )


def show(args):
    tag = _parse_tag(args.tag)
    manifest = _store(args).manifest(tag)
    if manifest is None:
        raise ValueError(f"Tag not found: {tag.display_name}")
    print(json.dumps(manifest.to_dict(), indent=2, sort_keys=True))


def remove(args):
    tag = _parse_tag(args.tag)
    _store(args).remove(tag, delete_blobs=args.delete_blobs)
    print(f"Removed {tag.display_name}{' (blobs deleted)' if args.delete_blobs else ''}")


def import_blob(args):
    digest = _store(args).import_blob(args.path)
    print(f"Imported blob with digest {digest}")


def verify(args):
    tag = _parse_tag(args.tag)
    store = _store(args)
    manifest = store.manifest(tag)
    if manifest is None:
        raise ValueError(f"Tag not found: {tag.display_name}")
    store.verify(manifest)
    print(f"Verified {tag.display_name}")


def validate_spec(args):
    spec = load_model_spec(args.path)
    base = spec.base.hf_repo or spec.base.local_path or "n/a"
    print(f"Valid ModelSpec: {spec.tag.display_name} format={spec.format} base={base}")


def pack(args):
    spec = load_model_spec(args.spec)
    manifest = ModelSpecBuilder(_store(args)).build(
        spec, args.artifact, tokenizer_path=args.tokenizer
    )
    print(f"Packed {manifest.tag.display_name}")
    _print_digests(manifest)


def pull(args):
    tag = _parse_tag(args.tag)
    spec = import_spec(tag, args.artifact, args.tokenizer)
    manifest = ModelSpecBuilder(_store(args)).build(
        spec, args.artifact, tokenizer_path=args.tokenizer, tag=tag
    )
    print(f"Imported {manifest.tag.display_name}")
    _print_digests(manifest)


def configure_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage the local model store.")
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: WARNING)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    def add_command(name, func, help):
        command = commands.add_parser(name, help=help)
        command.add_argument(
            "--root",
            type=str,
            help="Root path for the model store (default: $MLX_SERVE_HOME or ~/.mlx_serve)",
        )
        command.set_defaults(func=func)
        return command

    add_command("list", list_models, "List stored manifests")

    command = add_command("show", show, "Print a manifest as JSON")
    command.add_argument("tag", help="Model tag (name[:variant][@version])")

    command = add_command("rm", remove, "Remove a manifest")
    command.add_argument("tag", help="Model tag (name[:variant][@version])")
    command.add_argument(
        "--delete-blobs",
        action="store_true",
        help="Also delete the blob referenced by the manifest",
    )

    command = add_command("import-blob", import_blob, "Import a file as a blob")
    command.add_argument("path", help="Path to the file to import")

    command = add_command("verify", verify, "Re-hash the blobs of a manifest")
    command.add_argument("tag", help="Model tag (name[:variant][@version])")

    command = commands.add_parser("validate-spec", help="Validate a ModelSpec file")
    command.add_argument("path", help="Path to ModelSpec JSON file")
    command.set_defaults(func=validate_spec)

    command = add_command("pack", pack, "Build a manifest from a ModelSpec")
    command.add_argument("spec", help="Path to ModelSpec JSON file")
    command.add_argument(
        "--artifact", required=True, help="Path to the model artifact to import"
    )
    command.add_argument("--tokenizer", help="Optional path to a tokenizer file")

    command = add_command("pull", pull, "Import a local artifact under a tag")
    command.add_argument("tag", help="Model tag (name[:variant][@version])")
    command.add_argument(
        "--artifact", required=True, help="Path to the model artifact to import"
    )
    command.add_argument("--tokenizer", help="Optional path to a tokenizer file")
    return parser


def main(argv=None):
    parser = configure_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), None),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    try:
        args.func(args)
    except (ModelStoreError, ModelSpecError, ValueError, OSError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
