"""
Command-line entry point.

  vaultpatch patch      <smali-root> [--report FILE] [--binary SO --asset-manifest JSON]
                        [--android-manifest XML] [--lib-root DIR]
  vaultpatch verify     <original.so> <replacement.so>
  vaultpatch substitute <original.so> <replacement.so> [--backup FILE]
  vaultpatch assets     <binary.so> <manifest.json> [--assets-root DIR]
  vaultpatch commits    <binary.so>

Settings come from VAULTPATCH_* environment variables (a .env file is loaded
first). Exit status is 0 on success, 1 on failure.
"""

import sys
import argparse
from pathlib import Path

from . import log
from .assets import reconcile
from .config import Settings
from .errors import SymbolMismatch, VaultpatchError
from .log import err, info, ok, warn
from .native import engine_commits, substitute_binary, verify
from .pipeline import patch_release


def cmd_patch(args, settings: Settings) -> bool:
    root = Path(args.root)
    if not root.is_dir():
        err(f"Not a directory: {root}"); return False
    if args.overrides:
        settings.overrides_path = Path(args.overrides)
    report = patch_release(root, settings,
                           binary=Path(args.binary) if args.binary else None,
                           asset_manifest=Path(args.asset_manifest) if args.asset_manifest else None,
                           assets_root=Path(args.assets_root) if args.assets_root else None,
                           android_manifest=Path(args.android_manifest) if args.android_manifest else None,
                           lib_root=Path(args.lib_root) if args.lib_root else None)
    if args.report:
        Path(args.report).write_text(report.to_json(), encoding="utf-8")
        info(f"  Report: {args.report}")
    else:
        print(report.to_json())
    return True


def cmd_verify(args, settings: Settings) -> bool:
    try:
        verify(args.original, args.replacement)
    except SymbolMismatch as exc:
        err(str(exc)); return False
    return True


def cmd_substitute(args, settings: Settings) -> bool:
    try:
        substitute_binary(args.original, args.replacement,
                          Path(args.backup) if args.backup else None)
    except SymbolMismatch as exc:
        err(f"Refusing to substitute: {exc}"); return False
    return True


def cmd_assets(args, settings: Settings) -> bool:
    try:
        added = reconcile(args.binary, args.manifest, settings,
                          Path(args.assets_root) if args.assets_root else None)
    except (OSError, ValueError) as exc:
        err(f"Asset manifest not reconciled: {exc}"); return False
    info(f"  Asset entries added: {added}")
    return True


def cmd_commits(args, settings: Settings) -> bool:
    commits = engine_commits(args.binary)
    if not commits:
        warn("  No engine commit found"); return False
    for c in commits:
        print(c)
    ok(f"  {len(commits)} commit(s)")
    return True


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="vaultpatch",
                                description="Recover vault strings and harden a disassembled app")
    p.add_argument('--env', default=None, help='.env file to load (default: search upwards)')
    p.add_argument('--log-level', default=None, help='override VAULTPATCH_LOG_LEVEL')
    sub = p.add_subparsers(dest='cmd')

    pp = sub.add_parser('patch', help='Patch a smali tree in place')
    pp.add_argument('root',               help='Directory holding smali*/ folders')
    pp.add_argument('--overrides',        help='JSON override map')
    pp.add_argument('--report',           help='Write the patch report here (default: stdout)')
    pp.add_argument('--binary',           help='Native binary for asset reconciliation')
    pp.add_argument('--asset-manifest',   help='Asset manifest JSON to reconcile')
    pp.add_argument('--assets-root',      help='Assets directory to mirror files in')
    pp.add_argument('--android-manifest', help='AndroidManifest.xml to disable providers and split requirements in')
    pp.add_argument('--lib-root',         help='lib/ directory to prune crash-prone libraries from')

    pv = sub.add_parser('verify', help='Compare exported symbols of two binaries')
    pv.add_argument('original')
    pv.add_argument('replacement')

    ps = sub.add_parser('substitute', help='Verify, back up and replace a native binary')
    ps.add_argument('original')
    ps.add_argument('replacement')
    ps.add_argument('--backup', help='Backup path (default: <original>.bak)')

    pa = sub.add_parser('assets', help='Mirror asset manifest entries under the alternate prefix')
    pa.add_argument('binary')
    pa.add_argument('manifest')
    pa.add_argument('--assets-root')

    pc = sub.add_parser('commits', help='Print engine build ids embedded in a binary')
    pc.add_argument('binary')
    return p


def main(argv=None):
    p = build_parser()
    args = p.parse_args(argv)
    if not args.cmd:
        p.print_help(); sys.exit(1)

    settings = Settings.from_env(args.env)
    log.setup(args.log_level or settings.log_level)

    dispatch = {
        'patch':      cmd_patch,
        'verify':     cmd_verify,
        'substitute': cmd_substitute,
        'assets':     cmd_assets,
        'commits':    cmd_commits,
    }
    try:
        success = dispatch[args.cmd](args, settings)
    except VaultpatchError as exc:
        err(str(exc)); success = False
    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
