#!/usr/bin/env python3
"""
ga-cli - a command-line Google Authenticator key ring
Usage:
    ga-cli [show] [<filter>] [--uri] [--verbose]
    ga-cli import <image|uri>... [--clear] [--verbose]
    ga-cli export [--clear] [--verbose] [--output-dir <dir>] [--batch-size <n>]
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime
from pathlib import Path

from ga_otp import (
    DEFAULT_BATCH_SIZE, DecodeError, EmptyKeyRing, GaError, KeyRing,
    credential_to_uri, credentials_from_payload, encode_migration_uri,
    export_filename, generate, is_expiring, load_keyring, merge, persist,
    plan_batches, seconds_to_rollover,
)

# Optional: for clipboard support
try:
    import pyperclip
    CLIPBOARD_AVAILABLE = True
except ImportError:
    CLIPBOARD_AVAILABLE = False

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png")

log = logging.getLogger("ga_cli")


# ==================== Logging ====================

def setup_logging(debug: bool = False):
    """Configure logging; --debug adds timing relative to process start"""
    if debug:
        fmt = "[debug +%(relativeCreated)dms] %(name)s: %(message)s"
    else:
        fmt = "%(levelname)s: %(message)s"
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=fmt,
        stream=sys.stderr,
        force=True,
    )


def debug_log(message: str):
    log.debug(message)


# ==================== Storage ====================

def get_storage_dir() -> Path:
    """Directory holding the key ring (GA_CLI_HOME or ~/.ga_cli)"""
    return Path(os.environ.get("GA_CLI_HOME", os.path.expanduser("~/.ga_cli")))


def get_storage_path() -> Path:
    """Get the path to the key ring file"""
    return get_storage_dir() / "keys"


# ==================== Commands ====================

def read_inputs(inputs: list, verbose: bool = False):
    """Yield (source, payload) for every URI or QR symbol found in inputs"""
    for source in inputs:
        if source.startswith("otpauth"):
            yield "argument", source
            continue

        if not source.lower().endswith(IMAGE_SUFFIXES):
            print(f"Error: Unsupported input '{source}' (expected .jpg, .jpeg, .png or otpauth URI)")
            continue

        if verbose:
            print(source)

        # OpenCV is slow to import, only load it when an image is given
        from ga_scan import read_qr_payloads

        payloads = read_qr_payloads(source)
        if not payloads:
            print(f"Error: No QR code found in {source}")
        for payload in payloads:
            yield source, payload


def cmd_import(args, ring: KeyRing, storage_path: Path) -> KeyRing:
    """Import keys from QR images or otpauth URIs and save the key ring"""
    imported = []
    for source, payload in read_inputs(args.inputs, args.verbose):
        debug_log(f"Processing payload from {source}")
        try:
            credentials = credentials_from_payload(payload)
        except DecodeError as e:
            print(f"Error: {e}")
            continue

        for credential in credentials:
            if args.verbose:
                print(f"    {credential.display_key}")
        imported.extend(credentials)

    ring = merge(ring, imported, clear_first=args.clear)
    persist(ring, storage_path)

    print(f"✓ Imported {len(imported)} keys")
    if args.verbose:
        print(f"{len(ring)} keys on key ring")
    return ring


def cmd_export(args, ring: KeyRing, storage_path: Path) -> KeyRing:
    """Write the key ring as migration QR images for the authenticator app"""
    try:
        envelopes = plan_batches(ring, args.batch_size)
    except EmptyKeyRing:
        print("Error: No keys to process")
        sys.exit(1)

    from ga_scan import render_qr

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    today = datetime.now()

    for envelope in envelopes:
        qr_file = output_dir / export_filename(envelope, today)
        render_qr(encode_migration_uri(envelope), qr_file)
        # Show progress
        if args.verbose:
            print(qr_file)

    print(f"✓ Exported {len(ring)} keys in {len(envelopes)} images")

    if args.clear:
        ring = merge(ring, [], clear_first=True)
        persist(ring, storage_path)
        if args.verbose:
            print("Key ring cleared")
    return ring


def cmd_show(args, ring: KeyRing):
    """Show the current code of every key matching the filter"""
    if not len(ring):
        print("Error: No keys found")
        sys.exit(1)

    now = time.time()
    expiring = is_expiring(now)
    matches = ring.matching(args.filter)
    if not matches:
        print(f"No keys matching '{args.filter}'")
        return

    code = None
    for credential in matches:
        code = generate(credential, now)
        suffix = "  (expiring)" if expiring else ""
        print(f"{credential.display_key:>30} {code}{suffix}")
        if args.uri:
            print(f"{'':>30} {credential_to_uri(credential)}")

    if args.verbose:
        print(f"Valid for {seconds_to_rollover(now)}s")

    # Copy to clipboard when the filter picked out a single key
    if len(matches) == 1 and CLIPBOARD_AVAILABLE:
        try:
            pyperclip.copy(code)
            print("(copied to clipboard)")
        except pyperclip.PyperclipException as e:
            debug_log(f"Clipboard unavailable: {e}")


# ==================== Main ====================

def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ga-cli",
        description="ga-cli - a command-line Google Authenticator key ring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging with timing")
    parser.set_defaults(command=None, filter=None, uri=False, verbose=False)
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Show command (default when no command is given)
    show_parser = subparsers.add_parser("show", help="Show the TOTP of each account")
    show_parser.add_argument("filter", nargs="?", help="Only show keys containing this text")
    show_parser.add_argument("--uri", "-u", action="store_true", help="Also print the otpauth:// URI")
    show_parser.add_argument("--verbose", "-v", action="store_true", help="Show time remaining")

    # Import command
    import_parser = subparsers.add_parser("import", help="Import QR images or otpauth URIs")
    import_parser.add_argument("inputs", nargs="+", help="QR image files (.png|.jpg) or otpauth URIs")
    import_parser.add_argument("--clear", "-c", action="store_true", help="Empty the key ring before importing")
    import_parser.add_argument("--verbose", "-v", action="store_true", help="Show progress")

    # Export command
    export_parser = subparsers.add_parser("export", help="Create QR images to load into Google Authenticator")
    export_parser.add_argument("--clear", "-c", action="store_true", help="Empty the key ring after exporting")
    export_parser.add_argument("--verbose", "-v", action="store_true", help="Show progress")
    export_parser.add_argument("--output-dir", "-o", default=".", help="Directory for the QR images (default: .)")
    export_parser.add_argument(
        "--batch-size", "-b", type=positive_int,
        default=os.environ.get("GA_CLI_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)),
        help=f"Keys per QR image (default: {DEFAULT_BATCH_SIZE})",
    )

    return parser


COMMANDS = ("show", "import", "export")


def with_default_command(argv: list) -> list:
    """Insert "show" so that `ga-cli github` filters like `ga-cli show github`"""
    argv = list(argv)
    for i, arg in enumerate(argv):
        if arg.startswith("-"):
            if arg in ("-h", "--help"):
                break
            continue
        if arg not in COMMANDS:
            argv.insert(i, "show")
        break
    return argv


def main(argv=None):
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    args = parser.parse_args(with_default_command(argv))
    setup_logging(args.debug)

    storage_path = get_storage_path()
    debug_log(f"Key ring: {storage_path}")

    try:
        ring = load_keyring(storage_path)
        if args.command == "import":
            cmd_import(args, ring, storage_path)
        elif args.command == "export":
            cmd_export(args, ring, storage_path)
        else:
            cmd_show(args, ring)
    except GaError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
