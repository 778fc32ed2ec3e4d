#!/usr/bin/env python3
"""
ga-cli - QR module
QR symbol reading (OpenCV) and QR image rendering, plus the ga-cli-to-qr
bulk converter. Kept apart from ga_cli because OpenCV is slow to start.
"""

import argparse
import sys
from pathlib import Path

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from ga_cli import debug_log, setup_logging
from ga_otp import (
    DEFAULT_BATCH_SIZE, EmptyKeyRing, GaError, IOFailure, bulk_filename,
    encode_migration_uri, load_keyring, plan_batches,
)

debug_log("ga_scan module loaded")

cv2 = None


def load_cv2() -> bool:
    """Import OpenCV on first use"""
    global cv2
    if cv2 is None:
        try:
            import cv2 as _cv2
        except ImportError:
            return False
        cv2 = _cv2
        debug_log(f"OpenCV {cv2.__version__} loaded")
    return True


def read_qr_payloads(image_path) -> list[str]:
    """Decoded text of every QR symbol found in an image"""
    if not load_cv2():
        raise IOFailure("opencv-python-headless required for QR scanning "
                        "(pip install opencv-python-headless)")

    path = Path(image_path)
    if not path.is_file():
        raise IOFailure(f"File not found: {path}")

    debug_log(f"Reading image: {path}")
    img = cv2.imread(str(path))
    if img is None:
        raise IOFailure(f"Could not read image: {path}")

    debug_log("Detecting QR codes...")
    detector = cv2.QRCodeDetector()
    found, decoded, _, _ = detector.detectAndDecodeMulti(img)
    payloads = [data for data in decoded if data] if found else []

    if not payloads:
        data, _, _ = detector.detectAndDecode(img)
        if data:
            payloads = [data]

    debug_log(f"{len(payloads)} QR codes in {path}")
    return payloads


def render_qr(payload: str, path) -> Path:
    """Write payload as a QR code image (format taken from the file suffix)"""
    path = Path(path)
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_M,
        box_size=4,
        border=1,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white").get_image()
    try:
        img.convert("RGB").save(path)
    except (OSError, ValueError) as e:
        raise IOFailure(f"Can't write QR image {path}: {e}") from e
    debug_log(f"QR version {qr.version} written to {path}")
    return path


# ==================== Bulk conversion ====================

def bulk_export(keys_path, output_dir, batch_size: int = DEFAULT_BATCH_SIZE,
                verbose: bool = False) -> list[Path]:
    """Render a key ring file as bulk_keys_NN.jpg images; the file is left untouched"""
    ring = load_keyring(keys_path)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for envelope in plan_batches(ring, batch_size):
        qr_file = render_qr(encode_migration_uri(envelope), output_dir / bulk_filename(envelope))
        if verbose:
            print(qr_file)
        written.append(qr_file)
    return written


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="ga-cli-to-qr",
        description="Generate QR images from a key ring file for bulk load into Google Authenticator",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging with timing")
    parser.add_argument("--keys", "-k", default="/etc/ga_cli.conf", help="Key ring file (default: /etc/ga_cli.conf)")
    parser.add_argument("--output-dir", "-o", default=".", help="Directory for the QR images (default: .)")
    parser.add_argument("--batch-size", "-b", type=int, default=DEFAULT_BATCH_SIZE, help="Keys per QR image")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show progress")

    args = parser.parse_args(argv)
    setup_logging(args.debug)

    try:
        written = bulk_export(args.keys, args.output_dir, args.batch_size, args.verbose)
    except EmptyKeyRing:
        print("Error: No keys to process")
        sys.exit(1)
    except (GaError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"✓ Wrote {len(written)} QR images")


if __name__ == "__main__":
    main()
