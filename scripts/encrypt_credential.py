from __future__ import annotations

import argparse
import sys
from pathlib import Path

from complaintwatch.core.config import get_settings
from complaintwatch.services.crypto.credentials import encrypt_credential_blob
from complaintwatch.services.crypto.utils import AES_KEY_BYTES, decode_key_material


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Encrypt a PEM key or certificate for subject_credentials")
    parser.add_argument("path", help="PEM file to encrypt, or - for stdin")
    parser.add_argument("--key", default=None, help="Override CERT_ENCRYPTION_KEY")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    key = decode_key_material(args.key or get_settings().cert_encryption_key)
    if len(key) != AES_KEY_BYTES:
        print(f"encryption key must resolve to {AES_KEY_BYTES} bytes", file=sys.stderr)
        return 2
    text = sys.stdin.read() if args.path == "-" else Path(args.path).read_text(encoding="utf-8")
    print(encrypt_credential_blob(text.strip(), key))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
