#!/usr/bin/env python3
"""
auth/keygen.py -- Generate the RSA key pair used by the transport cipher.

Usage:
  python -m auth.keygen                   # writes keys/rsa-public.pem + keys/rsa-private.pem
  python -m auth.keygen --out /etc/idgate # custom directory
  python -m auth.keygen --bits 3072 --force

The private key is written PKCS#8 / unencrypted with file mode 0600. It is
loaded once per process and never rotated at runtime; rotating means
generating a new pair and restarting, after which clients must re-fetch
GET /public-key.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

PUBLIC_KEY_FILENAME = "rsa-public.pem"
PRIVATE_KEY_FILENAME = "rsa-private.pem"


def generate_key_pair(bits: int = 2048) -> tuple[str, str]:
    """Return (public_pem, private_pem) for a fresh RSA key pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )
    return public_pem, private_pem


def write_key_pair(out_dir: Path, bits: int = 2048, force: bool = False) -> tuple[Path, Path]:
    """Generate a key pair and write it into out_dir.

    Raises FileExistsError if either file exists and force is False.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    public_path = out_dir / PUBLIC_KEY_FILENAME
    private_path = out_dir / PRIVATE_KEY_FILENAME
    if not force:
        for path in (public_path, private_path):
            if path.exists():
                raise FileExistsError(f"{path} already exists (use --force to overwrite)")

    public_pem, private_pem = generate_key_pair(bits)
    public_path.write_text(public_pem, encoding="ascii")
    # Create with 0600 from the start rather than chmod after the write.
    fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as fh:
        fh.write(private_pem)
    return public_path, private_path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m auth.keygen",
        description="Generate the RSA key pair used to encrypt passwords in transit.",
    )
    parser.add_argument("--out", default="keys", help="Output directory (default: keys)")
    parser.add_argument("--bits", type=int, default=2048, choices=(2048, 3072, 4096), help="RSA modulus size")
    parser.add_argument("--force", action="store_true", help="Overwrite existing key files")
    args = parser.parse_args(argv)

    try:
        public_path, private_path = write_key_pair(Path(args.out), bits=args.bits, force=args.force)
    except (FileExistsError, OSError) as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1

    print(f"  Public key:  {public_path}")
    print(f"  Private key: {private_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
