"""
auth/cipher.py -- Transport encryption for passwords in flight.

Clients fetch the RSA public key (GET /public-key), encrypt the plaintext
password with it, and send the base64 ciphertext. The server decrypts with the
private key just long enough to hash or verify the password. This is not
data-at-rest encryption: nothing encrypted with this key is ever stored.

Security design decisions:
  Padding: RSA-OAEP with SHA-256 (MGF1-SHA-256). A 2048-bit key carries up to
       190 bytes of plaintext, far above any accepted password length.

  Key lifetime: the pair is read once per process and cached for its
       lifetime. There is no rotation path; rotating means new files and a
       restart (see auth/keygen.py).

  Loading: api/main.py calls load() during startup and hands the instance to
       AuthService, so there is no module-level key singleton. The accessors
       still funnel through the same guarded initializer, so an instance used
       before load() (e.g. from a script) loads the files at most once even
       under concurrent first access.

  Errors: every decrypt failure raises CryptoError with the library detail
       chained. Callers map it to a generic "credential could not be read"
       message -- cipher internals never reach a client.

Layer rule: no imports from api/, cache/, or mail/.
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from auth.keygen import generate_key_pair
from core.errors import CryptoError

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("idgate.cipher")

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


class TransportCipher:
    """RSA key pair holder with a load-once contract.

    Usage:
        cipher = TransportCipher(Path("keys/rsa-public.pem"), Path("keys/rsa-private.pem"))
        cipher.load()
        pem = cipher.public_key_pem()
        plain = cipher.decrypt(ciphertext_b64)
    """

    def __init__(
        self,
        public_key_path: Path | None = None,
        private_key_path: Path | None = None,
        *,
        generate_if_missing: bool = False,
    ) -> None:
        self._public_key_path = public_key_path
        self._private_key_path = private_key_path
        self._generate_if_missing = generate_if_missing
        self._lock = threading.Lock()
        self._public_pem: str | None = None
        self._public_key: rsa.RSAPublicKey | None = None
        self._private_key: rsa.RSAPrivateKey | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> TransportCipher:
        """Build a cipher from configured key paths.

        Dev mode (DEBUG=true) generates an ephemeral pair when the files are
        missing; production mode fails at load() instead.
        """
        return cls(
            settings.rsa_public_key_path,
            settings.rsa_private_key_path,
            generate_if_missing=settings.debug,
        )

    @classmethod
    def from_pem(cls, public_pem: str, private_pem: str) -> TransportCipher:
        """Build an already-loaded cipher from PEM text (tests, tooling)."""
        cipher = cls()
        cipher._install(public_pem, private_pem)
        return cipher

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load the key pair if not loaded yet. Safe to call repeatedly."""
        if self._private_key is not None:
            return
        with self._lock:
            if self._private_key is not None:
                return
            public_pem, private_pem = self._read_pair()
            self._install(public_pem, private_pem)

    def _read_pair(self) -> tuple[str, str]:
        paths = (self._public_key_path, self._private_key_path)
        if all(p is not None and p.is_file() for p in paths):
            logger.info("Loading transport key pair from %s", self._public_key_path.parent)
            return (
                self._public_key_path.read_text(encoding="ascii"),
                self._private_key_path.read_text(encoding="ascii"),
            )
        if self._generate_if_missing:
            logger.warning(
                "WARNING: Transport key files not found -- using an ephemeral key pair. "
                "Clients must re-fetch the public key after every restart."
            )
            return generate_key_pair()
        raise FileNotFoundError(
            "Transport key pair not found. Run `python -m auth.keygen` or set "
            "RSA_PUBLIC_KEY_PATH / RSA_PRIVATE_KEY_PATH."
        )

    def _install(self, public_pem: str, private_pem: str) -> None:
        private_key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=None)
        public_key = serialization.load_pem_public_key(public_pem.encode("ascii"))
        if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError("Transport key pair must be RSA.")
        if private_key.public_key().public_numbers() != public_key.public_numbers():
            raise ValueError("Transport public key does not match the private key.")
        self._public_key = public_key
        self._public_pem = public_pem
        # Assigned last: load() uses the private key as its "loaded" marker.
        self._private_key = private_key

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def public_key_pem(self) -> str:
        """Return the cached public key in PEM (SubjectPublicKeyInfo) form."""
        self.load()
        return self._public_pem

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext with the public key; returns standard base64.

        This is the client-side half of the scheme. The server only needs it
        for tests and tooling.
        """
        self.load()
        ciphertext = self._public_key.encrypt(plaintext.encode("utf-8"), _OAEP)
        return base64.b64encode(ciphertext).decode("ascii")

    def decrypt(self, ciphertext_b64: str) -> str:
        """Decode base64 and decrypt with the private key.

        Raises CryptoError on malformed base64, wrong key, corrupt padding, or
        a plaintext that is not valid UTF-8.
        """
        self.load()
        try:
            ciphertext = base64.b64decode(ciphertext_b64, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise CryptoError("ciphertext is not valid base64") from e
        try:
            plaintext = self._private_key.decrypt(ciphertext, _OAEP)
        except ValueError as e:
            raise CryptoError("RSA decryption failed") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError("decrypted credential is not UTF-8") from e
