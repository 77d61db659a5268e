"""Content-integrity verification for plugin code.

The only accepted reference format is ``sha256-<64 lowercase hex chars>``.
Verification happens on the fetched bytes before anything is executed.
"""

import hashlib
import hmac
import logging
import re
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from mxhost.errors import IntegrityError
from mxhost.plugins.manifest import PluginManifest

logger = logging.getLogger(__name__)

ALGORITHM = "sha256"
_REFERENCE_RE = re.compile(r"^(?P<algorithm>[a-z0-9]+)-(?P<digest>[0-9a-f]+)$")
_SHA256_HEX_LENGTH = 64


def parse_integrity(reference: str) -> str:
    """Return the hex digest from a canonical integrity reference.

    Raises:
        IntegrityError: If the reference is not ``sha256-<hex>``
    """
    match = _REFERENCE_RE.match(reference.strip())
    if match is None:
        raise IntegrityError(
            f"Malformed integrity reference {reference!r}; expected '{ALGORITHM}-<hex digest>'"
        )
    if match.group("algorithm") != ALGORITHM:
        raise IntegrityError(f"Unsupported integrity algorithm: {match.group('algorithm')}")
    digest = match.group("digest")
    if len(digest) != _SHA256_HEX_LENGTH:
        raise IntegrityError(f"Integrity digest must be {_SHA256_HEX_LENGTH} hex characters")
    return digest


def _sha256(data: bytes) -> str:
    if ALGORITHM not in hashlib.algorithms_available:
        raise IntegrityError("SHA-256 digests are not available in this environment")
    return hashlib.sha256(data).hexdigest()


def compute_integrity(data: bytes) -> str:
    """Canonical integrity reference for a blob of code."""
    return f"{ALGORITHM}-{_sha256(data)}"


class IntegrityVerifier:
    """Fetches plugin code and checks it against the manifest's hash."""

    def __init__(self, max_bytes: int = 5 * 1024 * 1024, timeout: float = 30.0):
        """Initialize verifier.

        Args:
            max_bytes: Largest plugin bundle accepted
            timeout: HTTP timeout in seconds for remote entries
        """
        self.max_bytes = max_bytes
        self.timeout = timeout

    async def fetch(self, location: str) -> bytes:
        """Read plugin code from a URL or local path.

        Raises:
            IntegrityError: If the code cannot be fetched or is too large
        """
        parsed = urlparse(location)
        if parsed.scheme in ("http", "https"):
            data = await self._fetch_remote(location)
        elif parsed.scheme == "file":
            data = self._read_local(Path(unquote(parsed.path)))
        elif parsed.scheme and len(parsed.scheme) > 1:
            raise IntegrityError(f"Unsupported plugin location scheme: {parsed.scheme}")
        else:
            data = self._read_local(Path(location))

        if len(data) > self.max_bytes:
            raise IntegrityError(
                f"Plugin code at {location} exceeds the {self.max_bytes} byte limit"
            )
        return data

    async def _fetch_remote(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise IntegrityError(f"Failed to fetch plugin code from {url}: {e}") from e

    def _read_local(self, path: Path) -> bytes:
        try:
            return path.expanduser().read_bytes()
        except OSError as e:
            raise IntegrityError(f"Failed to read plugin code from {path}: {e}") from e

    def check(self, manifest: PluginManifest, data: bytes) -> None:
        """Compare already-fetched bytes against the manifest's reference.

        Raises:
            IntegrityError: On a missing reference or digest mismatch
        """
        if not manifest.integrity:
            raise IntegrityError(f'Plugin "{manifest.id}" declares no integrity reference')

        expected = parse_integrity(manifest.integrity)
        actual = _sha256(data)
        if not hmac.compare_digest(expected, actual):
            raise IntegrityError(
                f'Integrity mismatch for plugin "{manifest.id}": '
                f"expected {ALGORITHM}-{expected}, got {ALGORITHM}-{actual}"
            )

    async def fetch_verified(self, manifest: PluginManifest, location: str) -> bytes:
        """Fetch plugin code and return it only if its hash matches.

        Args:
            manifest: Validated manifest carrying the integrity reference
            location: Resolved entry location

        Returns:
            The verified bytes

        Raises:
            IntegrityError: On any fetch failure, missing reference or mismatch
        """
        if not manifest.integrity:
            raise IntegrityError(f'Plugin "{manifest.id}" declares no integrity reference')
        parse_integrity(manifest.integrity)

        data = await self.fetch(location)
        self.check(manifest, data)
        logger.info("Verified integrity of plugin %s (%d bytes)", manifest.id, len(data))
        return data

    async def verify(self, manifest: PluginManifest, location: str) -> None:
        await self.fetch_verified(manifest, location)
