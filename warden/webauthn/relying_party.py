"""Relying-party identity derived from the inbound request URL."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1"})


@dataclass(frozen=True)
class RelyingParty:
    """
    WebAuthn relying party for one request.

    Computed once per request and handed to both option generation and
    verification, so the two always agree.
    """
    id: str
    name: str
    origin: str

    @classmethod
    def from_url(cls, url: str, name: str, dev_port: int = 5173) -> "RelyingParty":
        parts = urlsplit(str(url))
        hostname = (parts.hostname or "").lower()
        if not hostname:
            raise ValueError(f"Cannot derive relying party from URL: {url!r}")

        scheme = parts.scheme or "https"

        if hostname in LOOPBACK_HOSTS:
            port = parts.port or dev_port
            return cls(id="localhost", name=name, origin=f"{scheme}://{hostname}:{port}")

        return cls(id=hostname, name=name, origin=f"{scheme}://{hostname}")
