"""A server certificate and key pair that can be reloaded while in use."""

from __future__ import annotations

import logging
import ssl
import threading

log = logging.getLogger(__name__)


class TlsKeypairReloader:
    """Holds a TLS server context built from a certificate and key on disk."""

    def __init__(self, cert_path: str, key_path: str) -> None:
        self.cert_path = cert_path
        self.key_path = key_path
        self._lock = threading.Lock()
        self._context, self._certificate = self._load()

    def _load(self) -> tuple[ssl.SSLContext, str]:
        with open(self.cert_path, encoding="utf-8") as handle:
            certificate = handle.read()
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.cert_path, self.key_path)
        return context, certificate

    def reload(self) -> None:
        """Load the pair again; on failure the current pair stays in use."""
        context, certificate = self._load()
        log.info("certificate reloaded")
        with self._lock:
            self._context = context
            self._certificate = certificate

    def context(self) -> ssl.SSLContext:
        """Return the server context of the current pair."""
        with self._lock:
            return self._context

    @property
    def certificate(self) -> str:
        """The PEM text of the certificate currently in use."""
        with self._lock:
            return self._certificate