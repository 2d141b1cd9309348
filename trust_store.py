#!/usr/bin/env python3
"""
Trust Store Loading Module

Builds the set of root certificates the inspector trusts: the platform's
default roots, optionally extended with the certificates held in a
password-protected PKCS#12 trust store (for example one exported with
`keytool -storetype PKCS12`).

Loading happens once at startup. Any problem with the store is a
configuration error and aborts the run; a wrong passphrase never falls back
to an empty pool.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from OpenSSL import SSL, crypto

from inspector_config import InspectorError

logger = logging.getLogger(__name__)


class TrustStoreError(InspectorError):
    """Raised when a trust store cannot be opened, decrypted or decoded."""


def common_name(name: x509.Name) -> str:
    """Return the first CN of a name, or the whole RFC 4514 string when it has none."""
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if attributes:
        return str(attributes[0].value)
    return name.rfc4514_string()


@dataclass(frozen=True)
class TrustAnchor:
    alias: str
    certificate: x509.Certificate

    @property
    def subject_cn(self) -> str:
        return common_name(self.certificate.subject)


@dataclass(frozen=True)
class TrustPool:
    """Root certificates considered valid signers for one run."""

    anchors: Tuple[TrustAnchor, ...] = ()
    system_defaults: bool = True

    def apply(self, context: SSL.Context) -> None:
        """Install this pool as the verification store of a pyOpenSSL context."""
        if self.system_defaults:
            context.set_default_verify_paths()

        store = context.get_cert_store()
        for anchor in self.anchors:
            store.add_cert(crypto.X509.from_cryptography(anchor.certificate))

    def describe(self) -> List[str]:
        """One line per custom anchor, for display."""
        return [f"{anchor.alias}: {anchor.subject_cn}" for anchor in self.anchors]


def _read_store(path: str) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise TrustStoreError(f"Unable to open trust store {path}: {e}") from e


def load_trust_pool(store_path: Optional[str] = None, passphrase: str = "") -> TrustPool:
    """
    Load the trust pool for a run.

    Args:
        store_path: Optional path to a PKCS#12 trust store
        passphrase: Passphrase of the store; empty for an unencrypted store

    Returns:
        TrustPool with the platform defaults plus every certificate in the store

    Raises:
        TrustStoreError: If the store cannot be read, decrypted or decoded
    """
    if not store_path:
        return TrustPool()

    data = _read_store(store_path)
    password = passphrase.encode('utf-8') if passphrase else None

    try:
        bundle = pkcs12.load_pkcs12(data, password)
    except ValueError as e:
        # cryptography reports a bad passphrase and a corrupt file the same way
        raise TrustStoreError(
            f"Unable to load trust store {store_path}: wrong passphrase or not a PKCS#12 file"
        ) from e

    entries = []
    if bundle.cert is not None:
        entries.append(bundle.cert)
    entries.extend(bundle.additional_certs)

    anchors = []
    for index, entry in enumerate(entries):
        if entry.friendly_name:
            alias = entry.friendly_name.decode('utf-8', errors='replace')
        else:
            alias = f"entry-{index}"
        anchor = TrustAnchor(alias=alias, certificate=entry.certificate)
        logger.info("Loaded trusted certificate %s: %s", alias, anchor.subject_cn)
        anchors.append(anchor)

    if not anchors:
        logger.warning("Trust store %s contains no certificates", store_path)

    return TrustPool(anchors=tuple(anchors))
