#!/usr/bin/env python3
"""Tests for loading PKCS#12 trust stores into a trust pool."""

import logging

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, NoEncryption, pkcs12
from cryptography.x509.oid import NameOID
from OpenSSL import SSL

from cert_inspector import diagnose
from trust_store import TrustAnchor, TrustPool, TrustStoreError, common_name, load_trust_pool

PASSPHRASE = "changeit"


def write_store(path, certs, passphrase=PASSPHRASE):
    """certs is a list of (alias or None, certificate)."""
    cas = [pkcs12.PKCS12Certificate(cert, alias.encode() if alias else None) for alias, cert in certs]
    encryption = BestAvailableEncryption(passphrase.encode()) if passphrase else NoEncryption()
    path.write_bytes(pkcs12.serialize_key_and_certificates(
        name=None, key=None, cert=None, cas=cas, encryption_algorithm=encryption,
    ))
    return str(path)


class TestLoadTrustPool:
    def test_no_store_gives_platform_defaults(self):
        pool = load_trust_pool()
        assert pool.anchors == ()
        assert pool.system_defaults is True

    def test_loads_every_entry_by_alias(self, tmp_path, pki, root_ca):
        second = pki.make_ca("Second Root")
        store = write_store(tmp_path / "trust.p12", [("corp-root", root_ca.cert), ("second", second.cert)])

        pool = load_trust_pool(store, PASSPHRASE)

        assert [anchor.alias for anchor in pool.anchors] == ["corp-root", "second"]
        assert [anchor.subject_cn for anchor in pool.anchors] == ["Test Root CA", "Second Root"]
        assert pool.system_defaults is True

    def test_unnamed_entry_gets_positional_alias(self, tmp_path, root_ca):
        store = write_store(tmp_path / "trust.p12", [(None, root_ca.cert)])
        pool = load_trust_pool(store, PASSPHRASE)
        assert pool.anchors[0].alias == "entry-0"

    def test_unencrypted_store(self, tmp_path, root_ca):
        store = write_store(tmp_path / "trust.p12", [("corp-root", root_ca.cert)], passphrase="")
        pool = load_trust_pool(store, "")
        assert len(pool.anchors) == 1

    def test_wrong_passphrase_fails(self, tmp_path, root_ca):
        store = write_store(tmp_path / "trust.p12", [("corp-root", root_ca.cert)])
        with pytest.raises(TrustStoreError):
            load_trust_pool(store, "not-the-passphrase")

    def test_missing_file_fails(self, tmp_path):
        with pytest.raises(TrustStoreError):
            load_trust_pool(str(tmp_path / "missing.p12"), PASSPHRASE)

    def test_corrupt_file_fails(self, tmp_path):
        path = tmp_path / "corrupt.p12"
        path.write_bytes(b"this is not a pkcs12 container")
        with pytest.raises(TrustStoreError):
            load_trust_pool(str(path), PASSPHRASE)

    def test_reports_loaded_anchors(self, tmp_path, root_ca, caplog):
        store = write_store(tmp_path / "trust.p12", [("corp-root", root_ca.cert)])
        with caplog.at_level(logging.INFO, logger="trust_store"):
            pool = load_trust_pool(store, PASSPHRASE)
        assert "Loaded trusted certificate corp-root: Test Root CA" in caplog.text
        assert pool.describe() == ["corp-root: Test Root CA"]


class TestTrustPool:
    def test_apply_to_context(self, root_ca):
        pool = TrustPool(anchors=(TrustAnchor("corp-root", root_ca.cert),))
        pool.apply(SSL.Context(SSL.TLS_CLIENT_METHOD))

    def test_loaded_store_is_trusted_in_handshake(self, tmp_path, pki, root_ca, tls_server):
        store = write_store(tmp_path / "trust.p12", [("corp-root", root_ca.cert)])
        server = tls_server(pki.make_server("internal.test", issuer=root_ca))

        result = diagnose(server.hostport, load_trust_pool(store, PASSPHRASE), timeout=5)

        assert result.valid is True
        assert result.messages == ()


def test_common_name_falls_back_to_full_name(pki):
    ca = pki.make_ca("Named Root")
    assert common_name(ca.cert.subject) == "Named Root"

    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Org")])
    assert common_name(name) == "O=Example Org"
