"""Shared fixtures: a throwaway PKI and local TLS servers to inspect."""

import datetime
import ipaddress
import socket
import ssl
import threading
from typing import List, Optional, Sequence

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from trust_store import TrustAnchor, TrustPool

LOCALHOST = "127.0.0.1"


def _name(cn: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Issued:
    """A certificate and its private key."""

    def __init__(self, cert: x509.Certificate, key: ec.EllipticCurvePrivateKey):
        self.cert = cert
        self.key = key


class CertFactory:
    """Builds CA and server certificates for tests."""

    def make_ca(self, cn: str = "Test Root CA") -> Issued:
        key = ec.generate_private_key(ec.SECP256R1())
        now = _now()
        cert = (
            x509.CertificateBuilder()
            .subject_name(_name(cn))
            .issuer_name(_name(cn))
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True, content_commitment=False, key_encipherment=False,
                    data_encipherment=False, key_agreement=False, key_cert_sign=True,
                    crl_sign=True, encipher_only=False, decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .sign(key, hashes.SHA256())
        )
        return Issued(cert, key)

    def make_server(self,
                    cn: str,
                    issuer: Optional[Issued] = None,
                    ip_sans: Sequence[str] = (LOCALHOST,),
                    dns_sans: Sequence[str] = (),
                    expired: bool = False) -> Issued:
        """Server certificate signed by issuer, or self-signed when issuer is None."""
        key = ec.generate_private_key(ec.SECP256R1())
        now = _now()
        if expired:
            not_before, not_after = now - datetime.timedelta(days=30), now - datetime.timedelta(days=1)
        else:
            not_before, not_after = now - datetime.timedelta(days=1), now + datetime.timedelta(days=90)

        sans: List[x509.GeneralName] = [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_sans]
        sans += [x509.DNSName(name) for name in dns_sans]

        signer_key = issuer.key if issuer else key
        issuer_name = issuer.cert.subject if issuer else _name(cn)

        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(cn))
            .issuer_name(issuer_name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        )
        if sans:
            builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
        if issuer:
            builder = builder.add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer.key.public_key()),
                critical=False,
            )

        return Issued(builder.sign(signer_key, hashes.SHA256()), key)


class TLSServer:
    """Accepts connections on 127.0.0.1 and completes TLS handshakes until stopped."""

    def __init__(self, tmp_path, leaf: Issued, chain: Sequence[x509.Certificate] = ()):
        cert_file = tmp_path / f"server-{id(self)}.pem"
        key_file = tmp_path / f"server-{id(self)}.key"
        pem = leaf.cert.public_bytes(serialization.Encoding.PEM)
        for extra in chain:
            pem += extra.public_bytes(serialization.Encoding.PEM)
        cert_file.write_bytes(pem)
        key_file.write_bytes(leaf.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ))

        self.context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self.context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind((LOCALHOST, 0))
        self.sock.listen(5)
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.hostport = f"{LOCALHOST}:{self.port}"

        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while not self._stopped.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(5)
            try:
                with self.context.wrap_socket(conn, server_side=True) as tls:
                    tls.recv(1)
            except (ssl.SSLError, OSError):
                pass
            finally:
                conn.close()

    def stop(self) -> None:
        self._stopped.set()
        self._thread.join(timeout=5)
        self.sock.close()


@pytest.fixture(scope="session")
def pki() -> CertFactory:
    return CertFactory()


@pytest.fixture(scope="session")
def root_ca(pki) -> Issued:
    return pki.make_ca()


@pytest.fixture
def trust_pool(root_ca) -> TrustPool:
    # Only the test root, so results do not depend on the host's CA bundle
    return TrustPool(anchors=(TrustAnchor("test-root", root_ca.cert),), system_defaults=False)


@pytest.fixture
def tls_server(tmp_path):
    servers = []

    def start(leaf: Issued, chain: Sequence[x509.Certificate] = ()) -> TLSServer:
        server = TLSServer(tmp_path, leaf, chain)
        servers.append(server)
        return server

    yield start

    for server in servers:
        server.stop()


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind((LOCALHOST, 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def silent_server():
    """Listens but never answers, so a TLS handshake stalls."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind((LOCALHOST, 0))
    sock.listen(5)
    yield f"{LOCALHOST}:{sock.getsockname()[1]}"
    sock.close()
