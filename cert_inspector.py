#!/usr/bin/env python3
"""
Certificate Inspector

Performs one TLS handshake against an endpoint and explains, in plain
language, why a typical client would or would not accept the server's
certificate.

OpenSSL (through pyOpenSSL) builds and verifies the chain. A verify callback
records every failure it reports and lets the handshake carry on, so a single
connection surfaces all problems rather than only the first. The leaf is then
checked against the requested name with service_identity.

Results fall into three groups:
- valid: handshake completed, nothing to report
- findings: certificate problems, described in DiagnosticResult.messages
- operational errors: DNS, connect, timeout or TLS protocol failures, reported
  in DiagnosticResult.error and never mixed with findings
"""

import logging
import select
import socket
import time
from dataclasses import dataclass
from enum import Enum
from ipaddress import ip_address
from typing import Any, Dict, List, Optional, Tuple, Union

import dns.exception
import dns.resolver
from cryptography import x509
from OpenSSL import SSL, crypto
from service_identity import CertificateError, VerificationError
from service_identity.cryptography import verify_certificate_hostname, verify_certificate_ip_address

from endpoint_validator import Endpoint, MalformedEndpoint, split_hostport
from inspector_config import CONNECTION_TIMEOUT
from trust_store import TrustPool, common_name

logger = logging.getLogger(__name__)

# OpenSSL X509_V_ERR_* verification codes (x509_vfy.h)
X509_V_ERR_UNABLE_TO_GET_ISSUER_CERT = 2
X509_V_ERR_UNABLE_TO_DECRYPT_CERT_SIGNATURE = 4
X509_V_ERR_UNABLE_TO_DECODE_ISSUER_PUBLIC_KEY = 6
X509_V_ERR_CERT_SIGNATURE_FAILURE = 7
X509_V_ERR_CERT_NOT_YET_VALID = 9
X509_V_ERR_CERT_HAS_EXPIRED = 10
X509_V_ERR_ERROR_IN_CERT_NOT_BEFORE_FIELD = 13
X509_V_ERR_ERROR_IN_CERT_NOT_AFTER_FIELD = 14
X509_V_ERR_ERROR_IN_CRL_LAST_UPDATE_FIELD = 15
X509_V_ERR_ERROR_IN_CRL_NEXT_UPDATE_FIELD = 16
X509_V_ERR_DEPTH_ZERO_SELF_SIGNED_CERT = 18
X509_V_ERR_SELF_SIGNED_CERT_IN_CHAIN = 19
X509_V_ERR_UNABLE_TO_GET_ISSUER_CERT_LOCALLY = 20
X509_V_ERR_UNABLE_TO_VERIFY_LEAF_SIGNATURE = 21
X509_V_ERR_CERT_CHAIN_TOO_LONG = 22
X509_V_ERR_CERT_REVOKED = 23
X509_V_ERR_INVALID_CA = 24
X509_V_ERR_PATH_LENGTH_EXCEEDED = 25
X509_V_ERR_INVALID_PURPOSE = 26
X509_V_ERR_CERT_UNTRUSTED = 27
X509_V_ERR_CERT_REJECTED = 28
X509_V_ERR_SUBJECT_ISSUER_MISMATCH = 29
X509_V_ERR_AKID_SKID_MISMATCH = 30
X509_V_ERR_AKID_ISSUER_SERIAL_MISMATCH = 31
X509_V_ERR_KEYUSAGE_NO_CERTSIGN = 32
X509_V_ERR_UNHANDLED_CRITICAL_EXTENSION = 34
X509_V_ERR_INVALID_NON_CA = 37
X509_V_ERR_KEYUSAGE_NO_DIGITAL_SIGNATURE = 39
X509_V_ERR_INVALID_EXTENSION = 41
X509_V_ERR_INVALID_POLICY_EXTENSION = 42
X509_V_ERR_NO_EXPLICIT_POLICY = 43
X509_V_ERR_PERMITTED_VIOLATION = 47
X509_V_ERR_EXCLUDED_VIOLATION = 48
X509_V_ERR_SUBTREE_MINMAX = 49
X509_V_ERR_UNSUPPORTED_CONSTRAINT_TYPE = 51
X509_V_ERR_UNSUPPORTED_CONSTRAINT_SYNTAX = 52
X509_V_ERR_UNSUPPORTED_NAME_SYNTAX = 53
X509_V_ERR_HOSTNAME_MISMATCH = 62
X509_V_ERR_IP_ADDRESS_MISMATCH = 64


class FailureKind(Enum):
    HOSTNAME_MISMATCH = "hostname_mismatch"
    CERTIFICATE_INVALID = "certificate_invalid"
    UNKNOWN_AUTHORITY = "unknown_authority"
    UNCLASSIFIED = "unclassified"


class InvalidReason(Enum):
    """Why a certificate in the chain is structurally invalid."""

    NOT_AUTHORIZED_TO_SIGN = "not_authorized_to_sign"
    EXPIRED = "expired"
    CA_NOT_AUTHORIZED_FOR_THIS_NAME = "ca_not_authorized_for_this_name"
    TOO_MANY_INTERMEDIATES = "too_many_intermediates"
    INCOMPATIBLE_USAGE = "incompatible_usage"
    NAME_MISMATCH = "name_mismatch"
    UNCONSTRAINED_NAME = "unconstrained_name"
    TOO_MANY_CONSTRAINTS = "too_many_constraints"
    CA_NOT_AUTHORIZED_FOR_EXT_KEY_USAGE = "ca_not_authorized_for_ext_key_usage"
    UNKNOWN = "unknown"


INVALID_REASON_TEXT = {
    InvalidReason.NOT_AUTHORIZED_TO_SIGN:
        "Signed by certificate that is not marked as a CA",
    InvalidReason.EXPIRED:
        "Certificate expired",
    InvalidReason.CA_NOT_AUTHORIZED_FOR_THIS_NAME:
        "CANotAuthorizedForThisName results when an intermediate or root certificate has a name "
        "constraint which doesn't permit a DNS or other name (including IP address) in the leaf certificate.",
    InvalidReason.TOO_MANY_INTERMEDIATES:
        "TooManyIntermediates results when a path length constraint is violated.",
    InvalidReason.INCOMPATIBLE_USAGE:
        "Incompatible Usage results when the certificate's key usage indicates that it may only be used "
        "for a different purpose",
    InvalidReason.NAME_MISMATCH:
        "NameMismatch results when the subject name of a parent certificate does not match the issuer "
        "name in the child.",
    InvalidReason.UNCONSTRAINED_NAME:
        "UnconstrainedName results when a CA certificate contains permitted name constraints, but leaf "
        "certificate contains a name of an unsupported or unconstrained type.",
    InvalidReason.TOO_MANY_CONSTRAINTS:
        "TooManyConstraints results when the number of comparison operations needed to check a "
        "certificate exceeds the verifier's limit",
    InvalidReason.CA_NOT_AUTHORIZED_FOR_EXT_KEY_USAGE:
        "CANotAuthorizedForExtKeyUsage results when an intermediate or root certificate does not permit "
        "a requested extended key usage.",
    InvalidReason.UNKNOWN:
        "Unknown",
}

_INVALID_REASON_BY_CODE = {
    X509_V_ERR_CERT_NOT_YET_VALID: InvalidReason.EXPIRED,
    X509_V_ERR_CERT_HAS_EXPIRED: InvalidReason.EXPIRED,
    X509_V_ERR_INVALID_CA: InvalidReason.NOT_AUTHORIZED_TO_SIGN,
    X509_V_ERR_KEYUSAGE_NO_CERTSIGN: InvalidReason.NOT_AUTHORIZED_TO_SIGN,
    X509_V_ERR_PERMITTED_VIOLATION: InvalidReason.CA_NOT_AUTHORIZED_FOR_THIS_NAME,
    X509_V_ERR_EXCLUDED_VIOLATION: InvalidReason.CA_NOT_AUTHORIZED_FOR_THIS_NAME,
    X509_V_ERR_CERT_CHAIN_TOO_LONG: InvalidReason.TOO_MANY_INTERMEDIATES,
    X509_V_ERR_PATH_LENGTH_EXCEEDED: InvalidReason.TOO_MANY_INTERMEDIATES,
    X509_V_ERR_KEYUSAGE_NO_DIGITAL_SIGNATURE: InvalidReason.INCOMPATIBLE_USAGE,
    X509_V_ERR_SUBJECT_ISSUER_MISMATCH: InvalidReason.NAME_MISMATCH,
    X509_V_ERR_AKID_SKID_MISMATCH: InvalidReason.NAME_MISMATCH,
    X509_V_ERR_AKID_ISSUER_SERIAL_MISMATCH: InvalidReason.NAME_MISMATCH,
    X509_V_ERR_SUBTREE_MINMAX: InvalidReason.UNCONSTRAINED_NAME,
    X509_V_ERR_UNSUPPORTED_CONSTRAINT_TYPE: InvalidReason.UNCONSTRAINED_NAME,
    X509_V_ERR_UNSUPPORTED_CONSTRAINT_SYNTAX: InvalidReason.UNCONSTRAINED_NAME,
    X509_V_ERR_UNSUPPORTED_NAME_SYNTAX: InvalidReason.UNCONSTRAINED_NAME,
    # Structurally broken certificates without a more specific reason
    X509_V_ERR_UNABLE_TO_DECRYPT_CERT_SIGNATURE: InvalidReason.UNKNOWN,
    X509_V_ERR_UNABLE_TO_DECODE_ISSUER_PUBLIC_KEY: InvalidReason.UNKNOWN,
    X509_V_ERR_CERT_SIGNATURE_FAILURE: InvalidReason.UNKNOWN,
    X509_V_ERR_ERROR_IN_CERT_NOT_BEFORE_FIELD: InvalidReason.UNKNOWN,
    X509_V_ERR_ERROR_IN_CERT_NOT_AFTER_FIELD: InvalidReason.UNKNOWN,
    X509_V_ERR_ERROR_IN_CRL_LAST_UPDATE_FIELD: InvalidReason.UNKNOWN,
    X509_V_ERR_ERROR_IN_CRL_NEXT_UPDATE_FIELD: InvalidReason.UNKNOWN,
    X509_V_ERR_UNHANDLED_CRITICAL_EXTENSION: InvalidReason.UNKNOWN,
    X509_V_ERR_INVALID_NON_CA: InvalidReason.UNKNOWN,
    X509_V_ERR_INVALID_EXTENSION: InvalidReason.UNKNOWN,
    X509_V_ERR_INVALID_POLICY_EXTENSION: InvalidReason.UNKNOWN,
    X509_V_ERR_NO_EXPLICIT_POLICY: InvalidReason.UNKNOWN,
}

_UNKNOWN_AUTHORITY_CODES = frozenset([
    X509_V_ERR_UNABLE_TO_GET_ISSUER_CERT,
    X509_V_ERR_DEPTH_ZERO_SELF_SIGNED_CERT,
    X509_V_ERR_SELF_SIGNED_CERT_IN_CHAIN,
    X509_V_ERR_UNABLE_TO_GET_ISSUER_CERT_LOCALLY,
    X509_V_ERR_UNABLE_TO_VERIFY_LEAF_SIGNATURE,
    X509_V_ERR_CERT_UNTRUSTED,
])

_HOSTNAME_CODES = frozenset([
    X509_V_ERR_HOSTNAME_MISMATCH,
    X509_V_ERR_IP_ADDRESS_MISMATCH,
])

# Descriptions for codes that fall through to the generic message
VERIFY_ERROR_DESCRIPTIONS = {
    X509_V_ERR_CERT_REVOKED: "certificate is revoked",
    X509_V_ERR_CERT_REJECTED: "certificate rejected",
    3: "unable to get certificate CRL",
    11: "CRL is not yet valid",
    12: "CRL has expired",
    33: "unable to get CRL issuer certificate",
    50: "application verification failure",
}

UNREADABLE_SUBJECT = "<unreadable certificate>"

UNKNOWN_AUTHORITY_TEMPLATE = (
    "Certificate for {subject} is not trusted. This could be because:\n"
    "\t1. It is self-signed\n"
    "\t2. It is signed by an unknown authority\n"
    "\t3. The CA that signed this certificate is not a valid Certificate Authority\n"
    "\t\n"
    "\tIt was signed by: {issuer}"
)


def invalid_reason_text(reason: InvalidReason) -> str:
    return INVALID_REASON_TEXT[reason]


class HandshakeError(Exception):
    """Connection-level failure: the run produced no verdict."""


@dataclass(frozen=True)
class VerificationFailure:
    """One failure reported by OpenSSL while verifying the chain."""

    errno: int
    depth: int
    subject: str
    issuer: str
    # False when the certificate could not be decoded for reporting
    readable: bool = True

    @classmethod
    def unreadable(cls, errno: int, depth: int) -> "VerificationFailure":
        return cls(errno=errno, depth=depth, subject=UNREADABLE_SUBJECT,
                   issuer=UNREADABLE_SUBJECT, readable=False)

    @classmethod
    def from_x509(cls, cert: crypto.X509, errno: int, depth: int) -> "VerificationFailure":
        parsed = cert.to_cryptography()
        return cls(
            errno=errno,
            depth=depth,
            subject=parsed.subject.rfc4514_string(),
            issuer=common_name(parsed.issuer),
        )

    @property
    def description(self) -> str:
        text = VERIFY_ERROR_DESCRIPTIONS.get(self.errno, f"verify error {self.errno}")
        return f"x509: \"{self.subject}\" {text} (depth {self.depth})"


@dataclass(frozen=True)
class DiagnosticResult:
    """Outcome of one handshake attempt."""

    valid: bool
    messages: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def inconclusive(self) -> bool:
        return self.error is not None

    @classmethod
    def passed(cls) -> "DiagnosticResult":
        return cls(valid=True)

    @classmethod
    def findings(cls, messages: List[str]) -> "DiagnosticResult":
        return cls(valid=False, messages=tuple(messages))

    @classmethod
    def failed(cls, error: str) -> "DiagnosticResult":
        return cls(valid=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'messages': list(self.messages),
            'error': self.error,
        }


def classify_failure(failure: VerificationFailure) -> Tuple[FailureKind, Optional[InvalidReason]]:
    """Map an OpenSSL verify code onto the failure taxonomy."""
    code = failure.errno

    if not failure.readable:
        return FailureKind.UNCLASSIFIED, None

    if code in _HOSTNAME_CODES:
        return FailureKind.HOSTNAME_MISMATCH, None

    if code == X509_V_ERR_INVALID_PURPOSE:
        # OpenSSL uses one code for leaf and CA purpose checks
        if failure.depth == 0:
            return FailureKind.CERTIFICATE_INVALID, InvalidReason.INCOMPATIBLE_USAGE
        return FailureKind.CERTIFICATE_INVALID, InvalidReason.CA_NOT_AUTHORIZED_FOR_EXT_KEY_USAGE

    if code in _INVALID_REASON_BY_CODE:
        return FailureKind.CERTIFICATE_INVALID, _INVALID_REASON_BY_CODE[code]

    if code in _UNKNOWN_AUTHORITY_CODES:
        return FailureKind.UNKNOWN_AUTHORITY, None

    return FailureKind.UNCLASSIFIED, None


def hostname_message(subject: str, hostport: str) -> str:
    return f"Certificate for {subject} is not valid for {hostport}"


def invalid_message(subject: str, reason: InvalidReason) -> str:
    return f"Certificate for {subject} is invalid because: {invalid_reason_text(reason)}"


def unknown_authority_message(subject: str, issuer: str) -> str:
    return UNKNOWN_AUTHORITY_TEMPLATE.format(subject=subject, issuer=issuer)


def unclassified_message(hostport: str, description: str) -> str:
    return f"Certificate for {hostport} is invalid because: {description}"


def build_messages(hostport: str,
                   failures: List[VerificationFailure],
                   mismatched_subject: Optional[str] = None) -> List[str]:
    """
    Turn verification failures into operator-facing messages.

    Every failure produces a message; categories are not mutually exclusive.
    Messages are ordered hostname mismatch, invalid certificate, unknown
    authority, then anything unrecognised, and duplicates are dropped.

    Args:
        hostport: Endpoint the handshake was made against
        failures: Failures in the order OpenSSL reported them
        mismatched_subject: Leaf subject when the name check failed
    """
    hostname: List[str] = []
    invalid: List[str] = []
    untrusted: List[str] = []
    unclassified: List[str] = []

    if mismatched_subject is not None:
        hostname.append(hostname_message(mismatched_subject, hostport))

    for failure in failures:
        kind, reason = classify_failure(failure)
        if kind is FailureKind.HOSTNAME_MISMATCH:
            hostname.append(hostname_message(failure.subject, hostport))
        elif kind is FailureKind.CERTIFICATE_INVALID:
            invalid.append(invalid_message(failure.subject, reason))
        elif kind is FailureKind.UNKNOWN_AUTHORITY:
            untrusted.append(unknown_authority_message(failure.subject, failure.issuer))
        else:
            unclassified.append(unclassified_message(hostport, failure.description))

    messages: List[str] = []
    for message in hostname + invalid + untrusted + unclassified:
        if message not in messages:
            messages.append(message)
    return messages


def _is_ip_address(host: str) -> bool:
    try:
        ip_address(host)
        return True
    except ValueError:
        return False


def explain_dns_failure(host: str, timeout: float) -> Optional[str]:
    """Ask DNS directly why a name did not resolve."""
    try:
        resolver = dns.resolver.Resolver()
    except dns.exception.DNSException as e:
        return str(e)
    resolver.lifetime = timeout

    for rdtype in ("A", "AAAA"):
        try:
            resolver.resolve(host, rdtype)
            return None
        except dns.resolver.NoAnswer:
            continue
        except dns.resolver.NXDOMAIN:
            return f"{host} does not exist in DNS"
        except dns.exception.Timeout:
            return f"DNS query for {host} timed out"
        except dns.exception.DNSException as e:
            return str(e)
    return f"{host} has no A or AAAA record"


class CertificateInspector:
    """Runs diagnostic handshakes against a fixed trust pool."""

    def __init__(self, trust_pool: Optional[TrustPool] = None, timeout: float = CONNECTION_TIMEOUT):
        self.trust_pool = trust_pool if trust_pool is not None else TrustPool()
        self.timeout = timeout

    def diagnose(self, endpoint: Union[Endpoint, str]) -> DiagnosticResult:
        """
        Connect to endpoint and check its certificate.

        Never raises: certificate problems land in messages, anything that
        stopped the handshake from happening lands in error.
        """
        hostport = str(endpoint)

        try:
            host, port = split_hostport(hostport)
            failures, leaf = self._handshake(host, port)
        except (HandshakeError, MalformedEndpoint) as e:
            logger.debug("Handshake with %s did not complete: %s", hostport, e)
            return DiagnosticResult.failed(str(e))

        if leaf is None:
            return DiagnosticResult.failed(f"{hostport} did not present a certificate")

        mismatched_subject = None
        if not self._matches_host(leaf, host):
            mismatched_subject = leaf.subject.rfc4514_string()

        if not failures and mismatched_subject is None:
            return DiagnosticResult.passed()

        return DiagnosticResult.findings(build_messages(hostport, failures, mismatched_subject))

    def _connect(self, host: str, port: int) -> socket.socket:
        try:
            return socket.create_connection((host, port), timeout=self.timeout)
        except socket.gaierror as e:
            detail = explain_dns_failure(host, self.timeout) or str(e)
            raise HandshakeError(f"Unable to resolve {host}: {detail}") from e
        except socket.timeout as e:
            raise HandshakeError(f"Connection to {host}:{port} timed out") from e
        except OSError as e:
            raise HandshakeError(f"Failed making request to {host}:{port}: {e}") from e

    def _handshake(self, host: str, port: int) -> Tuple[List[VerificationFailure], Optional[x509.Certificate]]:
        failures: List[VerificationFailure] = []

        def record(conn, cert, errno, depth, ok):
            if not ok:
                # pyOpenSSL re-raises callback errors from do_handshake
                try:
                    failure = VerificationFailure.from_x509(cert, errno, depth)
                except Exception as e:
                    logger.debug("Unable to decode certificate at depth %d: %s", depth, e)
                    failure = VerificationFailure.unreadable(errno, depth)
                logger.debug("Verify error %d at depth %d for %s", errno, depth, failure.subject)
                failures.append(failure)
            # Keep going so every problem in the chain is reported
            return True

        try:
            context = SSL.Context(SSL.TLS_CLIENT_METHOD)
            self.trust_pool.apply(context)
        except (SSL.Error, crypto.Error) as e:
            raise HandshakeError(f"Unable to set up TLS context: {e}") from e
        context.set_verify(SSL.VERIFY_PEER, record)

        deadline = time.monotonic() + self.timeout
        with self._connect(host, port) as sock:
            connection = SSL.Connection(context, sock)
            if not _is_ip_address(host):
                connection.set_tlsext_host_name(host.encode('idna'))
            connection.set_connect_state()

            self._drive_handshake(connection, sock, deadline, f"{host}:{port}")

            peer = connection.get_peer_certificate()
            try:
                connection.shutdown()
            except SSL.Error as e:
                logger.debug("TLS shutdown with %s:%d failed: %s", host, port, e)

        leaf = peer.to_cryptography() if peer is not None else None
        return failures, leaf

    def _drive_handshake(self, connection: SSL.Connection, sock: socket.socket,
                         deadline: float, hostport: str) -> None:
        # The socket has a timeout, so pyOpenSSL sees it as non-blocking
        while True:
            try:
                connection.do_handshake()
                return
            except SSL.WantReadError:
                want_read = True
            except SSL.WantWriteError:
                want_read = False
            except SSL.Error as e:
                raise HandshakeError(f"TLS handshake with {hostport} failed: {e}") from e

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HandshakeError(f"TLS handshake with {hostport} timed out")

            if want_read:
                ready, _, _ = select.select([sock], [], [], remaining)
            else:
                _, ready, _ = select.select([], [sock], [], remaining)
            if not ready:
                raise HandshakeError(f"TLS handshake with {hostport} timed out")

    def _matches_host(self, leaf: x509.Certificate, host: str) -> bool:
        try:
            if _is_ip_address(host):
                verify_certificate_ip_address(leaf, host)
            else:
                verify_certificate_hostname(leaf, host)
        except (VerificationError, CertificateError) as e:
            logger.debug("Certificate does not cover %s: %s", host, e)
            return False
        return True


def diagnose(endpoint: Union[Endpoint, str],
             trust_pool: Optional[TrustPool] = None,
             timeout: float = CONNECTION_TIMEOUT) -> DiagnosticResult:
    """Run one diagnostic handshake. See CertificateInspector.diagnose."""
    return CertificateInspector(trust_pool, timeout).diagnose(endpoint)
