#!/usr/bin/env python3
"""
SSL Inspector

Connects to a TLS endpoint once and explains why a client would or would not
trust its certificate: expired certificates, hostname mismatches, untrusted
or self-signed issuers and broken chains.

Dependencies:
  pip install cryptography pyOpenSSL service-identity dnspython

Usage:
  python check_cert.py badssl.com
  python check_cert.py --endpoint https://expired.badssl.com
  python check_cert.py internal.example:8443 --truststore corp.p12 --truststore-password changeit
"""

import argparse
import dataclasses
import json
import logging
import platform
import sys
from typing import List, Optional

from cert_inspector import CertificateInspector, DiagnosticResult
from endpoint_validator import Endpoint, validate_endpoint
from inspector_config import VERSION, InspectorConfig, InspectorError, load_config
from trust_store import load_trust_pool

logger = logging.getLogger(__name__)


def setup_logging(debug: bool) -> None:
    """Send log records to stdout, DEBUG when requested, INFO otherwise."""
    logging.basicConfig(
        stream=sys.stdout,
        level=logging.DEBUG if debug else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


def print_banner() -> None:
    print("")
    print(f"\tRunning on:\t\t{platform.system().lower()}/{platform.machine()}")
    print(f"\tInspector Version:\t{VERSION}")
    print("")


def print_report(endpoint: Endpoint, result: DiagnosticResult) -> None:
    if result.valid:
        print(f"All checks passed connecting to {endpoint}")
    else:
        print(f"!!! Connection to {endpoint} will not work. !!!")
        print("")
        print(f"There are {len(result.messages)} certificate errors connecting to {endpoint}. They are:")
        print("")
        for i, message in enumerate(result.messages, 1):
            print(f" [{i}] - {message}")
    print("")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="check-cert",
        description="Diagnose why a TLS connection to an endpoint would or would not work",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s badssl.com
  %(prog)s --endpoint https://badssl.com:443
  %(prog)s ldaps://ldap.example.com:636
  %(prog)s internal.example:8443 --truststore corp.p12 --truststore-password changeit

Environment:
  SSL_INSPECTOR_ENDPOINT, SSL_INSPECTOR_TRUSTSTORE,
  SSL_INSPECTOR_TRUSTSTORE_PASSWORD, SSL_INSPECTOR_DEBUG, SSL_INSPECTOR_TIMEOUT
        """
    )

    parser.add_argument(
        "target",
        nargs="?",
        help="Endpoint to inspect (same as --endpoint)"
    )

    parser.add_argument(
        "--endpoint",
        help="Endpoint to inspect SSL on. Can be https://domain (assuming port 443) "
             "or a domain and port after a colon (:)"
    )

    parser.add_argument(
        "-X", "--debug",
        action="store_true",
        default=None,
        help="Enable debug logging"
    )

    parser.add_argument(
        "--truststore",
        help="PKCS#12 trust store with additional trusted root certificates"
    )

    parser.add_argument(
        "--truststore-password",
        help="Passphrase for the trust store (prefer SSL_INSPECTOR_TRUSTSTORE_PASSWORD)"
    )

    parser.add_argument(
        "--timeout",
        type=float,
        help="Connect and handshake timeout in seconds (default: 10)"
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results in JSON format"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {VERSION}"
    )

    return parser


def resolve_config(args: argparse.Namespace, base: InspectorConfig) -> InspectorConfig:
    """Command line flags win over environment settings."""
    overrides = {}
    endpoint = args.endpoint or args.target
    if endpoint:
        overrides['endpoint'] = endpoint
    if args.truststore:
        overrides['truststore'] = args.truststore
    if args.truststore_password is not None:
        overrides['truststore_password'] = args.truststore_password
    if args.debug:
        overrides['debug'] = True
    if args.timeout is not None:
        overrides['timeout'] = args.timeout
    return dataclasses.replace(base, **overrides)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_config(args, load_config())
        setup_logging(config.debug)

        if not args.json:
            print_banner()

        if config.timeout <= 0:
            print("Timeout must be positive")
            return 1

        endpoint = validate_endpoint(config.endpoint)
        trust_pool = load_trust_pool(config.truststore or None, config.truststore_password)

        result = CertificateInspector(trust_pool, timeout=config.timeout).diagnose(endpoint)

    except InspectorError as e:
        if args.json:
            print(json.dumps({'error': str(e), 'version': VERSION}, indent=2))
        else:
            print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nCheck cancelled by user")
        return 130

    if args.json:
        payload = {'endpoint': endpoint.hostport, 'version': VERSION}
        payload.update(result.to_dict())
        print(json.dumps(payload, indent=2))
        return 1 if result.inconclusive else 0

    if result.inconclusive:
        print(f"Error performing checks: {result.error}")
        return 1

    print_report(endpoint, result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
