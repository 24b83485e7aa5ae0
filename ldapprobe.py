#!/usr/bin/env python3

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import List, Optional
from urllib.parse import urlsplit
import hashlib
import hmac
import ipaddress
import logging
import math
import re
import socket
import ssl
import time

from ldap3 import Server, Connection, Tls, ANONYMOUS, NONE
from ldap3.core.exceptions import (
    LDAPException,
    LDAPCertificateError,
    LDAPCommunicationError,
    LDAPResponseTimeoutError,
)
from pyasn1.error import PyAsn1Error

LDAP_PORT = 389
LDAPS_PORT = 636
DEFAULT_TIMEOUT = 5.0

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9_-]{1,63}(?<!-)$")


class ErrorKind(Enum):
    DNS_RESOLUTION = "DNSResolution"
    CONNECT_TIMEOUT = "ConnectTimeout"
    CONNECT_REFUSED = "ConnectRefused"
    TRANSPORT_ERROR = "TransportError"
    TLS_HANDSHAKE = "TLSHandshake"
    BIND_REJECTED = "BindRejected"
    BIND_TIMEOUT = "BindTimeout"
    PROTOCOL_ERROR = "ProtocolError"
    INPUT_INVALID = "InputInvalid"


class Diagnosis(Enum):
    REACHABLE_AND_BOUND = "ReachableAndBound"
    REACHABLE_BIND_FAILED = "ReachableBindFailed"
    UNREACHABLE = "Unreachable"
    INPUT_ERROR = "InputError"

    @property
    def exit_code(self):
        return _EXIT_CODES[self]


_EXIT_CODES = {
    Diagnosis.REACHABLE_AND_BOUND: 0,
    Diagnosis.REACHABLE_BIND_FAILED: 1,
    Diagnosis.UNREACHABLE: 2,
    Diagnosis.INPUT_ERROR: 3,
}

# Troubleshooting hints appended to the summary for each failure kind
_HINTS = {
    ErrorKind.DNS_RESOLUTION: "Check the host name and the resolver configuration on this client.",
    ErrorKind.CONNECT_TIMEOUT: "No answer from the port; a firewall or ACL is probably dropping the traffic.",
    ErrorKind.CONNECT_REFUSED: "The host answered but nothing is listening on the port, or a firewall rejects it.",
    ErrorKind.TRANSPORT_ERROR: "The network path failed below the LDAP layer (routing, reset or host unreachable).",
    ErrorKind.TLS_HANDSHAKE: "The TLS session could not be established; check the certificate, its expiry and the trust policy.",
    ErrorKind.BIND_REJECTED: "The server is reachable but refuses anonymous binds; this is often a deliberate hardening setting.",
    ErrorKind.BIND_TIMEOUT: "The server accepted the connection but never answered the bind request.",
    ErrorKind.PROTOCOL_ERROR: "The service on this port did not answer like an LDAP server.",
    ErrorKind.INPUT_INVALID: "Fix the target and try again; no network traffic was sent.",
}


@dataclass(frozen=True)
class ProbeTarget:
    """
    A directory server endpoint to probe.

    When no port is given it is derived from use_tls (389, or 636 for LDAPS).
    An explicit port always takes precedence over the TLS default.
    """
    host: str
    port: Optional[int] = None
    use_tls: bool = False

    def __post_init__(self):
        if self.port is None:
            object.__setattr__(self, "port", LDAPS_PORT if self.use_tls else LDAP_PORT)

    @classmethod
    def from_string(cls, text, port=None, use_tls=False):
        """
        Build a target from a host name, an IP address or an LDAP URL.

        Args:
            text (str): "dc01.corp.local", "10.0.0.5" or "ldaps://dc01:3269"
            port (int): Explicit port, wins over a port in the URL
            use_tls (bool): Request LDAPS; an ldaps:// URL implies it

        Returns:
            ProbeTarget: The parsed target (not yet validated)

        Raises:
            ValueError: For an unknown URL scheme or an unparsable URL port
        """
        if "://" not in text:
            return cls(text, port, use_tls)

        parts = urlsplit(text)
        scheme = parts.scheme.lower()
        if scheme not in ("ldap", "ldaps"):
            raise ValueError(f"Unsupported URL scheme '{parts.scheme}', expected ldap:// or ldaps://")
        url_port = parts.port
        return cls(
            parts.hostname or "",
            port if port is not None else url_port,
            use_tls or scheme == "ldaps",
        )

    @property
    def url(self):
        scheme = "ldaps" if self.use_tls else "ldap"
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{scheme}://{host}:{self.port}"


@dataclass(frozen=True)
class StageOutcome:
    succeeded: bool
    duration_ms: int
    error_kind: Optional[ErrorKind] = None
    detail: str = ""

    @classmethod
    def success(cls, duration_ms, detail=""):
        return cls(True, duration_ms, None, detail)

    @classmethod
    def failure(cls, error_kind, duration_ms, detail):
        return cls(False, duration_ms, error_kind, detail)

    def to_dict(self):
        return {
            "succeeded": self.succeeded,
            "duration_ms": self.duration_ms,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class DiagnosisResult:
    diagnosis: Diagnosis
    summary: str
    tcp: StageOutcome
    bind: Optional[StageOutcome] = None
    target: Optional[ProbeTarget] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def exit_code(self):
        return self.diagnosis.exit_code

    def to_dict(self):
        return {
            "diagnosis": self.diagnosis.value,
            "summary": self.summary,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "target": asdict(self.target) if self.target else None,
            "tcp": self.tcp.to_dict(),
            "bind": self.bind.to_dict() if self.bind else None,
        }


def _elapsed_ms(start):
    return int(round((time.monotonic() - start) * 1000))


class TrustPolicy(ABC):
    """Decides whether the certificate presented by an LDAPS server is trusted."""

    name = "abstract"
    insecure = False

    @abstractmethod
    def tls(self):
        """Return the ldap3 Tls settings used for the handshake."""
        raise NotImplementedError

    @abstractmethod
    def validate(self, certificate_chain):
        """
        Check the peer chain after the handshake.

        Args:
            certificate_chain (list): DER encoded certificates, leaf first

        Returns:
            bool: False rejects the session as a failed handshake
        """
        raise NotImplementedError

    def __str__(self):
        return self.name


class AcceptAll(TrustPolicy):
    """Trust any certificate. Insecure; only ever selected explicitly."""

    name = "accept-all"
    insecure = True

    def tls(self):
        return Tls(validate=ssl.CERT_NONE)

    def validate(self, certificate_chain):
        return True


class SystemTrustStore(TrustPolicy):
    """Verify the chain against the platform roots (or a CA bundle) and the host name."""

    name = "system"

    def __init__(self, ca_file=None):
        self.ca_file = ca_file

    def tls(self):
        return Tls(validate=ssl.CERT_REQUIRED, ca_certs_file=self.ca_file)

    def validate(self, certificate_chain):
        # chain and host name were verified during the handshake
        return bool(certificate_chain)

    def __str__(self):
        if self.ca_file:
            return f"{self.name} (CA file {self.ca_file})"
        return self.name


class PinnedFingerprint(TrustPolicy):
    """Trust exactly one leaf certificate, identified by its SHA-256 fingerprint."""

    name = "pinned"

    def __init__(self, fingerprint):
        normalized = fingerprint.strip().lower().replace(":", "")
        if normalized.startswith("sha256"):
            normalized = normalized[len("sha256"):].lstrip("=")
        if not re.fullmatch(r"[0-9a-f]{64}", normalized):
            raise ValueError(f"Invalid SHA-256 fingerprint: {fingerprint}")
        self.fingerprint = normalized

    def tls(self):
        # the pin is the trust anchor, so the chain itself is not verified
        return Tls(validate=ssl.CERT_NONE)

    def validate(self, certificate_chain):
        if not certificate_chain:
            return False
        presented = hashlib.sha256(certificate_chain[0]).hexdigest()
        if not hmac.compare_digest(presented, self.fingerprint):
            logging.warning(f"Certificate fingerprint mismatch: expected {self.fingerprint}, got {presented}")
            return False
        return True

    def __str__(self):
        return f"{self.name}:{self.fingerprint}"


def parse_trust_policy(text, ca_file=None):
    """
    Parse a --trust value.

    Args:
        text (str): "accept-all", "system" or "pinned:<sha256>"
        ca_file (str): Optional CA bundle for the system policy

    Returns:
        TrustPolicy: The selected policy

    Raises:
        ValueError: If the value is not recognised
    """
    value = (text or "").strip()
    if value.lower() == "accept-all":
        return AcceptAll()
    if value.lower() == "system":
        return SystemTrustStore(ca_file=ca_file)
    if value.lower().startswith("pinned:"):
        return PinnedFingerprint(value[len("pinned:"):])
    raise ValueError(f"Unknown trust policy '{text}', expected accept-all, system or pinned:<sha256>")


def is_valid_host(host):
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass

    name = host[:-1] if host.endswith(".") else host
    if not name or len(name) > 253:
        return False
    return all(_HOSTNAME_LABEL.match(label) for label in name.split("."))


def validate_target(target):
    """
    List everything wrong with a target before any network I/O.

    Returns:
        list: Human readable problems, empty when the target is usable
    """
    problems = []
    host = target.host if isinstance(target.host, str) else ""
    if not host.strip():
        problems.append("host is empty")
    elif not is_valid_host(host):
        problems.append(f"'{host}' is not a valid host name or IP address")

    port = target.port
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        problems.append(f"port {port!r} is outside 1-65535")
    return problems


def validate_timeout(timeout):
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        return [f"timeout {timeout!r} must be a positive number of seconds"]
    if not math.isfinite(timeout) or timeout <= 0:
        return [f"timeout {timeout!r} must be a positive number of seconds"]
    return []


def probe_tcp(target, timeout=DEFAULT_TIMEOUT):
    """
    Open (and immediately close) a TCP connection to the target.

    Every resolved address is tried in turn until one connects or the
    overall timeout runs out.

    Args:
        target (ProbeTarget): Endpoint to reach
        timeout (float): Budget in seconds for the whole stage

    Returns:
        StageOutcome: Never raises for network failures
    """
    start = time.monotonic()
    deadline = start + timeout
    logging.info(f"TCP probe to {target.host}:{target.port} (timeout {timeout}s)")

    try:
        addresses = socket.getaddrinfo(target.host, target.port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        logging.error(f"Could not resolve {target.host}: {e}")
        return StageOutcome.failure(ErrorKind.DNS_RESOLUTION, _elapsed_ms(start),
                                    f"could not resolve {target.host}: {e}")

    error_kind = ErrorKind.TRANSPORT_ERROR
    detail = f"no usable address for {target.host}"
    for family, socktype, proto, _, sockaddr in addresses:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            error_kind = ErrorKind.CONNECT_TIMEOUT
            detail = f"no connection to {target.host}:{target.port} within {timeout}s"
            break
        try:
            with socket.socket(family, socktype, proto) as sock:
                sock.settimeout(remaining)
                sock.connect(sockaddr)
        except socket.timeout:
            error_kind = ErrorKind.CONNECT_TIMEOUT
            detail = f"no connection to {sockaddr[0]}:{target.port} within {timeout}s"
        except ConnectionRefusedError as e:
            error_kind = ErrorKind.CONNECT_REFUSED
            detail = f"connection to {sockaddr[0]}:{target.port} refused: {e}"
        except OSError as e:
            error_kind = ErrorKind.TRANSPORT_ERROR
            detail = f"connection to {sockaddr[0]}:{target.port} failed: {e}"
        else:
            elapsed = _elapsed_ms(start)
            logging.info(f"TCP connect to {sockaddr[0]}:{target.port} succeeded in {elapsed} ms")
            return StageOutcome.success(elapsed, f"connected to {sockaddr[0]}:{target.port}")
        logging.warning(f"TCP probe: {detail}")

    return StageOutcome.failure(error_kind, _elapsed_ms(start), detail)


def _is_tls_failure(error):
    if isinstance(error, (ssl.SSLError, ssl.CertificateError, LDAPCertificateError)):
        return True
    # ldap3 reports open failures as a history of (time, type, value, address)
    for arg in error.args:
        if isinstance(arg, (list, tuple)):
            for entry in arg:
                parts = entry if isinstance(entry, tuple) else (entry,)
                if any(isinstance(part, BaseException) and _is_tls_failure(part) for part in parts):
                    return True
    text = str(error).lower()
    return "ssl wrapping error" in text or "certificate" in text


def _is_timeout(error):
    return isinstance(error, (socket.timeout, LDAPResponseTimeoutError)) or "timed out" in str(error).lower()


def _peer_chain(connection):
    sock = connection.socket
    if sock is None or not hasattr(sock, "getpeercert"):
        return []
    der = sock.getpeercert(binary_form=True)
    return [der] if der else []


def _teardown(connection):
    if connection.closed:
        return
    try:
        connection.unbind()
    except (LDAPException, OSError) as e:
        logging.debug(f"Ignoring error while closing LDAP session: {e}")


def probe_bind(target, trust_policy=None, timeout=DEFAULT_TIMEOUT):
    """
    Open an LDAP session (LDAPS when the target asks for it) and try an anonymous bind.

    Args:
        target (ProbeTarget): Endpoint that already passed the TCP probe
        trust_policy (TrustPolicy): Certificate policy, SystemTrustStore when omitted
        timeout (float): Seconds allowed for connecting and for the bind response

    Returns:
        StageOutcome: Never raises for network or protocol failures
    """
    if trust_policy is None:
        trust_policy = SystemTrustStore()
    start = time.monotonic()
    logging.info(f"Anonymous bind probe to {target.url} (trust policy: {trust_policy})")

    try:
        server = Server(target.host, port=target.port, use_ssl=target.use_tls,
                        tls=trust_policy.tls() if target.use_tls else None,
                        get_info=NONE, connect_timeout=timeout)
        connection = Connection(server, authentication=ANONYMOUS,
                                receive_timeout=timeout, raise_exceptions=False)
    except LDAPException as e:
        logging.error(f"Could not set up LDAP session for {target.url}: {e}")
        return StageOutcome.failure(ErrorKind.PROTOCOL_ERROR, _elapsed_ms(start),
                                    f"invalid LDAP session parameters: {e}")

    try:
        return _bind_session(connection, target, trust_policy, start)
    finally:
        _teardown(connection)


def _bind_session(connection, target, trust_policy, start):
    try:
        connection.open()
    except LDAPException as e:
        if target.use_tls and _is_tls_failure(e):
            logging.error(f"TLS handshake with {target.url} failed: {e}")
            return StageOutcome.failure(ErrorKind.TLS_HANDSHAKE, _elapsed_ms(start),
                                        f"TLS handshake failed: {e}")
        logging.error(f"Could not open LDAP session to {target.url}: {e}")
        return StageOutcome.failure(ErrorKind.TRANSPORT_ERROR, _elapsed_ms(start),
                                    f"could not open LDAP session: {e}")

    if target.use_tls and not trust_policy.validate(_peer_chain(connection)):
        logging.error(f"Certificate from {target.url} rejected by trust policy {trust_policy}")
        return StageOutcome.failure(ErrorKind.TLS_HANDSHAKE, _elapsed_ms(start),
                                    f"certificate rejected by trust policy {trust_policy}")

    try:
        bound = connection.bind()
    except (LDAPException, PyAsn1Error) as e:
        if _is_timeout(e):
            logging.error(f"No bind response from {target.url}: {e}")
            return StageOutcome.failure(ErrorKind.BIND_TIMEOUT, _elapsed_ms(start),
                                        f"no bind response: {e}")
        if isinstance(e, LDAPCommunicationError):
            logging.error(f"LDAP session to {target.url} broke during bind: {e}")
            return StageOutcome.failure(ErrorKind.PROTOCOL_ERROR, _elapsed_ms(start),
                                        f"session dropped during bind: {e}")
        logging.error(f"Unexpected bind response from {target.url}: {e}")
        return StageOutcome.failure(ErrorKind.PROTOCOL_ERROR, _elapsed_ms(start),
                                    f"unexpected bind response: {e}")
    except (IndexError, KeyError, ValueError, TypeError) as e:
        # ldap3 decodes BER itself and does not wrap errors on short or truncated messages
        logging.error(f"Undecodable bind response from {target.url}: {type(e).__name__}: {e}")
        return StageOutcome.failure(ErrorKind.PROTOCOL_ERROR, _elapsed_ms(start),
                                    f"unexpected bind response: malformed LDAP message ({type(e).__name__}: {e})")

    result = connection.result or {}
    elapsed = _elapsed_ms(start)
    if bound:
        logging.info(f"Anonymous bind to {target.url} accepted in {elapsed} ms")
        return StageOutcome.success(elapsed, "anonymous bind accepted")

    if result.get("result") is None or result.get("type") not in (None, "bindResponse"):
        logging.error(f"Unexpected bind response from {target.url}: {result}")
        return StageOutcome.failure(ErrorKind.PROTOCOL_ERROR, elapsed,
                                    f"unexpected bind response: {result or 'nothing received'}")

    detail = f"anonymous bind rejected: {result.get('description')} ({result.get('result')})"
    if result.get("message"):
        detail += f" - {result['message']}"
    logging.warning(f"{target.url}: {detail}")
    return StageOutcome.failure(ErrorKind.BIND_REJECTED, elapsed, detail)


def _explain(headline, outcome):
    return f"{headline}: {outcome.error_kind.value} - {outcome.detail}. {_HINTS[outcome.error_kind]}"


def classify(tcp, bind=None, target=None):
    """
    Combine the stage outcomes into a diagnosis. Pure and total.

    Args:
        tcp (StageOutcome): TCP stage outcome (or the failed pre-flight check)
        bind (StageOutcome): Bind stage outcome, None when it did not run
        target (ProbeTarget): Carried into the result for presentation

    Returns:
        DiagnosisResult
    """
    where = f" {target.url}" if target is not None else ""

    if not tcp.succeeded:
        if tcp.error_kind is ErrorKind.INPUT_INVALID:
            return DiagnosisResult(Diagnosis.INPUT_ERROR,
                                   f"Invalid target: {tcp.detail}. {_HINTS[ErrorKind.INPUT_INVALID]}",
                                   tcp, None, target, ErrorKind.INPUT_INVALID)
        if tcp.error_kind is None:
            tcp = StageOutcome.failure(ErrorKind.TRANSPORT_ERROR, tcp.duration_ms, tcp.detail or "TCP probe failed")
        return DiagnosisResult(Diagnosis.UNREACHABLE,
                               _explain(f"Target{where} is unreachable", tcp),
                               tcp, None, target, tcp.error_kind)

    if bind is None:
        return DiagnosisResult(Diagnosis.REACHABLE_BIND_FAILED,
                               f"Target{where} accepts TCP connections but the bind stage did not run.",
                               tcp, None, target, None)

    if bind.succeeded:
        return DiagnosisResult(Diagnosis.REACHABLE_AND_BOUND,
                               f"Target{where} is reachable and accepted an anonymous bind "
                               f"(TCP {tcp.duration_ms} ms, bind {bind.duration_ms} ms).",
                               tcp, bind, target, None)

    if bind.error_kind is None:
        bind = StageOutcome.failure(ErrorKind.PROTOCOL_ERROR, bind.duration_ms, bind.detail or "bind failed")
    return DiagnosisResult(Diagnosis.REACHABLE_BIND_FAILED,
                           _explain(f"Target{where} is reachable but the bind failed", bind),
                           tcp, bind, target, bind.error_kind)


def input_error(detail, target=None):
    """Diagnosis for a target that could not even be built or validated."""
    return classify(StageOutcome.failure(ErrorKind.INPUT_INVALID, 0, detail), None, target)


class ProbeState(Enum):
    IDLE = "Idle"
    TCP_PROBING = "TCPProbing"
    BIND_PROBING = "BindProbing"
    UNREACHABLE = "Unreachable"
    REACHABLE_AND_BOUND = "ReachableAndBound"
    REACHABLE_BIND_FAILED = "ReachableBindFailed"
    INPUT_ERROR = "InputError"


_TERMINAL_STATES = {
    Diagnosis.UNREACHABLE: ProbeState.UNREACHABLE,
    Diagnosis.REACHABLE_AND_BOUND: ProbeState.REACHABLE_AND_BOUND,
    Diagnosis.REACHABLE_BIND_FAILED: ProbeState.REACHABLE_BIND_FAILED,
    Diagnosis.INPUT_ERROR: ProbeState.INPUT_ERROR,
}


class ProbeRun:
    """
    One diagnosis of one target: Idle -> TCPProbing -> (BindProbing) -> terminal.

    The stage functions are injectable; each runs at most once.
    Runs share nothing, so several can execute in parallel threads.
    """

    def __init__(self, target, trust_policy=None, timeout=DEFAULT_TIMEOUT,
                 tcp_prober=probe_tcp, bind_prober=probe_bind):
        self.target = target
        self.trust_policy = trust_policy if trust_policy is not None else SystemTrustStore()
        self.timeout = timeout
        self.tcp_prober = tcp_prober
        self.bind_prober = bind_prober
        self.state = ProbeState.IDLE
        self.history: List[ProbeState] = [ProbeState.IDLE]
        self.result: Optional[DiagnosisResult] = None

    def _advance(self, state):
        logging.debug(f"{self.target.host}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _finish(self, result):
        self._advance(_TERMINAL_STATES[result.diagnosis])
        self.result = result
        logging.info(f"Diagnosis for {self.target.host}: {result.diagnosis.value}")
        return result

    def run(self):
        if self.state is not ProbeState.IDLE:
            raise RuntimeError(f"Probe for {self.target.host} has already run")

        problems = validate_target(self.target) + validate_timeout(self.timeout)
        if problems:
            logging.error(f"Rejected target {self.target}: {'; '.join(problems)}")
            return self._finish(input_error("; ".join(problems), self.target))

        self._advance(ProbeState.TCP_PROBING)
        tcp = self.tcp_prober(self.target, self.timeout)
        if not tcp.succeeded:
            return self._finish(classify(tcp, None, self.target))

        self._advance(ProbeState.BIND_PROBING)
        bind = self.bind_prober(self.target, self.trust_policy, self.timeout)
        return self._finish(classify(tcp, bind, self.target))


def diagnose(target, trust_policy=None, timeout=DEFAULT_TIMEOUT):
    """
    Run the two-stage probe against a target.

    Args:
        target (ProbeTarget): Endpoint to diagnose
        trust_policy (TrustPolicy): Certificate policy for LDAPS, SystemTrustStore by default
        timeout (float): Per-stage timeout in seconds

    Returns:
        DiagnosisResult
    """
    return ProbeRun(target, trust_policy, timeout).run()
