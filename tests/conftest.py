import ssl

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError

import ldapprobe

SELF_SIGNED_DER = b"0\x82\x01\x0aself-signed-certificate"


class FakeSocket:
    def __init__(self, der=SELF_SIGNED_DER):
        self.der = der

    def getpeercert(self, binary_form=False):
        return self.der


class FakeConnection:
    """
    Stands in for ldap3.Connection.

    Class attributes are set per test through the fake_ldap fixture:
    open_error, bind_error, bind_result, result, self_signed.
    """

    instances = []
    open_error = None
    bind_error = None
    bind_result = True
    result = None
    self_signed = False

    def __init__(self, server, authentication=None, receive_timeout=None, raise_exceptions=True):
        self.server = server
        self.authentication = authentication
        self.receive_timeout = receive_timeout
        self.closed = True
        self.socket = None
        self.opened = False
        self.bind_calls = 0
        self.unbind_calls = 0
        type(self).instances.append(self)

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        if self.server.ssl and self.self_signed and self.server.tls.validate == ssl.CERT_REQUIRED:
            raise LDAPSocketOpenError(
                "socket ssl wrapping error: [SSL: CERTIFICATE_VERIFY_FAILED] self-signed certificate")
        self.closed = False
        self.opened = True
        self.socket = FakeSocket() if self.server.ssl else object()

    def bind(self):
        self.bind_calls += 1
        if self.bind_error is not None:
            raise self.bind_error
        return self.bind_result

    def unbind(self):
        self.unbind_calls += 1
        self.closed = True
        return True


@pytest.fixture
def fake_ldap(monkeypatch):
    """Patch ldap3.Connection inside ldapprobe and hand back a configurable subclass."""
    class Connection(FakeConnection):
        instances = []

    monkeypatch.setattr(ldapprobe, "Connection", Connection)
    return Connection
