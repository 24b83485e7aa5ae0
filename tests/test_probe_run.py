import pytest

from ldapprobe import (
    AcceptAll,
    Diagnosis,
    ErrorKind,
    ProbeRun,
    ProbeState,
    ProbeTarget,
    StageOutcome,
    SystemTrustStore,
    diagnose,
)


class Recorder:
    """Stage stub that records its calls and returns a fixed outcome."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        return self.outcome


def run(target, tcp, bind, **kwargs):
    probe = ProbeRun(target, tcp_prober=tcp, bind_prober=bind, **kwargs)
    return probe, probe.run()


def test_scenario_a_reachable_and_bound():
    tcp = Recorder(StageOutcome.success(3, "connected"))
    bind = Recorder(StageOutcome.success(8, "anonymous bind accepted"))

    probe, result = run(ProbeTarget("dc01.corp.local"), tcp, bind)

    assert result.diagnosis is Diagnosis.REACHABLE_AND_BOUND
    assert probe.history == [ProbeState.IDLE, ProbeState.TCP_PROBING,
                             ProbeState.BIND_PROBING, ProbeState.REACHABLE_AND_BOUND]
    assert tcp.calls[0][0].port == 389


def test_scenario_b_bind_rejected():
    tcp = Recorder(StageOutcome.success(3, "connected"))
    bind = Recorder(StageOutcome.failure(ErrorKind.BIND_REJECTED, 8, "inappropriateAuthentication (48)"))

    probe, result = run(ProbeTarget("dc01.corp.local"), tcp, bind)

    assert result.diagnosis is Diagnosis.REACHABLE_BIND_FAILED
    assert result.error_kind is ErrorKind.BIND_REJECTED
    assert probe.state is ProbeState.REACHABLE_BIND_FAILED


@pytest.mark.parametrize("kind", [
    ErrorKind.CONNECT_REFUSED,
    ErrorKind.CONNECT_TIMEOUT,
    ErrorKind.DNS_RESOLUTION,
    ErrorKind.TRANSPORT_ERROR,
])
def test_scenario_c_unreachable_never_binds(kind):
    tcp = Recorder(StageOutcome.failure(kind, 3, "blocked"))
    bind = Recorder(StageOutcome.success(1))

    probe, result = run(ProbeTarget("dc01.corp.local"), tcp, bind)

    assert result.diagnosis is Diagnosis.UNREACHABLE
    assert bind.calls == []
    assert probe.history == [ProbeState.IDLE, ProbeState.TCP_PROBING, ProbeState.UNREACHABLE]


def test_scenario_d_tls_valid_certificate(fake_ldap):
    tcp = Recorder(StageOutcome.success(3, "connected"))
    target = ProbeTarget("dc01.corp.local", use_tls=True)

    probe = ProbeRun(target, SystemTrustStore(), tcp_prober=tcp)
    result = probe.run()

    assert result.diagnosis is Diagnosis.REACHABLE_AND_BOUND
    assert fake_ldap.instances[0].server.port == 636


def test_scenario_d_tls_expired_certificate(fake_ldap):
    from ldap3.core.exceptions import LDAPSocketOpenError
    fake_ldap.open_error = LDAPSocketOpenError(
        "socket ssl wrapping error: [SSL: CERTIFICATE_VERIFY_FAILED] certificate has expired")
    tcp = Recorder(StageOutcome.success(3, "connected"))
    target = ProbeTarget("dc01.corp.local", use_tls=True)

    result = ProbeRun(target, SystemTrustStore(), tcp_prober=tcp).run()

    assert result.diagnosis is Diagnosis.REACHABLE_BIND_FAILED
    assert result.error_kind is ErrorKind.TLS_HANDSHAKE


@pytest.mark.parametrize("target", [
    ProbeTarget(""),
    ProbeTarget("   "),
    ProbeTarget("dc01.corp.local", port=0),
    ProbeTarget("dc01.corp.local", port=70000),
    ProbeTarget("bad host!"),
])
def test_scenario_e_input_error_without_network(target):
    tcp = Recorder(StageOutcome.success(1))
    bind = Recorder(StageOutcome.success(1))

    probe, result = run(target, tcp, bind)

    assert result.diagnosis is Diagnosis.INPUT_ERROR
    assert tcp.calls == [] and bind.calls == []
    assert probe.history == [ProbeState.IDLE, ProbeState.INPUT_ERROR]


@pytest.mark.parametrize("timeout", [0, -1, float("nan"), float("inf")])
def test_unusable_timeout_is_input_error(timeout):
    tcp = Recorder(StageOutcome.success(1))

    _, result = run(ProbeTarget("dc01"), tcp, Recorder(None), timeout=timeout)

    assert result.diagnosis is Diagnosis.INPUT_ERROR
    assert tcp.calls == []


def test_stages_receive_policy_and_timeout():
    tcp = Recorder(StageOutcome.success(1))
    bind = Recorder(StageOutcome.success(1))
    policy = AcceptAll()
    target = ProbeTarget("10.0.0.5", use_tls=True)

    run(target, tcp, bind, trust_policy=policy, timeout=2.5)

    assert tcp.calls == [(target, 2.5)]
    assert bind.calls == [(target, policy, 2.5)]


def test_default_policy_is_system_store():
    probe = ProbeRun(ProbeTarget("dc01"))

    assert isinstance(probe.trust_policy, SystemTrustStore)


def test_runs_only_once():
    probe = ProbeRun(ProbeTarget("dc01"), tcp_prober=Recorder(StageOutcome.failure(ErrorKind.CONNECT_REFUSED, 1, "x")))
    probe.run()

    with pytest.raises(RuntimeError):
        probe.run()


def test_diagnose_against_closed_local_port():
    import socket
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    result = diagnose(ProbeTarget("127.0.0.1", port), timeout=2)

    assert result.diagnosis is Diagnosis.UNREACHABLE
    assert result.error_kind is ErrorKind.CONNECT_REFUSED
