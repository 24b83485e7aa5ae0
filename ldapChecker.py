#!/usr/bin/env python3

from ldapprobe import (
    DEFAULT_TIMEOUT,
    Diagnosis,
    ProbeTarget,
    ProbeRun,
    input_error,
    parse_trust_policy,
)
import argparse
import json
import logging
import sys


class ProbeArgumentParser(argparse.ArgumentParser):
    """Report bad flags with the InputError exit code instead of argparse's 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(Diagnosis.INPUT_ERROR.exit_code, f"{self.prog}: error: {message}\n")


def build_parser():
    parser = ProbeArgumentParser(
        prog="ldapcheck",
        description="LDAP/LDAPS connectivity probe: TCP reachability followed by an anonymous bind",
        epilog="Exit codes: 0 reachable and bound, 1 reachable but bind failed, 2 unreachable, 3 input error",
    )
    parser.add_argument('--target', required=True,
                        help="Host name, IP address or ldap[s]://host[:port] URL of the directory server")
    parser.add_argument('--port', type=int, default=None,
                        help="Port to probe (default 389, or 636 with --tls)")
    parser.add_argument('--tls', action='store_true', help="Use LDAPS (TLS from the first byte)")
    parser.add_argument('--trust', default='system',
                        help="Certificate trust policy: accept-all, system or pinned:<sha256> (default: system)")
    parser.add_argument('--ca-file', default=None, help="CA bundle used by the system trust policy")
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help=f"Per-stage timeout in seconds (default: {DEFAULT_TIMEOUT:g})")
    parser.add_argument('--json', action='store_true', help="Print the diagnosis as JSON")
    parser.add_argument('--log-file', default='ldap_probe.log', help="Log file (default: ldap_probe.log)")
    parser.add_argument('-v', '--verbose', action='store_true', help="Debug level logging")
    return parser


def print_section_header(section):
    """Print a section header"""
    print("\n" + "-"*60)
    print(f" {section}")
    print("-"*60)


def print_stage(label, outcome):
    if outcome is None:
        print(f"  - {label:<15} not attempted")
    elif outcome.succeeded:
        print(f"  ✓ {label:<15} {outcome.detail} ({outcome.duration_ms} ms)")
    else:
        print(f"  ✗ {label:<15} {outcome.error_kind.value}: {outcome.detail} ({outcome.duration_ms} ms)")


def render_console(result, trust_policy=None):
    """
    Print a diagnosis the way the interactive tool shows it

    Args:
        result (DiagnosisResult): Outcome of the probe
        trust_policy (TrustPolicy): Policy in effect, if one was parsed
    """
    print_section_header("LDAP Connectivity Probe")
    if result.target is not None:
        print(f"  • Target       : {result.target.url}")
    if trust_policy is not None and result.target is not None and result.target.use_tls:
        print(f"  • Trust policy : {trust_policy}")

    if result.diagnosis is not Diagnosis.INPUT_ERROR:
        print_section_header("Stages")
        print_stage("TCP connect", result.tcp)
        print_stage("Anonymous bind", result.bind)

    print_section_header(f"Diagnosis: {result.diagnosis.value}")
    marker = "✓" if result.diagnosis is Diagnosis.REACHABLE_AND_BOUND else "✗"
    print(f"  {marker} {result.summary}")

    if result.diagnosis is Diagnosis.REACHABLE_AND_BOUND:
        print("  ⚠️  Anonymous bind is ENABLED on this server")
    print()


def render_json(result):
    print(json.dumps(result.to_dict(), indent=2))


def main(argv=None):
    """Parse flags, run one probe and map the diagnosis to the exit code"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(filename=args.log_file, level=logging.DEBUG if args.verbose else logging.INFO)

    trust_policy = None
    try:
        target = ProbeTarget.from_string(args.target, port=args.port, use_tls=args.tls)
        trust_policy = parse_trust_policy(args.trust, ca_file=args.ca_file)
    except ValueError as e:
        logging.error(f"Invalid input: {e}")
        result = input_error(str(e))
    else:
        if trust_policy.insecure and target.use_tls and not args.json:
            print("  ⚠️  WARNING: certificate validation is DISABLED (--trust accept-all)")
        if trust_policy.insecure:
            logging.warning("Certificate validation disabled by --trust accept-all")
        result = ProbeRun(target, trust_policy, args.timeout).run()

    if args.json:
        render_json(result)
    else:
        render_console(result, trust_policy)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
