#!/usr/bin/env python3
"""
vmfleet/cli/fleetctl.py

CLI for a VM fleet hosting a kubeadm Kubernetes cluster:
  - plan       show the actions needed to reach the desired fleet
  - apply      create/destroy nodes and wait until new nodes are Ready
  - destroy    tear down every node of the fleet
  - bootstrap  form the cluster on the Ready nodes
  - status     show the known node records and bootstrap state

The fleet is described by named options, optionally on top of a YAML file
(--fleet-file). Exit codes: 0 success, 3 invalid spec, 4 provisioning
failure, 5 readiness timeout, 6 bootstrap failure, 7 partially formed
cluster, 1 anything else.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import SecretStr, ValidationError

from vmfleet.deployment.orchestrator import FleetOrchestrator, build_orchestrator
from vmfleet.deployment.planner import check_spec
from vmfleet.errors import (
    EXIT_GENERIC,
    EXIT_OK,
    BootstrapError,
    FleetError,
    InvalidSpec,
    JoinError,
    ProvisionError,
    ReadinessError,
)
from vmfleet.models.cluster import BootstrapReport, FormationStatus
from vmfleet.models.fleet import FleetSpec
from vmfleet.models.settings import (
    BootstrapSettings,
    MinioSettings,
    OrchestratorSettings,
    ProbeSettings,
    StorageSettings,
    TokenStoreSettings,
)
from vmfleet.models.state import ActionOutcome, ApplyReport, FleetState
from vmfleet.models.vault import VaultSettings
from vmfleet.utils.async_command_runner import CommandError

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[FleetSpec, OrchestratorSettings], Awaitable[FleetOrchestrator]]

# Subcommands that act on the desired state; they reject an unusable spec
# before the hypervisor is contacted.
_SPEC_CHECKED_COMMANDS = ("plan", "apply", "bootstrap")

# (field, type, help) for the per-role FleetSpec options.
_ROLE_FIELDS: List[Tuple[str, Any, str]] = [
    ("count", int, "number of nodes"),
    ("hostname_prefix", str, "hostname prefix; hostnames are <prefix><index:02d>"),
    ("cpus", int, "vCPUs per node"),
    ("memory_mib", int, "memory per node in MiB"),
    ("disk_gib", int, "root disk size in GiB"),
    ("disk_pool", str, "storage pool for base image and node volumes"),
    ("base_image", str, "base OS image volume name in the pool"),
    ("ssh_user", str, "administrative user created on the node"),
    ("ssh_public_key", str, "public key authorized for the admin user"),
    ("ssh_private_key_path", str, "local private key matching the public key"),
    ("timezone", str, "node timezone"),
]

_ROLE_KEYS = {"control-plane": "control_plane", "worker": "worker"}


#
# Subcommand handlers
#
async def run_plan(orch: FleetOrchestrator, args: argparse.Namespace) -> int:
    plan = await orch.plan(refresh=args.refresh)
    if args.json:
        print(plan.model_dump_json(indent=2))
    elif plan.is_empty:
        print("No changes. The fleet matches the desired state.")
    else:
        for line in plan.describe():
            print(line)
    return EXIT_OK


async def run_apply(orch: FleetOrchestrator, args: argparse.Namespace) -> int:
    report = await orch.apply(refresh=args.refresh)
    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        _print_apply(report)
    if report.provision_failures:
        return ProvisionError.exit_code
    if report.not_ready:
        return ReadinessError.exit_code
    return EXIT_OK


async def run_destroy(orch: FleetOrchestrator, args: argparse.Namespace) -> int:
    outcomes = await orch.destroy(refresh=args.refresh)
    if args.json:
        print("[" + ",".join(o.model_dump_json() for o in outcomes) + "]")
    else:
        _print_outcomes(outcomes)
        if not outcomes:
            print("Nothing to destroy.")
    return EXIT_OK if all(o.ok for o in outcomes) else ProvisionError.exit_code


async def run_bootstrap(orch: FleetOrchestrator, args: argparse.Namespace) -> int:
    report = await orch.bootstrap()
    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        _print_bootstrap(report)
    if report.status == FormationStatus.FORMED:
        return EXIT_OK
    if report.status == FormationStatus.PARTIALLY_FORMED:
        return JoinError.exit_code
    return BootstrapError.exit_code


async def run_status(orch: FleetOrchestrator, args: argparse.Namespace) -> int:
    state = await orch.status(refresh=args.refresh)
    if args.json:
        print(state.model_dump_json(indent=2))
    else:
        _print_state(state)
    return EXIT_OK


#
# Output
#
def _print_outcomes(outcomes: List[ActionOutcome]) -> None:
    for o in outcomes:
        mark = "ok" if o.ok else f"FAILED: {o.error}"
        print(f"{o.action.describe()}: {mark}")


def _print_apply(report: ApplyReport) -> None:
    _print_outcomes(report.outcomes)
    if report.ready:
        print("Ready: " + ", ".join(report.ready))
    for node_id, reason in sorted(report.not_ready.items()):
        print(f"Not ready: {node_id}: {reason}")


def _print_bootstrap(report: BootstrapReport) -> None:
    print(f"Cluster: {report.status.value} (phase {report.phase.value})")
    if report.control_plane:
        print(f"Control plane: {report.control_plane}")
    for node in report.nodes:
        line = f"  {node.hostname} [{node.role.value}]: {node.state.value}"
        if node.error:
            line += f" ({node.error})"
        print(line)
    if report.healthy_nodes:
        print("Healthy: " + ", ".join(report.healthy_nodes))
    if report.error:
        print(f"Error: {report.error}", file=sys.stderr)


def _print_state(state: FleetState) -> None:
    print(f"Bootstrap phase: {state.bootstrap_phase.value}")
    if not state.records:
        print("No nodes.")
    for r in state.records:
        line = f"  {r.hostname:<20} {r.role.value:<14} {r.status.value:<8} {r.ip or '-'}"
        if r.error:
            line += f"  ({r.error})"
        print(line)


#
# Helpers
#
def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def build_spec(args: argparse.Namespace) -> FleetSpec:
    """
    Build the FleetSpec from --fleet-file (if given) overlaid with any named
    options.

    Raises:
        ValueError / ValidationError: invalid spec.
        OSError: unreadable file.
    """
    base = _read_text(args.fleet_file) if args.fleet_file else ""
    overrides: Dict[str, Any] = {}
    if args.cluster_name is not None:
        overrides["cluster_name"] = args.cluster_name
    if args.network is not None:
        overrides["network"] = args.network

    for key in _ROLE_KEYS.values():
        role_over: Dict[str, Any] = {}
        for field, _, _ in _ROLE_FIELDS:
            value = getattr(args, f"{key}__{field}")
            if value is not None:
                role_over[field] = value
        key_file = getattr(args, f"{key}__ssh_public_key_file")
        if key_file is not None:
            role_over["ssh_public_key"] = _read_text(key_file).strip()
        if role_over:
            overrides[key] = role_over

    return FleetSpec.from_yaml(base, overrides)


def build_settings(args: argparse.Namespace) -> OrchestratorSettings:
    minio = None
    if args.state_backend == "minio":
        minio = MinioSettings(
            endpoint=args.minio_endpoint,
            bucket=args.minio_bucket,
            access_key=args.minio_access_key,
            secret_key=args.minio_secret_key,
            secure=not args.minio_insecure,
        )
    vault = None
    if args.token_store == "vault":
        vault = VaultSettings(
            vault_addr=args.vault_addr,
            vault_role_name=args.vault_role_name,
            direct_vault_token=SecretStr(args.vault_token) if args.vault_token else None,
            token_path=args.vault_token_path,
            verify_ssl=not args.no_verify_ssl,
        )

    bootstrap_over: Dict[str, Any] = {
        "kubernetes_version": args.kubernetes_version,
        "pod_network_cidr": args.pod_network_cidr,
        "pod_network_manifest": args.pod_network_manifest,
        "join_retries": args.join_retries,
        "join_retry_delay": args.join_retry_delay,
        "node_status_timeout": args.node_status_timeout,
    }
    probe_over: Dict[str, Any] = {
        "interval": args.probe_interval,
        "node_timeout": args.node_timeout,
        "fleet_timeout": args.fleet_timeout,
        "ssh_connect_timeout": args.ssh_connect_timeout,
    }
    return OrchestratorSettings(
        libvirt_uri=args.libvirt_uri,
        storage=StorageSettings(
            backend=args.state_backend, state_dir=args.state_dir, minio=minio
        ),
        tokens=TokenStoreSettings(
            backend=args.token_store, vault=vault, vault_path=args.vault_path
        ),
        probe=ProbeSettings(**{k: v for k, v in probe_over.items() if v is not None}),
        bootstrap=BootstrapSettings(
            prepare_nodes=not args.no_prepare_nodes,
            **{k: v for k, v in bootstrap_over.items() if v is not None},
        ),
        max_parallel_actions=args.max_parallel,
    )


async def run_command(
    args: argparse.Namespace,
    orchestrator_factory: OrchestratorFactory = build_orchestrator,
) -> int:
    """Build spec and settings, run the selected subcommand, map errors to exit codes."""
    try:
        spec = build_spec(args)
        settings = build_settings(args)
    except (ValidationError, ValueError, yaml.YAMLError, OSError) as exc:
        print(f"Invalid fleet specification: {exc}", file=sys.stderr)
        return InvalidSpec.exit_code

    if args.command in _SPEC_CHECKED_COMMANDS:
        try:
            check_spec(spec)
        except InvalidSpec as exc:
            print(f"Invalid fleet specification: {exc}", file=sys.stderr)
            return exc.exit_code

    handler: Callable[[FleetOrchestrator, argparse.Namespace], Awaitable[int]] = args.func
    try:
        orch = await orchestrator_factory(spec, settings)
        try:
            return await handler(orch, args)
        finally:
            await orch.close()
    except FleetError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_code
    except CommandError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_GENERIC


def _add_fleet_args(subparser: argparse.ArgumentParser) -> None:
    """FleetSpec fields as named options (each overrides --fleet-file)."""
    subparser.add_argument("--fleet-file", help="YAML FleetSpec to start from.")
    subparser.add_argument("--cluster-name", help="Cluster name (namespaces volume names).")
    subparser.add_argument("--network", help="Shared libvirt network (DHCP).")
    for flag, key in _ROLE_KEYS.items():
        group = subparser.add_argument_group(f"{flag} nodes")
        for field, ftype, help_text in _ROLE_FIELDS:
            group.add_argument(
                f"--{flag}-{field.replace('_', '-')}",
                dest=f"{key}__{field}",
                type=ftype,
                help=f"{flag}: {help_text}",
            )
        group.add_argument(
            f"--{flag}-ssh-public-key-file",
            dest=f"{key}__ssh_public_key_file",
            help=f"{flag}: read the public key from this file",
        )


def _add_settings_args(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--libvirt-uri", default="qemu:///system")
    subparser.add_argument(
        "--refresh",
        action="store_true",
        help="Re-read actual state from the hypervisor before acting.",
    )
    subparser.add_argument("--json", action="store_true", help="Print JSON output.")
    subparser.add_argument("--max-parallel", type=int, default=4)

    store = subparser.add_argument_group("state storage")
    store.add_argument("--state-backend", choices=["local", "minio"], default="local")
    store.add_argument("--state-dir", default=".vmfleet")
    store.add_argument("--minio-endpoint")
    store.add_argument("--minio-bucket", default="vmfleet")
    store.add_argument("--minio-access-key")
    store.add_argument("--minio-secret-key")
    store.add_argument("--minio-insecure", action="store_true")

    tokens = subparser.add_argument_group("join token store")
    tokens.add_argument("--token-store", choices=["file", "vault"], default="file")
    tokens.add_argument("--vault-addr", default="http://127.0.0.1:8200")
    auth = tokens.add_mutually_exclusive_group()
    auth.add_argument("--vault-role-name", help="Vault K8s auth role name.")
    auth.add_argument("--vault-token", help="Direct Vault token.")
    tokens.add_argument(
        "--vault-token-path",
        default="/var/run/secrets/kubernetes.io/serviceaccount/token",
    )
    tokens.add_argument("--vault-path", default="vmfleet/join-token")
    tokens.add_argument("--no-verify-ssl", action="store_true")

    probe = subparser.add_argument_group("readiness probing")
    probe.add_argument("--probe-interval", type=float)
    probe.add_argument("--node-timeout", type=float)
    probe.add_argument("--fleet-timeout", type=float)
    probe.add_argument("--ssh-connect-timeout", type=int)

    boot = subparser.add_argument_group("bootstrap")
    boot.add_argument("--kubernetes-version", help="Kubernetes minor version, e.g. 1.30")
    boot.add_argument("--pod-network-cidr")
    boot.add_argument("--pod-network-manifest", help="Path or URL of the CNI manifest.")
    boot.add_argument("--join-retries", type=int)
    boot.add_argument("--join-retry-delay", type=float, help="Seconds before the first join retry.")
    boot.add_argument("--node-status-timeout", type=float)
    boot.add_argument(
        "--no-prepare-nodes",
        action="store_true",
        help="Skip swap/sysctl/containerd/kube package setup on nodes.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vmfleet",
        description="Provision a libvirt VM fleet and form a kubeadm cluster on it.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(
        dest="command",
        required=True,
        help="Sub-command to run. Use -h/--help after a subcommand for more usage details.",
    )

    commands = [
        ("plan", "Show the actions needed to reach the desired fleet.", run_plan),
        ("apply", "Create/destroy nodes and wait for new nodes to be Ready.", run_apply),
        ("destroy", "Tear down every node of the fleet.", run_destroy),
        ("bootstrap", "Form the Kubernetes cluster on the Ready nodes.", run_bootstrap),
        ("status", "Show node records and bootstrap state.", run_status),
    ]
    for name, help_text, func in commands:
        sub = subparsers.add_parser(name, help=help_text)
        _add_fleet_args(sub)
        _add_settings_args(sub)
        sub.set_defaults(func=func)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
