"""
k8s-scaler command line interface
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Callable, Dict, List, Optional

from . import __version__
from .bootstrap import ClusterReport
from .diff import ClusterDiff
from .errors import ConfigurationError, OperationAborted, ScalerError, VerificationFailure
from .logs import Colors, banner, configure_logging, log_error, log_info, log_success, log_warning
from .observer import ObservedNode
from .operations import ApplyResult, ClusterScaler, NodeOperationResult, SyncResult, make_confirm
from .settings import Settings, load_settings
from .upgrade import UpgradeOptions, UpgradeReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


# === OUTPUT ===

def print_detected(observed: List[ObservedNode]):
    banner("Detected Running Nodes")
    if not observed:
        log_warning("No running VMs detected")
        return
    clusters: Dict[str, List[ObservedNode]] = {}
    for node in observed:
        clusters.setdefault(node.cluster, []).append(node)
    for cluster, nodes in clusters.items():
        masters = sum(1 for n in nodes if n.role.value == "master")
        workers = sum(1 for n in nodes if n.role.value == "worker")
        print(f"\n{Colors.BLUE}{cluster}{Colors.NC}: {masters} master(s), {workers} worker(s)")
        for node in sorted(nodes, key=lambda n: (n.role.value, n.index)):
            print(f"  {node.name:28} {node.role.label:14} {node.resources.cpus} vCPU  "
                  f"{node.resources.memory_mb} MB")


def print_diffs(diffs: List[ClusterDiff]):
    banner("Declaration vs Running Infrastructure")
    if not diffs:
        log_info("No clusters declared or running")
        return
    for cluster_diff in diffs:
        label = ""
        if cluster_diff.disabled:
            label = f" {Colors.YELLOW}(disabled, still running){Colors.NC}"
        elif not cluster_diff.declared:
            label = f" {Colors.YELLOW}(not declared){Colors.NC}"
        print(f"\n{Colors.BLUE}{cluster_diff.cluster}{Colors.NC}{label}")
        if not cluster_diff.has_changes:
            print(f"  {Colors.GREEN}in sync{Colors.NC}")
            continue
        for parameter in cluster_diff.parameter_diffs:
            print(f"  {parameter.param:16} declared {parameter.declared:<8} observed {parameter.observed}")
        for inconsistency in cluster_diff.inconsistencies:
            values = ", ".join(f"{name}={value}" for name, value in inconsistency.values)
            print(f"  {Colors.YELLOW}!{Colors.NC} {inconsistency.param:14} inconsistent: {values}")
        for node in cluster_diff.nodes_to_add:
            print(f"  {Colors.GREEN}+{Colors.NC} {node.name} ({node.ip})")
        for node in cluster_diff.nodes_to_remove:
            print(f"  {Colors.RED}-{Colors.NC} {node.name}")
        for change in cluster_diff.attribute_changes:
            print(f"  {Colors.YELLOW}~{Colors.NC} {change.node} {change.param}: "
                  f"{change.observed} -> {change.declared}")


def print_reports(reports: List[ClusterReport]):
    banner("Reconciliation Summary")
    for report in reports:
        colour = Colors.GREEN if report.ok else Colors.RED
        actions = ", ".join(report.actions) or "no changes"
        print(f"  {report.cluster:20} {colour}{report.phase.value:28}{Colors.NC} {actions}")
        if report.halted:
            print(f"  {'':20} halted")
        if report.error:
            print(f"  {'':20} {Colors.RED}{report.error}{Colors.NC}")


def print_sync(result: SyncResult, dry_run: bool):
    print_diffs(result.diffs)
    print()
    if not result.changes:
        log_info("Declaration already matches running infrastructure")
    elif dry_run:
        log_info("Dry run, would update:")
        for change in result.changes:
            print(f"  {change.describe()}")
    elif result.written:
        log_success(f"Vagrantfile updated ({len(result.changes)} change(s)), backup: {result.backup}")
    for refused in result.refused:
        log_warning(f"Not synced (inconsistent): {refused}")


def print_apply(result: ApplyResult):
    if result.declaration_changes:
        banner("Declaration Changes")
        for change in result.declaration_changes:
            print(f"  {change.describe()}")
    for name in result.disabled:
        log_warning(f"{name} is disabled, its VMs will be torn down")
    if result.removed:
        log_warning(f"Nodes to remove: {', '.join(result.removed)}")
    if result.reloaded:
        log_info(f"Nodes to reload for new resources: {', '.join(result.reloaded)}")
    if result.dry_run:
        log_info("Dry run, nothing changed")
        return
    print_reports(result.reports)
    if result.committed:
        log_success("Vagrantfile committed to git" + (" and pushed" if result.pushed else ""))


def print_node_result(result: NodeOperationResult):
    for change in result.changes:
        log_info(f"Updated {change.describe()}")
    for name in result.removed:
        log_success(f"Removed {name}")
    for name in result.reloaded:
        log_success(f"Reloaded {name}")
    if result.report is not None:
        print_reports([result.report])


def print_upgrade(reports: List[UpgradeReport]):
    banner("Upgrade Summary")
    for report in reports:
        colour = Colors.GREEN if report.ok else Colors.RED
        status = "upgraded" if report.ok else ("halted" if report.halted else "failed")
        print(f"  {report.cluster:20} {colour}{status:10}{Colors.NC} from v{report.current_version or '?'}: "
              f"{', '.join(report.upgraded) or 'nothing'}")
        if report.error:
            print(f"  {'':20} {Colors.RED}{report.error}{Colors.NC}")


def print_config(topology, plans, running: Dict[str, bool]):
    banner("Current Cluster Configuration")
    if not plans:
        log_warning("No clusters found in Vagrantfile")
        return
    for cluster_plan in plans:
        declared = cluster_plan.cluster
        state = "" if declared.enabled else f" {Colors.YELLOW}(disabled){Colors.NC}"
        print(f"\n{Colors.BLUE}{declared.name}{Colors.NC}{state}  context={declared.context}  subnet={declared.base_subnet}.0/24")
        print(f"  Masters: {declared.master_count} x {declared.master_resources.cpus} vCPU, "
              f"{declared.master_resources.memory_mb} MB")
        print(f"  Workers: {declared.worker_count} x {declared.worker_resources.cpus} vCPU, "
              f"{declared.worker_resources.memory_mb} MB")
        print(f"  MetalLB: {declared.metallb_ip_range}")
        if declared.requires_load_balancer:
            print(f"  VIP:     {cluster_plan.vip}")
        for node in cluster_plan.nodes:
            marker = f"{Colors.GREEN}running{Colors.NC}" if running.get(node.name) else "not running"
            primary = " (primary)" if node.primary else ""
            print(f"    {node.name:28} {node.ip:16} {marker}{primary}")


# === ARGUMENTS ===

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="k8s-scaler",
        description="Declarative scaling and reconciliation for multi-cluster Vagrant Kubernetes labs",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Settings file (default: ./k8s-scaler.yaml or $K8S_SCALER_CONFIG)")
    parser.add_argument("--vagrantfile", help="Declaration file (overrides the settings file)")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("-y", "--yes", action="store_true", help="Answer yes to every confirmation prompt")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sub.add_parser("detect", help="Show running cluster VMs")

    diff_parser = sub.add_parser("diff", help="Compare the declaration with running VMs")
    diff_parser.add_argument("--cluster", help="Limit to one cluster")

    sync_parser = sub.add_parser("sync", help="Write running state back into the declaration")
    sync_parser.add_argument("--cluster", help="Limit to one cluster")
    sync_parser.add_argument("--dry-run", action="store_true", help="Show changes without writing")

    apply_parser = sub.add_parser("apply", help="Converge infrastructure to the declaration")
    apply_parser.add_argument("--desired", help="Desired declaration file to adopt first")
    apply_parser.add_argument("--cluster", help="Limit to one cluster")
    apply_parser.add_argument("--dry-run", action="store_true", help="Show changes without applying")

    for role in ("worker", "master"):
        add = sub.add_parser(f"add-{role}", help=f"Add {role} node(s) to a cluster")
        add.add_argument("--cluster", required=True)
        add.add_argument("--count", type=int, default=1)
        remove = sub.add_parser(f"remove-{role}", help=f"Drain and remove a {role} node")
        remove.add_argument("--cluster", required=True)
        remove.add_argument("--node", required=True)

    scale = sub.add_parser("scale-resources", help="Change vCPU/memory for a node type")
    scale.add_argument("--cluster", required=True)
    scale.add_argument("--type", dest="node_type", choices=["master", "worker"], required=True)
    scale.add_argument("--cpu", type=int, required=True)
    scale.add_argument("--memory", type=int, required=True)
    scale.add_argument("--no-reload", action="store_true", help="Only update the declaration")

    upgrade = sub.add_parser("upgrade", help="Rolling Kubernetes version upgrade")
    upgrade.add_argument("--version", dest="target_version", required=True, help="Target version X.Y[.Z]")
    upgrade.add_argument("--cluster", help="Limit to one cluster")
    upgrade.add_argument("--node", help="Upgrade a single node")
    only = upgrade.add_mutually_exclusive_group()
    only.add_argument("--masters-only", action="store_true")
    only.add_argument("--workers-only", action="store_true")
    upgrade.add_argument("--skip-drain", action="store_true", help="Do not drain workers")

    sub.add_parser("show-config", help="Show declared clusters and planned nodes")
    sub.add_parser("backup", help="Back up the declaration")
    restore = sub.add_parser("restore", help="Restore the declaration from a backup")
    restore.add_argument("name", nargs="?", help="Backup file name (latest when omitted)")
    return parser


# === DISPATCH ===

async def _with_halt(scaler: ClusterScaler, coro):
    """Ctrl-C asks the scaler to halt between node-level steps"""
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, scaler.halt)
        installed = True
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not available, Ctrl-C stops immediately")
    try:
        return await coro
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def dispatch(args, scaler: ClusterScaler) -> int:
    def run(coro):
        return asyncio.run(_with_halt(scaler, coro))

    if args.command == "detect":
        print_detected(run(scaler.detect()))
        return EXIT_OK

    if args.command == "diff":
        print_diffs(run(scaler.compute_diff(args.cluster)))
        return EXIT_OK

    if args.command == "sync":
        result = run(scaler.sync(dry_run=args.dry_run, cluster=args.cluster))
        print_sync(result, args.dry_run)
        return EXIT_OK

    if args.command == "apply":
        result = run(scaler.apply(desired=args.desired, dry_run=args.dry_run, cluster=args.cluster))
        print_apply(result)
        if scaler.halted:
            return EXIT_INTERRUPTED
        return EXIT_OK if result.ok else EXIT_FAILURE

    if args.command in ("add-worker", "add-master"):
        operation = scaler.add_worker if args.command == "add-worker" else scaler.add_master
        result = run(operation(args.cluster, args.count))
        print_node_result(result)
        if scaler.halted:
            return EXIT_INTERRUPTED
        return EXIT_OK if result.ok else EXIT_FAILURE

    if args.command in ("remove-worker", "remove-master"):
        operation = scaler.remove_worker if args.command == "remove-worker" else scaler.remove_master
        print_node_result(run(operation(args.cluster, args.node)))
        return EXIT_OK

    if args.command == "scale-resources":
        result = run(scaler.scale_resources(args.cluster, args.node_type, args.cpu, args.memory,
                                            reload=not args.no_reload))
        print_node_result(result)
        return EXIT_INTERRUPTED if scaler.halted else EXIT_OK

    if args.command == "upgrade":
        options = UpgradeOptions(
            version=args.target_version,
            cluster=args.cluster,
            node=args.node,
            masters_only=args.masters_only,
            workers_only=args.workers_only,
            skip_drain=args.skip_drain,
        )
        reports = run(scaler.upgrade(options))
        print_upgrade(reports)
        if scaler.halted:
            return EXIT_INTERRUPTED
        return EXIT_OK if all(report.ok for report in reports) else EXIT_FAILURE

    if args.command == "show-config":
        print_config(*run(scaler.show_config()))
        return EXIT_OK

    if args.command == "backup":
        log_success(f"Backup created: {scaler.backup()}")
        return EXIT_OK

    if args.command == "restore":
        log_success(f"Vagrantfile restored from: {scaler.restore(args.name).name}")
        return EXIT_OK

    raise ConfigurationError(f"unknown command {args.command}")


def default_scaler(settings: Settings, assume_yes: bool) -> ClusterScaler:
    return ClusterScaler(settings, confirm=make_confirm(assume_yes))


def main(argv: Optional[List[str]] = None,
         scaler_factory: Callable[[Settings, bool], ClusterScaler] = default_scaler) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.vagrantfile:
        overrides["vagrantfile"] = args.vagrantfile
    if args.log_file:
        overrides["log_file"] = args.log_file

    try:
        settings = load_settings(args.config, overrides)
    except ConfigurationError as e:
        configure_logging(args.verbose)
        log_error(f"Configuration error: {e}")
        return EXIT_CONFIG
    configure_logging(args.verbose, settings.log_file)

    try:
        return dispatch(args, scaler_factory(settings, args.yes))
    except (ConfigurationError, VerificationFailure) as e:
        log_error(str(e))
        return EXIT_CONFIG
    except OperationAborted:
        log_info("Aborted")
        return EXIT_FAILURE
    except ScalerError as e:
        log_error(str(e))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        log_warning("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
