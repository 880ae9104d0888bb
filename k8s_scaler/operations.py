"""
High-level operations behind each CLI subcommand.

ClusterScaler wires the declaration store, observer, diff engine, mutator,
reconciler and upgrader together. It never prints; the CLI renders results.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .bootstrap import ClusterPhase, ClusterReport, NodeState, Reconciler
from .declaration import DeclarationStore, parse_declaration
from .diff import ClusterDiff, diff
from .errors import (
    ConfigurationError,
    ObservationError,
    OperationAborted,
    TerminalStepFailure,
    TransientInfraError,
)
from .infra import GitRepository, HealthChecker, VagrantHypervisor, VagrantNodeRunner
from .mutator import Change, ClusterRemoval, DeclarationMutator, FieldChange, changes_between
from .naming import Role, parse_node_name
from .observer import ObservedNode, StateObserver
from .planner import ClusterPlan, plan, plan_cluster
from .probes import make_probe
from .retry import BackoffPolicy
from .settings import Settings
from .topology import MAX_NODES_PER_ROLE, Topology
from .upgrade import ClusterUpgrader, UpgradeOptions, UpgradeReport

logger = logging.getLogger(__name__)


def make_confirm(assume_yes: bool = False) -> Callable[[str], bool]:
    """Interactive y/N prompt; --yes answers every prompt"""
    def confirm(prompt: str) -> bool:
        if assume_yes:
            logger.info(f"{prompt} [auto-confirmed]")
            return True
        try:
            answer = input(f"{prompt} [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")
    return confirm


@dataclass
class SyncResult:
    diffs: List[ClusterDiff]
    changes: List[FieldChange] = field(default_factory=list)
    refused: List[str] = field(default_factory=list)
    undeclared: List[str] = field(default_factory=list)
    backup: Optional[Path] = None
    written: bool = False


@dataclass
class ApplyResult:
    declaration_changes: List[Change] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    disabled: List[str] = field(default_factory=list)
    reloaded: List[str] = field(default_factory=list)
    reports: List[ClusterReport] = field(default_factory=list)
    backup: Optional[Path] = None
    dry_run: bool = False
    committed: bool = False
    pushed: bool = False

    @property
    def ok(self) -> bool:
        return all(report.ok for report in self.reports)


@dataclass
class NodeOperationResult:
    cluster: str
    changes: List[FieldChange] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    reloaded: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    report: Optional[ClusterReport] = None
    backup: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.report is None or self.report.ok


def _role_from_type(node_type: str) -> Role:
    try:
        role = Role(node_type)
    except ValueError as e:
        raise ConfigurationError(f"node type must be 'master' or 'worker', got {node_type!r}") from e
    if role is Role.LOAD_BALANCER:
        raise ConfigurationError("node type must be 'master' or 'worker', got 'lb'")
    return role


def _disabled_names(topology: Topology) -> List[str]:
    return [spec.name for spec in topology.clusters if not spec.enabled]


def naming_shift_warnings(cluster: str, role: Role, old_count: int, new_count: int) -> List[str]:
    """Names change when a role goes from 1 node to several or back"""
    if old_count == 1 and new_count > 1:
        return [f"{cluster}-{role.value} will now be expected as {cluster}-{role.value}1; "
                f"the existing VM keeps its old name and shows up as a node to remove"]
    if old_count > 1 and new_count == 1:
        return [f"{cluster}-{role.value}1 will now be expected as {cluster}-{role.value}; "
                f"the existing VM keeps its old name and shows up as a node to remove"]
    return []


class ClusterScaler:
    """Entry point for every topology operation"""

    def __init__(self, settings: Settings, hypervisor=None, runner=None, probe=None, health=None,
                 confirm: Optional[Callable[[str], bool]] = None, sleep=None, git=None):
        self.settings = settings
        self.store = DeclarationStore(settings.vagrantfile, settings.backup_dir)
        self.hypervisor = hypervisor or VagrantHypervisor(settings.vagrant_root)
        self.runner = runner or VagrantNodeRunner(settings.vagrant_root)
        self.probe = probe or make_probe(settings, self.runner)
        self.health = health or HealthChecker(
            timeout=settings.health.get("timeout", 5), verify_tls=bool(settings.health.get("verify_tls", False))
        )
        self.confirm = confirm or make_confirm()
        self.git = git or GitRepository(settings.vagrant_root)
        self.sleep = sleep or asyncio.sleep
        self.observer = StateObserver(self.hypervisor)
        self.mutator = DeclarationMutator()
        self.reconciler = Reconciler(self.hypervisor, self.runner, self.probe, self.health, settings,
                                     sleep=self.sleep)
        self.upgrader = ClusterUpgrader(self.runner, settings, sleep=self.sleep)

    # === HELPERS ===

    def halt(self):
        """Stop reconciliation and upgrades before the next node-level step"""
        logger.warning("Halt requested, stopping after the current step")
        self.reconciler.halt()
        self.upgrader.halt()

    @property
    def halted(self) -> bool:
        return self.reconciler.halt_requested or self.upgrader.halt_requested

    def load(self) -> Topology:
        _, topology = self.store.load()
        return topology

    def _require_confirmation(self, prompt: str):
        if not self.confirm(prompt):
            raise OperationAborted("Aborted")

    def _plans(self, topology: Topology, cluster: Optional[str] = None) -> List[ClusterPlan]:
        if cluster is not None:
            spec = topology.require(cluster)
            if not spec.enabled:
                raise ConfigurationError("cluster is disabled", cluster=cluster, field="enabled")
            return [plan_cluster(spec)]
        return plan(topology)

    async def _command_host(self, cluster_plan: ClusterPlan, exclude: str) -> Optional[str]:
        """A running master of the cluster other than exclude"""
        observed = await self.observer.observe(cluster=cluster_plan.name)
        masters = sorted((n for n in observed if n.role is Role.MASTER and n.name != exclude),
                         key=lambda n: n.index)
        return masters[0].name if masters else None

    async def _run_on(self, host: str, template: str, description: str, **values) -> bool:
        command = self.settings.command(template, **values)
        result = await self.runner.run(host, command)
        if result.exit_code != 0:
            logger.warning(f"⚠️ {description} failed on {host}: {(result.stderr or result.stdout).strip()}")
            return False
        logger.info(f"✅ {description}")
        return True

    async def _decommission(self, cluster_plan: ClusterPlan, node: str, role: Role) -> None:
        """Drain and delete the Kubernetes node via another master, then destroy the VM"""
        if role is not Role.LOAD_BALANCER:
            host = await self._command_host(cluster_plan, exclude=node)
            if host is None:
                logger.warning(f"⚠️ No other running master in {cluster_plan.name}; skipping drain of {node}")
            else:
                await self._run_on(host, "drain", f"Drained {node}", node=node, cluster=cluster_plan.name)
                await self._run_on(host, "delete_node", f"Deleted node {node} from Kubernetes",
                                   node=node, cluster=cluster_plan.name)
        if await self.observer.power_state(node) is not None:
            await self.hypervisor.destroy(node)
            logger.info(f"✅ VM {node} destroyed")
        else:
            logger.info(f"VM {node} does not exist, nothing to destroy")

    async def _wait_reachable(self, cluster_plan: ClusterPlan, name: str) -> None:
        command = self.settings.command("reachable", node=name, cluster=cluster_plan.name)

        async def reachable():
            result = await self.runner.run(name, command)
            if result.exit_code != 0:
                raise TransientInfraError(f"{name} not reachable over SSH yet")

        await self.settings.retry.run(reachable, f"ssh {name}", self.sleep, cluster=cluster_plan.name)

    # === OBSERVATION ===

    async def detect(self) -> List[ObservedNode]:
        return await self.observer.observe()

    async def compute_diff(self, cluster: Optional[str] = None) -> List[ClusterDiff]:
        topology = self.load()
        plans = self._plans(topology, cluster)
        observed = await self.observer.observe(cluster=cluster)
        return diff(plans, observed, disabled=_disabled_names(topology))

    async def show_config(self) -> Tuple[Topology, List[ClusterPlan], Dict[str, bool]]:
        """Every declared cluster with its planned nodes and which of them run"""
        topology = self.load()
        plans = plan(topology, include_disabled=True)
        running = {node.name for node in await self.observer.observe()}
        status = {node.name: node.name in running for cluster_plan in plans for node in cluster_plan.nodes}
        return topology, plans, status

    # === DECLARATION ===

    def backup(self) -> Path:
        return self.store.backup()

    def restore(self, name: Optional[str] = None) -> Path:
        backups = self.store.list_backups()
        if not backups:
            raise ConfigurationError(f"no backups found in {self.store.backup_dir}")
        label = name or backups[-1].name
        self._require_confirmation(f"Restore {self.store.path} from {label}?")
        return self.store.restore(name)

    async def sync(self, dry_run: bool = False, cluster: Optional[str] = None) -> SyncResult:
        """Write observed counts/resources back into the declaration"""
        diffs = await self.compute_diff(cluster)
        result = SyncResult(diffs=diffs)
        for cluster_diff in diffs:
            if cluster_diff.disabled:
                logger.warning(f"⚠️ {cluster_diff.cluster} is disabled but still running; "
                               f"apply tears it down, sync leaves it alone")
                continue
            if not cluster_diff.declared:
                result.undeclared.append(cluster_diff.cluster)
                continue
            for inconsistency in cluster_diff.inconsistencies:
                values = ", ".join(f"{name}={value}" for name, value in inconsistency.values)
                result.refused.append(f"{cluster_diff.cluster}.{inconsistency.param}: {values}")
            for parameter in cluster_diff.parameter_diffs:
                result.changes.append(FieldChange(cluster_diff.cluster, parameter.param, parameter.observed))

        for refused in result.refused:
            logger.warning(f"⚠️ Not syncing inconsistent parameter {refused}")
        for name in result.undeclared:
            logger.warning(f"⚠️ {name} is running but not declared; sync never adds clusters")

        if not result.changes or dry_run:
            return result
        summary = "\n".join(f"  {change.describe()}" for change in result.changes)
        self._require_confirmation(f"Update {self.store.path} with:\n{summary}\nContinue?")
        result.backup = self.mutator.commit(self.store, result.changes)
        result.written = True
        return result

    # === CONVERGENCE ===

    async def apply(self, desired: Optional[str] = None, dry_run: bool = False,
                    cluster: Optional[str] = None) -> ApplyResult:
        """Converge declaration (optionally to a desired file) and then infrastructure"""
        result = ApplyResult(dry_run=dry_run)
        current_text = self.store.read()
        current = parse_declaration(current_text)

        if desired is not None:
            desired_text = Path(desired).read_text()
            result.declaration_changes = changes_between(current_text, desired_text)
            target = parse_declaration(self.mutator.apply(current_text, result.declaration_changes))
        else:
            target = current

        plans = self._plans(target, cluster)
        observed = await self.observer.observe(cluster=cluster)
        diffs = diff(plans, observed, disabled=_disabled_names(target))

        removed_clusters = {c.cluster for c in result.declaration_changes if isinstance(c, ClusterRemoval)}
        removals: List[Tuple[ClusterPlan, ObservedNode]] = []
        teardown: List[ObservedNode] = []
        reloads: List[Tuple[ClusterPlan, str]] = []
        plans_by_name = {p.name: p for p in plans}
        for cluster_diff in diffs:
            if cluster_diff.disabled:
                result.disabled.append(cluster_diff.cluster)
                teardown.extend(cluster_diff.nodes_to_remove)
                continue
            if not cluster_diff.declared:
                if cluster_diff.cluster in removed_clusters:
                    teardown.extend(cluster_diff.nodes_to_remove)
                else:
                    logger.warning(f"⚠️ {cluster_diff.cluster} is running but not declared; leaving it alone")
                continue
            cluster_plan = plans_by_name[cluster_diff.cluster]
            removals.extend((cluster_plan, node) for node in cluster_diff.nodes_to_remove)
            for name in dict.fromkeys(change.node for change in cluster_diff.attribute_changes):
                reloads.append((cluster_plan, name))

        result.removed = [node.name for _, node in removals] + [node.name for node in teardown]
        result.reloaded = [name for _, name in reloads]
        if dry_run:
            return result

        if result.removed or removed_clusters:
            lines = [f"  {change.describe()}" for change in result.declaration_changes
                     if isinstance(change, ClusterRemoval)]
            lines += [f"  tear down disabled cluster {name}" for name in result.disabled]
            lines += [f"  destroy {name}" for name in result.removed]
            self._require_confirmation("This will remove:\n" + "\n".join(lines) + "\nContinue?")

        if result.declaration_changes:
            result.backup = self.mutator.commit(self.store, result.declaration_changes)

        # whole clusters go away together, nothing is left to drain them from
        for node in teardown:
            await self.hypervisor.destroy(node.name)
            logger.info(f"✅ VM {node.name} destroyed")
        for cluster_plan, node in removals:
            await self._decommission(cluster_plan, node.name, node.role)

        degraded: Dict[str, ClusterReport] = {}
        for cluster_plan, name in reloads:
            if cluster_plan.name in degraded:
                continue
            try:
                await self.hypervisor.reload(name)
                await self._wait_reachable(cluster_plan, name)
            except (TerminalStepFailure, TransientInfraError, ObservationError) as e:
                logger.error(f"❌ {cluster_plan.name}: reloading {name} failed, skipping the cluster: {e}")
                degraded[cluster_plan.name] = ClusterReport(
                    cluster=cluster_plan.name, phase=ClusterPhase.DEGRADED,
                    node_states={name: NodeState.FAILED}, error=str(e),
                )

        reports = {report.cluster: report for report in
                   await self.reconciler.reconcile_all([p for p in plans if p.name not in degraded])}
        reports.update(degraded)
        result.reports = [reports[p.name] for p in plans]

        if result.declaration_changes:
            await self._record_in_git(result)
        return result

    async def _record_in_git(self, result: ApplyResult) -> None:
        """Offer to commit the updated Vagrantfile and, when enabled, push it"""
        options = self.settings.git
        if not options.get("commit", True) or not self.git.present():
            return
        if not self.confirm("Commit changes to Git?"):
            return
        try:
            await self.git.commit(self.store.path, str(options.get("message")))
        except TransientInfraError as e:
            logger.warning(f"⚠️ Git commit skipped: {e}")
            return
        result.committed = True

        if not options.get("push", False) or not self.confirm("Push to the remote?"):
            return
        policy = BackoffPolicy(base_delay=2, multiplier=2.0, max_delay=60, max_attempts=4)
        try:
            await policy.run(self.git.push, "git push", self.sleep)
        except TerminalStepFailure as e:
            logger.error(f"❌ {e}")
            return
        result.pushed = True

    # === IMPERATIVE NODE OPERATIONS ===

    async def _add_nodes(self, cluster: str, role: Role, count: int) -> NodeOperationResult:
        if count < 1:
            raise ConfigurationError(f"count must be at least 1, got {count}")
        topology = self.load()
        spec = topology.require(cluster)
        current = spec.count_for(role)
        new_count = current + count
        key = f"{role.value}_count"
        if new_count > MAX_NODES_PER_ROLE:
            raise ConfigurationError(f"{new_count} exceeds the maximum of {MAX_NODES_PER_ROLE}",
                                     cluster=cluster, field=key)

        if role is Role.MASTER and current == 1:
            # the control plane was initialized against the single master's address, not a VIP
            raise ConfigurationError(
                f"{cluster} runs a single-master control plane on {cluster}-master; going HA needs a rebuild: "
                f"destroy the cluster, set master_count to {new_count} and run apply",
                cluster=cluster, field=key,
            )

        result = NodeOperationResult(cluster=cluster)
        result.warnings = naming_shift_warnings(cluster, role, current, new_count)
        for warning in result.warnings:
            logger.warning(f"⚠️ {warning}")
        logger.info(f"{cluster}: {role.value}s {current} -> {new_count}")
        self._require_confirmation(f"This will create {count} new {role.value} node(s) in {cluster}. Continue?")

        result.changes = [FieldChange(cluster, key, new_count)]
        result.backup = self.mutator.commit(self.store, result.changes)

        cluster_plan = plan_cluster(self.load().require(cluster))
        existing = {node.name for node in await self.observer.observe(cluster=cluster)}
        result.created = [node.name for node in cluster_plan.nodes if node.name not in existing]
        result.report = await self.reconciler.reconcile(cluster_plan)
        return result

    async def _remove_node(self, cluster: str, role: Role, node: str) -> NodeOperationResult:
        topology = self.load()
        spec = topology.require(cluster)
        parsed = parse_node_name(node)
        if parsed is None or parsed.cluster != cluster or parsed.role is not role:
            raise ConfigurationError(f"{node} is not a {role.value} node of {cluster}")
        current = spec.count_for(role)
        key = f"{role.value}_count"
        if role is Role.MASTER and current <= 1:
            raise ConfigurationError("cannot remove the only master node of the cluster",
                                     cluster=cluster, field=key)

        result = NodeOperationResult(cluster=cluster)
        critical = " This is a CRITICAL operation." if role is Role.MASTER else ""
        self._require_confirmation(f"This will drain and remove {node}.{critical} Continue?")

        await self._decommission(plan_cluster(spec), node, role)
        result.removed.append(node)

        if parsed.index == current:
            new_count = current - 1
            result.changes = [FieldChange(cluster, key, new_count)]
            result.backup = self.mutator.commit(self.store, result.changes)
            result.warnings.extend(naming_shift_warnings(cluster, role, current, new_count))
            if role is Role.MASTER and new_count == 1:
                result.warnings.append(f"{cluster} now has a single master; the load balancer {cluster}-lb "
                                       f"is no longer needed (destroy it with: vagrant destroy -f {cluster}-lb)")
        else:
            result.warnings.append(f"Removed {node}, but it wasn't the highest-numbered node; "
                                   f"{key} stays {current}. Renumber nodes or adjust the Vagrantfile manually.")
        for warning in result.warnings:
            logger.warning(f"⚠️ {warning}")
        return result

    async def add_worker(self, cluster: str, count: int = 1) -> NodeOperationResult:
        return await self._add_nodes(cluster, Role.WORKER, count)

    async def add_master(self, cluster: str, count: int = 1) -> NodeOperationResult:
        return await self._add_nodes(cluster, Role.MASTER, count)

    async def remove_worker(self, cluster: str, node: str) -> NodeOperationResult:
        return await self._remove_node(cluster, Role.WORKER, node)

    async def remove_master(self, cluster: str, node: str) -> NodeOperationResult:
        return await self._remove_node(cluster, Role.MASTER, node)

    async def scale_resources(self, cluster: str, node_type: str, cpus: int, memory: int,
                              reload: bool = True) -> NodeOperationResult:
        """Change <type>_cpus/<type>_memory and reload the running nodes of that role"""
        role = _role_from_type(node_type)
        if cpus < 1:
            raise ConfigurationError(f"must be positive, got {cpus}", cluster=cluster, field=f"{role.value}_cpus")
        if memory < 1:
            raise ConfigurationError(f"must be positive, got {memory}", cluster=cluster,
                                     field=f"{role.value}_memory")
        spec = self.load().require(cluster)
        logger.info(f"Scaling {role.value} resources for {cluster}: {cpus} vCPU, {memory} MB RAM")
        prompt = "This requires VM restart. Continue?" if reload else "Update the declaration only. Continue?"
        self._require_confirmation(prompt)

        result = NodeOperationResult(cluster=cluster)
        result.changes = [
            FieldChange(cluster, f"{role.value}_cpus", cpus),
            FieldChange(cluster, f"{role.value}_memory", memory),
        ]
        result.backup = self.mutator.commit(self.store, result.changes)

        if reload:
            cluster_plan = plan_cluster(spec)
            running = await self.observer.observe(cluster=cluster)
            for node in sorted((n for n in running if n.role is role), key=lambda n: n.index):
                if self.halted:
                    break
                await self.hypervisor.reload(node.name)
                await self._wait_reachable(cluster_plan, node.name)
                result.reloaded.append(node.name)
                logger.info(f"✅ {node.name} reloaded")
        return result

    # === UPGRADE ===

    async def upgrade(self, options: UpgradeOptions) -> List[UpgradeReport]:
        topology = self.load()
        plans = self._plans(topology, options.cluster)
        if options.node:
            parsed = parse_node_name(options.node)
            if parsed is None:
                raise ConfigurationError(f"{options.node} is not a cluster node name")
            plans = [p for p in plans if p.name == parsed.cluster]
            if not plans:
                raise ConfigurationError(f"{options.node} does not belong to a declared cluster")
        return await self.upgrader.upgrade_all(plans, options)
