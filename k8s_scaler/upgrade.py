"""
Rolling Kubernetes version upgrade, one node at a time.

Masters go first and strictly in order (the primary runs the "apply" upgrade,
the rest the "node" upgrade), then workers, each drained and uncordoned from
the primary master.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import ConfigurationError, TerminalStepFailure, TransientInfraError
from .naming import Role
from .planner import ClusterPlan, NodeSpec
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?$")
KUBELET_VERSION = re.compile(r"v(\d+\.\d+\.\d+)")


def validate_version(version: str) -> str:
    """Check X.Y or X.Y.Z (optional leading v) and return it without the v"""
    version = version.strip()
    if not VERSION_PATTERN.match(version):
        raise ConfigurationError(f"invalid version format: {version} (expected X.Y or X.Y.Z)", field="version")
    return version.lstrip("v")


def parse_kubelet_version(output: str) -> Optional[str]:
    match = KUBELET_VERSION.search(output)
    return match.group(1) if match else None


def _parts(version: str) -> Tuple[int, int, int]:
    match = VERSION_PATTERN.match(version)
    return int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)


def validate_upgrade_path(current: str, target: str) -> str:
    """Returns 'patch' or 'minor'; downgrades and skipped minors are ConfigurationErrors"""
    current_major, current_minor, current_patch = _parts(current)
    target_major, target_minor, target_patch = _parts(target)
    if target_major != current_major:
        raise ConfigurationError(f"cannot change major version: v{current} -> v{target}", field="version")
    gap = target_minor - current_minor
    if gap < 0:
        raise ConfigurationError(f"cannot downgrade Kubernetes: v{current} -> v{target}", field="version")
    if gap == 0:
        if VERSION_PATTERN.match(target).group(3) is not None and target_patch < current_patch:
            raise ConfigurationError(f"cannot downgrade Kubernetes: v{current} -> v{target}", field="version")
        logger.warning(f"Patch upgrade: v{current} -> v{target}")
        return "patch"
    if gap > 1:
        raise ConfigurationError(
            f"invalid upgrade path v{current} -> v{target}: only one minor version at a time", field="version"
        )
    logger.info(f"Valid upgrade path: v{current} -> v{target}")
    return "minor"


@dataclass
class UpgradeOptions:
    version: str
    cluster: Optional[str] = None
    node: Optional[str] = None
    masters_only: bool = False
    workers_only: bool = False
    skip_drain: bool = False


@dataclass
class UpgradeReport:
    cluster: str
    current_version: Optional[str] = None
    upgraded: List[str] = field(default_factory=list)
    error: Optional[str] = None
    halted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.halted


class ClusterUpgrader:
    def __init__(self, runner, settings, policy: Optional[BackoffPolicy] = None, sleep=None):
        self.runner = runner
        self.settings = settings
        self.policy = policy or settings.retry
        self.sleep = sleep or asyncio.sleep
        self.halt_requested = False

    def halt(self):
        self.halt_requested = True

    async def _run(self, plan: ClusterPlan, host: str, template: str, description: str, **values):
        command = self.settings.command(template, cluster=plan.name, **values)

        async def attempt():
            result = await self.runner.run(host, command)
            if result.exit_code != 0:
                raise TransientInfraError(f"{description} exited {result.exit_code}: "
                                          f"{(result.stderr or result.stdout).strip()}")
            return result

        return await self.policy.run(attempt, f"{plan.name}: {description}", self.sleep, cluster=plan.name)

    async def current_version(self, plan: ClusterPlan) -> str:
        result = await self._run(plan, plan.primary.name, "kubelet_version", "read kubelet version",
                                 node=plan.primary.name)
        version = parse_kubelet_version(result.stdout)
        if version is None:
            raise ConfigurationError(f"could not determine the current version from {plan.primary.name}",
                                     cluster=plan.name)
        return version

    def targets(self, plan: ClusterPlan, options: UpgradeOptions) -> List[NodeSpec]:
        nodes = []
        if not options.workers_only:
            nodes.extend(plan.masters)
        if not options.masters_only:
            nodes.extend(plan.workers)
        if options.node:
            node = plan.node(options.node)
            if node is None or node.role is Role.LOAD_BALANCER:
                raise ConfigurationError(f"{options.node} is not a master or worker of {plan.name}",
                                         cluster=plan.name)
            nodes = [n for n in nodes if n.name == options.node]
        return nodes

    async def upgrade_master(self, plan: ClusterPlan, node: NodeSpec, version: str):
        logger.info(f"Upgrading master node {node.name} to v{version}")
        template = "upgrade_first_master" if node.primary else "upgrade_node"
        await self._run(plan, node.name, template, f"upgrade {node.name}", node=node.name, version=version)

    async def upgrade_worker(self, plan: ClusterPlan, node: NodeSpec, version: str, skip_drain: bool):
        logger.info(f"Upgrading worker node {node.name} to v{version}")
        if not skip_drain:
            await self._run(plan, plan.primary.name, "drain", f"drain {node.name}", node=node.name)
        await self._run(plan, node.name, "upgrade_node", f"upgrade {node.name}", node=node.name, version=version)
        if not skip_drain:
            await self._run(plan, plan.primary.name, "uncordon", f"uncordon {node.name}", node=node.name)

    async def prepare(self, plan: ClusterPlan, options: UpgradeOptions, version: str) -> UpgradeReport:
        """Read the running version and check the path; nothing is changed"""
        report = UpgradeReport(cluster=plan.name)
        self.targets(plan, options)
        try:
            report.current_version = await self.current_version(plan)
        except TerminalStepFailure as e:
            report.error = str(e)
            logger.error(f"❌ {plan.name}: cannot read the current version: {e}")
            return report
        try:
            validate_upgrade_path(report.current_version, version)
        except ConfigurationError as e:
            raise ConfigurationError(f"{e} (no cluster was upgraded)", cluster=plan.name) from e
        return report

    async def upgrade_cluster(self, plan: ClusterPlan, options: UpgradeOptions,
                              report: UpgradeReport) -> UpgradeReport:
        version = validate_version(options.version)
        nodes = self.targets(plan, options)
        try:
            logger.info(f"Upgrading {plan.name}: {', '.join(n.name for n in nodes)}")
            for position, node in enumerate(nodes):
                if self.halt_requested:
                    report.halted = True
                    logger.warning(f"{plan.name}: upgrade halted before {node.name}")
                    return report
                if node.role is Role.MASTER:
                    await self.upgrade_master(plan, node, version)
                else:
                    await self.upgrade_worker(plan, node, version, options.skip_drain)
                report.upgraded.append(node.name)
                logger.info(f"✅ {node.name} upgraded")
                following = nodes[position + 1] if position + 1 < len(nodes) else None
                if following is not None and following.role is node.role:
                    delay = (self.settings.master_join_delay if node.role is Role.MASTER
                             else self.settings.worker_join_delay)
                    logger.info(f"Waiting {delay:.0f} seconds...")
                    await self.sleep(delay)
        except TerminalStepFailure as e:
            report.error = str(e)
            logger.error(f"❌ {plan.name}: upgrade stopped: {e}")
            return report
        logger.info(f"✅ Cluster {plan.name} upgraded to v{version}")
        return report

    async def upgrade_all(self, plans: List[ClusterPlan], options: UpgradeOptions) -> List[UpgradeReport]:
        """Validate every cluster first, then upgrade the clusters concurrently"""
        version = validate_version(options.version)
        if options.masters_only and options.workers_only:
            raise ConfigurationError("--masters-only and --workers-only are mutually exclusive")

        prepared = await asyncio.gather(*(self.prepare(plan, options, version) for plan in plans),
                                        return_exceptions=True)
        for result in prepared:
            if isinstance(result, BaseException):
                raise result

        runnable = [(plan, report) for plan, report in zip(plans, prepared) if report.error is None]
        results = await asyncio.gather(*(self.upgrade_cluster(plan, options, report) for plan, report in runnable),
                                       return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(prepared)
