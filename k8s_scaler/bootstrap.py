"""
Bootstrap orchestrator: drives a cluster toward ready through an explicit,
ordered list of steps.

    load balancer -> primary master init -> secondary master joins
                  -> worker joins -> add-ons

Every step has a postcondition checked against live infrastructure before
anything is done, so a re-run resumes from whatever actually exists and a
ready cluster is left untouched. Joins within a cluster are strictly
sequential; separate clusters run concurrently.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .errors import ObservationError, TerminalStepFailure, TransientInfraError
from .observer import RUNNING, StateObserver
from .planner import ClusterPlan, NodeSpec
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)


class NodeState(Enum):
    PENDING = "pending"
    BASE_PROVISIONED = "base-provisioned"
    INITIALIZED = "initialized"
    JOINED = "joined"
    READY = "ready"
    FAILED = "failed"


class ClusterPhase(Enum):
    AWAITING_LB = "awaiting-lb"
    AWAITING_PRIMARY_MASTER = "awaiting-primary-master"
    AWAITING_SECONDARY_MASTERS = "awaiting-secondary-masters"
    AWAITING_WORKERS = "awaiting-workers"
    AWAITING_ADDONS = "awaiting-addons"
    READY = "ready"
    DEGRADED = "degraded"


class StepKind(Enum):
    LOAD_BALANCER = "load-balancer"
    INIT_PRIMARY = "init-primary"
    JOIN_MASTER = "join-master"
    JOIN_WORKER = "join-worker"
    DEPLOY_ADDONS = "deploy-addons"


class StepStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class BootstrapStep:
    phase: ClusterPhase
    kind: StepKind
    node: NodeSpec
    settle_delay: float = 0

    @property
    def name(self) -> str:
        return f"{self.kind.value} {self.node.name}"


@dataclass
class StepResult:
    step: BootstrapStep
    status: StepStatus
    message: str = ""
    duration: Optional[float] = None


@dataclass
class ClusterReport:
    """Outcome of one reconcile run for one cluster"""
    cluster: str
    phase: ClusterPhase
    node_states: Dict[str, NodeState] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    halted: bool = False

    @property
    def ok(self) -> bool:
        return self.phase is ClusterPhase.READY

    @property
    def actions(self) -> List[str]:
        """Steps that actually changed something"""
        return [result.step.name for result in self.steps if result.status is StepStatus.COMPLETED]


def build_steps(plan: ClusterPlan, master_delay: float = 0, worker_delay: float = 0) -> List[BootstrapStep]:
    """The ordered step list for a cluster"""
    steps = []
    if plan.load_balancer is not None:
        steps.append(BootstrapStep(ClusterPhase.AWAITING_LB, StepKind.LOAD_BALANCER, plan.load_balancer))
    steps.append(BootstrapStep(ClusterPhase.AWAITING_PRIMARY_MASTER, StepKind.INIT_PRIMARY, plan.primary))
    for master in plan.masters[1:]:
        steps.append(BootstrapStep(ClusterPhase.AWAITING_SECONDARY_MASTERS, StepKind.JOIN_MASTER,
                                   master, settle_delay=master_delay))
    for worker in plan.workers:
        steps.append(BootstrapStep(ClusterPhase.AWAITING_WORKERS, StepKind.JOIN_WORKER,
                                   worker, settle_delay=worker_delay))
    steps.append(BootstrapStep(ClusterPhase.AWAITING_ADDONS, StepKind.DEPLOY_ADDONS, plan.addon_trigger))
    return steps


class Reconciler:
    """Runs the bootstrap steps of one or more clusters against live infrastructure"""

    def __init__(self, hypervisor, runner, probe, health, settings,
                 policy: Optional[BackoffPolicy] = None, sleep=None,
                 on_event: Optional[Callable[[str, BootstrapStep, StepStatus], None]] = None):
        self.hypervisor = hypervisor
        self.observer = StateObserver(hypervisor)
        self.runner = runner
        self.probe = probe
        self.health = health
        self.settings = settings
        self.policy = policy or settings.retry
        self.sleep = sleep or asyncio.sleep
        self.on_event = on_event
        self.halt_requested = False

    def halt(self):
        """Stop every cluster before its next node-level step"""
        self.halt_requested = True

    def _emit(self, cluster: str, step: BootstrapStep, status: StepStatus):
        if self.on_event is not None:
            self.on_event(cluster, step, status)

    # === HELPERS ===

    def _values(self, plan: ClusterPlan, node: NodeSpec, **extra) -> Dict[str, str]:
        values = {
            "cluster": plan.name,
            "node": node.name,
            "ip": node.ip,
            "vip": plan.vip,
            "endpoint": plan.control_plane_endpoint,
            "backends": ",".join(master.ip for master in plan.masters),
            "metallb_ip_range": plan.cluster.metallb_ip_range,
        }
        values.update(extra)
        return values

    async def _retry(self, plan: ClusterPlan, operation, description: str):
        return await self.policy.run(operation, f"{plan.name}: {description}", self.sleep, cluster=plan.name)

    async def _run_checked(self, node_name: str, command: str, description: str):
        result = await self.runner.run(node_name, command)
        if result.exit_code != 0:
            detail = (result.stderr or result.stdout).strip()
            raise TransientInfraError(f"{description} exited {result.exit_code}: {detail}")
        return result

    async def _read_artifact(self, plan: ClusterPlan, artifact: str) -> str:
        command = self.settings.command("read_artifact", **self._values(plan, plan.primary, artifact=artifact))
        result = await self.runner.run(plan.primary.name, command)
        if result.exit_code != 0 or not result.stdout.strip():
            raise TransientInfraError(f"join artifact {artifact} not available yet")
        return result.stdout

    def _join_artifact(self, plan: ClusterPlan, kind: StepKind) -> str:
        name = "master_join" if kind is StepKind.JOIN_MASTER else "worker_join"
        return self.settings.artifact(name, plan.name)

    def _init_artifacts(self, plan: ClusterPlan) -> List[str]:
        # init writes both; later master and worker joins read them
        return [self.settings.artifact("worker_join", plan.name),
                self.settings.artifact("master_join", plan.name)]

    def _health_url(self, plan: ClusterPlan) -> str:
        lb = plan.load_balancer
        return str(self.settings.health["lb_url"]).format(vip=plan.vip, ip=lb.ip, cluster=plan.name)

    # === POSTCONDITIONS ===

    async def _is_running(self, node: NodeSpec) -> bool:
        return await self.observer.power_state(node.name) == RUNNING

    async def _lb_healthy(self, plan: ClusterPlan) -> bool:
        return await self.health.check(self._health_url(plan))

    async def _initialized(self, plan: ClusterPlan) -> bool:
        # the worker join artifact exists once init has run
        try:
            await self._read_artifact(plan, self.settings.artifact("worker_join", plan.name))
        except TransientInfraError:
            return False
        return True

    async def satisfied(self, plan: ClusterPlan, step: BootstrapStep) -> bool:
        """Does the step's postcondition already hold in live infrastructure?"""
        try:
            if step.kind is StepKind.DEPLOY_ADDONS:
                return await self.probe.addons_ready(plan)
            if not await self._is_running(step.node):
                return False
            if step.kind is StepKind.LOAD_BALANCER:
                return await self._lb_healthy(plan)
            if step.kind is StepKind.INIT_PRIMARY:
                return await self._initialized(plan)
            return await self.probe.is_member(plan, step.node.name)
        except TransientInfraError as e:
            logger.debug(f"{plan.name}: cannot confirm {step.name} yet: {e}")
            return False

    # === ACTIONS ===

    async def ensure_running(self, plan: ClusterPlan, node: NodeSpec) -> None:
        """Create or start the VM, then wait until it answers over SSH"""
        state = await self.observer.power_state(node.name)
        if state is None:
            await self._retry(plan, lambda: self.hypervisor.create(node), f"create {node.name}")
        elif state != RUNNING:
            await self._retry(plan, lambda: self.hypervisor.start(node.name), f"start {node.name}")

        command = self.settings.command("reachable", **self._values(plan, node))

        async def reachable():
            result = await self.runner.run(node.name, command)
            if result.exit_code != 0:
                raise TransientInfraError(f"{node.name} not reachable over SSH yet")

        await self._retry(plan, reachable, f"ssh {node.name}")

    async def _provision_base(self, plan: ClusterPlan, node: NodeSpec, report: ClusterReport) -> None:
        await self.ensure_running(plan, node)
        command = self.settings.command("base", **self._values(plan, node))
        await self._retry(plan, lambda: self._run_checked(node.name, command, f"base {node.name}"),
                          f"base provisioning {node.name}")
        report.node_states[node.name] = NodeState.BASE_PROVISIONED

    async def _configure_load_balancer(self, plan: ClusterPlan, step: BootstrapStep, report: ClusterReport):
        node = step.node
        await self._provision_base(plan, node, report)
        command = self.settings.command("load_balancer", **self._values(plan, node))
        await self._retry(plan, lambda: self._run_checked(node.name, command, "load balancer setup"),
                          f"configure {node.name}")

        async def healthy():
            if not await self._lb_healthy(plan):
                raise TransientInfraError(f"{self._health_url(plan)} not healthy yet")

        await self._retry(plan, healthy, f"health of {node.name}")

    async def _init_primary(self, plan: ClusterPlan, step: BootstrapStep, report: ClusterReport):
        node = step.node
        await self._provision_base(plan, node, report)
        command = self.settings.command("init", **self._values(plan, node))
        await self._retry(plan, lambda: self._run_checked(node.name, command, f"init {plan.name}"),
                          f"initialize {node.name}")
        report.node_states[node.name] = NodeState.INITIALIZED
        for artifact in self._init_artifacts(plan):
            await self._retry(plan, lambda artifact=artifact: self._read_artifact(plan, artifact),
                              f"join artifact {artifact}")

    async def _join(self, plan: ClusterPlan, step: BootstrapStep, report: ClusterReport):
        node = step.node
        artifact = self._join_artifact(plan, step.kind)
        await self._retry(plan, lambda: self._read_artifact(plan, artifact), f"join artifact for {node.name}")
        await self._provision_base(plan, node, report)
        template = "join_master" if step.kind is StepKind.JOIN_MASTER else "join_worker"
        command = self.settings.command(template, **self._values(plan, node, artifact=artifact))
        await self._retry(plan, lambda: self._run_checked(node.name, command, f"join {node.name}"),
                          f"join {node.name}")
        report.node_states[node.name] = NodeState.JOINED

        async def member():
            if not await self.probe.is_member(plan, node.name):
                raise TransientInfraError(f"{node.name} not registered yet")

        await self._retry(plan, member, f"membership of {node.name}")

    async def _deploy_addons(self, plan: ClusterPlan, step: BootstrapStep, report: ClusterReport):
        primary = plan.primary
        logger.info(f"{plan.name}: {step.node.name} joined last, deploying add-ons")
        command = self.settings.command("addons", **self._values(plan, primary))
        await self._retry(plan, lambda: self._run_checked(primary.name, command, "add-on deployment"),
                          "deploy add-ons")

        async def ready():
            if not await self.probe.addons_ready(plan):
                raise TransientInfraError("add-ons not ready yet")

        await self._retry(plan, ready, "add-on readiness")

    async def _restart_satisfies(self, plan: ClusterPlan, step: BootstrapStep) -> bool:
        """Start a powered-off VM and report whether that alone satisfies the step"""
        if step.kind is StepKind.DEPLOY_ADDONS:
            return False
        state = await self.observer.power_state(step.node.name)
        if state is None or state == RUNNING:
            return False
        await self.ensure_running(plan, step.node)
        return await self.satisfied(plan, step)

    async def perform(self, plan: ClusterPlan, step: BootstrapStep, report: ClusterReport) -> str:
        """Run the step's action and return a short outcome"""
        if await self._restart_satisfies(plan, step):
            logger.info(f"{plan.name}: {step.node.name} restarted, {step.name} already holds")
            return "restarted"
        actions = {
            StepKind.LOAD_BALANCER: self._configure_load_balancer,
            StepKind.INIT_PRIMARY: self._init_primary,
            StepKind.JOIN_MASTER: self._join,
            StepKind.JOIN_WORKER: self._join,
            StepKind.DEPLOY_ADDONS: self._deploy_addons,
        }
        await actions[step.kind](plan, step, report)
        return "done"

    # === DRIVER ===

    async def reconcile(self, plan: ClusterPlan) -> ClusterReport:
        """Walk the step list, skipping steps whose postconditions hold"""
        steps = build_steps(plan, self.settings.master_join_delay, self.settings.worker_join_delay)
        report = ClusterReport(
            cluster=plan.name,
            phase=steps[0].phase,
            node_states={node.name: NodeState.PENDING for node in plan.nodes},
        )
        logger.info(f"🚀 Reconciling {plan.name} ({len(steps)} steps)")

        for step in steps:
            if self.halt_requested:
                report.halted = True
                logger.warning(f"{plan.name}: halted before {step.name} (phase {report.phase.value})")
                return report
            report.phase = step.phase
            start_time = time.time()

            try:
                if await self.satisfied(plan, step):
                    report.node_states[step.node.name] = NodeState.READY
                    report.steps.append(StepResult(step, StepStatus.SKIPPED, "already satisfied"))
                    self._emit(plan.name, step, StepStatus.SKIPPED)
                    logger.info(f"{plan.name}: {step.name} already satisfied")
                    continue

                logger.info(f"{plan.name}: starting {step.name}")
                self._emit(plan.name, step, StepStatus.IN_PROGRESS)
                outcome = await self.perform(plan, step, report)
            except (TerminalStepFailure, ObservationError) as e:
                duration = time.time() - start_time
                report.phase = ClusterPhase.DEGRADED
                report.error = str(e)
                report.node_states[step.node.name] = NodeState.FAILED
                report.steps.append(StepResult(step, StepStatus.FAILED, str(e), duration))
                self._emit(plan.name, step, StepStatus.FAILED)
                logger.error(f"❌ {plan.name}: {step.name} failed, cluster degraded: {e}")
                return report

            duration = time.time() - start_time
            report.node_states[step.node.name] = NodeState.READY
            report.steps.append(StepResult(step, StepStatus.COMPLETED, outcome, duration))
            self._emit(plan.name, step, StepStatus.COMPLETED)
            logger.info(f"✅ {plan.name}: {step.name} completed in {duration:.2f}s")
            if step.settle_delay:
                logger.info(f"{plan.name}: waiting {step.settle_delay:.0f}s for the cluster to settle")
                await self.sleep(step.settle_delay)

        report.phase = ClusterPhase.READY
        logger.info(f"✅ {plan.name} is ready")
        return report

    async def reconcile_all(self, plans: List[ClusterPlan]) -> List[ClusterReport]:
        """Reconcile clusters concurrently; one cluster's failure never stops the others"""
        results = await asyncio.gather(*(self.reconcile(plan) for plan in plans), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)
