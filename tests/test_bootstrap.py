import asyncio

import pytest

from k8s_scaler.bootstrap import (
    ClusterPhase,
    NodeState,
    Reconciler,
    StepKind,
    StepStatus,
    build_steps,
)
from k8s_scaler.declaration import parse_declaration
from k8s_scaler.planner import plan
from k8s_scaler.probes import KubectlProbe

from conftest import VAGRANTFILE, FakeHealth, FakeHypervisor, FakeRunner


@pytest.fixture
def plans():
    return plan(parse_declaration(VAGRANTFILE))


@pytest.fixture
def reconciler(lab, settings, sleep):
    runner = FakeRunner(lab)
    return Reconciler(FakeHypervisor(lab), runner, KubectlProbe(runner, settings), FakeHealth(lab),
                      settings, sleep=sleep)


def test_step_order(plans):
    steps = build_steps(plans[0], master_delay=30, worker_delay=20)
    assert [(s.kind, s.node.name) for s in steps] == [
        (StepKind.LOAD_BALANCER, "k8s-prod-lb"),
        (StepKind.INIT_PRIMARY, "k8s-prod-master1"),
        (StepKind.JOIN_MASTER, "k8s-prod-master2"),
        (StepKind.JOIN_WORKER, "k8s-prod-worker1"),
        (StepKind.JOIN_WORKER, "k8s-prod-worker2"),
        (StepKind.DEPLOY_ADDONS, "k8s-prod-worker2"),
    ]
    assert [s.settle_delay for s in steps] == [0, 0, 30, 20, 20, 0]


def test_single_master_cluster_has_no_load_balancer_step(plans):
    kinds = [s.kind for s in build_steps(plans[1])]
    assert StepKind.LOAD_BALANCER not in kinds
    assert kinds[0] is StepKind.INIT_PRIMARY


def test_fresh_cluster_reaches_ready(reconciler, plans, lab, sleep):
    report = asyncio.run(reconciler.reconcile(plans[0]))

    assert report.ok
    assert report.phase is ClusterPhase.READY
    assert set(report.node_states.values()) == {NodeState.READY}
    assert lab.lifecycle("create") == [
        "k8s-prod-lb", "k8s-prod-master1", "k8s-prod-master2", "k8s-prod-worker1", "k8s-prod-worker2",
    ]
    assert [call[1] for call in lab.commands("init")] == ["k8s-prod-master1"]
    assert lab.commands("lb")[0][2] == "lb 192.168.51.20 192.168.51.10 192.168.51.11,192.168.51.12"
    assert lab.members["k8s-prod"] == {
        "k8s-prod-master1", "k8s-prod-master2", "k8s-prod-worker1", "k8s-prod-worker2",
    }
    assert "k8s-prod" in lab.addons
    assert sleep.delays == [30, 20, 20]


def test_ready_cluster_is_left_untouched(reconciler, plans, lab):
    lab.make_ready(plans[0])
    report = asyncio.run(reconciler.reconcile(plans[0]))

    assert report.ok
    assert report.actions == []
    assert all(result.status is StepStatus.SKIPPED for result in report.steps)
    assert lab.lifecycle("create") == []
    assert lab.commands("join-master") == lab.commands("join-worker") == []
    assert lab.commands("init") == []


def test_partial_cluster_resumes_at_first_unsatisfied_step(reconciler, plans, lab):
    qa = plans[1]
    lab.make_ready(qa)
    lab.vms.pop("k8s-qa-worker2")
    lab.members["k8s-qa"].discard("k8s-qa-worker2")

    report = asyncio.run(reconciler.reconcile(qa))
    assert report.ok
    assert report.actions == ["join-worker k8s-qa-worker2"]
    assert lab.lifecycle("create") == ["k8s-qa-worker2"]


def test_init_recovers_within_the_retry_cap(reconciler, plans, lab, sleep):
    lab.fail_next["init"] = 3
    report = asyncio.run(reconciler.reconcile(plans[0]))
    assert report.ok
    assert len(lab.commands("init")) == 4
    assert sleep.delays == [1, 2, 4, 30, 20, 20]


def test_init_failing_past_the_cap_degrades_the_cluster(reconciler, plans, lab):
    lab.fail_next["init"] = 6
    report = asyncio.run(reconciler.reconcile(plans[0]))

    assert report.phase is ClusterPhase.DEGRADED
    assert not report.ok
    assert "init" in report.error
    assert report.node_states["k8s-prod-master1"] is NodeState.FAILED
    assert len(lab.commands("init")) == 5
    assert lab.commands("join-master") == lab.commands("join-worker") == []
    assert lab.lifecycle("create") == ["k8s-prod-lb", "k8s-prod-master1"]


def test_failure_in_one_cluster_does_not_stop_another(reconciler, plans, lab):
    lab.fail_next["init"] = 5
    reports = asyncio.run(reconciler.reconcile_all(plans))
    by_cluster = {r.cluster: r for r in reports}
    # five init failures exhaust whichever cluster runs init first
    assert sorted(r.phase.value for r in reports) == ["degraded", "ready"]
    ready = next(r for r in reports if r.ok)
    assert lab.members[ready.cluster]
    assert set(by_cluster) == {"k8s-prod", "k8s-qa"}


def test_stopped_vm_is_started_not_recreated(reconciler, plans, lab):
    qa = plans[1]
    lab.make_ready(qa)
    lab.vms["k8s-qa-worker1"].power_state = "poweroff"
    lab.members["k8s-qa"].discard("k8s-qa-worker1")

    report = asyncio.run(reconciler.reconcile(qa))
    assert report.ok
    assert lab.lifecycle("start") == ["k8s-qa-worker1"]
    assert lab.lifecycle("create") == []


def test_halt_stops_before_the_next_step_and_a_rerun_resumes(lab, settings, sleep, plans):
    runner = FakeRunner(lab)
    events = []
    reconciler = Reconciler(FakeHypervisor(lab), runner, KubectlProbe(runner, settings), FakeHealth(lab),
                            settings, sleep=sleep)

    def on_event(cluster, step, status):
        events.append((step.kind, status))
        if step.kind is StepKind.INIT_PRIMARY and status is StepStatus.COMPLETED:
            reconciler.halt()

    reconciler.on_event = on_event
    report = asyncio.run(reconciler.reconcile(plans[0]))
    assert report.halted
    assert report.phase is ClusterPhase.AWAITING_PRIMARY_MASTER
    assert lab.commands("join-master") == []

    resumed = Reconciler(FakeHypervisor(lab), runner, KubectlProbe(runner, settings), FakeHealth(lab),
                         settings, sleep=sleep)
    report = asyncio.run(resumed.reconcile(plans[0]))
    assert report.ok
    assert report.actions[0] == "join-master k8s-prod-master2"
    assert len(lab.commands("init")) == 1


def test_lb_health_does_not_wait_for_the_api_server(reconciler, plans, lab):
    prod = plans[0]
    asyncio.run(reconciler.reconcile(prod))

    stats_url = "http://192.168.51.20:8080/stats"
    api_url = "https://192.168.51.10:6443/healthz"
    assert stats_url in lab.health_checks
    assert api_url not in lab.health_checks
    # the VIP only answers once the primary has initialized
    first_init = next(i for i, call in enumerate(lab.calls) if call[0] == "run" and call[2].startswith("init "))
    lb_setup = next(i for i, call in enumerate(lab.calls) if call[0] == "run" and call[2].startswith("lb "))
    assert lb_setup < first_init


def test_lb_health_pointed_at_the_vip_degrades_before_init(lab, settings, sleep, plans):
    settings.health["lb_url"] = "https://{vip}:6443/healthz"
    runner = FakeRunner(lab)
    reconciler = Reconciler(FakeHypervisor(lab), runner, KubectlProbe(runner, settings), FakeHealth(lab),
                            settings, sleep=sleep)
    report = asyncio.run(reconciler.reconcile(plans[0]))

    assert report.phase is ClusterPhase.DEGRADED
    assert "health of k8s-prod-lb" in report.error
    assert lab.commands("init") == []


def test_powered_off_initialized_primary_is_not_reinitialized(reconciler, plans, lab):
    qa = plans[1]
    lab.make_ready(qa)
    lab.vms["k8s-qa-master"].power_state = "poweroff"

    report = asyncio.run(reconciler.reconcile(qa))
    assert report.ok
    assert lab.lifecycle("start") == ["k8s-qa-master"]
    assert lab.commands("init") == []
    assert lab.commands("base") == []
    assert report.actions == ["init-primary k8s-qa-master"]
    assert report.steps[0].message == "restarted"


def test_powered_off_joined_worker_is_only_started(reconciler, plans, lab):
    qa = plans[1]
    lab.make_ready(qa)
    lab.vms["k8s-qa-worker2"].power_state = "poweroff"

    report = asyncio.run(reconciler.reconcile(qa))
    assert report.ok
    assert lab.lifecycle("start") == ["k8s-qa-worker2"]
    assert lab.commands("join-worker") == []
    assert lab.commands("base") == []
