from k8s_scaler.declaration import parse_declaration
from k8s_scaler.diff import ParameterDiff, diff, diff_cluster
from k8s_scaler.naming import Role
from k8s_scaler.observer import ObservedNode
from k8s_scaler.planner import plan
from k8s_scaler.topology import Resources

from conftest import VAGRANTFILE


def plans():
    return plan(parse_declaration(VAGRANTFILE))


def observed_from(cluster_plan):
    return [ObservedNode(n.name, n.cluster, n.role, n.index, n.resources) for n in cluster_plan.nodes]


def test_observed_equal_to_plan_has_no_changes():
    all_plans = plans()
    observed = [node for cluster_plan in all_plans for node in observed_from(cluster_plan)]
    results = diff(all_plans, observed)
    assert [r.cluster for r in results] == ["k8s-prod", "k8s-qa"]
    assert not any(r.has_changes for r in results)


def test_extra_worker_is_reported_for_removal():
    prod = plans()[0]
    observed = observed_from(prod) + [
        ObservedNode("k8s-prod-worker3", "k8s-prod", Role.WORKER, 3, Resources(2, 2048)),
    ]
    result = diff_cluster(prod, observed)
    assert [n.name for n in result.nodes_to_remove] == ["k8s-prod-worker3"]
    assert result.nodes_to_add == []
    assert result.parameter("worker_count") == ParameterDiff("worker_count", 2, 3)


def test_nothing_running_means_only_additions():
    prod = plans()[0]
    result = diff_cluster(prod, [])
    assert [n.name for n in result.nodes_to_add] == [n.name for n in prod.nodes]
    assert result.parameter_diffs == []
    assert result.attribute_changes == []


def test_resource_drift_is_reported_per_node_and_per_parameter():
    qa = plans()[1]
    observed = [
        ObservedNode(n.name, n.cluster, n.role, n.index,
                     Resources(2, 2048) if n.role is Role.WORKER else n.resources)
        for n in qa.nodes
    ]
    result = diff_cluster(qa, observed)
    assert {(c.node, c.param, c.observed, c.declared) for c in result.attribute_changes} == {
        ("k8s-qa-worker1", "cpus", 2, 1),
        ("k8s-qa-worker1", "memory", 2048, 1024),
        ("k8s-qa-worker2", "cpus", 2, 1),
        ("k8s-qa-worker2", "memory", 2048, 1024),
    }
    assert result.observed_values() == {"worker_cpus": 2, "worker_memory": 2048}


def test_divergent_role_values_are_an_inconsistency():
    qa = plans()[1]
    observed = observed_from(qa)
    observed[-1] = ObservedNode("k8s-qa-worker2", "k8s-qa", Role.WORKER, 2, Resources(1, 4096))
    result = diff_cluster(qa, observed)
    assert [(i.role, i.param) for i in result.inconsistencies] == [(Role.WORKER, "worker_memory")]
    assert dict(result.inconsistencies[0].values) == {"k8s-qa-worker1": 1024, "k8s-qa-worker2": 4096}
    assert result.parameter("worker_memory") is None
    assert result.has_changes


def test_load_balancer_resources_are_not_compared():
    prod = plans()[0]
    observed = [
        ObservedNode(n.name, n.cluster, n.role, n.index,
                     Resources(1, 512) if n.role is Role.LOAD_BALANCER else n.resources)
        for n in prod.nodes
    ]
    assert not diff_cluster(prod, observed).has_changes


def test_undeclared_cluster_is_reported_with_every_node():
    observed = [ObservedNode("k8s-dev-master", "k8s-dev", Role.MASTER, 1, Resources(2, 3072))]
    results = diff(plans(), observed)
    dev = results[-1]
    assert dev.cluster == "k8s-dev"
    assert not dev.declared
    assert [n.name for n in dev.nodes_to_remove] == ["k8s-dev-master"]


def test_running_disabled_cluster_is_not_reported_as_undeclared():
    prod, qa = plans()
    observed = observed_from(prod) + observed_from(qa)
    results = {r.cluster: r for r in diff([prod], observed, disabled=["k8s-qa"])}

    assert results["k8s-qa"].disabled
    assert results["k8s-qa"].declared
    assert [n.name for n in results["k8s-qa"].nodes_to_remove] == ["k8s-qa-master", "k8s-qa-worker1", "k8s-qa-worker2"]
    assert not results["k8s-prod"].disabled
