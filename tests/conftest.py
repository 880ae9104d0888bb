"""
In-memory lab: a fake hypervisor, a fake node runner that understands the
short command templates below, cluster membership, and a recording sleep.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Set

import pytest

from k8s_scaler.errors import ObservationError
from k8s_scaler.infra import CommandResult, Hypervisor, NodeRunner
from k8s_scaler.naming import parse_node_name
from k8s_scaler.observer import VmEntry
from k8s_scaler.operations import ClusterScaler
from k8s_scaler.probes import KubectlProbe
from k8s_scaler.settings import DEFAULT_SETTINGS, deep_merge, settings_from_dict
from k8s_scaler.topology import Resources

VAGRANTFILE = '''# Multi-cluster Kubernetes lab
ALL_CLUSTERS_DECLARATION = {
  # production cluster
  "k8s-prod" => {
    base_subnet: "192.168.51",
    master_count: 2,
    worker_count: 2,
    master_cpus: 2,
    master_memory: 4096,
    worker_cpus: 2,
    worker_memory: 2048,
    metallb_ip_range: "192.168.51.200/27",
    context: "prod"
  },
  "k8s-qa" => {
    master_count: 1,
    worker_count: 2,
    worker_cpus: 1,
    worker_memory: 1024,
  },
}

CLUSTER_BASE_SUBNETS = {
  "k8s-qa" => "192.168.52",
}

Vagrant.configure("2") do |config|
  # nodes are generated from ALL_CLUSTERS_DECLARATION
end
'''

TEST_COMMANDS = {
    "reachable": "true",
    "base": "base {node}",
    "load_balancer": "lb {ip} {vip} {backends}",
    "init": "init {cluster} {endpoint}",
    "join_master": "join-master {node} {artifact}",
    "join_worker": "join-worker {node} {artifact}",
    "read_artifact": "cat {artifact}",
    "addons": "addons {cluster}",
    "addon_ready": "addon-ready {cluster} {kind} {name}",
    "drain": "drain {node}",
    "delete_node": "delete-node {node}",
    "uncordon": "uncordon {node}",
    "member": "member {node}",
    "kubelet_version": "kubelet-version",
    "upgrade_first_master": "upgrade-first {node} {version}",
    "upgrade_node": "upgrade-node {node} {version}",
}


@dataclass
class FakeVm:
    power_state: str
    cpus: int
    memory: int


class Lab:
    """Shared state behind the fake collaborators"""

    def __init__(self):
        self.vms: Dict[str, FakeVm] = {}
        self.members: Dict[str, Set[str]] = defaultdict(set)
        self.artifacts: Set[str] = set()
        self.healthy_urls: Set[str] = set()
        self.health_checks: List[str] = []
        self.addons: Set[str] = set()
        self.version = "1.29.4"
        self.cluster_versions: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.fail_next: Dict[str, int] = {}
        self.unreadable: Set[str] = set()
        self.unreachable: Set[str] = set()
        self.list_fails = False

    def add_vm(self, name: str, cpus: int, memory: int, power_state: str = "running"):
        self.vms[name] = FakeVm(power_state, cpus, memory)

    def make_ready(self, plan):
        """Put every planned node of a cluster in its finished state"""
        for node in plan.nodes:
            self.add_vm(node.name, node.resources.cpus, node.resources.memory_mb)
            if node.role.value != "lb":
                self.members[plan.name].add(node.name)
        self.artifacts.update({f"/join/{plan.name}/worker", f"/join/{plan.name}/master"})
        if plan.load_balancer is not None:
            self.healthy_urls.add(f"http://{plan.load_balancer.ip}:8080/stats")
            self.healthy_urls.add(f"https://{plan.vip}:6443/healthz")
        self.addons.add(plan.name)

    def commands(self, word: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == "run" and call[2].split()[0] == word]

    def lifecycle(self, op: str) -> List[str]:
        return [call[1] for call in self.calls if call[0] == op]


class FakeHypervisor(Hypervisor):
    def __init__(self, lab: Lab):
        self.lab = lab

    async def list_nodes(self):
        if self.lab.list_fails:
            raise ObservationError("VBoxManage list vms failed")
        return [VmEntry(name, vm.power_state) for name, vm in self.lab.vms.items()]

    async def get_resources(self, name):
        if name in self.lab.unreadable:
            raise ObservationError(f"showvminfo {name} failed")
        vm = self.lab.vms[name]
        return Resources(vm.cpus, vm.memory)

    async def create(self, node):
        self.lab.calls.append(("create", node.name))
        self.lab.add_vm(node.name, node.resources.cpus, node.resources.memory_mb)

    async def start(self, name):
        self.lab.calls.append(("start", name))
        self.lab.vms[name].power_state = "running"

    async def destroy(self, name):
        self.lab.calls.append(("destroy", name))
        self.lab.vms.pop(name, None)

    async def reload(self, name):
        self.lab.calls.append(("reload", name))


class FakeRunner(NodeRunner):
    def __init__(self, lab: Lab):
        self.lab = lab

    def _fails(self, word: str) -> bool:
        remaining = self.lab.fail_next.get(word, 0)
        if remaining > 0:
            self.lab.fail_next[word] = remaining - 1
            return True
        return False

    async def run(self, node, command):
        lab = self.lab
        lab.calls.append(("run", node, command))
        vm = lab.vms.get(node)
        if vm is None or vm.power_state != "running" or node in lab.unreachable:
            return CommandResult("", 255, f"{node} is not running")
        parts = command.split()
        word = parts[0]
        if self._fails(word):
            return CommandResult("", 1, f"{word} failed")
        cluster = parse_node_name(node).cluster

        if word == "cat":
            if parts[1] in lab.artifacts:
                return CommandResult("kubeadm join 192.168.51.10:6443 --token abc", 0)
            return CommandResult("", 1, "No such file or directory")
        if word == "lb":
            # HAProxy stats answer as soon as the load balancer is configured
            lab.healthy_urls.add(f"http://{parts[1]}:8080/stats")
        elif word == "init":
            lab.artifacts.update({f"/join/{cluster}/worker", f"/join/{cluster}/master"})
            lab.members[cluster].add(node)
            lab.healthy_urls.add(f"https://{parts[2]}:6443/healthz")
        elif word in ("join-master", "join-worker"):
            lab.members[cluster].add(parts[1])
        elif word == "addons":
            lab.addons.add(cluster)
        elif word == "addon-ready":
            return CommandResult("", 0 if parts[1] in lab.addons else 1)
        elif word == "member":
            return CommandResult("", 0 if parts[1] in lab.members[cluster] else 1)
        elif word == "delete-node":
            lab.members[cluster].discard(parts[1])
        elif word == "kubelet-version":
            return CommandResult(f"Kubernetes v{lab.cluster_versions.get(cluster, lab.version)}\n", 0)
        return CommandResult("ok", 0)


class FakeHealth:
    def __init__(self, lab: Lab):
        self.lab = lab

    async def check(self, url):
        self.lab.health_checks.append(url)
        return url in self.lab.healthy_urls


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_settings(tmp_path, **overrides):
    raw = deep_merge(DEFAULT_SETTINGS, {
        "vagrantfile": str(tmp_path / "Vagrantfile"),
        "retry": {"base_delay": 1, "multiplier": 2.0, "max_delay": 60, "max_attempts": 5},
        "commands": TEST_COMMANDS,
        "artifacts": {"worker_join": "/join/{cluster}/worker", "master_join": "/join/{cluster}/master"},
        "addons": [{"kind": "daemonset", "namespace": "kube-system", "name": "calico-node"}],
    })
    return settings_from_dict(deep_merge(raw, overrides))


@pytest.fixture
def lab():
    return Lab()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def vagrantfile(tmp_path):
    path = tmp_path / "Vagrantfile"
    path.write_text(VAGRANTFILE)
    return path


@pytest.fixture
def settings(tmp_path, vagrantfile):
    return make_settings(tmp_path)


@pytest.fixture
def answers():
    """Prompts seen by the scaler; append False to decline the next one"""
    return {"prompts": [], "replies": []}


@pytest.fixture
def scaler(settings, lab, sleep, answers):
    def confirm(prompt):
        answers["prompts"].append(prompt)
        return answers["replies"].pop(0) if answers["replies"] else True

    runner = FakeRunner(lab)
    return ClusterScaler(
        settings,
        hypervisor=FakeHypervisor(lab),
        runner=runner,
        probe=KubectlProbe(runner, settings),
        health=FakeHealth(lab),
        confirm=confirm,
        sleep=sleep,
    )
