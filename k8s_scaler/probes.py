"""
Cluster probes: node membership and add-on readiness.

KubectlProbe asks the primary master over the node runner; KubernetesApiProbe
talks to the API server directly with the kubernetes client.
"""

import asyncio
import logging
from typing import Dict

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import ConfigurationError, TransientInfraError

logger = logging.getLogger(__name__)


class ClusterProbe:
    """Base class for cluster-side checks"""

    async def is_member(self, plan, node: str) -> bool:
        raise NotImplementedError

    async def addons_ready(self, plan) -> bool:
        raise NotImplementedError


class KubectlProbe(ClusterProbe):
    def __init__(self, runner, settings):
        self.runner = runner
        self.settings = settings

    async def is_member(self, plan, node: str) -> bool:
        command = self.settings.command("member", node=node, cluster=plan.name)
        result = await self.runner.run(plan.primary.name, command)
        return result.exit_code == 0

    async def addons_ready(self, plan) -> bool:
        for addon in self.settings.addons:
            command = self.settings.command("addon_ready", cluster=plan.name, **addon)
            result = await self.runner.run(plan.primary.name, command)
            if result.exit_code != 0:
                logger.debug(f"{plan.name}: {addon['kind']}/{addon['name']} not ready yet")
                return False
        return True


class KubernetesApiProbe(ClusterProbe):
    def __init__(self, settings):
        self.settings = settings
        self._clients: Dict[str, client.ApiClient] = {}

    def _api_client(self, cluster: str) -> client.ApiClient:
        if cluster not in self._clients:
            path = self.settings.probe["kubeconfig"].format(cluster=cluster)
            try:
                self._clients[cluster] = config.new_client_from_config(config_file=path)
            except (config.ConfigException, FileNotFoundError) as e:
                raise TransientInfraError(f"kubeconfig {path} not usable yet: {e}") from e
        return self._clients[cluster]

    def _read_node(self, cluster: str, node: str) -> bool:
        api = client.CoreV1Api(self._api_client(cluster))
        try:
            api.read_node(node)
        except ApiException as e:
            if e.status == 404:
                return False
            raise TransientInfraError(f"reading node {node} failed: {e.reason}") from e
        return True

    def _addon_ready(self, cluster: str, addon: Dict[str, str]) -> bool:
        api = client.AppsV1Api(self._api_client(cluster))
        try:
            if addon["kind"] == "daemonset":
                status = api.read_namespaced_daemon_set_status(addon["name"], addon["namespace"]).status
                desired = status.desired_number_scheduled or 0
                return desired > 0 and (status.number_ready or 0) == desired
            if addon["kind"] == "deployment":
                deployment = api.read_namespaced_deployment_status(addon["name"], addon["namespace"])
                replicas = deployment.spec.replicas or 0
                return replicas > 0 and (deployment.status.ready_replicas or 0) >= replicas
        except ApiException as e:
            if e.status == 404:
                return False
            raise TransientInfraError(f"reading {addon['kind']}/{addon['name']} failed: {e.reason}") from e
        raise ConfigurationError(f"unsupported add-on kind {addon['kind']!r}", field="addons")

    async def is_member(self, plan, node: str) -> bool:
        return await asyncio.to_thread(self._read_node, plan.name, node)

    async def addons_ready(self, plan) -> bool:
        for addon in self.settings.addons:
            if not await asyncio.to_thread(self._addon_ready, plan.name, addon):
                logger.debug(f"{plan.name}: {addon['kind']}/{addon['name']} not ready yet")
                return False
        return True


def make_probe(settings, runner) -> ClusterProbe:
    if settings.probe.get("kind") == "api":
        return KubernetesApiProbe(settings)
    return KubectlProbe(runner, settings)
