"""
Tool settings: built-in defaults deep-merged with an optional YAML file
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .errors import ConfigurationError
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "k8s-scaler.yaml"
CONFIG_ENV_VAR = "K8S_SCALER_CONFIG"

DEFAULT_SETTINGS = {
    "vagrantfile": "Vagrantfile",
    "vagrant_root": None,
    "backup_dir": None,
    "log_file": None,
    "retry": {
        "base_delay": 2,
        "multiplier": 2.0,
        "max_delay": 60,
        "max_attempts": 5,
    },
    "delays": {
        "master_join": 30,
        "worker_join": 20,
    },
    "commands": {
        "reachable": "true",
        "base": "sudo /vagrant/scripts/base-setup.sh",
        "load_balancer": "sudo /vagrant/scripts/setup-lb.sh {vip} {backends}",
        "init": "sudo /vagrant/scripts/init-master.sh {cluster} {endpoint} {ip}",
        "join_master": "sudo bash {artifact}",
        "join_worker": "sudo bash {artifact}",
        "read_artifact": "cat {artifact}",
        "addons": "sudo /vagrant/scripts/deploy-addons.sh {cluster} {metallb_ip_range}",
        "addon_ready": "kubectl -n {namespace} rollout status {kind}/{name} --timeout=30s",
        "drain": "kubectl drain {node} --ignore-daemonsets --delete-emptydir-data --force --timeout=60s",
        "delete_node": "kubectl delete node {node}",
        "uncordon": "kubectl uncordon {node}",
        "member": "kubectl get node {node} --no-headers",
        "kubelet_version": "kubelet --version",
        "upgrade_first_master": "sudo /vagrant/scripts/upgrade-node.sh master-first {version}",
        "upgrade_node": "sudo /vagrant/scripts/upgrade-node.sh node {version}",
    },
    "artifacts": {
        "worker_join": "/vagrant/join/{cluster}/join-worker.sh",
        "master_join": "/vagrant/join/{cluster}/join-master.sh",
    },
    "health": {
        "lb_url": "http://{ip}:8080/stats",
        "timeout": 5,
        "verify_tls": False,
    },
    "probe": {
        "kind": "kubectl",
        "kubeconfig": "kubeconfigs/{cluster}.conf",
    },
    "git": {
        "commit": True,
        "push": False,
        "message": "Apply cluster configuration changes via k8s-scaler",
    },
    "addons": [
        {"kind": "daemonset", "namespace": "kube-system", "name": "calico-node"},
        {"kind": "deployment", "namespace": "metallb-system", "name": "controller"},
    ],
}


def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into a copy of base"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class Settings:
    vagrantfile: Path
    vagrant_root: Path
    backup_dir: Path
    log_file: Optional[str] = None
    retry: BackoffPolicy = field(default_factory=BackoffPolicy)
    master_join_delay: float = 30
    worker_join_delay: float = 20
    commands: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, str] = field(default_factory=dict)
    health: Dict[str, object] = field(default_factory=dict)
    probe: Dict[str, str] = field(default_factory=dict)
    addons: List[Dict[str, str]] = field(default_factory=list)
    git: Dict[str, object] = field(default_factory=dict)
    source: Optional[Path] = None

    def command(self, template_name: str, /, **values) -> str:
        """Render a command template; values may include a `name` placeholder"""
        template = self.commands.get(template_name)
        if not template:
            raise ConfigurationError("no command template configured", field=f"commands.{template_name}")
        try:
            return template.format(**values)
        except (KeyError, IndexError) as e:
            raise ConfigurationError(f"unknown placeholder {e} in '{template}'",
                                     field=f"commands.{template_name}") from e

    def artifact(self, name: str, cluster: str) -> str:
        template = self.artifacts.get(name)
        if not template:
            raise ConfigurationError("no artifact path configured", field=f"artifacts.{name}")
        return template.format(cluster=cluster)

    def as_dict(self) -> Dict:
        return {
            "vagrantfile": str(self.vagrantfile),
            "vagrant_root": str(self.vagrant_root),
            "backup_dir": str(self.backup_dir),
            "log_file": self.log_file,
            "retry": {
                "base_delay": self.retry.base_delay,
                "multiplier": self.retry.multiplier,
                "max_delay": self.retry.max_delay,
                "max_attempts": self.retry.max_attempts,
            },
            "delays": {"master_join": self.master_join_delay, "worker_join": self.worker_join_delay},
            "commands": dict(self.commands),
            "artifacts": dict(self.artifacts),
            "health": dict(self.health),
            "probe": dict(self.probe),
            "addons": [dict(addon) for addon in self.addons],
            "git": dict(self.git),
        }


def _number(section: Dict, key: str, section_name: str, minimum: float = 0) -> float:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ConfigurationError(f"expected a number >= {minimum}, got {value!r}", field=f"{section_name}.{key}")
    return value


def settings_from_dict(raw: Dict, source: Optional[Path] = None) -> Settings:
    """Validate a merged settings dict and build Settings"""
    vagrantfile = Path(raw["vagrantfile"]).expanduser()
    vagrant_root = Path(raw["vagrant_root"]).expanduser() if raw.get("vagrant_root") else vagrantfile.parent
    backup_dir = (Path(raw["backup_dir"]).expanduser() if raw.get("backup_dir")
                  else vagrant_root / ".vagrant" / "backups")

    retry = raw.get("retry") or {}
    max_attempts = _number(retry, "max_attempts", "retry", minimum=1)
    if int(max_attempts) != max_attempts:
        raise ConfigurationError(f"expected an integer, got {max_attempts!r}", field="retry.max_attempts")
    policy = BackoffPolicy(
        base_delay=_number(retry, "base_delay", "retry"),
        multiplier=_number(retry, "multiplier", "retry", minimum=1),
        max_delay=_number(retry, "max_delay", "retry"),
        max_attempts=int(max_attempts),
    )
    delays = raw.get("delays") or {}

    probe = raw.get("probe") or {}
    if probe.get("kind") not in ("kubectl", "api"):
        raise ConfigurationError(f"expected 'kubectl' or 'api', got {probe.get('kind')!r}", field="probe.kind")

    addons = raw.get("addons") or []
    if not isinstance(addons, list):
        raise ConfigurationError("expected a list", field="addons")
    for addon in addons:
        if not isinstance(addon, dict) or addon.get("kind") not in ("daemonset", "deployment") \
                or not addon.get("namespace") or not addon.get("name"):
            raise ConfigurationError(f"invalid add-on entry {addon!r}", field="addons")

    for section in ("commands", "artifacts", "health", "git"):
        if not isinstance(raw.get(section), dict):
            raise ConfigurationError("expected a mapping", field=section)

    return Settings(
        vagrantfile=vagrantfile,
        vagrant_root=vagrant_root,
        backup_dir=backup_dir,
        log_file=raw.get("log_file"),
        retry=policy,
        master_join_delay=_number(delays, "master_join", "delays"),
        worker_join_delay=_number(delays, "worker_join", "delays"),
        commands={key: str(value) for key, value in raw["commands"].items() if value is not None},
        artifacts={key: str(value) for key, value in raw["artifacts"].items()},
        health=dict(raw["health"]),
        probe=dict(probe),
        addons=[dict(addon) for addon in addons],
        git=dict(raw["git"]),
        source=source,
    )


def resolve_config_path(config_path: Optional[str] = None) -> Optional[Path]:
    """--config wins, then $K8S_SCALER_CONFIG, then ./k8s-scaler.yaml if present"""
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"settings file not found: {path}")
        return path
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"settings file from ${CONFIG_ENV_VAR} not found: {path}")
        return path
    path = Path.cwd() / CONFIG_FILENAME
    return path if path.exists() else None


def load_settings(config_path: Optional[str] = None, overrides: Optional[Dict] = None) -> Settings:
    """Load settings, merging the YAML file (if any) over DEFAULT_SETTINGS"""
    path = resolve_config_path(config_path)
    merged = copy.deepcopy(DEFAULT_SETTINGS)
    if path is not None:
        try:
            with open(path, 'r') as f:
                user_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"cannot parse {path}: {e}") from e
        if user_config is None:
            user_config = {}
        if not isinstance(user_config, dict):
            raise ConfigurationError(f"{path}: top level must be a mapping")
        merged = deep_merge(merged, user_config)
        logger.debug(f"Loaded settings from {path}")
    if overrides:
        merged = deep_merge(merged, overrides)
    return settings_from_dict(merged, source=path)
