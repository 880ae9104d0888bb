"""
Infrastructure collaborators: VirtualBox/Vagrant VM control, commands on nodes
over `vagrant ssh`, and HTTPS health checks.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import requests
from urllib3.exceptions import InsecureRequestWarning

from .errors import ObservationError, TransientInfraError
from .observer import VmEntry
from .topology import Resources

# Lab load balancers serve self-signed certificates
requests.packages.urllib3.disable_warnings(category=InsecureRequestWarning)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 900


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    exit_code: int
    stderr: str = ""


async def run_command(args: List[str], cwd: Optional[Path] = None,
                      timeout: int = DEFAULT_TIMEOUT) -> Tuple[int, str, str]:
    """Execute a local command, returning (returncode, stdout, stderr)"""
    try:
        logger.debug(f"Executing: {' '.join(args)}")
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        logger.error(f"Cannot execute {args[0]}: {e}")
        return 127, "", str(e)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error(f"Command timed out: {' '.join(args)}")
        return 124, "", f"Command timed out after {timeout}s"

    stdout_str = stdout.decode(errors="replace") if stdout else ""
    stderr_str = stderr.decode(errors="replace") if stderr else ""
    if process.returncode != 0:
        logger.debug(f"Command failed ({process.returncode}): {' '.join(args)}: {stderr_str.strip()}")
    return process.returncode, stdout_str, stderr_str


class Hypervisor:
    """VM lifecycle collaborator"""

    async def list_nodes(self) -> List[VmEntry]:
        raise NotImplementedError

    async def get_resources(self, name: str) -> Resources:
        raise NotImplementedError

    async def create(self, node) -> None:
        raise NotImplementedError

    async def start(self, name: str) -> None:
        raise NotImplementedError

    async def destroy(self, name: str) -> None:
        raise NotImplementedError

    async def reload(self, name: str) -> None:
        raise NotImplementedError


class NodeRunner:
    """Runs a shell command on a node"""

    async def run(self, node: str, command: str) -> CommandResult:
        raise NotImplementedError


def parse_vm_list(output: str) -> List[str]:
    """Names from `VBoxManage list vms` lines: "name" {uuid}"""
    names = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith('"') and '"' in line[1:]:
            names.append(line[1:line.index('"', 1)])
    return names


def parse_machine_readable(output: str) -> Dict[str, str]:
    values = {}
    for line in output.splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip().strip('"')] = value.strip().strip('"')
    return values


class VagrantHypervisor(Hypervisor):
    """VirtualBox for observation, Vagrant for lifecycle"""

    def __init__(self, vagrant_root: Path, timeout: int = DEFAULT_TIMEOUT):
        self.vagrant_root = Path(vagrant_root)
        self.timeout = timeout

    async def list_nodes(self) -> List[VmEntry]:
        code, all_vms, stderr = await run_command(["VBoxManage", "list", "vms"], timeout=60)
        if code != 0:
            raise ObservationError(f"VBoxManage list vms failed: {stderr.strip()}")
        code, running_vms, stderr = await run_command(["VBoxManage", "list", "runningvms"], timeout=60)
        if code != 0:
            raise ObservationError(f"VBoxManage list runningvms failed: {stderr.strip()}")
        running = set(parse_vm_list(running_vms))
        return [VmEntry(name, "running" if name in running else "not-running")
                for name in parse_vm_list(all_vms)]

    async def get_resources(self, name: str) -> Resources:
        code, stdout, stderr = await run_command(
            ["VBoxManage", "showvminfo", name, "--machinereadable"], timeout=60
        )
        if code != 0:
            raise ObservationError(f"showvminfo {name} failed: {stderr.strip()}")
        info = parse_machine_readable(stdout)
        try:
            return Resources(cpus=int(info["cpus"]), memory_mb=int(info["memory"]))
        except (KeyError, ValueError) as e:
            raise ObservationError(f"showvminfo {name}: missing or invalid cpus/memory ({e})") from e

    async def _vagrant(self, *args: str) -> None:
        code, _, stderr = await run_command(["vagrant", *args], cwd=self.vagrant_root, timeout=self.timeout)
        if code != 0:
            raise TransientInfraError(f"vagrant {' '.join(args)} failed: {stderr.strip()}")

    async def create(self, node) -> None:
        logger.info(f"Creating {node.name} ({node.ip}, {node.resources.cpus} vCPU, {node.resources.memory_mb}MB)")
        await self._vagrant("up", node.name, "--no-provision")

    async def start(self, name: str) -> None:
        logger.info(f"Starting {name}")
        await self._vagrant("up", name, "--no-provision")

    async def destroy(self, name: str) -> None:
        logger.info(f"Destroying {name}")
        await self._vagrant("destroy", "-f", name)

    async def reload(self, name: str) -> None:
        logger.info(f"Reloading {name}")
        await self._vagrant("reload", name, "--no-provision")


class VagrantNodeRunner(NodeRunner):
    def __init__(self, vagrant_root: Path, timeout: int = DEFAULT_TIMEOUT):
        self.vagrant_root = Path(vagrant_root)
        self.timeout = timeout

    async def run(self, node: str, command: str) -> CommandResult:
        code, stdout, stderr = await run_command(
            ["vagrant", "ssh", node, "-c", command], cwd=self.vagrant_root, timeout=self.timeout
        )
        return CommandResult(stdout=stdout, exit_code=code, stderr=stderr)


class HealthChecker:
    """HTTP(S) health endpoint polling"""

    def __init__(self, timeout: float = 5, verify_tls: bool = False):
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = requests.Session()

    def _get(self, url: str) -> bool:
        try:
            response = self.session.get(url, timeout=self.timeout, verify=self.verify_tls)
        except requests.RequestException as e:
            logger.debug(f"Health check {url} failed: {e}")
            return False
        return response.status_code == 200

    async def check(self, url: str) -> bool:
        return await asyncio.to_thread(self._get, url)


class GitRepository:
    """The git checkout holding the Vagrantfile, if there is one"""

    def __init__(self, root: Path, timeout: int = 120):
        self.root = Path(root)
        self.timeout = timeout

    def present(self) -> bool:
        return (self.root / ".git").exists()

    async def _git(self, *args: str) -> str:
        code, stdout, stderr = await run_command(["git", *args], cwd=self.root, timeout=self.timeout)
        if code != 0:
            raise TransientInfraError(f"git {args[0]} failed: {(stderr or stdout).strip()}")
        return stdout

    async def commit(self, path: Path, message: str) -> None:
        await self._git("add", str(path))
        await self._git("commit", "-m", message)
        logger.info(f"✅ Committed {path}")

    async def push(self) -> None:
        branch = (await self._git("rev-parse", "--abbrev-ref", "HEAD")).strip()
        logger.info(f"Pushing to branch: {branch}")
        await self._git("push", "-u", "origin", branch)
