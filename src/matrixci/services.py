# services.py
# Ephemeral service dependencies (brokers, databases, ...) owned by one job.
#
# The manager never knows what a service *is*: it allocates an address,
# resolves credentials, then drives a provider's start / is_ready / stop.
from __future__ import annotations

import secrets
import shlex
import socket
import subprocess
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set
from urllib.parse import quote

from .errors import JobCancelled, ServiceAcquisitionFailure, ServiceError, ServiceStartupTimeout
from .model import ServiceRequirement
from .ui.console import get_console


# ----------------------------------------------------------------------
# Instances
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ServiceInstance:
    """A running service owned exclusively by one job instance."""
    requirement: ServiceRequirement
    instance_id: str
    host: str
    port: int
    user: str
    password: str
    namespace: str
    job: Optional[str] = None
    handle: Any = None
    extra_env: Dict[str, str] = field(default_factory=dict)
    released: bool = False

    @property
    def name(self) -> str:
        return self.requirement.name

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def env(self) -> Dict[str, str]:
        """Connection details exported to every step of the owning job."""
        prefix = self.name.upper().replace("-", "_")
        out = {
            f"{prefix}_HOST": self.host,
            f"{prefix}_PORT": str(self.port),
            f"{prefix}_USER": self.user,
            f"{prefix}_PASSWORD": self.password,
            f"{prefix}_NAMESPACE": self.namespace,
        }
        out.update({f"{prefix}_{k}": v for k, v in self.extra_env.items()})
        return out


# ----------------------------------------------------------------------
# Port allocation
# ----------------------------------------------------------------------

class PortAllocator:
    """
    Hands out listening ports that are unique among live service instances.

    Ports come from the OS (bind to port 0), then get checked against the
    set already leased to running services of other jobs.
    """

    def __init__(self, host: str = "127.0.0.1", attempts: int = 50):
        self.host = host
        self.attempts = attempts
        self._leased: Set[int] = set()
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            for _ in range(self.attempts):
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                    s.bind((self.host, 0))
                    port = s.getsockname()[1]
                if port not in self._leased:
                    self._leased.add(port)
                    return port
        raise ServiceAcquisitionFailure(
            "could not allocate a unique port",
            details={"host": self.host, "attempts": self.attempts},
        )

    def release(self, port: int) -> None:
        with self._lock:
            self._leased.discard(port)

    @property
    def leased(self) -> Set[int]:
        with self._lock:
            return set(self._leased)


def tcp_probe(host: str, port: int, timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


# ----------------------------------------------------------------------
# Providers
# ----------------------------------------------------------------------

class ServiceProvider:
    """
    Start / health-check / stop capability for one kind of service.

    `start` returns an opaque handle stored on the instance. `stop` must
    tolerate a service that is already gone.
    """

    def start(self, instance: ServiceInstance) -> Any:
        raise NotImplementedError

    def is_ready(self, instance: ServiceInstance) -> bool:
        return tcp_probe(instance.host, instance.port)

    def stop(self, instance: ServiceInstance) -> None:
        raise NotImplementedError

    def env(self, instance: ServiceInstance) -> Dict[str, str]:
        return {}


class DockerServiceProvider(ServiceProvider):
    """
    Runs a service as a detached container with one published port.

    Image and container port come from the constructor or from the
    requirement params (`image`, `container_port`); any other `env.*`
    params become container environment variables.
    """

    def __init__(
        self,
        image: Optional[str] = None,
        container_port: Optional[int] = None,
        *,
        env: Optional[Mapping[str, str]] = None,
        args: tuple[str, ...] = (),
        docker: str = "docker",
    ):
        self.image = image
        self.container_port = container_port
        self.base_env = dict(env or {})
        self.args = tuple(args)
        self.docker = docker

    def container_env(self, instance: ServiceInstance) -> Dict[str, str]:
        out = dict(self.base_env)
        for k, v in instance.requirement.params:
            if k.startswith("env."):
                out[k[len("env."):]] = v
        return out

    def _docker(self, *args: str, check: bool = False) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.docker, *args],
                capture_output=True,
                text=True,
                check=check,
            )
        except FileNotFoundError:
            raise ServiceAcquisitionFailure(
                "Docker is not available",
                details={"hint": "Install Docker and ensure the daemon is running."},
            )

    def start(self, instance: ServiceInstance) -> str:
        params = instance.requirement.params_dict
        image = self.image or params.get("image")
        container_port = self.container_port or params.get("container_port")
        if not image or not container_port:
            raise ServiceAcquisitionFailure(
                f"service '{instance.name}' needs an image and a container_port",
                job=instance.job,
            )

        cmd = [
            "run", "-d", "--rm",
            "--name", self.container_name(instance),
            "-p", f"{instance.host}:{instance.port}:{container_port}",
        ]
        for key, value in self.container_env(instance).items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(image)
        cmd.extend(self.args)

        proc = self._docker(*cmd)
        if proc.returncode != 0:
            raise ServiceAcquisitionFailure(
                f"docker run failed for service '{instance.name}'",
                job=instance.job,
                details={"exit_code": proc.returncode, "stderr": proc.stderr.strip()[-2000:]},
            )
        return proc.stdout.strip()

    def container_name(self, instance: ServiceInstance) -> str:
        return f"matrixci-{instance.instance_id}"

    def stop(self, instance: ServiceInstance) -> None:
        # docker run can create the container and still fail to start it
        target = instance.handle or self.container_name(instance)
        try:
            proc = self._docker("rm", "-f", target)
        except ServiceAcquisitionFailure:
            if instance.handle:
                raise
            return
        # "No such container" means it is already gone
        if proc.returncode != 0 and "No such container" not in proc.stderr:
            raise ServiceError(
                f"docker rm failed for service '{instance.name}'",
                job=instance.job,
                details={"container": target, "stderr": proc.stderr.strip()},
            )


class RabbitMQProvider(DockerServiceProvider):
    """RabbitMQ broker with a per-instance user, password and vhost."""

    AMQP_PORT = 5672

    def __init__(self, image: str = "rabbitmq:3", *, docker: str = "docker"):
        super().__init__(image=image, container_port=self.AMQP_PORT, docker=docker)

    def container_env(self, instance: ServiceInstance) -> Dict[str, str]:
        out = super().container_env(instance)
        out.update({
            "RABBITMQ_DEFAULT_USER": instance.user,
            "RABBITMQ_DEFAULT_PASS": instance.password,
            "RABBITMQ_DEFAULT_VHOST": instance.namespace,
        })
        return out

    def is_ready(self, instance: ServiceInstance) -> bool:
        # the published port accepts connections before the broker is up
        if not tcp_probe(instance.host, instance.port):
            return False
        proc = self._docker("exec", instance.handle, "rabbitmq-diagnostics", "-q", "ping")
        return proc.returncode == 0

    def env(self, instance: ServiceInstance) -> Dict[str, str]:
        vhost = quote(instance.namespace, safe="")
        return {
            "URL": f"amqp://{quote(instance.user)}:{quote(instance.password)}"
                   f"@{instance.host}:{instance.port}/{vhost}",
        }


class ProcessServiceProvider(ServiceProvider):
    """
    Runs a service as a local process.

    The command comes from the constructor or the `command` param; it may use
    {host} {port} {user} {password} {namespace} placeholders.
    """

    def __init__(self, command: Optional[List[str]] = None, *, stop_timeout: float = 5.0):
        self.command = list(command) if command else None
        self.stop_timeout = stop_timeout

    def start(self, instance: ServiceInstance) -> subprocess.Popen:
        template = self.command or shlex.split(instance.requirement.params_dict.get("command", ""))
        if not template:
            raise ServiceAcquisitionFailure(
                f"service '{instance.name}' has no command to run", job=instance.job
            )
        fields = {
            "host": instance.host,
            "port": instance.port,
            "user": instance.user,
            "password": instance.password,
            "namespace": instance.namespace,
        }
        argv = [part.format(**fields) for part in template]
        try:
            return subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise ServiceAcquisitionFailure(
                f"could not launch service '{instance.name}': {e}",
                job=instance.job,
                details={"command": " ".join(argv)},
            )

    def is_ready(self, instance: ServiceInstance) -> bool:
        proc: subprocess.Popen = instance.handle
        if proc.poll() is not None:
            raise ServiceAcquisitionFailure(
                f"service '{instance.name}' exited during startup",
                job=instance.job,
                details={"exit_code": proc.returncode},
            )
        return tcp_probe(instance.host, instance.port)

    def stop(self, instance: ServiceInstance) -> None:
        proc: Optional[subprocess.Popen] = instance.handle
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()


def default_providers() -> Dict[str, ServiceProvider]:
    return {
        "rabbitmq": RabbitMQProvider(),
        "container": DockerServiceProvider(),
        "process": ProcessServiceProvider(),
    }


# ----------------------------------------------------------------------
# Lifecycle manager
# ----------------------------------------------------------------------

class ServiceManager:
    """Acquires and releases service instances; tracks what is still live."""

    def __init__(
        self,
        providers: Optional[Mapping[str, ServiceProvider]] = None,
        *,
        ports: Optional[PortAllocator] = None,
        startup_timeout: float = 60.0,
        probe_interval: float = 0.5,
    ):
        self.providers: Dict[str, ServiceProvider] = dict(
            default_providers() if providers is None else providers
        )
        self.ports = ports or PortAllocator()
        self.startup_timeout = startup_timeout
        self.probe_interval = probe_interval
        self._active: Dict[str, ServiceInstance] = {}
        self._lock = threading.Lock()

    @property
    def active(self) -> List[ServiceInstance]:
        with self._lock:
            return list(self._active.values())

    def acquire(
        self,
        requirement: ServiceRequirement,
        *,
        job: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ServiceInstance:
        """
        Start a service and block until it is ready.

        Raises:
            ServiceStartupTimeout: readiness probe never succeeded in time
            ServiceAcquisitionFailure: provider could not start or probe it
            JobCancelled: cancel was set while waiting

        In every failing case the partially started instance is released
        before the error propagates.
        """
        provider = self.providers.get(requirement.kind)
        if provider is None:
            raise ServiceAcquisitionFailure(
                f"no provider for service kind '{requirement.kind}'",
                job=job,
                details={"service": requirement.name, "known": sorted(self.providers)},
            )

        port = self.ports.allocate()
        instance = ServiceInstance(
            requirement=requirement,
            instance_id=uuid.uuid4().hex[:12],
            host=self.ports.host,
            port=port,
            user=requirement.credentials.user,
            password=requirement.credentials.password or secrets.token_urlsafe(16),
            namespace=requirement.namespace,
            job=job,
        )
        with self._lock:
            self._active[instance.instance_id] = instance

        try:
            instance.handle = provider.start(instance)
            self._wait_ready(provider, instance, cancel)
            instance.extra_env = provider.env(instance)
        except (ServiceError, JobCancelled):
            self.release(instance)
            raise
        except Exception as e:
            self.release(instance)
            raise ServiceAcquisitionFailure(
                f"service '{requirement.name}' failed to start: {e}",
                job=job,
                details={"error_type": type(e).__name__},
            ) from e

        get_console().print_debug(
            f"[{job}] service '{requirement.name}' ready at {instance.address}"
        )
        return instance

    def _wait_ready(
        self,
        provider: ServiceProvider,
        instance: ServiceInstance,
        cancel: Optional[threading.Event],
    ) -> None:
        timeout = instance.requirement.startup_timeout or self.startup_timeout
        deadline = time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_set():
                raise JobCancelled(
                    f"cancelled while starting service '{instance.name}'", job=instance.job
                )
            if provider.is_ready(instance):
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ServiceStartupTimeout(
                    f"service '{instance.name}' not ready after {timeout}s",
                    job=instance.job,
                    details={"address": instance.address},
                )
            wait = min(self.probe_interval, remaining)
            if cancel is not None:
                cancel.wait(wait)
            else:
                time.sleep(wait)

    def release(self, instance: ServiceInstance) -> None:
        """Idempotent teardown. The port is returned even if stop() fails."""
        with self._lock:
            if instance.released:
                return
            instance.released = True
            self._active.pop(instance.instance_id, None)

        provider = self.providers.get(instance.requirement.kind)
        try:
            if provider is not None:
                provider.stop(instance)
        finally:
            self.ports.release(instance.port)
            get_console().print_debug(f"[{instance.job}] service '{instance.name}' released")

    @contextmanager
    def scoped(
        self,
        requirement: ServiceRequirement,
        *,
        job: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[ServiceInstance]:
        instance = self.acquire(requirement, job=job, cancel=cancel)
        try:
            yield instance
        finally:
            self.release(instance)
