"""Kubernetes-backed runtime collector."""
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

from kubernetes import config, client
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import stream

from nodeops.errors import RuntimeCommandError
from nodeops.utils.cache import TtlCache
from nodeops.utils.runtime import ProcessInfo, RuntimeStatusCollector, image_tag

logger = logging.getLogger(__name__)

RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


def load_kube_config(kubeconfig_path: Optional[str] = None) -> None:
    """Load cluster credentials.

    Uses the kubeconfig file when it exists, otherwise the in-cluster service
    account (when this backend itself runs as a pod).
    """
    path = os.path.expanduser(kubeconfig_path) if kubeconfig_path else None
    if path and os.path.exists(path):
        config.load_kube_config(config_file=path)
        logger.info(f"Loaded kubeconfig from {path}")
        return

    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException as e:
        raise RuntimeCommandError("load-kube-config", f"no kubeconfig at {path} and not running in a cluster: {e}")


def pod_to_process(name: str, pod) -> ProcessInfo:
    """Map a pod to a ProcessInfo.

    A Running pod whose containers are not all ready is still reported as
    running; readiness is the probe's job.
    """
    phase = (pod.status.phase or "Unknown")
    statuses = pod.status.container_statuses or []
    ready = sum(1 for c in statuses if c.ready)
    restarts = sum(c.restart_count or 0 for c in statuses)

    status_text = f"{phase} (ready {ready}/{len(statuses)}, restarts {restarts})"
    for container in statuses:
        if container.state and container.state.waiting and container.state.waiting.reason:
            status_text = f"{phase} ({container.state.waiting.reason})"
            break

    image = pod.spec.containers[0].image if pod.spec and pod.spec.containers else ""
    return ProcessInfo(name=name, state=phase.lower(), status_text=status_text, image=image)


class KubernetesRuntime(RuntimeStatusCollector):
    """Runtime collector for services deployed as pods labelled `app=<service>`.

    The kubernetes client is synchronous; calls run in a worker thread.
    """

    def __init__(
        self,
        namespace: str = "kaspa",
        kubeconfig_path: Optional[str] = None,
        command_timeout: float = 30.0,
        version_ttl: float = 60.0,
    ):
        self.namespace = namespace
        self.command_timeout = command_timeout
        self._versions = TtlCache(version_ttl)
        load_kube_config(kubeconfig_path)
        self.core_v1 = client.CoreV1Api()
        self.apps_v1 = client.AppsV1Api()

    async def _call(self, command: str, fn, *args, timeout: Optional[float] = None, **kwargs):
        timeout = self.command_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
        except asyncio.TimeoutError:
            raise RuntimeCommandError(command, f"timed out after {timeout}s")
        except ApiException as e:
            raise RuntimeCommandError(command, f"{e.status} {e.reason}")

    async def _find_pod(self, name: str):
        pods = await self._call(
            f"list pods app={name}",
            self.core_v1.list_namespaced_pod,
            namespace=self.namespace,
            label_selector=f"app={name}",
        )
        if not pods.items:
            raise RuntimeCommandError(f"find pod {name}", "no pod found")
        # Prefer a running pod when a rollout leaves several behind
        for pod in pods.items:
            if pod.status.phase == "Running":
                return pod
        return pods.items[0]

    async def list_live_processes(self) -> Dict[str, ProcessInfo]:
        try:
            pods = await self._call("list pods", self.core_v1.list_namespaced_pod, namespace=self.namespace)
        except RuntimeCommandError as e:
            logger.error(f"Failed to list pods in namespace '{self.namespace}': {e.reason}")
            return {}

        processes: Dict[str, ProcessInfo] = {}
        for pod in pods.items:
            labels = pod.metadata.labels or {}
            name = labels.get("app")
            if not name:
                continue
            info = pod_to_process(name, pod)
            # Keep the running pod if a service has several
            if name not in processes or info.is_running:
                processes[name] = info
        return processes

    async def uptime_of(self, name: str) -> Optional[int]:
        try:
            pod = await self._find_pod(name)
        except RuntimeCommandError as e:
            logger.debug(f"Uptime lookup failed for {name}: {e.reason}")
            return None

        started = None
        for container in pod.status.container_statuses or []:
            if container.state and container.state.running:
                started = container.state.running.started_at
                break
        started = started or pod.status.start_time
        if started is None:
            return None
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return max(0, int((datetime.now(timezone.utc) - started).total_seconds()))

    async def version_of(self, name: str) -> Optional[str]:
        async def fetch() -> Optional[str]:
            try:
                pod = await self._find_pod(name)
            except RuntimeCommandError as e:
                logger.debug(f"Version lookup failed for {name}: {e.reason}")
                return None
            if not pod.spec.containers:
                return None
            return image_tag(pod.spec.containers[0].image)

        return await self._versions.get(name, fetch)

    async def restart(self, name: str) -> None:
        """Rollout-restart the Deployment or StatefulSet named after the service."""
        patch = {
            "spec": {
                "template": {
                    "metadata": {
                        "annotations": {
                            RESTARTED_AT_ANNOTATION: datetime.now(timezone.utc).isoformat()
                        }
                    }
                }
            }
        }

        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    self.apps_v1.patch_namespaced_deployment,
                    name=name, namespace=self.namespace, body=patch,
                ),
                self.command_timeout,
            )
            logger.info(f"Rollout restart triggered for deployment '{name}'")
        except ApiException as e:
            if e.status != 404:
                raise RuntimeCommandError(f"restart {name}", f"{e.status} {e.reason}")
            # Not a deployment, try statefulset
            await self._call(
                f"restart {name}",
                self.apps_v1.patch_namespaced_stateful_set,
                name=name, namespace=self.namespace, body=patch,
            )
            logger.info(f"Rollout restart triggered for statefulset '{name}'")
        except asyncio.TimeoutError:
            raise RuntimeCommandError(f"restart {name}", f"timed out after {self.command_timeout}s")

        self._versions.invalidate(name)

    async def exec(self, name: str, argv: List[str], timeout: Optional[float] = None) -> str:
        pod = await self._find_pod(name)
        command = f"exec {name} {' '.join(argv)}"

        def run() -> str:
            resp = stream(
                self.core_v1.connect_get_namespaced_pod_exec,
                pod.metadata.name,
                self.namespace,
                command=argv,
                stderr=True, stdin=False, stdout=True, tty=False,
                _preload_content=False,
            )
            resp.run_forever(timeout=timeout or self.command_timeout)
            output = resp.read_stdout() or ""
            errors = resp.read_stderr() or ""
            code = resp.returncode
            resp.close()
            if code not in (0, None):
                raise RuntimeCommandError(command, errors.strip() or f"exit code {code}")
            return output

        return await self._call(command, run, timeout=timeout)
