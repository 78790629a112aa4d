"""
Kubernetes-backed topology and metrics providers.

Both take optional pre-built API objects so they can run against fakes;
otherwise the client is configured in-cluster first, kubeconfig second.
"""

import logging
from typing import List, Optional

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from cpu_stress.config import StressConfig
from cpu_stress.dispatch import LOCAL_NAMES, TopologyProvider, own_addresses
from cpu_stress.suite import ClusterStatus, MetricsProvider

logger = logging.getLogger(__name__)

_config_loaded = False


def load_kube_config():
    """Load in-cluster config, falling back to ~/.kube/config for local runs."""
    global _config_loaded
    if _config_loaded:
        return
    try:
        k8s_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except ConfigException:
        k8s_config.load_kube_config()
        logger.info("Loaded local kubeconfig")
    _config_loaded = True


def is_pod_ready(pod) -> bool:
    status = pod.status
    if status is None or status.phase != "Running":
        return False
    if pod.metadata is not None and pod.metadata.deletion_timestamp is not None:
        return False
    for condition in status.conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


class KubernetesTopologyProvider(TopologyProvider):
    """Ready pod IPs behind the label selector, or the service ClusterIP."""

    def __init__(self, config: StressConfig, core_api: Optional[client.CoreV1Api] = None):
        self.config = config
        if core_api is None:
            load_kube_config()
            core_api = client.CoreV1Api()
        self.core_api = core_api
        self._own = own_addresses() | LOCAL_NAMES
        if config.pod_ip:
            self._own.add(config.pod_ip)

    def get_targets(self) -> List[str]:
        try:
            pods = self.core_api.list_namespaced_pod(self.config.namespace,
                                                     label_selector=self.config.label_selector)
            targets = [p.status.pod_ip for p in pods.items if is_pod_ready(p) and p.status.pod_ip]
            logger.debug(f"Found {len(targets)} ready pods for '{self.config.label_selector}'")
            return targets
        except ApiException as e:
            logger.warning(f"Pod lookup failed ({e.status}), trying service ClusterIP: {e.reason}")
        try:
            service = self.core_api.read_namespaced_service(self.config.service_name, self.config.namespace)
            cluster_ip = service.spec.cluster_ip
            if cluster_ip and cluster_ip != "None":
                return [cluster_ip]
        except ApiException as e:
            logger.warning(f"Service lookup failed ({e.status}): {e.reason}")
        return []

    def is_local(self, address: str) -> bool:
        return address in self._own


class KubernetesMetricsProvider(MetricsProvider):
    """Replica count and CPU utilization from the HPA status."""

    def __init__(self, config: StressConfig, autoscaling_api: Optional[client.AutoscalingV2Api] = None):
        self.config = config
        if autoscaling_api is None:
            load_kube_config()
            autoscaling_api = client.AutoscalingV2Api()
        self.autoscaling_api = autoscaling_api
        self._last_replicas = None

    @staticmethod
    def _cpu_utilization(hpa_status) -> float:
        for metric in hpa_status.current_metrics or []:
            if metric.type != "Resource" or metric.resource is None:
                continue
            if metric.resource.name == "cpu" and metric.resource.current is not None:
                return float(metric.resource.current.average_utilization or 0)
        return 0.0

    def fetch_cluster_status(self) -> ClusterStatus:
        try:
            hpa = self.autoscaling_api.read_namespaced_horizontal_pod_autoscaler(
                self.config.hpa_name, self.config.namespace)
        except ApiException as e:
            logger.warning(f"HPA '{self.config.hpa_name}' lookup failed ({e.status}): {e.reason}")
            return ClusterStatus(0, 0.0, None, error=True)
        except Exception as e:
            logger.warning(f"HPA '{self.config.hpa_name}' lookup failed: {e}")
            return ClusterStatus(0, 0.0, None, error=True)

        status = hpa.status
        replicas = status.current_replicas or 0
        cpu = self._cpu_utilization(status)
        if self._last_replicas is not None and replicas != self._last_replicas:
            direction = "up" if replicas > self._last_replicas else "down"
            logger.info(f"HPA scaled {direction}: {self._last_replicas} -> {replicas} replicas (CPU {cpu:.0f}%)")
        self._last_replicas = replicas
        return ClusterStatus(replicas, cpu, status.desired_replicas)
