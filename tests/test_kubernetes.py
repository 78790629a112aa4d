from types import SimpleNamespace

from kubernetes.client.rest import ApiException

from cpu_stress.kubernetes_providers import KubernetesMetricsProvider, KubernetesTopologyProvider, is_pod_ready


def _pod(ip, phase="Running", ready="True", deleting=False):
    return SimpleNamespace(
        metadata=SimpleNamespace(deletion_timestamp="2026-01-01T00:00:00Z" if deleting else None),
        status=SimpleNamespace(phase=phase, pod_ip=ip,
                               conditions=[SimpleNamespace(type="Ready", status=ready)]),
    )


class FakeCoreApi:
    def __init__(self, pods=None, fail_pods=False, cluster_ip="10.96.0.20"):
        self.pods = pods or []
        self.fail_pods = fail_pods
        self.cluster_ip = cluster_ip
        self.selectors = []

    def list_namespaced_pod(self, namespace, label_selector=None):
        self.selectors.append((namespace, label_selector))
        if self.fail_pods:
            raise ApiException(status=403, reason="Forbidden")
        return SimpleNamespace(items=self.pods)

    def read_namespaced_service(self, name, namespace):
        return SimpleNamespace(spec=SimpleNamespace(cluster_ip=self.cluster_ip))


class FakeAutoscalingApi:
    def __init__(self, replicas=3, desired=4, cpu=75, fail=False):
        self.replicas = replicas
        self.desired = desired
        self.cpu = cpu
        self.fail = fail

    def read_namespaced_horizontal_pod_autoscaler(self, name, namespace):
        if self.fail:
            raise ApiException(status=404, reason="Not Found")
        metric = SimpleNamespace(type="Resource", resource=SimpleNamespace(
            name="cpu", current=SimpleNamespace(average_utilization=self.cpu)))
        return SimpleNamespace(status=SimpleNamespace(
            current_replicas=self.replicas, desired_replicas=self.desired, current_metrics=[metric]))


def test_only_ready_running_pods_are_targets(fast_config):
    api = FakeCoreApi(pods=[
        _pod("10.1.0.1"),
        _pod("10.1.0.2", ready="False"),
        _pod("10.1.0.3", phase="Pending"),
        _pod("10.1.0.4", deleting=True),
        _pod(None),
        _pod("10.1.0.5"),
    ])
    provider = KubernetesTopologyProvider(fast_config, core_api=api)
    assert provider.get_targets() == ["10.1.0.1", "10.1.0.5"]
    assert api.selectors == [(fast_config.namespace, fast_config.label_selector)]


def test_pod_lookup_failure_falls_back_to_service(fast_config):
    provider = KubernetesTopologyProvider(fast_config, core_api=FakeCoreApi(fail_pods=True))
    assert provider.get_targets() == ["10.96.0.20"]


def test_headless_service_gives_no_targets(fast_config):
    provider = KubernetesTopologyProvider(fast_config, core_api=FakeCoreApi(fail_pods=True, cluster_ip="None"))
    assert provider.get_targets() == []


def test_own_pod_ip_is_local(fast_config):
    config = fast_config.with_overrides({"pod_ip": "10.1.0.7"})
    provider = KubernetesTopologyProvider(config, core_api=FakeCoreApi())
    assert provider.is_local("10.1.0.7")
    assert provider.is_local("127.0.0.1")
    assert not provider.is_local("10.1.0.8")


def test_pod_without_ready_condition_is_not_ready():
    pod = _pod("10.1.0.1")
    pod.status.conditions = None
    assert is_pod_ready(pod) is False


def test_hpa_status_is_reported(fast_config):
    provider = KubernetesMetricsProvider(fast_config, autoscaling_api=FakeAutoscalingApi())
    status = provider.fetch_cluster_status()
    assert status.replica_count == 3
    assert status.desired_replicas == 4
    assert status.cpu_utilization_percent == 75.0
    assert status.error is False


def test_hpa_failure_returns_error_sample(fast_config):
    provider = KubernetesMetricsProvider(fast_config, autoscaling_api=FakeAutoscalingApi(fail=True))
    status = provider.fetch_cluster_status()
    assert status.error is True
