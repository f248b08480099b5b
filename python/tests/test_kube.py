from unittest import mock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from pfsense_lb.errors import ObjectConflict, ObjectNotFound
from pfsense_lb.kube import ServiceStore


def v1_service(resource_version="7", finalizers=None):
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(name="web", namespace="default", resource_version=resource_version, finalizers=finalizers),
        spec=client.V1ServiceSpec(type="LoadBalancer", load_balancer_class="example.com/my-lb", cluster_ip="10.96.0.10"),
    )


@pytest.fixture
def api():
    api = mock.Mock()
    api.api_client = client.ApiClient()
    return api


def test_get_returns_api_shaped_dict(api):
    api.read_namespaced_service.return_value = v1_service()

    svc = ServiceStore(api).get("default", "web")

    api.read_namespaced_service.assert_called_once_with("web", "default", _request_timeout=30)
    assert svc["metadata"] == {"name": "web", "namespace": "default", "resourceVersion": "7"}
    assert svc["spec"]["loadBalancerClass"] == "example.com/my-lb"
    assert svc["spec"]["clusterIP"] == "10.96.0.10"


def test_update_refreshes_object(api):
    api.replace_namespaced_service.return_value = v1_service(resource_version="8", finalizers=["loadbalancer.example.com/ip-cleanup"])
    svc = {"metadata": {"name": "web", "namespace": "default", "resourceVersion": "7"}}

    ServiceStore(api).update(svc)

    api.replace_namespaced_service.assert_called_once_with("web", "default", _request_timeout=30, body=mock.ANY)
    assert svc["metadata"]["resourceVersion"] == "8"
    assert svc["metadata"]["finalizers"] == ["loadbalancer.example.com/ip-cleanup"]


def test_update_status_uses_status_subresource(api):
    api.replace_namespaced_service_status.return_value = v1_service(resource_version="9")
    svc = {"metadata": {"name": "web", "namespace": "default", "resourceVersion": "8"}}

    ServiceStore(api).update_status(svc)

    api.replace_namespaced_service_status.assert_called_once()
    api.replace_namespaced_service.assert_not_called()
    assert svc["metadata"]["resourceVersion"] == "9"


def test_not_found(api):
    api.read_namespaced_service.side_effect = ApiException(status=404, reason="Not Found")

    with pytest.raises(ObjectNotFound):
        ServiceStore(api).get("default", "web")


def test_conflict(api):
    api.replace_namespaced_service.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ObjectConflict):
        ServiceStore(api).update({"metadata": {"name": "web", "namespace": "default"}})


def test_other_errors_propagate(api):
    api.replace_namespaced_service_status.side_effect = ApiException(status=500, reason="Internal Server Error")

    with pytest.raises(ApiException):
        ServiceStore(api).update_status({"metadata": {"name": "web", "namespace": "default"}})


def test_every_call_is_bounded_by_timeout(api):
    api.read_namespaced_service.return_value = v1_service()
    api.replace_namespaced_service.return_value = v1_service(resource_version="8")
    api.replace_namespaced_service_status.return_value = v1_service(resource_version="9")
    store = ServiceStore(api, timeout=5)

    svc = store.get("default", "web")
    store.update(svc)
    store.update_status(svc)

    for fn in (api.read_namespaced_service, api.replace_namespaced_service, api.replace_namespaced_service_status):
        assert fn.call_args.kwargs["_request_timeout"] == 5
