"""
Kubernetes access for Service objects.

Objects travel through the controller as plain dicts in the shape the API
server serves them (camelCase keys), which keeps the reconciler independent of
the generated client models.
"""
import logging

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import ObjectConflict, ObjectNotFound

logger = logging.getLogger(__name__)


def load_kube_config(kubeconfig=None):
    """Load an explicit kubeconfig if given, else in-cluster config, else the default kubeconfig."""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        logger.info("Loaded kubeconfig", extra={"path": kubeconfig})
        return
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig from default location")


class ServiceStore:
    def __init__(self, api=None, timeout=30):
        self.api = api or client.CoreV1Api()
        self.timeout = timeout

    def get(self, namespace, name):
        svc = self._call("get service "+namespace+"/"+name, self.api.read_namespaced_service, name, namespace)
        return self._to_dict(svc)

    def update(self, svc):
        """Replace the object; the stored resourceVersion makes this optimistic."""
        namespace, name = _key(svc)
        result = self._call("update service "+namespace+"/"+name, self.api.replace_namespaced_service, name, namespace, body=svc)
        _refresh(svc, self._to_dict(result))

    def update_status(self, svc):
        namespace, name = _key(svc)
        result = self._call("update status of service "+namespace+"/"+name, self.api.replace_namespaced_service_status, name, namespace, body=svc)
        _refresh(svc, self._to_dict(result))

    def _to_dict(self, svc):
        return self.api.api_client.sanitize_for_serialization(svc)

    def _call(self, what, fn, *args, **kwargs):
        try:
            return fn(*args, _request_timeout=self.timeout, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise ObjectNotFound(what+": not found") from e
            if e.status == 409:
                raise ObjectConflict(what+": "+str(e.reason)) from e
            raise


def _key(svc):
    return svc["metadata"]["namespace"], svc["metadata"]["name"]


def _refresh(svc, latest):
    svc.clear()
    svc.update(latest)
