import copy

import pytest

from pfsense_lb.errors import ObjectConflict, ObjectNotFound

LB_CLASS = "example.com/my-lb"
FINALIZER = "loadbalancer.example.com/ip-cleanup"
PORTS_HASH = "loadbalancer.example.com/ports-hash"


class FakePfsense:
    """In-memory stand-in for PfsenseClient."""

    def __init__(self, rules=None, success=True):
        self.section = {"rule": list(rules or [])}
        self.success = success
        self.fetches = 0
        self.persisted = []

    def fetch_nat_section(self):
        self.fetches += 1
        return copy.deepcopy(self.section)

    def persist_nat_section(self, section):
        self.persisted.append(copy.deepcopy(section))
        if self.success:
            self.section = copy.deepcopy(section)
        return self.success

    def host_firmware_version(self):
        return {"firmware": {"version": "2.7.2"}}

    @property
    def rules(self):
        return self.section["rule"]


class FakeStore:
    """
    In-memory Service store that behaves like the API server where it matters:
    resourceVersion checks, separate status subresource, and removal of a
    deleted object once its last finalizer is gone.
    """

    def __init__(self):
        self.objects = {}
        self.status_errors = []
        self.update_errors = []
        self.updates = 0
        self.status_updates = 0

    def add(self, svc):
        svc = copy.deepcopy(svc)
        svc["metadata"]["resourceVersion"] = "1"
        self.objects[self._key(svc)] = svc
        return svc

    def stored(self, namespace, name):
        return self.objects.get((namespace, name))

    def get(self, namespace, name):
        if (namespace, name) not in self.objects:
            raise ObjectNotFound(namespace+"/"+name)
        return copy.deepcopy(self.objects[(namespace, name)])

    def update(self, svc):
        if self.update_errors:
            raise self.update_errors.pop(0)
        current = self._current(svc)
        latest = copy.deepcopy(current)
        latest["metadata"] = copy.deepcopy(svc["metadata"])
        latest["spec"] = copy.deepcopy(svc["spec"])
        self._store(latest, current)
        self.updates += 1
        svc.clear()
        svc.update(copy.deepcopy(latest))

    def update_status(self, svc):
        if self.status_errors:
            raise self.status_errors.pop(0)
        current = self._current(svc)
        latest = copy.deepcopy(current)
        latest["status"] = copy.deepcopy(svc.get("status") or {})
        self._store(latest, current)
        self.status_updates += 1
        svc.clear()
        svc.update(copy.deepcopy(latest))

    def delete(self, namespace, name):
        svc = self.objects[(namespace, name)]
        if svc["metadata"].get("finalizers"):
            svc["metadata"]["deletionTimestamp"] = "2026-10-19T12:00:00Z"
            svc["metadata"]["resourceVersion"] = str(int(svc["metadata"]["resourceVersion"]) + 1)
        else:
            del self.objects[(namespace, name)]

    def _current(self, svc):
        key = self._key(svc)
        if key not in self.objects:
            raise ObjectNotFound(key[0]+"/"+key[1])
        current = self.objects[key]
        if svc["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ObjectConflict("the object has been modified")
        return current

    def _store(self, latest, current):
        latest["metadata"]["resourceVersion"] = str(int(current["metadata"]["resourceVersion"]) + 1)
        key = self._key(latest)
        if latest["metadata"].get("deletionTimestamp") and not latest["metadata"].get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = latest

    @staticmethod
    def _key(svc):
        return svc["metadata"]["namespace"], svc["metadata"]["name"]


def make_service(name="web", namespace="default", type="LoadBalancer", lb_class=LB_CLASS, ports=None, cluster_ip="10.96.0.10"):
    if ports is None:
        ports = [
            {"name": "http", "protocol": "TCP", "port": 80, "targetPort": 8080, "nodePort": 30080},
            {"name": "https", "protocol": "TCP", "port": 443, "targetPort": 8443, "nodePort": 30443},
        ]
    spec = {"type": type, "clusterIP": cluster_ip, "ports": ports}
    if lb_class is not None:
        spec["loadBalancerClass"] = lb_class
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
        "status": {"loadBalancer": {}},
    }


@pytest.fixture
def pfsense():
    return FakePfsense()


@pytest.fixture
def store():
    return FakeStore()
