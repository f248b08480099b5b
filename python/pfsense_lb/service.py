import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import ObjectConflict, ObjectNotFound
from .nat import ServicePort

logger = logging.getLogger(__name__)

SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"
IP_MODE_VIP = "VIP"


@dataclass(frozen=True)
class Result:
    requeue: bool = False
    requeue_after: Optional[float] = None


def is_our_service(svc, load_balancer_class):
    spec = svc.get("spec") or {}
    if spec.get("type") != SERVICE_TYPE_LOAD_BALANCER:
        return False
    return spec.get("loadBalancerClass") is not None and spec["loadBalancerClass"] == load_balancer_class


def has_finalizer(svc, finalizer):
    return finalizer in (svc["metadata"].get("finalizers") or [])


def add_finalizer(svc, finalizer):
    finalizers = svc["metadata"].get("finalizers") or []
    if finalizer not in finalizers:
        svc["metadata"]["finalizers"] = finalizers + [finalizer]


def remove_finalizer(svc, finalizer):
    finalizers = svc["metadata"].get("finalizers") or []
    svc["metadata"]["finalizers"] = [f for f in finalizers if f != finalizer]


def ingress_list(svc):
    status = svc.get("status") or {}
    load_balancer = status.get("loadBalancer") or {}
    return load_balancer.get("ingress") or []


def extract_service_ports(svc):
    ports = list()
    for p in (svc.get("spec") or {}).get("ports") or []:
        # Named target ports only resolve on the pod, fall back to the service port.
        # Without allocated node ports the service port is forwarded as is.
        target_port = p.get("targetPort")
        if not isinstance(target_port, int):
            target_port = p.get("port")
        ports.append(ServicePort(
            name=p.get("name") or "",
            protocol=p.get("protocol") or "TCP",
            app_protocol=p.get("appProtocol"),
            node_port=p.get("nodePort") or p.get("port"),
            target_port=target_port,
        ))
    return ports


def compute_ports_hash(ports):
    """
    Fingerprint a port list. Ports are sorted first so that reordering the
    list in the Service spec does not count as a change.
    """
    ordered = sorted(ports, key=lambda p: (p.name, p.protocol, p.node_port))
    data = json.dumps([p.to_dict() for p in ordered], sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def ingress_ports(ports):
    return [{"port": p.node_port, "protocol": p.protocol} for p in ports]


class Reconciler:
    """
    Drives one Service at a time towards its desired load balancer state.

    Nothing is remembered between calls: every reconcile reads the object and
    works out what to do from its current fields alone.
    """

    def __init__(self, store, firewall, load_balancer_class, finalizer_name, ports_hash_annotation, conflict_delay=2.0):
        self.store = store
        self.firewall = firewall
        self.load_balancer_class = load_balancer_class
        self.finalizer_name = finalizer_name
        self.ports_hash_annotation = ports_hash_annotation
        self.conflict_delay = conflict_delay

    def reconcile(self, namespace, name):
        try:
            svc = self.store.get(namespace, name)
        except ObjectNotFound:
            # Already gone, the finalizer would have handled cleanup
            logger.debug("service not found, nothing to do", extra={"service": namespace+"/"+name})
            return Result()

        try:
            return self._reconcile(svc)
        except ObjectConflict as e:
            logger.debug("conflict updating service, requeuing", extra={"service": namespace+"/"+name, "error": str(e)})
            return Result(requeue_after=self.conflict_delay)

    def _reconcile(self, svc):
        ours = is_our_service(svc, self.load_balancer_class)

        # Always handle deletion if we have a finalizer, even if the service type changed
        if has_finalizer(svc, self.finalizer_name):
            if svc["metadata"].get("deletionTimestamp") or not ours:
                return self.handle_deletion(svc)

        if not ours:
            spec = svc.get("spec") or {}
            logger.debug(
                "skipping service: not our load balancer class or type",
                extra={"service": _service_key(svc), "type": spec.get("type"), "lb_class": spec.get("loadBalancerClass") or "<nil>"},
            )
            return Result()

        return self.handle_create_or_update(svc)

    def handle_create_or_update(self, svc):
        key = _service_key(svc)

        # Add the finalizer and come back for the rest
        if not has_finalizer(svc, self.finalizer_name):
            add_finalizer(svc, self.finalizer_name)
            self.store.update(svc)
            logger.info("added finalizer to service", extra={"service": key})
            return Result(requeue=True)

        ports = extract_service_ports(svc)
        current_hash = compute_ports_hash(ports)
        namespace = svc["metadata"]["namespace"]
        name = svc["metadata"]["name"]
        cluster_ip = svc["spec"].get("clusterIP")

        ingress = ingress_list(svc)
        if not ingress:
            ip = self._adopt_or_allocate(namespace, name, cluster_ip, ports)

            svc.setdefault("status", {}).setdefault("loadBalancer", {})["ingress"] = [{
                "ip": ip,
                "ipMode": IP_MODE_VIP,
                "ports": ingress_ports(ports),
            }]
            try:
                self.store.update_status(svc)
            except Exception as e:
                # The cluster does not know about the IP, give it back
                logger.warning("failed to record load balancer IP, releasing it", extra={"service": key, "ip": ip, "error": str(e)})
                try:
                    self.firewall.release_ip(ip)
                except Exception as release_error:
                    raise release_error from e
                raise
            logger.info("assigned load balancer IP", extra={"service": key, "ip": ip})

            self._store_ports_hash(svc, current_hash)
            return Result()

        ip = ingress[0].get("ip")
        if not ip:
            logger.warning("load balancer ingress has no IP, not touching pfSense", extra={"service": key, "ingress": ingress[0]})
            return Result()

        last_hash = (svc["metadata"].get("annotations") or {}).get(self.ports_hash_annotation)
        if last_hash == current_hash:
            logger.debug("service already has load balancer IP", extra={"service": key, "ip": ip})
            return Result()

        logger.info("ports changed, updating pfSense", extra={"service": key, "ip": ip, "old_hash": last_hash, "new_hash": current_hash})
        self.firewall.update_ports(ip, ports, namespace=namespace, name=name, target_ip=cluster_ip)

        ingress[0]["ports"] = ingress_ports(ports)
        self.store.update_status(svc)
        self._store_ports_hash(svc, current_hash)
        logger.info("updated ports in pfSense", extra={"service": key, "ip": ip})
        return Result()

    def handle_deletion(self, svc):
        key = _service_key(svc)

        if not has_finalizer(svc, self.finalizer_name):
            logger.info("no finalizer present on service, skipping deletion handling", extra={"service": key})
            return Result()

        # Keep the finalizer until every IP is released, a failure here is retried
        ingress = ingress_list(svc)
        released = list()
        for entry in ingress:
            ip = entry.get("ip")
            if ip and ip not in released:
                self.firewall.release_ip(ip)
                released.append(ip)
                logger.info("released load balancer IP", extra={"service": key, "ip": ip})

        # Rules written for this service whose IP never made it into the status
        for ip in self.firewall.owned_ips(svc["metadata"]["namespace"], svc["metadata"]["name"]):
            if ip not in released:
                self.firewall.release_ip(ip)
                released.append(ip)
                logger.info("released unrecorded load balancer IP", extra={"service": key, "ip": ip})

        # A service that is no longer ours but still exists should not keep advertising the IP
        if ingress and not svc["metadata"].get("deletionTimestamp"):
            svc["status"]["loadBalancer"]["ingress"] = []
            self.store.update_status(svc)

        remove_finalizer(svc, self.finalizer_name)
        annotations = svc["metadata"].get("annotations") or {}
        annotations.pop(self.ports_hash_annotation, None)
        self.store.update(svc)
        logger.info("removed finalizer from service", extra={"service": key})
        return Result()

    def _adopt_or_allocate(self, namespace, name, cluster_ip, ports):
        # pfSense may already hold rules for this service from a run whose status write was lost
        owned = self.firewall.owned_ips(namespace, name)
        if not owned:
            return self.firewall.allocate_ip(namespace, name, cluster_ip, ports)

        ip = owned[0]
        logger.info("adopting existing NAT rules", extra={"service": namespace+"/"+name, "ip": ip})
        self.firewall.update_ports(ip, ports, namespace=namespace, name=name, target_ip=cluster_ip)
        for extra_ip in owned[1:]:
            self.firewall.release_ip(extra_ip)
            logger.info("released duplicate load balancer IP", extra={"service": namespace+"/"+name, "ip": extra_ip})
        return ip

    def _store_ports_hash(self, svc, ports_hash):
        annotations = svc["metadata"].get("annotations")
        if annotations is None:
            annotations = svc["metadata"]["annotations"] = dict()
        annotations[self.ports_hash_annotation] = ports_hash
        self.store.update(svc)


def _service_key(svc):
    return svc["metadata"]["namespace"]+"/"+svc["metadata"]["name"]
