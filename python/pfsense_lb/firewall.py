import logging

logger = logging.getLogger(__name__)


class FirewallService:
    """Allocate, update and release load balancer IPs on pfSense."""

    def __init__(self, synchronizer):
        self.synchronizer = synchronizer

    def allocate_ip(self, namespace, name, target_ip, ports):
        logger.info("allocating IP from pfSense", extra={"service": namespace+"/"+name, "target": target_ip, "ports": [p.to_dict() for p in ports]})
        return self.synchronizer.provision(namespace, name, target_ip, ports)

    def update_ports(self, ip, ports, namespace=None, name=None, target_ip=None):
        logger.info("updating ports in pfSense", extra={"ip": ip, "ports": [p.to_dict() for p in ports]})
        self.synchronizer.update_ports(ip, ports, namespace=namespace, name=name, target_ip=target_ip)

    def release_ip(self, ip):
        logger.info("releasing IP back to pfSense", extra={"ip": ip})
        self.synchronizer.release(ip)

    def owned_ips(self, namespace, name):
        return self.synchronizer.owned_addresses(namespace, name)
