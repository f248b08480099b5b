import ipaddress
import json
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from .allocator import allocate
from .errors import AllocationFailed, Error, PersistFailed
from .pfsense import NAT_SECTION

logger = logging.getLogger(__name__)

DESCRIPTION_PREFIX = "k8s-lb:"


@dataclass(frozen=True)
class ServicePort:
    name: str
    protocol: str
    app_protocol: Optional[str]
    node_port: int
    target_port: int

    def to_dict(self):
        return asdict(self)


def rule_description(namespace, name, port):
    return DESCRIPTION_PREFIX+" "+namespace+"/"+name+" "+(port.name or "-")+" ("+port.protocol+"/"+str(port.node_port)+")"


def parse_owner(description):
    """Return (namespace, name) from a description we wrote, or None."""
    if not description or not description.startswith(DESCRIPTION_PREFIX+" "):
        return None
    owner = description[len(DESCRIPTION_PREFIX)+1:].split(" ", 1)[0]
    namespace, sep, name = owner.partition("/")
    if not sep or not namespace or not name:
        return None
    return namespace, name


def make_rule(interface, external_ip, target_ip, port, namespace, name):
    return {
        "interface": interface,
        "protocol": port.protocol.lower(),
        "source": {"any": ""},
        "destination": {"address": external_ip, "port": str(port.node_port)},
        "target": target_ip,
        "local-port": str(port.target_port),
        "descr": rule_description(namespace, name, port),
        "associated-rule-id": "pass",
    }


def destination_address(rule):
    destination = rule.get("destination")
    if not isinstance(destination, dict):
        return None
    return destination.get("address")


def _rule_key(rule):
    # Fields we manage; pfSense adds bookkeeping such as "created"/"updated"
    return (
        rule.get("interface"),
        rule.get("protocol"),
        destination_address(rule),
        (rule.get("destination") or {}).get("port"),
        rule.get("target"),
        rule.get("local-port"),
        rule.get("descr"),
    )


def _require_address(external_ip):
    # An empty address would match every rule without a literal destination
    if not external_ip:
        raise Error("an external IP is required, got "+repr(external_ip))


def _normalize_section(section):
    # An empty section comes back from xmlrpc as "" and a single rule as a struct
    if not isinstance(section, dict):
        section = dict()
    rules = section.get("rule") or []
    if isinstance(rules, dict):
        rules = [rules]
    section["rule"] = list(rules)
    return section


class NatSynchronizer:
    """
    Keeps pfSense port-forward rules in line with the ports of a Service.

    Every operation fetches the NAT section fresh, modifies it and writes the
    whole section back. The firewall rule table is the only record of which
    external IPs are taken.
    """

    def __init__(self, client, subnet, exclusions=(), dry_run=False, interface="wan"):
        self.client = client
        self.subnet = ipaddress.ip_network(subnet) if isinstance(subnet, str) else subnet
        self.exclusions = list(exclusions)
        self.dry_run = dry_run
        self.interface = interface

    def provision(self, namespace, name, target_ip, ports):
        section = self._fetch()
        rules = section["rule"]

        external_ip = allocate(self.subnet, self.exclusions, self.claimed_addresses(rules))
        logger.info("allocated IP from subnet", extra={"ip": external_ip, "subnet": str(self.subnet), "service": namespace+"/"+name})

        for port in ports:
            rules.append(make_rule(self.interface, external_ip, target_ip, port, namespace, name))

        self._persist(section)
        return external_ip

    def update_ports(self, external_ip, ports, namespace=None, name=None, target_ip=None):
        _require_address(external_ip)
        section = self._fetch()

        # Split the rules of this IP out, remembering where they were
        kept = list()
        existing = list()
        position = None
        for rule in section["rule"]:
            if destination_address(rule) == external_ip:
                if position is None:
                    position = len(kept)
                existing.append(rule)
            else:
                kept.append(rule)

        if target_ip is None:
            if not existing:
                raise AllocationFailed("no NAT rules found for "+external_ip+" and no target IP given")
            target_ip = existing[0].get("target")

        if namespace is None or name is None:
            owner = None
            for rule in existing:
                owner = parse_owner(rule.get("descr"))
                if owner is not None:
                    break
            if owner is None:
                raise AllocationFailed("cannot determine the owner of the NAT rules for "+external_ip)
            namespace, name = owner

        desired = [make_rule(self.interface, external_ip, target_ip, port, namespace, name) for port in ports]
        if [_rule_key(r) for r in desired] == [_rule_key(r) for r in existing]:
            logger.debug("NAT rules already in sync", extra={"ip": external_ip})
            return

        if position is None:
            position = len(kept)
        kept[position:position] = desired
        section["rule"] = kept

        self._persist(section)

    def release(self, external_ip):
        _require_address(external_ip)
        section = self._fetch()

        kept = [rule for rule in section["rule"] if destination_address(rule) != external_ip]
        removed = len(section["rule"]) - len(kept)
        if removed == 0:
            logger.info("no NAT rules to release", extra={"ip": external_ip})
            return

        section["rule"] = kept
        self._persist(section)
        logger.info("removed NAT rules", extra={"ip": external_ip, "count": removed})

    def owned_addresses(self, namespace, name):
        """External IPs of the rules whose description names namespace/name, in rule order."""
        owned = list()
        for rule in self._fetch()["rule"]:
            address = destination_address(rule)
            if address and address not in owned and parse_owner(rule.get("descr")) == (namespace, name):
                owned.append(address)
        return owned

    def claimed_addresses(self, rules):
        claimed = list()
        for rule in rules:
            address = destination_address(rule)
            if not address:
                continue
            # Aliases and interface addresses are not ours to allocate around
            try:
                ipaddress.ip_address(address)
            except ValueError:
                logger.debug("ignoring non-literal NAT destination", extra={"address": address})
                continue
            claimed.append(address)
        return claimed

    def _fetch(self):
        return _normalize_section(self.client.fetch_nat_section())

    def _persist(self, section):
        if self.dry_run:
            logger.info(
                "dry run, not writing NAT section to pfSense",
                extra={"section": NAT_SECTION, "payload": json.dumps(section, sort_keys=True)},
            )
            return

        if not self.client.persist_nat_section(section):
            raise PersistFailed(NAT_SECTION)
