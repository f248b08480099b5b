import ipaddress
import os
from dataclasses import dataclass, field

from .allocator import ExclusionRange, parse_exclusions
from .errors import ConfigError

ENV_PREFIX = "APP_"

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


@dataclass(frozen=True)
class Config:
    pfsense_url: str
    subnet: ipaddress.IPv4Network | ipaddress.IPv6Network
    pfsense_username: str = ""
    pfsense_password: str = field(default="", repr=False)
    pfsense_insecure: bool = False
    pfsense_timeout: float = 30.0
    pfsense_interface: str = "wan"
    dry_run: bool = False
    load_balancer_class: str = "example.com/my-lb"
    finalizer_name: str = "loadbalancer.example.com/ip-cleanup"
    ports_hash_annotation: str = "loadbalancer.example.com/ports-hash"
    exclusions: tuple[ExclusionRange, ...] = ()
    workers: int = 4
    log_level: str = "info"
    log_format: str = "text"
    health_enabled: bool = True
    health_bind_address: str = ":8081"
    metrics_enabled: bool = True
    metrics_bind_address: str = ":8080"
    kubeconfig: str | None = None
    kubernetes_timeout: float = 30.0

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ

        def get(key, default=None):
            return env.get(ENV_PREFIX+key, default)

        def required(key):
            value = get(key)
            if not value:
                raise ConfigError(ENV_PREFIX+key+" must be set")
            return value

        def boolean(key, default):
            value = get(key)
            if value is None:
                return default
            if value.strip().lower() in _TRUE:
                return True
            if value.strip().lower() in _FALSE:
                return False
            raise ConfigError(ENV_PREFIX+key+" must be a boolean, got "+repr(value))

        def number(key, default, kind):
            value = get(key)
            if value is None:
                return default
            try:
                return kind(value)
            except ValueError as e:
                raise ConfigError(ENV_PREFIX+key+" must be a number, got "+repr(value)) from e

        try:
            subnet = ipaddress.ip_network(required("CONTROLLER_SUBNET"))
        except ValueError as e:
            raise ConfigError(ENV_PREFIX+"CONTROLLER_SUBNET is not a valid CIDR: "+str(e)) from e

        log_format = get("TELEMETRY_LOGS_FORMAT", "text").lower()
        if log_format not in ("text", "json"):
            raise ConfigError(ENV_PREFIX+"TELEMETRY_LOGS_FORMAT must be text or json, got "+repr(log_format))

        workers = number("CONTROLLER_WORKERS", 4, int)
        if workers < 1:
            raise ConfigError(ENV_PREFIX+"CONTROLLER_WORKERS must be at least 1")

        return cls(
            pfsense_url=required("PFSENSE_URL"),
            pfsense_username=get("PFSENSE_USERNAME", ""),
            pfsense_password=get("PFSENSE_PASSWORD", ""),
            pfsense_insecure=boolean("PFSENSE_INSECURE", False),
            pfsense_timeout=number("PFSENSE_TIMEOUT", 30.0, float),
            pfsense_interface=get("PFSENSE_INTERFACE", "wan"),
            dry_run=boolean("CONTROLLER_DRY_RUN", False),
            load_balancer_class=get("CONTROLLER_LOAD_BALANCER_CLASS", cls.load_balancer_class),
            finalizer_name=get("CONTROLLER_FINALIZER_NAME", cls.finalizer_name),
            ports_hash_annotation=get("CONTROLLER_PORTS_HASH_ANNOTATION", cls.ports_hash_annotation),
            subnet=subnet,
            exclusions=tuple(parse_exclusions(get("CONTROLLER_EXCLUSIONS", ""))),
            workers=workers,
            log_level=get("TELEMETRY_LOGS_LEVEL", "info"),
            log_format=log_format,
            health_enabled=boolean("TELEMETRY_HEALTH_ENABLED", True),
            health_bind_address=get("TELEMETRY_HEALTH_BIND_ADDRESS", ":8081"),
            metrics_enabled=boolean("TELEMETRY_METRICS_ENABLED", True),
            metrics_bind_address=get("TELEMETRY_METRICS_BIND_ADDRESS", ":8080"),
            kubeconfig=get("KUBECONFIG"),
            kubernetes_timeout=number("KUBERNETES_TIMEOUT", 30.0, float),
        )

    def health_address(self):
        return _host_port(self.health_bind_address, "TELEMETRY_HEALTH_BIND_ADDRESS")

    def metrics_address(self):
        return _host_port(self.metrics_bind_address, "TELEMETRY_METRICS_BIND_ADDRESS")

    @property
    def annotation_prefix(self):
        """Domain of the finalizer, reused for kopf's own annotations."""
        return self.finalizer_name.split("/", 1)[0]


def _host_port(address, key):
    host, _, port = address.rpartition(":")
    try:
        return host, int(port)
    except ValueError as e:
        raise ConfigError(ENV_PREFIX+key+" must look like host:port") from e
