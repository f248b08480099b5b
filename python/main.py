import logging
import sys

import kopf
from kubernetes import client

import pfsense_lb.handlers  # noqa: F401  registers the kopf handlers
from pfsense_lb.config import Config
from pfsense_lb.errors import ConfigError
from pfsense_lb.firewall import FirewallService
from pfsense_lb.health import start_health_server
from pfsense_lb.kube import ServiceStore, load_kube_config
from pfsense_lb.logs import setup_logging
from pfsense_lb.metrics import start_metrics_server
from pfsense_lb.nat import NatSynchronizer
from pfsense_lb.pfsense import PfsenseClient
from pfsense_lb.service import Reconciler

logger = logging.getLogger("pfsense_lb")


def main():
    try:
        config = Config.from_env()
    except ConfigError as e:
        print("failed to populate config; "+str(e), file=sys.stderr)
        return 1

    setup_logging(config.log_level, config.log_format)
    if config.dry_run:
        logger.warning("dry run enabled, pfSense will not be modified")

    pfsense = PfsenseClient(
        config.pfsense_url,
        config.pfsense_username,
        config.pfsense_password,
        insecure=config.pfsense_insecure,
        timeout=config.pfsense_timeout,
    )
    synchronizer = NatSynchronizer(
        pfsense,
        config.subnet,
        config.exclusions,
        dry_run=config.dry_run,
        interface=config.pfsense_interface,
    )

    load_kube_config(config.kubeconfig)

    reconciler = Reconciler(
        ServiceStore(client.CoreV1Api(), timeout=config.kubernetes_timeout),
        FirewallService(synchronizer),
        config.load_balancer_class,
        config.finalizer_name,
        config.ports_hash_annotation,
    )

    if config.metrics_enabled:
        start_metrics_server(*config.metrics_address())

    health = None
    if config.health_enabled:
        host, port = config.health_address()
        health = start_health_server(host, port, pfsense)

    memo = kopf.Memo(reconciler=reconciler, workers=config.workers, annotation_prefix=config.annotation_prefix)
    logger.info("starting controller", extra={"lb_class": config.load_balancer_class, "subnet": str(config.subnet)})

    # kopf installs its own SIGTERM/SIGINT handling and returns once stopped
    kopf.run(clusterwide=True, standalone=True, memo=memo)

    if health is not None:
        health.shutdown()
    logger.info("controller is stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
