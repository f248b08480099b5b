import logging
import threading
import xmlrpc.client
from xml.parsers.expat import ExpatError

import requests

from .errors import TransportFailed

logger = logging.getLogger(__name__)

NAT_SECTION = "nat"


class PfsenseClient:
    """
    Minimal XML-RPC client for the pfSense ``xmlrpc.php`` endpoint.

    Requests are encoded with ``xmlrpc.client`` and sent through a
    ``requests.Session`` so that basic auth, TLS verification and timeouts are
    handled in one place. Each thread gets its own session.
    """

    def __init__(self, url, username, password, insecure=False, timeout=30):
        self.url = url.rstrip("/")+"/xmlrpc.php"
        self.timeout = timeout
        self.auth = (username, password)
        # pfSense usually runs with a self-signed certificate
        self.verify = not insecure
        if insecure:
            requests.packages.urllib3.disable_warnings()

        self._local = threading.local()

    @property
    def session(self):
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.auth = self.auth
            session.headers.update({
                "Accept": "text/xml",
                "Content-Type": "text/xml; charset=utf-8",
            })
            session.verify = self.verify
            self._local.session = session
        return session

    def call(self, method, *params):
        payload = xmlrpc.client.dumps(params, methodname=method, allow_none=True)

        try:
            response = self.session.post(self.url, data=payload.encode("utf-8"), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportFailed("failed to make rpc call "+method+"; "+str(e)) from e

        logger.debug("pfSense rpc call returned", extra={"method": method, "status_code": response.status_code})

        try:
            result, _ = xmlrpc.client.loads(response.content)
        except xmlrpc.client.Fault as e:
            raise TransportFailed("pfSense rejected rpc call "+method+"; "+e.faultString) from e
        except (ExpatError, xmlrpc.client.ResponseError) as e:
            raise TransportFailed("failed to parse rpc response of "+method+"; "+str(e)) from e

        return result[0] if result else None

    def host_firmware_version(self):
        return self.call("pfsense.host_firmware_version", "dummy_value", self.timeout)

    def fetch_nat_section(self):
        sections = self.call("pfsense.backup_config_section", [NAT_SECTION])
        if not isinstance(sections, dict):
            return {}
        return sections.get(NAT_SECTION) or {}

    def persist_nat_section(self, section) -> bool:
        return bool(self.call("pfsense.restore_config_section", {NAT_SECTION: section}, self.timeout))
