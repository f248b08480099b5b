import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

logger = logging.getLogger(__name__)


class HealthHandler(BaseHTTPRequestHandler):
    # Set by make_health_server
    pfsense = None

    def process(self, path):
        if path == "/healthz":
            return 200, {"status": "ok"}
        elif path == "/readyz":
            try:
                version = self.pfsense.host_firmware_version()
            except Exception as e:
                logger.warning("pfSense readiness check failed", extra={"error": str(e)})
                return 503, {"status": "unavailable", "pfsense": str(e)}
            return 200, {"status": "ok", "pfsense": version}
        else:
            return 404, {"status": "not found"}

    def do_GET(self):
        code, result = self.process(self.path.split("?", 1)[0])

        self.send_response(code)
        self.send_header("Content-type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(result, default=str).encode())

    def log_message(self, format, *args):
        logger.debug("health request: "+format % args)


def make_health_server(host, port, pfsense):
    handler = type("BoundHealthHandler", (HealthHandler,), {"pfsense": pfsense})
    return ThreadingHTTPServer((host, port), handler)


def start_health_server(host, port, pfsense):
    server = make_health_server(host, port, pfsense)
    thread = threading.Thread(target=server.serve_forever, name="health", daemon=True)
    thread.start()
    logger.info("health endpoint listening", extra={"address": host+":"+str(port)})
    return server
