import json
import logging

from pfsense_lb.logs import JSONFormatter, TextFormatter


def record(msg, **extra):
    rec = logging.LogRecord("pfsense_lb.nat", logging.INFO, __file__, 1, msg, (), None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_json_formatter_includes_extra_fields():
    line = JSONFormatter().format(record("allocated IP from subnet", ip="150.150.150.5", service="default/web"))

    data = json.loads(line)
    assert data["msg"] == "allocated IP from subnet"
    assert data["level"] == "INFO"
    assert data["logger"] == "pfsense_lb.nat"
    assert data["ip"] == "150.150.150.5"
    assert data["service"] == "default/web"


def test_text_formatter_appends_key_values():
    line = TextFormatter().format(record("released load balancer IP", ip="150.150.150.5"))

    assert "INFO pfsense_lb.nat: released load balancer IP" in line
    assert line.endswith("ip=150.150.150.5")


def test_plain_record_has_no_extras():
    line = TextFormatter().format(record("controller started"))

    assert line.endswith("controller started")
