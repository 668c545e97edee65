from __future__ import annotations

import json
import logging

from wsdrop_backend.logging_setup import setup_logging


def test_setup_logging_emits_json_lines(capsys, restore_logging):
    setup_logging("INFO")
    logging.getLogger("wsdrop.test").info("stored %s", "abc")
    logging.getLogger("wsdrop.test").debug("hidden")
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]

    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["message"] == "stored abc"
    assert record["levelname"] == "INFO"
    assert record["name"] == "wsdrop.test"
