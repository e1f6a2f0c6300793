from __future__ import annotations

import io
import json
import logging
from typing import Dict

import pytest

from council import logging as clog
from council import metrics
from council.collector import SignatureCollector
from council.types import Proposal

from .helpers import HRP, Member, sign_partial


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_logs_carry_scope_fields(restore_root: logging.Logger) -> None:
    out = io.StringIO()
    clog.configure(json=True, level="DEBUG", stream=out)
    log = logging.getLogger("council.test")

    with clog.scope(role="coordinator", proposal=b"\xab\xcd"):
        log.info("collected %d", 2, extra={"signer": "cncl1abc"})
    log.info("outside")

    first, second = [json.loads(line) for line in out.getvalue().splitlines()]
    assert first["msg"] == "collected 2"
    assert first["role"] == "coordinator"
    assert first["proposal"] == "abcd"
    assert first["signer"] == "cncl1abc"
    assert len(first["trace_id"]) == 12
    assert "role" not in second


def test_text_logs_and_level(restore_root: logging.Logger) -> None:
    out = io.StringIO()
    clog.configure(json=False, level="warning", stream=out)
    log = logging.getLogger("council.test")
    log.info("hidden")
    with clog.scope(signer="cncl1xyz"):
        log.warning("shown")
    text = out.getvalue()
    assert "hidden" not in text
    assert "signer=cncl1xyz" in text
    assert text.rstrip().endswith("| shown")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_bind_and_unbind() -> None:
    with clog.scope(role="agent"):
        clog.bind(anchor="root")
        assert clog.context()["anchor"] == "root"
        clog.unbind("anchor")
        assert "anchor" not in clog.context()
    assert "role" not in clog.context()


def test_collector_counts_signatures(members: Dict[str, Member], proposal: Proposal) -> None:
    def sample(result: str) -> float:
        return metrics.REGISTRY.get_sample_value("council_signatures_collected_total", {"result": result}) or 0.0

    accepted, replaced = sample("accepted"), sample("replaced")
    c = SignatureCollector(proposal, hrp=HRP)
    a = sign_partial(members["A"], proposal)
    c.add(a)
    c.add(a)
    assert sample("accepted") == accepted + 1
    assert sample("replaced") == replaced + 1
    assert b"council_signatures_collected_total" in metrics.render()
