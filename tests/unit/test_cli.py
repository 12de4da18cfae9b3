import pytest

pytest.importorskip("zmq")

from event_broadcaster.domain.events import OutputFormat
from event_broadcaster.interface.cli import run_broadcaster
from tests.conftest import find_free_port


def test_argument_overrides(monkeypatch) -> None:
    monkeypatch.delenv("EVENT_BROADCASTER_PORT", raising=False)
    args = run_broadcaster.build_argument_parser().parse_args(
        ["--port", "6100", "--format", "raw_binary", "--no-search", "--log-level", "debug"]
    )
    config = run_broadcaster.resolve_config(args)
    assert config.port == 6100
    assert config.output_format is OutputFormat.RAW_BINARY
    assert config.search_for_port is False
    assert config.log_level == "DEBUG"


def test_short_run_publishes(monkeypatch) -> None:
    for name in ("PORT", "FORMAT", "SEARCH", "HOST", "SEND_HWM", "LOG_LEVEL"):
        monkeypatch.delenv(f"EVENT_BROADCASTER_{name}", raising=False)
    port = find_free_port()
    assert run_broadcaster.main(["--port", str(port), "--rate-hz", "50", "--duration", "0.2"]) == 0
