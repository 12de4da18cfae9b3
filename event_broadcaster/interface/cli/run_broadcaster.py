#!/usr/bin/env python
from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import threading
import time
from typing import List, Optional

import numpy as np

from event_broadcaster.application.broadcaster import Broadcaster
from event_broadcaster.domain.events import (
    ChannelDescriptor,
    MetadataDescriptor,
    MetadataValue,
    OutputFormat,
    ScalarType,
    SpikeEvent,
    TTLEvent,
)
from event_broadcaster.infrastructure.config.settings import BroadcasterConfig, load_broadcaster_config
from event_broadcaster.infrastructure.transport.context import TransportContext

LOGGER = logging.getLogger("event_broadcaster")

SAMPLE_RATE = 30000.0
SPIKE_SAMPLES = 40
SPIKE_PRE_PEAK = 8


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] [event_broadcaster] %(message)s",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Publish synthetic TTL and spike events over ZeroMQ.")
    parser.add_argument("--config", type=str, default=None, help="YAML config file (broadcaster: section).")
    parser.add_argument("--port", type=int, default=None, help="Listening port; 0 picks a free one.")
    parser.add_argument("--format", type=str, default=None, choices=["json", "raw_binary"])
    parser.add_argument("--no-search", action="store_true", help="Fail instead of trying the next port when busy.")
    parser.add_argument("--rate-hz", type=float, default=10.0, help="Synthetic events per second.")
    parser.add_argument("--duration", type=float, default=0.0, help="Seconds to run; 0 runs until interrupted.")
    parser.add_argument("--log-level", type=str, default=None)
    return parser


def resolve_config(args: argparse.Namespace) -> BroadcasterConfig:
    config = load_broadcaster_config(args.config)
    overrides = {}
    if args.port is not None:
        overrides["port"] = args.port
    if args.format is not None:
        overrides["output_format"] = OutputFormat.parse(args.format)
    if args.no_search:
        overrides["search_for_port"] = False
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    return dataclasses.replace(config, **overrides)


def demo_channels() -> List[ChannelDescriptor]:
    ttl_channel = ChannelDescriptor(
        identifier="demo.ttl",
        name="TTL Input",
        stream_name="demo_stream",
        source_node_id=100,
        sample_rate=SAMPLE_RATE,
        metadata=(MetadataDescriptor("word", ScalarType.UINT64),),
    )
    spike_channel = ChannelDescriptor(
        identifier="demo.tetrode",
        name="Tetrode 1",
        stream_name="demo_stream",
        source_node_id=101,
        sample_rate=SAMPLE_RATE,
        num_channels=4,
        data_size=4 * SPIKE_SAMPLES * 4,
    )
    return [ttl_channel, spike_channel]


def run(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    _configure_logging(config.log_level)
    ttl_channel, spike_channel = demo_channels()
    stop = threading.Event()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: stop.set())

    rng = np.random.default_rng()
    period = 1.0 / max(0.1, float(args.rate_hz))
    deadline: Optional[float] = time.monotonic() + args.duration if args.duration > 0 else None

    with TransportContext(io_threads=config.io_threads) as context:
        broadcaster = Broadcaster.from_config(
            context,
            config,
            on_error=lambda status, message: LOGGER.error("Reconfigure failed (%d): %s", status, message),
        )
        try:
            broadcaster.wait_idle(timeout=10.0)
            LOGGER.info(
                "Publishing %s events on port %d", broadcaster.get_output_format().name, broadcaster.get_listening_port()
            )
            sample_number = 0
            state = False
            while not stop.is_set():
                if deadline is not None and time.monotonic() >= deadline:
                    break
                sample_number += int(SAMPLE_RATE * period)
                state = not state
                word = np.array([1 if state else 0], dtype="<u8").tobytes()
                broadcaster.dispatch(
                    TTLEvent(line=0, state=state, sample_number=sample_number, metadata=(MetadataValue(word),)),
                    ttl_channel,
                )
                waveform = rng.normal(0.0, 5.0, size=(spike_channel.num_channels, SPIKE_SAMPLES)).astype(np.float32)
                waveform[:, SPIKE_PRE_PEAK + 1] -= 60.0
                broadcaster.dispatch(
                    SpikeEvent(
                        sorted_id=int(rng.integers(0, 3)),
                        channel_count=spike_channel.num_channels,
                        waveform=waveform,
                        thresholds=(-40.0,) * spike_channel.num_channels,
                        pre_peak_samples=SPIKE_PRE_PEAK,
                        sample_number=sample_number,
                    ),
                    spike_channel,
                )
                stop.wait(period)
            LOGGER.info("Sent %d events, dropped %d", broadcaster.stats.sent, broadcaster.stats.dropped)
        finally:
            broadcaster.close()
            signal.signal(signal.SIGINT, previous_handler)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argument_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
