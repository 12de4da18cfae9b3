"""Publish TTL and spike events to ZeroMQ subscribers."""

__version__ = "0.1.0"
