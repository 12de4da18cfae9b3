from .settings import BroadcasterConfig, load_broadcaster_config, read_config_file

__all__ = ["BroadcasterConfig", "load_broadcaster_config", "read_config_file"]
