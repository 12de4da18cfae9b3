from .publisher_port import PublisherPort

__all__ = ["PublisherPort"]
