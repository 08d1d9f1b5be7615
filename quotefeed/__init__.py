"""Quote feed engagement service: like/save counters, feed pages and the event reconciler."""

__version__ = "0.1.0"
