"""Emergency Hub - real-time emergency broadcast over WebSocket."""

__version__ = "1.0.0"
