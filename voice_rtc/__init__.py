"""Full-mesh WebRTC voice rooms with a lightweight signaling relay."""

__version__ = "0.1.0"
