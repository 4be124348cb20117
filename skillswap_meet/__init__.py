"""WebRTC signaling relay and mesh peer-connection manager for SkillSwap meetings."""

__version__ = "1.0.0"
