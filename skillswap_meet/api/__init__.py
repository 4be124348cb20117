# skillswap_meet/api/__init__.py
from . import meetings, signaling

__all__ = ["meetings", "signaling"]
