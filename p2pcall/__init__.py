"""
p2pcall: room-scoped WebRTC signaling relay and call negotiation.
"""

__version__ = "0.1.0"
