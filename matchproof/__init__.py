"""
matchproof - tamper-evident match records for multiplayer card games.

Canonicalize → hash → sign → batch → anchor → verify.
"""

__version__ = "1.0.0"
