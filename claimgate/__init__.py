"""
claimgate - Payment-Gated Claim Registry

A subject pays once over x402, its claim is registered once, and the
registered record is the permanent answer for that subject.
"""

__version__ = "0.1.0"
