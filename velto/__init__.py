"""
Velto trading client.

Read market state from vAMM perpetual markets on synthetic private-company
equity, preview fills, and open or close leveraged positions.
"""

__version__ = "0.4.0"
