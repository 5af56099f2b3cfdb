"""piflow - visual automation flows for remote single-board computers.

Walks node/edge graphs built in the flow editor and executes them against a
device over SSH.
"""

__version__ = "0.1.0"
