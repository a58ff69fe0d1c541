"""
Electra client: cached reads, managed writes and event-driven cache
coherence over the Electra voting contract.
"""

__version__ = "0.1.0"
