"""
Bible study assistant core.

Scripture reference parsing and grounding, safety screening, long-term
memory, an offline answer cache and the request orchestrator that ties
them to a streaming chat provider.
"""

__version__ = "0.1.0"
