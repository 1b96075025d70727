"""
Agentless VM block-level backup proxy.
"""
__version__ = "1.0.0"
