"""
charmemory - long-term character memory built from chat transcripts
"""

__version__ = "0.1.0"
